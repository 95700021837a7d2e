from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from planner import services
from planner.config import configure_logging
from planner.health import summarize
from planner.providers import normalize_document_type
from planner.services import Runtime, build_runtime

log = logging.getLogger(__name__)

_runtime: Runtime | None = None


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def set_runtime(runtime: Runtime | None) -> None:
    global _runtime
    _runtime = runtime


def _rt() -> Runtime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


@asynccontextmanager
async def planner_lifespan(server: FastMCP) -> AsyncIterator[None]:
    _rt()
    try:
        yield
    finally:
        if _runtime is not None:
            _runtime.close()
        set_runtime(None)


mcp = FastMCP(
    "Planner",
    instructions=(
        "Planner scores business documents (business plans, pitch decks, financial models). "
        "Use analyze_document to score new text, list_documents and get_analysis to browse "
        "past results, get_stats for a user's overview and health_check to see which "
        "backends are reachable."
    ),
    lifespan=planner_lifespan,
    json_response=True,
)


def _dump(model) -> dict:
    return model.model_dump(by_alias=True, mode="json")


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("planner://overview")
def planner_overview() -> str:
    """Overview of Planner: scorecard fields and workflow."""
    return json.dumps({
        "system": "Planner: business document analysis",
        "scorecard": {
            "scores": "overallScore, feasibilityScore, scalabilityScore, financialHealthScore, "
                      "innovationScore, marketFitScore; integers 0-100.",
            "improvementAreas": "List of {area, score, suggestion, priority: low|medium|high}.",
            "comparisonData": "{industryAverage, topPerformers}",
            "confidence": "0-100; how much the analysis can be trusted.",
        },
        "providers": "Azure OpenAI first, then a general LLM backend, then a static baseline.",
        "workflow": [
            "1. analyze_document(user_id, title, content) to score a document.",
            "2. list_documents(user_id) and get_analysis(document_id) to revisit results.",
            "3. get_stats(user_id) and list_activities(user_id) for an overview.",
            "4. get_insights(user_id) for growth advice over recent analyses.",
        ],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Documents
# ---------------------------------------------------------------------------


@mcp.tool()
async def analyze_document(user_id: int, title: str, content: str, document_type: str = "business_plan") -> dict:
    """Analyze a document's text and store the result.

    Args:
        user_id: Owner of the document.
        title: Document title.
        content: Plain text of the document.
        document_type: business_plan, pitch_deck or financial_model.
    """
    if not content.strip():
        return {"error": "Document content is empty"}
    outcome = await _rt().orchestrator.process_upload(
        title=title,
        content=content,
        document_type=normalize_document_type(document_type),
        user_id=user_id,
        content_type="text/plain",
        page_count=services.estimate_page_count(content.encode(), content),
    )
    return {
        "document_id": outcome.document.id,
        "provider": outcome.provider,
        "scorecard": _dump(outcome.scorecard),
    }


@mcp.tool()
def list_documents(user_id: int) -> list[dict]:
    """List a user's documents (newest first), without their content."""
    return [
        {k: v for k, v in _dump(d).items() if k != "content"}
        for d in _rt().store.get_documents_by_user_id(user_id)
    ]


@mcp.tool()
def get_document(document_id: int) -> dict:
    """Get one document including its stored content."""
    doc = _rt().store.get_document(document_id)
    if doc is None:
        return {"error": f"Document {document_id} not found"}
    return _dump(doc)


@mcp.tool()
def get_analysis(document_id: int) -> dict:
    """Get the scorecard stored for a document."""
    analysis = _rt().store.get_analysis_by_document_id(document_id)
    if analysis is None:
        return {"error": f"No analysis for document {document_id}"}
    return _dump(analysis)


# ---------------------------------------------------------------------------
# Tools: Overview
# ---------------------------------------------------------------------------


@mcp.tool()
def get_stats(user_id: int) -> dict:
    """Document count and average overall score for a user."""
    return _dump(services.compute_stats(_rt().store, user_id))


@mcp.tool()
def list_activities(user_id: int, limit: int = 10) -> list[dict]:
    """Recent activity for a user, newest first."""
    return [_dump(a) for a in _rt().store.get_activities(user_id, limit)]


@mcp.tool()
async def get_insights(user_id: int) -> dict:
    """Strategic growth insights over the user's most recent scored analyses."""
    rt = _rt()
    return _dump(await services.generate_insights(
        rt.store, rt.orchestrator.chain, user_id, timeout=rt.settings.provider_timeout,
    ))


@mcp.tool()
async def health_check() -> dict:
    """Probe every configured dependency in parallel."""
    status = await _rt().health.check_all()
    return {"services": status, "healthy": summarize(status)}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Planner MCP server over stdio."""
    configure_logging()
    mcp.run()


if __name__ == "__main__":
    main()
