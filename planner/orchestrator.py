"""Fallback chain orchestrator.

Asks each configured provider in priority order, keeps the first output the
validator accepts, and persists the result. The static fallback terminates the
chain, so ``analyze_document`` never fails because of a provider.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from planner.errors import AnalysisFailure, ScorecardValidationError
from planner.providers import (
    STATIC_COMPARISON,
    STATIC_CONFIDENCE,
    STATIC_SCORES,
    AnalysisProvider,
    StaticFallbackProvider,
)
from planner.schemas import AnalysisOut, DocumentOut, Scorecard
from planner.store import EntityStore
from planner.validator import validate_scorecard

log = logging.getLogger(__name__)

DEFAULT_PROVIDER_TIMEOUT = 30.0
UPLOAD_ACTIVITY = "document_upload"

STATIC_SCORECARD = Scorecard.model_validate({
    **STATIC_SCORES,
    "improvementAreas": [],
    "comparisonData": STATIC_COMPARISON,
    "summary": "Baseline assessment; no document-specific analysis was available.",
    "confidence": STATIC_CONFIDENCE,
})


@dataclass
class Attempt:
    provider: str
    ok: bool
    reason: str = ""


@dataclass
class ChainResult:
    scorecard: Scorecard
    provider: str
    attempts: list[Attempt] = field(default_factory=list)


@dataclass
class AnalysisOutcome:
    document: DocumentOut
    analysis: AnalysisOut
    scorecard: Scorecard
    provider: str


class AnalysisOrchestrator:
    def __init__(
        self,
        providers: list[AnalysisProvider],
        store: EntityStore,
        provider_timeout: float = DEFAULT_PROVIDER_TIMEOUT,
    ):
        self.providers = list(providers)
        self.store = store
        self.provider_timeout = provider_timeout
        # Fixed at construction: configured providers in priority order,
        # always ending in a static fallback.
        self.chain: list[AnalysisProvider] = [p for p in self.providers if p.is_configured()]
        if not any(isinstance(p, StaticFallbackProvider) for p in self.chain):
            self.chain.append(StaticFallbackProvider())

    async def _attempt(self, provider: AnalysisProvider, content: str, document_type: str,
                       context: dict[str, Any]) -> Scorecard:
        raw = await asyncio.wait_for(
            provider.analyze(content, document_type, context), timeout=self.provider_timeout,
        )
        return validate_scorecard(raw)

    async def run_chain(self, content: str, document_type: str,
                        context: dict[str, Any] | None = None) -> ChainResult:
        """Try each provider once; the first validated scorecard wins."""
        context = context or {}
        attempts: list[Attempt] = []
        for provider in self.chain:
            try:
                scorecard = await self._attempt(provider, content, document_type, context)
            except asyncio.TimeoutError:
                reason = f"timed out after {self.provider_timeout:g}s"
            except AnalysisFailure as exc:
                reason = str(exc)
            except ScorecardValidationError as exc:
                reason = f"invalid scorecard: {exc}"
            except Exception as exc:
                reason = f"unexpected {type(exc).__name__}: {exc}"
            else:
                attempts.append(Attempt(provider.name, True))
                log.info("Analysis by %s succeeded (overall %d)", provider.name, scorecard.overall_score)
                return ChainResult(scorecard, provider.name, attempts)
            attempts.append(Attempt(provider.name, False, reason))
            log.warning("Analysis by %s failed: %s", provider.name, reason)

        log.error("Every provider failed, including the static fallback; using built-in scorecard")
        return ChainResult(STATIC_SCORECARD.model_copy(deep=True), StaticFallbackProvider.name, attempts)

    async def process_upload(
        self,
        title: str,
        content: str,
        document_type: str,
        user_id: int,
        content_type: str | None = None,
        page_count: int | None = 0,
        stored_content: str | None = None,
    ) -> AnalysisOutcome:
        """Analyze, then persist document, analysis, score and activity together.

        *stored_content* is what the document keeps (e.g. base64 of a binary
        upload); it defaults to *content*.
        """
        result = await self.run_chain(content, document_type, {"title": title})
        scorecard = result.scorecard

        with self.store.atomic():
            doc = self.store.create_document(
                user_id=user_id,
                title=title,
                content_type=content_type or document_type,
                content=content if stored_content is None else stored_content,
                page_count=page_count,
            )
            analysis = self.store.create_analysis(doc.id, scorecard, provider=result.provider)
            doc = self.store.update_document(doc.id, score=scorecard.overall_score) or doc
            self.store.create_activity(
                user_id=user_id,
                document_id=doc.id,
                activity_type=UPLOAD_ACTIVITY,
                details={
                    "title": title,
                    "score": scorecard.overall_score,
                    "summary": scorecard.summary,
                    "provider": result.provider,
                },
            )
        log.info("Document %d (%r) analyzed by %s for user %d", doc.id, title, result.provider, user_id)
        return AnalysisOutcome(doc, analysis, scorecard, result.provider)

    async def analyze_document(self, title: str, content: str, document_type: str, user_id: int) -> Scorecard:
        outcome = await self.process_upload(title, content, document_type, user_id)
        return outcome.scorecard
