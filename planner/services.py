"""Shared business logic for the Planner API and MCP server."""
from __future__ import annotations

import asyncio
import base64
import logging
import math
import re
from dataclasses import dataclass

import bcrypt
from sqlalchemy import Engine

from planner.config import Settings, get_settings
from planner.db import make_engine, make_session_factory
from planner.errors import AnalysisFailure, ObjectStoreError
from planner.health import HealthAggregator, build_probes
from planner.objectstore import ObjectStore, build_object_store
from planner.orchestrator import AnalysisOrchestrator
from planner.providers import (
    AnalysisProvider,
    StaticFallbackProvider,
    build_insights_messages,
    build_providers,
)
from planner.schemas import InsightsOut, StatsOut, UserCreate, UserRecord
from planner.store import EntityStore, build_store

log = logging.getLogger(__name__)

CHARS_PER_PAGE = 3000
# bcrypt only looks at the first 72 bytes of a password.
BCRYPT_MAX_BYTES = 72

_PDF_PAGE = re.compile(rb"/Type\s*/Page(?![a-zA-Z])")

INSIGHTS_HISTORY_LIMIT = 5
NO_PROVIDER_INSIGHTS = "No inference backend is configured. Insights are unavailable."
NO_HISTORY_INSIGHTS = "No analyzed documents yet. Upload a document to get insights."
UNAVAILABLE_INSIGHTS = "Unable to generate insights at this time."

# ---------------------------------------------------------------------------
# Runtime wiring
# ---------------------------------------------------------------------------


@dataclass
class Runtime:
    settings: Settings
    store: EntityStore
    engine: Engine | None
    providers: list[AnalysisProvider]
    orchestrator: AnalysisOrchestrator
    health: HealthAggregator
    object_store: ObjectStore | None = None

    def close(self) -> None:
        if self.object_store is not None:
            self.object_store.close()
        if self.engine is not None:
            self.engine.dispose()


def build_runtime(settings: Settings | None = None) -> Runtime:
    """Wire store, providers, orchestrator and health aggregator from settings."""
    settings = settings or get_settings()
    engine: Engine | None = None
    if settings.store_backend == "memory":
        store = build_store("memory")
    else:
        engine = make_engine(settings.database_url)
        store = build_store("sql", make_session_factory(engine))
    providers = build_providers(settings)
    orchestrator = AnalysisOrchestrator(providers, store, provider_timeout=settings.provider_timeout)
    health = HealthAggregator(build_probes(settings, engine, providers), timeout=settings.health_timeout)
    object_store = build_object_store(settings)
    log.info("Runtime ready: store=%s, chain=%s, object_store=%s", settings.store_backend,
             [p.name for p in orchestrator.chain], "on" if object_store else "off")
    return Runtime(settings, store, engine, providers, orchestrator, health, object_store)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def _password_bytes(password: str) -> bytes:
    return password.encode()[:BCRYPT_MAX_BYTES]


def hash_password(password: str) -> str:
    return bcrypt.hashpw(_password_bytes(password), bcrypt.gensalt()).decode()


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(_password_bytes(password), hashed.encode())
    except ValueError:
        # Stored value is not a bcrypt hash.
        return False


def register_user(store: EntityStore, body: UserCreate) -> UserRecord:
    """Create a user with a hashed password. Raises DuplicateUser."""
    user = store.create_user(
        username=body.username,
        password=hash_password(body.password),
        name=body.name,
        user_type=body.user_type,
        avatar_url=body.avatar_url,
    )
    log.info("Registered user %d (%s)", user.id, user.username)
    return user


def authenticate(store: EntityStore, username: str, password: str) -> UserRecord | None:
    user = store.get_user_by_username(username)
    if user is None or not verify_password(password, user.password):
        return None
    return user


# ---------------------------------------------------------------------------
# Uploads
# ---------------------------------------------------------------------------


def decode_upload(data: bytes, content_type: str | None) -> tuple[str, str]:
    """Return (text for analysis, content to store).

    Text uploads are stored as-is. Binary uploads are stored base64-encoded
    and analyzed from whatever UTF-8 text they contain.
    """
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("utf-8", "ignore"), base64.b64encode(data).decode("ascii")
    if content_type and not content_type.startswith("text/") and "json" not in content_type:
        return text, base64.b64encode(data).decode("ascii")
    return text, text


async def store_upload(object_store: ObjectStore | None, filename: str, data: bytes,
                       content_type: str | None, inline: str) -> str:
    """What the document keeps: the blob URL when the object store takes the
    file, otherwise *inline* (text or base64)."""
    if object_store is None:
        return inline
    try:
        return await object_store.upload(filename, data, content_type)
    except ObjectStoreError as exc:
        log.warning("Object store upload failed, keeping %s inline: %s", filename, exc)
        return inline


def estimate_page_count(data: bytes, text: str = "") -> int:
    """PDF page objects when present, otherwise pages of plain text."""
    if data.startswith(b"%PDF"):
        pages = len(_PDF_PAGE.findall(data))
        if pages:
            return pages
    return max(1, math.ceil(len(text or "") / CHARS_PER_PAGE))


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------


def compute_stats(store: EntityStore, user_id: int) -> StatsOut:
    """Document count and rounded mean score; unscored documents count as 0."""
    docs = store.get_documents_by_user_id(user_id)
    if not docs:
        return StatsOut(document_count=0, average_score=0)
    total = sum(d.score or 0 for d in docs)
    return StatsOut(document_count=len(docs), average_score=_round_half_up(total / len(docs)))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


# ---------------------------------------------------------------------------
# Insights
# ---------------------------------------------------------------------------


def insight_history(store: EntityStore, user_id: int,
                    limit: int = INSIGHTS_HISTORY_LIMIT) -> list[dict]:
    """Scored analyses among the user's *limit* newest documents."""
    history = []
    for doc in store.get_documents_by_user_id(user_id)[:limit]:
        if doc.score is None:
            continue
        analysis = store.get_analysis_by_document_id(doc.id)
        if analysis is None:
            continue
        history.append({
            "title": doc.title,
            "score": doc.score,
            "analysis": analysis.scorecard().model_dump(by_alias=True, mode="json"),
        })
    return history


async def generate_insights(store: EntityStore, providers: list[AnalysisProvider], user_id: int,
                            timeout: float = 30.0) -> InsightsOut:
    """Ask configured providers, in order, for growth insights over recent analyses.

    Never raises for a provider problem: an unconfigured or failing chain
    yields a fixed message instead.
    """
    history = insight_history(store, user_id)
    if not history:
        return InsightsOut(insights=NO_HISTORY_INSIGHTS, analysis_count=0)
    candidates = [p for p in providers
                  if p.is_configured() and not isinstance(p, StaticFallbackProvider)]
    if not candidates:
        return InsightsOut(insights=NO_PROVIDER_INSIGHTS, analysis_count=len(history))

    system, user = build_insights_messages(history)
    for provider in candidates:
        try:
            text = await asyncio.wait_for(provider.advise(system, user), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("Insights from %s timed out after %gs", provider.name, timeout)
        except AnalysisFailure as exc:
            log.warning("Insights from %s failed: %s", provider.name, exc)
        except Exception as exc:
            log.warning("Insights from %s failed: unexpected %s: %s", provider.name, type(exc).__name__, exc)
        else:
            log.info("Insights for user %d from %s over %d analyses", user_id, provider.name, len(history))
            return InsightsOut(insights=text, analysis_count=len(history), provider=provider.name)
    return InsightsOut(insights=UNAVAILABLE_INSIGHTS, analysis_count=len(history))

