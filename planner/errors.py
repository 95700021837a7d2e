"""Error taxonomy for the analysis core.

Routine failures (a provider being down, a sloppy payload, a dead probe) are
absorbed inside the core. Store invariant violations propagate to the caller.
"""
from __future__ import annotations


class PlannerError(Exception):
    """Base class for all planner errors."""


# ---------------------------------------------------------------------------
# Absorbed: the orchestrator and aggregator never let these escape
# ---------------------------------------------------------------------------


class AnalysisFailure(PlannerError):
    """A provider call failed, timed out, or returned unparseable output."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


MISSING_FIELD = "missing_field"
MALFORMED_ENTRY = "malformed_entry"


class ScorecardValidationError(PlannerError):
    """Raw provider output could not be turned into a Scorecard."""

    def __init__(self, kind: str, field: str, detail: str = ""):
        msg = f"{kind}: {field}"
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)
        self.kind = kind
        self.field = field


class ProbeFailure(PlannerError):
    """A health probe could not reach its dependency."""


class ObjectStoreError(PlannerError):
    """An upload to the object store failed; the caller keeps the content inline."""


# ---------------------------------------------------------------------------
# Surfaced: invariant violations
# ---------------------------------------------------------------------------


class StoreError(PlannerError):
    """Entity store invariant violated."""


class DuplicateAnalysis(StoreError):
    def __init__(self, document_id: int):
        super().__init__(f"Document {document_id} already has an analysis")
        self.document_id = document_id


class DuplicateUser(StoreError):
    def __init__(self, username: str):
        super().__init__(f"Username {username!r} already exists")
        self.username = username
