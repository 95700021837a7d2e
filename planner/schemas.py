"""Pydantic schemas: the Scorecard shape, entity records, and API bodies.

Field names are snake_case in Python and camelCase on the wire.
"""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Priority = Literal["low", "medium", "high"]
PRIORITIES: tuple[str, ...] = ("low", "medium", "high")

SCORE_FIELDS: tuple[str, ...] = (
    "overall_score", "feasibility_score", "scalability_score",
    "financial_health_score", "innovation_score", "market_fit_score",
)

Score = Annotated[int, Field(ge=0, le=100)]


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True,
    )


# ---------------------------------------------------------------------------
# Scorecard
# ---------------------------------------------------------------------------


class ImprovementArea(_CamelModel):
    area: str
    score: Score
    suggestion: str = ""
    priority: Priority = "medium"


class ComparisonData(_CamelModel):
    industry_average: Score
    top_performers: Score


class Scorecard(_CamelModel):
    overall_score: Score
    feasibility_score: Score
    scalability_score: Score
    financial_health_score: Score
    innovation_score: Score
    market_fit_score: Score
    improvement_areas: list[ImprovementArea] = []
    comparison_data: ComparisonData
    summary: str = ""
    confidence: Score


# ---------------------------------------------------------------------------
# Entity records (what the store hands out)
# ---------------------------------------------------------------------------


class UserOut(_CamelModel):
    id: int
    username: str
    name: str
    user_type: str
    avatar_url: str | None = None
    created_at: datetime


class UserRecord(UserOut):
    password: str


class DocumentOut(_CamelModel):
    id: int
    user_id: int
    title: str
    content_type: str
    content: str
    page_count: int | None = None
    score: int | None = None
    created_at: datetime
    updated_at: datetime


class DocumentSummary(_CamelModel):
    """Document without its payload, for list endpoints."""
    id: int
    user_id: int
    title: str
    content_type: str
    page_count: int | None = None
    score: int | None = None
    created_at: datetime
    updated_at: datetime


class AnalysisOut(Scorecard):
    id: int
    document_id: int
    provider: str = ""
    created_at: datetime

    def scorecard(self) -> Scorecard:
        return Scorecard.model_validate(self.model_dump(include=set(Scorecard.model_fields)))


class ActivityOut(_CamelModel):
    id: int
    user_id: int
    document_id: int
    activity_type: str
    details: dict[str, Any] = {}
    created_at: datetime


class ContactSubmissionOut(_CamelModel):
    id: int
    name: str
    email: str
    company: str = ""
    message: str = ""
    extra: dict[str, Any] = {}
    submitted_at: datetime


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class UserCreate(_CamelModel):
    username: str = Field(min_length=1, max_length=100)
    password: str = Field(min_length=1)
    name: str = Field(min_length=1)
    user_type: Literal["startup", "investor"] = "startup"
    avatar_url: str | None = None


class LoginRequest(BaseModel):
    username: str
    password: str


class ContactCreate(_CamelModel):
    """Contact form body. Unknown fields are kept and stored as ``extra``."""
    model_config = ConfigDict(extra="allow")

    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    company: str = ""
    message: str = ""


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class UploadOut(_CamelModel):
    document: DocumentSummary
    analysis: AnalysisOut
    provider: str


class StatsOut(_CamelModel):
    document_count: int
    average_score: int


class InsightsOut(_CamelModel):
    insights: str
    analysis_count: int
    provider: str = ""  # empty when the fixed message was returned


class HealthOut(_CamelModel):
    services: dict[str, bool]
    healthy: bool
    enabled: dict[str, bool] = {}
    timestamp: datetime
