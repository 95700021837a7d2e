"""Analysis providers: sources of raw scorecards, tried in priority order.

Architecture
------------
Every provider implements :class:`AnalysisProvider`:

- ``is_configured()`` inspects configuration only and never raises;
- ``analyze(content, document_type, context)`` returns the backend's raw JSON
  object or raises :class:`~planner.errors.AnalysisFailure`.

Three variants are built once at startup by :func:`build_providers`:

- **AzureOpenAIProvider** (primary): an Azure OpenAI deployment.
- **LLMProvider** (secondary): :class:`LLMClient` over OpenAI-compatible
  or Anthropic backends.
- **StaticFallbackProvider**: fixed, document-type-specific scorecard with
  no network access. Always configured; terminates the fallback chain.

Raw output is normalized by :mod:`planner.validator`, not here.
"""
from __future__ import annotations

import abc
import copy
import json
import logging
from typing import Any

import httpx

from planner.config import Settings
from planner.errors import AnalysisFailure
from planner.utils import strip_code_fence

log = logging.getLogger(__name__)

PROMPT_CONTENT_LIMIT = 4000
MAX_RESPONSE_TOKENS = 2000
TEMPERATURE = 0.3
INSIGHTS_MAX_TOKENS = 1000
REQUEST_TIMEOUT = httpx.Timeout(60.0, connect=10.0)

# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------

ANALYSIS_SYSTEM_PROMPT = """\
You are an expert business analyst. Evaluate the {document_type} supplied by \
the user for quality and investment readiness.

Score each dimension from 0 (absent) to 100 (exceptional). Be specific and \
constructive in suggestions; reference concrete parts of the document.

Respond with ONLY valid JSON:
{{
  "overallScore": <int 0-100>,
  "feasibilityScore": <int 0-100>,
  "scalabilityScore": <int 0-100>,
  "financialHealthScore": <int 0-100>,
  "innovationScore": <int 0-100>,
  "marketFitScore": <int 0-100>,
  "improvementAreas": [
    {{"area": "<name>", "score": <int 0-100>, "suggestion": "<what to change>", "priority": "<low|medium|high>"}}
  ],
  "comparisonData": {{"industryAverage": <int 0-100>, "topPerformers": <int 0-100>}},
  "summary": "<3-5 sentence assessment>",
  "confidence": <int 0-100>
}}
"""


def build_messages(content: str, document_type: str, context: dict[str, Any] | None = None) -> tuple[str, str]:
    """Return the (system, user) prompt pair, with content truncated to the prompt bound."""
    doc_type = (document_type or "business document").strip()
    system = ANALYSIS_SYSTEM_PROMPT.format(document_type=doc_type)
    lines = []
    title = (context or {}).get("title")
    if title:
        lines.append(f"TITLE: {title}")
    lines.append(f"DOCUMENT TYPE: {doc_type}")
    body = content[:PROMPT_CONTENT_LIMIT]
    if len(content) > PROMPT_CONTENT_LIMIT:
        body += "\n... (truncated)"
    lines.append(f"\n--- CONTENT ---\n{body}")
    return system, "\n".join(lines)


INSIGHTS_SYSTEM_PROMPT = """\
You are a strategic business consultant specializing in African startups. \
Provide actionable insights based on historical performance data."""


def build_insights_messages(history: list[dict[str, Any]]) -> tuple[str, str]:
    """Return the (system, user) prompt pair asking for growth insights over *history*."""
    user = (
        f"Based on this analysis history:\n{json.dumps(history, indent=2)}\n\n"
        "Provide strategic insights for growth in African markets."
    )
    return INSIGHTS_SYSTEM_PROMPT, user


def _parse_json_object(provider: str, text: str | None) -> dict[str, Any]:
    if not text or not text.strip():
        raise AnalysisFailure(provider, "empty response")
    text = strip_code_fence(text.strip())
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise AnalysisFailure(provider, f"invalid JSON: {text[:200]}") from exc
    if not isinstance(data, dict):
        raise AnalysisFailure(provider, f"expected a JSON object, got {type(data).__name__}")
    return data


# ---------------------------------------------------------------------------
# Provider interface
# ---------------------------------------------------------------------------


class AnalysisProvider(abc.ABC):
    name: str = "provider"

    @abc.abstractmethod
    def is_configured(self) -> bool:
        """Whether the provider has everything it needs to make a call."""

    @abc.abstractmethod
    async def analyze(self, content: str, document_type: str, context: dict[str, Any]) -> dict[str, Any]:
        """Return the raw scorecard object or raise AnalysisFailure."""

    async def ping(self) -> bool:
        """Minimal liveness call against the backend."""
        return self.is_configured()

    async def advise(self, system: str, user: str) -> str:
        """Free-text completion, for insights. Raises AnalysisFailure."""
        raise AnalysisFailure(self.name, "free-text completions not supported")

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name} configured={self.is_configured()}>"


# ---------------------------------------------------------------------------
# LLM Client
# ---------------------------------------------------------------------------


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI-compatible APIs."""

    def __init__(
        self,
        provider: str = "openai",
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        self.provider = provider
        self.model = model or ""
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None

    def _init_client(self) -> Any:
        if self._client is not None:
            return self._client
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-haiku-4-5-20251001"
            self._client = anthropic.AsyncAnthropic(api_key=self._api_key, timeout=REQUEST_TIMEOUT)
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o"
            kwargs: dict[str, Any] = {"timeout": REQUEST_TIMEOUT, "max_retries": 0}
            if self._api_key:
                kwargs["api_key"] = self._api_key
            if self._base_url:
                kwargs["base_url"] = self._base_url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")
        return self._client

    async def complete(self, system: str, user: str, max_tokens: int = MAX_RESPONSE_TOKENS,
                       json_mode: bool = True) -> str:
        """Send system+user message to the LLM, return the raw text."""
        client = self._init_client()
        if self.provider == "anthropic":
            response = await client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=TEMPERATURE,
                system=system,
                messages=[{"role": "user", "content": user}],
            )
            return response.content[0].text if response.content else ""
        kwargs: dict[str, Any] = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        response = await client.chat.completions.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=TEMPERATURE,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            **kwargs,
        )
        return response.choices[0].message.content or ""

    async def call(self, system: str, user: str) -> dict[str, Any]:
        """Send system+user message to the LLM, return parsed JSON."""
        label = f"{self.provider}:{self.model or 'default'}"
        try:
            text = await self.complete(system, user)
        except AnalysisFailure:
            raise
        except Exception as exc:
            raise AnalysisFailure(label, f"LLM API call failed: {exc}") from exc
        return _parse_json_object(label, text)


# ---------------------------------------------------------------------------
# Primary: Azure OpenAI deployment
# ---------------------------------------------------------------------------


class AzureOpenAIProvider(AnalysisProvider):
    name = "azure_openai"

    def __init__(self, endpoint: str = "", api_key: str = "", deployment: str = "",
                 api_version: str = "2024-02-01"):
        self.endpoint = endpoint
        self.deployment = deployment
        self.api_version = api_version
        self._api_key = api_key
        self._client: Any = None

    @classmethod
    def from_settings(cls, settings: Settings) -> AzureOpenAIProvider:
        return cls(
            endpoint=settings.azure_openai_endpoint,
            api_key=settings.azure_openai_api_key,
            deployment=settings.azure_openai_deployment,
            api_version=settings.azure_openai_api_version,
        )

    def is_configured(self) -> bool:
        return bool(self.endpoint and self._api_key and self.deployment)

    def _get_client(self) -> Any:
        if self._client is None:
            import openai
            self._client = openai.AsyncAzureOpenAI(
                azure_endpoint=self.endpoint,
                api_key=self._api_key,
                api_version=self.api_version,
                timeout=REQUEST_TIMEOUT,
                max_retries=0,
            )
        return self._client

    async def _chat(self, messages: list[dict[str, str]], max_tokens: int, json_mode: bool) -> str:
        kwargs: dict[str, Any] = {
            "model": self.deployment,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": TEMPERATURE,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        response = await self._get_client().chat.completions.create(**kwargs)
        return response.choices[0].message.content or ""

    async def analyze(self, content: str, document_type: str, context: dict[str, Any]) -> dict[str, Any]:
        if not self.is_configured():
            raise AnalysisFailure(self.name, "not configured")
        system, user = build_messages(content, document_type, context)
        try:
            text = await self._chat(
                [{"role": "system", "content": system}, {"role": "user", "content": user}],
                MAX_RESPONSE_TOKENS, json_mode=True,
            )
        except Exception as exc:
            raise AnalysisFailure(self.name, f"request failed: {exc}") from exc
        return _parse_json_object(self.name, text)

    async def ping(self) -> bool:
        if not self.is_configured():
            return False
        await self._chat([{"role": "user", "content": "ping"}], max_tokens=1, json_mode=False)
        return True

    async def advise(self, system: str, user: str) -> str:
        if not self.is_configured():
            raise AnalysisFailure(self.name, "not configured")
        try:
            text = await self._chat(
                [{"role": "system", "content": system}, {"role": "user", "content": user}],
                INSIGHTS_MAX_TOKENS, json_mode=False,
            )
        except Exception as exc:
            raise AnalysisFailure(self.name, f"request failed: {exc}") from exc
        if not text.strip():
            raise AnalysisFailure(self.name, "empty response")
        return text.strip()


# ---------------------------------------------------------------------------
# Secondary: general-purpose LLM
# ---------------------------------------------------------------------------


class LLMProvider(AnalysisProvider):
    name = "llm"

    def __init__(self, client: LLMClient, api_key_present: bool):
        self.client = client
        self._api_key_present = api_key_present

    @classmethod
    def from_settings(cls, settings: Settings) -> LLMProvider:
        key = settings.secondary_api_key
        client = LLMClient(
            provider=settings.llm_provider,
            model=settings.llm_model or None,
            api_key=key or None,
            base_url=settings.openai_base_url or None,
        )
        return cls(client, api_key_present=bool(key))

    def is_configured(self) -> bool:
        return self._api_key_present and self.client.provider in ("openai", "openai_compatible", "anthropic")

    async def analyze(self, content: str, document_type: str, context: dict[str, Any]) -> dict[str, Any]:
        if not self.is_configured():
            raise AnalysisFailure(self.name, "not configured")
        system, user = build_messages(content, document_type, context)
        return await self.client.call(system, user)

    async def ping(self) -> bool:
        if not self.is_configured():
            return False
        await self.client.complete("Reply with {}", "ping", max_tokens=1)
        return True

    async def advise(self, system: str, user: str) -> str:
        if not self.is_configured():
            raise AnalysisFailure(self.name, "not configured")
        try:
            text = await self.client.complete(system, user, INSIGHTS_MAX_TOKENS, json_mode=False)
        except Exception as exc:
            raise AnalysisFailure(self.name, f"LLM API call failed: {exc}") from exc
        if not text.strip():
            raise AnalysisFailure(self.name, "empty response")
        return text.strip()


# ---------------------------------------------------------------------------
# Terminal: static fallback
# ---------------------------------------------------------------------------

STATIC_SCORES: dict[str, int] = {
    "overallScore": 78,
    "feasibilityScore": 75,
    "scalabilityScore": 82,
    "financialHealthScore": 76,
    "innovationScore": 85,
    "marketFitScore": 72,
}
STATIC_COMPARISON = {"industryAverage": 68, "topPerformers": 92}
STATIC_CONFIDENCE = 85

_GENERIC_AREAS = [
    {"area": "Go-to-Market Strategy", "score": 65, "priority": "high",
     "suggestion": "Add more detail about customer acquisition channels and costs."},
    {"area": "Financial Projections", "score": 78, "priority": "medium",
     "suggestion": "Include sensitivity analysis for key assumptions."},
    {"area": "Competitive Analysis", "score": 82, "priority": "low",
     "suggestion": "Highlight key differentiators more prominently."},
    {"area": "Exit Strategy", "score": 45, "priority": "high",
     "suggestion": "Develop a more detailed exit strategy with potential acquirers or IPO timeline."},
]

_AREAS_BY_TYPE: dict[str, list[dict[str, Any]]] = {
    "pitch_deck": [
        {"area": "Problem Statement", "score": 70, "priority": "medium",
         "suggestion": "Open with a single quantified customer pain point."},
        {"area": "Traction", "score": 58, "priority": "high",
         "suggestion": "Show month-over-month growth and named pilot customers."},
        {"area": "Team Slide", "score": 80, "priority": "low",
         "suggestion": "Tie each founder's background to a specific execution risk."},
        {"area": "The Ask", "score": 62, "priority": "high",
         "suggestion": "State the raise amount and the milestones it funds."},
    ],
    "financial_model": [
        {"area": "Revenue Assumptions", "score": 64, "priority": "high",
         "suggestion": "Ground growth rates in comparable companies or historical data."},
        {"area": "Unit Economics", "score": 72, "priority": "medium",
         "suggestion": "Break out CAC, LTV and payback period per customer segment."},
        {"area": "Cash Runway", "score": 76, "priority": "medium",
         "suggestion": "Add a monthly burn schedule and a downside scenario."},
        {"area": "Currency Exposure", "score": 68, "priority": "medium",
         "suggestion": "Model multi-currency revenue and local payment costs."},
    ],
}

_TYPE_ALIASES = {
    "pitch": "pitch_deck", "deck": "pitch_deck", "presentation": "pitch_deck",
    "pptx": "pitch_deck", "financial": "financial_model", "model": "financial_model",
    "spreadsheet": "financial_model", "xlsx": "financial_model",
}


def normalize_document_type(document_type: str | None) -> str:
    key = (document_type or "").strip().lower().replace("-", "_").replace(" ", "_")
    if key in _AREAS_BY_TYPE:
        return key
    for token, target in _TYPE_ALIASES.items():
        if token in key:
            return target
    return "business_plan"


class StaticFallbackProvider(AnalysisProvider):
    """Deterministic scorecard, a pure function of the document type."""

    name = "static_fallback"

    def is_configured(self) -> bool:
        return True

    def scorecard_for(self, document_type: str) -> dict[str, Any]:
        kind = normalize_document_type(document_type)
        label = kind.replace("_", " ")
        return {
            **STATIC_SCORES,
            "improvementAreas": copy.deepcopy(_AREAS_BY_TYPE.get(kind, _GENERIC_AREAS)),
            "comparisonData": dict(STATIC_COMPARISON),
            "summary": (
                f"Baseline assessment of this {label}: promising scalability and innovation, "
                "scoring above the industry average. The weakest areas are listed as "
                "improvement priorities. Connect an inference backend for a document-specific review."
            ),
            "confidence": STATIC_CONFIDENCE,
        }

    async def analyze(self, content: str, document_type: str, context: dict[str, Any]) -> dict[str, Any]:
        return self.scorecard_for(document_type)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_providers(settings: Settings) -> list[AnalysisProvider]:
    """Build the prioritized provider list once, from configuration."""
    providers: list[AnalysisProvider] = [
        AzureOpenAIProvider.from_settings(settings),
        LLMProvider.from_settings(settings),
        StaticFallbackProvider(),
    ]
    for p in providers:
        if p.is_configured():
            log.info("Analysis provider %s configured", p.name)
        else:
            log.info("Analysis provider %s not configured, skipping", p.name)
    return providers
