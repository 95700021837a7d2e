"""Tests for analysis providers. No network: SDK clients are mocked."""
from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from planner.config import Settings
from planner.errors import AnalysisFailure
from planner.providers import (
    INSIGHTS_MAX_TOKENS,
    PROMPT_CONTENT_LIMIT,
    AzureOpenAIProvider,
    LLMClient,
    LLMProvider,
    StaticFallbackProvider,
    build_insights_messages,
    build_messages,
    build_providers,
    normalize_document_type,
)
from planner.tests.fakes import make_raw
from planner.validator import validate_scorecard


def _chat_response(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def _azure(client) -> AzureOpenAIProvider:
    provider = AzureOpenAIProvider("https://x.openai.azure.com", "key", "gpt-4o")
    provider._client = client
    return provider


def _openai_client(create: AsyncMock):
    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


class TestPrompt:
    def test_content_truncated(self):
        system, user = build_messages("x" * (PROMPT_CONTENT_LIMIT + 500), "pitch_deck", {"title": "Deck"})
        assert "x" * PROMPT_CONTENT_LIMIT in user
        assert "x" * (PROMPT_CONTENT_LIMIT + 1) not in user
        assert "pitch deck" in user or "pitch_deck" in user
        assert "overallScore" in system

    @pytest.mark.parametrize("raw,expected", [
        ("Pitch Deck", "pitch_deck"), ("investor-deck.pptx", "pitch_deck"),
        ("financial_model", "financial_model"), ("forecast.xlsx", "financial_model"),
        ("", "business_plan"), (None, "business_plan"), ("memo", "business_plan"),
    ])
    def test_normalize_document_type(self, raw, expected):
        assert normalize_document_type(raw) == expected


class TestAzureOpenAIProvider:
    def test_configuration(self):
        assert not AzureOpenAIProvider().is_configured()
        assert not AzureOpenAIProvider("https://x", "key", "").is_configured()
        assert AzureOpenAIProvider("https://x", "key", "dep").is_configured()

    @pytest.mark.asyncio
    async def test_analyze_returns_json_object(self):
        create = AsyncMock(return_value=_chat_response(json.dumps(make_raw())))
        raw = await _azure(_openai_client(create)).analyze("content", "business_plan", {})
        assert raw["overallScore"] == 81
        kwargs = create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        assert kwargs["response_format"] == {"type": "json_object"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["", "not json", "[1, 2]"])
    async def test_bad_payload(self, content):
        create = AsyncMock(return_value=_chat_response(content))
        with pytest.raises(AnalysisFailure):
            await _azure(_openai_client(create)).analyze("content", "business_plan", {})

    @pytest.mark.asyncio
    async def test_transport_error(self):
        create = AsyncMock(side_effect=ConnectionError("reset"))
        with pytest.raises(AnalysisFailure) as exc:
            await _azure(_openai_client(create)).analyze("content", "business_plan", {})
        assert exc.value.provider == "azure_openai"
        assert str(exc.value).startswith("azure_openai: request failed")

    @pytest.mark.asyncio
    async def test_unconfigured_analyze(self):
        with pytest.raises(AnalysisFailure):
            await AzureOpenAIProvider().analyze("c", "business_plan", {})

    @pytest.mark.asyncio
    async def test_ping_uses_one_token(self):
        create = AsyncMock(return_value=_chat_response("ok"))
        assert await _azure(_openai_client(create)).ping() is True
        assert create.call_args.kwargs["max_tokens"] == 1

    @pytest.mark.asyncio
    async def test_advise_is_free_text(self):
        create = AsyncMock(return_value=_chat_response("  Focus on Lagos.  "))
        system, user = build_insights_messages([{"title": "Plan", "score": 70}])
        assert await _azure(_openai_client(create)).advise(system, user) == "Focus on Lagos."
        kwargs = create.call_args.kwargs
        assert "response_format" not in kwargs
        assert kwargs["max_tokens"] == INSIGHTS_MAX_TOKENS
        assert "\"title\": \"Plan\"" in kwargs["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_advise_empty_reply(self):
        create = AsyncMock(return_value=_chat_response(""))
        with pytest.raises(AnalysisFailure, match="empty response"):
            await _azure(_openai_client(create)).advise("s", "u")


class TestLLMProvider:
    def test_configured_by_api_key(self):
        assert not LLMProvider.from_settings(Settings()).is_configured()
        assert LLMProvider.from_settings(Settings(openai_api_key="sk-test")).is_configured()
        anthropic = LLMProvider.from_settings(Settings(llm_provider="anthropic", anthropic_api_key="sk-ant"))
        assert anthropic.is_configured()
        assert anthropic.client.provider == "anthropic"

    @pytest.mark.asyncio
    async def test_analyze_parses_fenced_json(self):
        client = LLMClient(provider="openai", api_key="sk-test")
        client.complete = AsyncMock(return_value="```json\n" + json.dumps(make_raw()) + "\n```")
        raw = await LLMProvider(client, api_key_present=True).analyze("c", "business_plan", {})
        assert validate_scorecard(raw).overall_score == 81

    @pytest.mark.asyncio
    async def test_api_error_wrapped(self):
        client = LLMClient(provider="openai", api_key="sk-test")
        client.complete = AsyncMock(side_effect=RuntimeError("429 Too Many Requests"))
        with pytest.raises(AnalysisFailure) as exc:
            await LLMProvider(client, api_key_present=True).analyze("c", "business_plan", {})
        assert "429" in str(exc.value)

    @pytest.mark.asyncio
    async def test_anthropic_complete(self):
        client = LLMClient(provider="anthropic", api_key="sk-ant")
        messages = MagicMock()
        messages.create = AsyncMock(return_value=SimpleNamespace(content=[SimpleNamespace(text="{}")]))
        client._client = SimpleNamespace(messages=messages)
        assert await client.complete("system", "user") == "{}"
        assert messages.create.call_args.kwargs["system"] == "system"

    @pytest.mark.asyncio
    async def test_advise_skips_json_mode(self):
        create = AsyncMock(return_value=_chat_response("Hire a CFO."))
        client = LLMClient(provider="openai", api_key="sk-test")
        client._client = _openai_client(create)
        assert await LLMProvider(client, api_key_present=True).advise("s", "u") == "Hire a CFO."
        assert "response_format" not in create.call_args.kwargs

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            LLMClient(provider="carrier-pigeon")._init_client()


class TestStaticFallback:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", ["business_plan", "pitch_deck", "financial_model", "whatever"])
    async def test_always_valid(self, kind):
        raw = await StaticFallbackProvider().analyze("", kind, {})
        card = validate_scorecard(raw)
        assert card.overall_score == 78
        assert card.confidence == 85
        assert card.comparison_data.industry_average == 68
        assert card.comparison_data.top_performers == 92
        assert card.improvement_areas

    def test_areas_depend_on_type(self):
        static = StaticFallbackProvider()
        deck = static.scorecard_for("pitch_deck")["improvementAreas"]
        plan = static.scorecard_for("business_plan")["improvementAreas"]
        assert deck != plan

    def test_returns_fresh_copies(self):
        static = StaticFallbackProvider()
        static.scorecard_for("pitch_deck")["improvementAreas"].clear()
        assert static.scorecard_for("pitch_deck")["improvementAreas"]

    @pytest.mark.asyncio
    async def test_gives_no_advice(self):
        with pytest.raises(AnalysisFailure):
            await StaticFallbackProvider().advise("s", "u")


def test_build_providers_order(settings):
    assert [p.name for p in build_providers(settings)] == ["azure_openai", "llm", "static_fallback"]
