"""Tests for the fallback chain orchestrator."""
from __future__ import annotations

import pytest

from planner.errors import AnalysisFailure, DuplicateAnalysis
from planner.orchestrator import STATIC_SCORECARD, UPLOAD_ACTIVITY, AnalysisOrchestrator
from planner.providers import STATIC_SCORES, StaticFallbackProvider
from planner.schemas import SCORE_FIELDS
from planner.tests.fakes import HANG, FakeProvider, make_raw


def _orchestrator(store, *providers, timeout=0.2):
    return AnalysisOrchestrator(list(providers), store, provider_timeout=timeout)


class TestChain:
    def test_static_appended_when_missing(self, memory_store):
        orch = _orchestrator(memory_store, FakeProvider("primary", configured=False))
        assert [p.name for p in orch.chain] == ["static_fallback"]

    def test_static_not_duplicated(self, memory_store):
        orch = _orchestrator(memory_store, FakeProvider("primary"), StaticFallbackProvider())
        assert [p.name for p in orch.chain] == ["primary", "static_fallback"]

    @pytest.mark.asyncio
    async def test_chain_fixed_at_startup(self, memory_store):
        late = FakeProvider("late", configured=False)
        early = FakeProvider("early")
        orch = _orchestrator(memory_store, late, early)
        late.configured = True
        early.configured = False
        assert [p.name for p in orch.chain] == ["early", "static_fallback"]
        result = await orch.run_chain("text", "business_plan")
        assert result.provider == "early"
        assert late.calls == []

    @pytest.mark.asyncio
    async def test_first_success_wins(self, memory_store):
        primary = FakeProvider("primary", make_raw(overallScore=91))
        secondary = FakeProvider("secondary")
        result = await _orchestrator(memory_store, primary, secondary).run_chain("text", "business_plan")
        assert result.provider == "primary"
        assert result.scorecard.overall_score == 91
        assert secondary.calls == []

    @pytest.mark.asyncio
    async def test_unconfigured_never_invoked(self, memory_store):
        primary = FakeProvider("primary", configured=False)
        secondary = FakeProvider("secondary")
        result = await _orchestrator(memory_store, primary, secondary).run_chain("text", "business_plan")
        assert primary.calls == []
        assert result.provider == "secondary"

    @pytest.mark.asyncio
    async def test_failure_kinds_advance(self, memory_store):
        providers = [
            FakeProvider("raises", AnalysisFailure("raises", "HTTP 503")),
            FakeProvider("crashes", RuntimeError("boom")),
            FakeProvider("garbage", {"hello": "world"}),
            FakeProvider("hangs", HANG),
        ]
        result = await _orchestrator(memory_store, *providers).run_chain("text", "pitch_deck")
        assert result.provider == "static_fallback"
        assert [a.provider for a in result.attempts] == ["raises", "crashes", "garbage", "hangs", "static_fallback"]
        assert [a.ok for a in result.attempts] == [False, False, False, False, True]
        assert "timed out" in result.attempts[3].reason
        assert all(len(p.calls) == 1 for p in providers)

    @pytest.mark.asyncio
    async def test_broken_static_uses_builtin_scorecard(self, memory_store, monkeypatch):
        async def broken(self, content, document_type, context):
            return {"overallScore": "n/a"}

        monkeypatch.setattr(StaticFallbackProvider, "analyze", broken)
        result = await _orchestrator(memory_store).run_chain("text", "business_plan")
        assert result.scorecard == STATIC_SCORECARD
        assert result.provider == "static_fallback"


class TestAnalyzeDocument:
    @pytest.mark.asyncio
    async def test_zero_providers_returns_static(self, store):
        card = await _orchestrator(store).analyze_document("Plan", "We sell boats.", "business_plan", user_id=1)
        expected = StaticFallbackProvider().scorecard_for("business_plan")
        assert card.overall_score == STATIC_SCORES["overallScore"]
        assert card.model_dump(by_alias=True)["improvementAreas"] == expected["improvementAreas"]

    @pytest.mark.asyncio
    async def test_primary_times_out_secondary_unconfigured(self, store):
        primary = FakeProvider("azure_openai", HANG)
        secondary = FakeProvider("llm", configured=False)
        orch = _orchestrator(store, primary, secondary, StaticFallbackProvider(), timeout=0.05)

        card = await orch.analyze_document("Deck", "Slides...", "pitch_deck", user_id=7)

        assert card.overall_score == STATIC_SCORES["overallScore"]
        docs = store.get_documents_by_user_id(7)
        assert len(docs) == 1
        assert docs[0].score == STATIC_SCORES["overallScore"]
        activities = store.get_activities(7)
        assert len(activities) == 1
        assert activities[0].activity_type == UPLOAD_ACTIVITY
        assert activities[0].document_id == docs[0].id
        assert secondary.calls == []

    @pytest.mark.asyncio
    async def test_partial_primary_is_not_persisted(self, store):
        partial = make_raw(overallScore=99)
        del partial["marketFitScore"]
        primary = FakeProvider("azure_openai", partial)
        secondary = FakeProvider("llm", make_raw(overallScore=64, summary="from secondary"))

        outcome = await _orchestrator(store, primary, secondary).process_upload(
            "Plan", "content", "business_plan", user_id=3,
        )

        assert outcome.provider == "llm"
        assert outcome.scorecard.overall_score == 64
        stored = store.get_analysis_by_document_id(outcome.document.id)
        assert stored.overall_score == 64
        assert stored.summary == "from secondary"
        assert stored.provider == "llm"
        assert store.get_document(outcome.document.id).score == 64

    @pytest.mark.asyncio
    async def test_every_number_bounded_end_to_end(self, store):
        wild = make_raw(overallScore=400, innovationScore=-3, confidence=1000,
                        improvementAreas=[{"area": "A", "score": 250}])
        card = await _orchestrator(store, FakeProvider("p", wild)).analyze_document("T", "c", "x", 1)
        numbers = [getattr(card, f) for f in SCORE_FIELDS] + [card.confidence]
        numbers += [a.score for a in card.improvement_areas]
        assert all(isinstance(n, int) and 0 <= n <= 100 for n in numbers)

    @pytest.mark.asyncio
    async def test_activity_details(self, memory_store):
        outcome = await _orchestrator(memory_store, FakeProvider("p")).process_upload(
            "Q3 plan", "content", "business_plan", user_id=5, content_type="text/plain", page_count=2,
        )
        activity = memory_store.get_activities(5)[0]
        assert activity.details == {
            "title": "Q3 plan", "score": 81, "summary": outcome.scorecard.summary, "provider": "p",
        }
        assert outcome.document.page_count == 2
        assert outcome.document.content_type == "text/plain"

    @pytest.mark.asyncio
    async def test_persistence_failure_rolls_back(self, store, monkeypatch):
        def refuse(*args, **kwargs):
            raise DuplicateAnalysis(1)

        monkeypatch.setattr(store, "create_analysis", refuse)
        with pytest.raises(DuplicateAnalysis):
            await _orchestrator(store).process_upload("T", "c", "business_plan", user_id=9)
        assert store.get_documents_by_user_id(9) == []
        assert store.get_activities(9) == []
