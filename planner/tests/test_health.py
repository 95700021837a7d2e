"""Tests for health probes and the aggregator."""
from __future__ import annotations

import asyncio
import sys
import time
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from planner.config import Settings
from planner.errors import ProbeFailure
from planner.health import (
    CacheProbe,
    DocumentStoreProbe,
    HealthAggregator,
    HealthProbe,
    InferenceProbe,
    ObjectStoreProbe,
    SecretStoreProbe,
    build_probes,
    summarize,
)
from planner.providers import StaticFallbackProvider
from planner.tests.fakes import FakeProvider


class StubProbe(HealthProbe):
    def __init__(self, name, result=True, delay=0.0):
        self.name = name
        self.result = result
        self.delay = delay

    async def _ping(self):
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(self.result, BaseException):
            raise self.result
        return self.result


class TestAggregator:
    @pytest.mark.asyncio
    async def test_failure_is_isolated(self):
        agg = HealthAggregator([
            StubProbe("openai", True),
            StubProbe("cache", ConnectionError("refused")),
            StubProbe("object_store", False),
            StubProbe("secret_store", True),
        ])
        assert await agg.check_all() == {
            "openai": True, "cache": False, "object_store": False, "secret_store": True,
        }

    @pytest.mark.asyncio
    async def test_hanging_probe_times_out(self):
        agg = HealthAggregator([StubProbe("slow", True, delay=10), StubProbe("fast", True)], timeout=0.1)
        start = time.monotonic()
        status = await agg.check_all()
        assert status == {"slow": False, "fast": True}
        assert time.monotonic() - start < 2

    @pytest.mark.asyncio
    async def test_runs_in_parallel(self):
        probes = [StubProbe(f"p{i}", True, delay=0.2) for i in range(5)]
        start = time.monotonic()
        await HealthAggregator(probes, timeout=1).check_all()
        assert time.monotonic() - start < 0.8

    @pytest.mark.asyncio
    async def test_no_probes(self):
        assert await HealthAggregator([]).check_all() == {}

    def test_summarize(self):
        assert summarize({"a": True, "b": True}) is True
        assert summarize({"a": True, "b": False}) is False
        assert summarize({}) is False


class TestProbes:
    def test_base_class_is_abstract(self):
        with pytest.raises(TypeError):
            HealthProbe()

        class NoPing(HealthProbe):
            name = "incomplete"

        with pytest.raises(TypeError):
            NoPing()

    @pytest.mark.asyncio
    async def test_probe_failure_is_false(self):
        assert await StubProbe("x", ProbeFailure("down")).check() is False

    @pytest.mark.asyncio
    async def test_inference_probe(self):
        assert await InferenceProbe(FakeProvider("llm")).check() is True
        assert await InferenceProbe(FakeProvider("llm", alive=False)).check() is False

    @pytest.mark.asyncio
    async def test_document_store_probe(self, sql_engine):
        assert await DocumentStoreProbe(sql_engine).check() is True
        assert await DocumentStoreProbe(None).check() is True

    @pytest.mark.asyncio
    async def test_document_store_probe_broken_engine(self):
        engine = MagicMock()
        engine.connect.side_effect = OSError("disk gone")
        assert await DocumentStoreProbe(engine).check() is False

    @pytest.mark.asyncio
    async def test_unconfigured_probes_report_false(self):
        assert await ObjectStoreProbe("").check() is False
        assert await CacheProbe("").check() is False
        assert await SecretStoreProbe("").check() is False

    @pytest.mark.asyncio
    async def test_cache_probe_round_trip(self):
        stored = {}
        client = MagicMock()
        client.set.side_effect = lambda key, value, ex: stored.__setitem__(key, value.encode())
        client.get.side_effect = lambda key: stored.get(key)
        fake_redis = SimpleNamespace(Redis=SimpleNamespace(from_url=MagicMock(return_value=client)))
        with patch.dict(sys.modules, {"redis": fake_redis}):
            assert await CacheProbe("redis://localhost:6379/0").check() is True
        client.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_cache_probe_wrong_value(self):
        client = MagicMock()
        client.get.return_value = b"something else"
        fake_redis = SimpleNamespace(Redis=SimpleNamespace(from_url=MagicMock(return_value=client)))
        with patch.dict(sys.modules, {"redis": fake_redis}):
            assert await CacheProbe("redis://localhost:6379/0").check() is False


class TestBuildProbes:
    def test_minimal_configuration(self, settings, sql_engine):
        probes = build_probes(settings, sql_engine, [FakeProvider("azure_openai", configured=False),
                                                     StaticFallbackProvider()])
        assert [p.name for p in probes] == ["document_store"]

    def test_everything_configured(self, sql_engine):
        settings = Settings(
            storage_connection_string="DefaultEndpointsProtocol=https;AccountName=x",
            redis_url="redis://cache:6379/0",
            key_vault_name="planner-kv",
        )
        providers = [FakeProvider("azure_openai"), FakeProvider("llm"), StaticFallbackProvider()]
        probes = build_probes(settings, sql_engine, providers)
        assert [p.name for p in probes] == [
            "document_store", "azure_openai", "llm", "object_store", "cache", "secret_store",
        ]
        vault = probes[-1]
        assert vault.vault_url == "https://planner-kv.vault.azure.net/"
