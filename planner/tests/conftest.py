"""Shared fixtures: isolated settings and both store backends."""
from __future__ import annotations

import pytest

from planner.config import Settings, get_settings
from planner.db import make_engine, make_session_factory
from planner.store import MemoryStore, SqlStore

# Anything that could make a test talk to a real backend.
_ENV_VARS = (
    "AZURE_OPENAI_ENDPOINT", "AZURE_OPENAI_API_KEY", "AZURE_OPENAI_DEPLOYMENT_NAME",
    "AZURE_OPENAI_API_VERSION", "LLM_PROVIDER", "LLM_MODEL", "OPENAI_API_KEY",
    "OPENAI_BASE_URL", "ANTHROPIC_API_KEY", "AZURE_STORAGE_CONNECTION_STRING",
    "AZURE_STORAGE_CONTAINER", "AZURE_REDIS_CONNECTION_STRING", "REDIS_URL",
    "AZURE_KEY_VAULT_NAME", "PLANNER_STORE", "PLANNER_PROVIDER_TIMEOUT",
    "PLANNER_HEALTH_TIMEOUT",
)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("PLANNER_DATABASE_URL", "sqlite:///:memory:")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def settings() -> Settings:
    return Settings()


@pytest.fixture()
def sql_engine():
    engine = make_engine("sqlite:///:memory:")
    yield engine
    engine.dispose()


@pytest.fixture()
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture()
def sql_store(sql_engine) -> SqlStore:
    return SqlStore(make_session_factory(sql_engine))


@pytest.fixture(params=["memory", "sql"])
def store(request):
    """Runs a test once per store backend."""
    return request.getfixturevalue(f"{request.param}_store")
