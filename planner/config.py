"""Runtime settings read from the environment.

Every external dependency is optional. A missing credential only means the
matching provider or probe reports itself as unconfigured.
"""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field

DATA_DIR = Path(__file__).parent / "data"

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def _env(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip()


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logging.getLogger(__name__).warning("Ignoring non-numeric %s=%r", name, raw)
        return default


def _default_database_url() -> str:
    url = _env("PLANNER_DATABASE_URL")
    if url:
        return url
    return f"sqlite:///{DATA_DIR / 'planner.db'}"


class Settings(BaseModel):
    database_url: str = Field(default_factory=_default_database_url)
    store_backend: str = Field(default_factory=lambda: _env("PLANNER_STORE", "sql").lower())
    provider_timeout: float = Field(default_factory=lambda: _env_float("PLANNER_PROVIDER_TIMEOUT", 30.0))
    health_timeout: float = Field(default_factory=lambda: _env_float("PLANNER_HEALTH_TIMEOUT", 5.0))
    log_level: str = Field(default_factory=lambda: _env("PLANNER_LOG_LEVEL", "INFO").upper())

    # Primary inference backend (Azure OpenAI deployment)
    azure_openai_endpoint: str = Field(default_factory=lambda: _env("AZURE_OPENAI_ENDPOINT"))
    azure_openai_api_key: str = Field(default_factory=lambda: _env("AZURE_OPENAI_API_KEY"))
    azure_openai_deployment: str = Field(default_factory=lambda: _env("AZURE_OPENAI_DEPLOYMENT_NAME"))
    azure_openai_api_version: str = Field(
        default_factory=lambda: _env("AZURE_OPENAI_API_VERSION", "2024-02-01")
    )

    # Secondary inference backend (OpenAI-compatible or Anthropic)
    llm_provider: str = Field(default_factory=lambda: _env("LLM_PROVIDER", "openai").lower())
    llm_model: str = Field(default_factory=lambda: _env("LLM_MODEL"))
    openai_api_key: str = Field(default_factory=lambda: _env("OPENAI_API_KEY"))
    openai_base_url: str = Field(default_factory=lambda: _env("OPENAI_BASE_URL"))
    anthropic_api_key: str = Field(default_factory=lambda: _env("ANTHROPIC_API_KEY"))

    # Health-probed dependencies
    storage_connection_string: str = Field(default_factory=lambda: _env("AZURE_STORAGE_CONNECTION_STRING"))
    storage_container: str = Field(default_factory=lambda: _env("AZURE_STORAGE_CONTAINER", "business-documents"))
    redis_url: str = Field(
        default_factory=lambda: _env("AZURE_REDIS_CONNECTION_STRING") or _env("REDIS_URL")
    )
    key_vault_name: str = Field(default_factory=lambda: _env("AZURE_KEY_VAULT_NAME"))

    @property
    def azure_openai_configured(self) -> bool:
        return bool(self.azure_openai_endpoint and self.azure_openai_api_key and self.azure_openai_deployment)

    @property
    def secondary_api_key(self) -> str:
        if self.llm_provider == "anthropic":
            return self.anthropic_api_key
        return self.openai_api_key

    @property
    def key_vault_url(self) -> str:
        if not self.key_vault_name:
            return ""
        return f"https://{self.key_vault_name}.vault.azure.net/"

    def enabled_services(self) -> dict[str, bool]:
        """Which optional dependencies have configuration present."""
        return {
            "azure_openai": self.azure_openai_configured,
            "llm": bool(self.secondary_api_key),
            "object_store": bool(self.storage_connection_string),
            "cache": bool(self.redis_url),
            "secret_store": bool(self.key_vault_name),
        }


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(level=(level or get_settings().log_level), format=LOG_FORMAT)
