"""Dependency health probes and the parallel aggregator over them.

A probe answers one question, "is this dependency reachable right now", and
never raises. Vendor SDKs (azure-storage-blob, azure-keyvault-secrets,
redis) are imported lazily so an unconfigured dependency costs nothing.
"""
from __future__ import annotations

import abc
import asyncio
import logging
import uuid
from typing import TYPE_CHECKING, Any

from sqlalchemy import text

from planner.errors import ProbeFailure

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from planner.config import Settings
    from planner.providers import AnalysisProvider

log = logging.getLogger(__name__)

DEFAULT_HEALTH_TIMEOUT = 5.0
PROBE_KEY_TTL = 10  # seconds


class HealthProbe(abc.ABC):
    name: str = "probe"

    @abc.abstractmethod
    async def _ping(self) -> bool:
        """Reach the dependency; raise or return False when it is down."""

    async def check(self) -> bool:
        try:
            return bool(await self._ping())
        except ProbeFailure as exc:
            log.warning("Health probe %s failed: %s", self.name, exc)
        except Exception as exc:
            log.warning("Health probe %s failed: %s: %s", self.name, type(exc).__name__, exc)
        return False


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------


class InferenceProbe(HealthProbe):
    """One-token completion through the provider's own client."""

    def __init__(self, provider: AnalysisProvider, name: str | None = None):
        self.provider = provider
        self.name = name or provider.name

    async def _ping(self) -> bool:
        return await self.provider.ping()


class DocumentStoreProbe(HealthProbe):
    name = "document_store"

    def __init__(self, engine: Engine | None):
        # None: the in-process memory store, which is always reachable.
        self.engine = engine

    def _select_one(self) -> bool:
        if self.engine is None:
            return True
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    async def _ping(self) -> bool:
        return await asyncio.to_thread(self._select_one)


class ObjectStoreProbe(HealthProbe):
    name = "object_store"

    def __init__(self, connection_string: str, container: str = ""):
        self.connection_string = connection_string
        self.container = container

    def _list_first_page(self) -> bool:
        from azure.storage.blob import BlobServiceClient

        client = BlobServiceClient.from_connection_string(self.connection_string)
        with client:
            pages = client.list_containers(results_per_page=1).by_page()
            next(pages, None)
        return True

    async def _ping(self) -> bool:
        if not self.connection_string:
            raise ProbeFailure("no connection string")
        return await asyncio.to_thread(self._list_first_page)


class CacheProbe(HealthProbe):
    name = "cache"

    def __init__(self, url: str):
        self.url = url

    def _round_trip(self) -> bool:
        import redis

        client = redis.Redis.from_url(self.url, socket_connect_timeout=3, socket_timeout=3)
        try:
            key = f"planner:health:{uuid.uuid4().hex}"
            token = uuid.uuid4().hex
            client.set(key, token, ex=PROBE_KEY_TTL)
            value = client.get(key)
            if isinstance(value, bytes):
                value = value.decode()
            if value != token:
                raise ProbeFailure(f"read back {value!r}")
            return True
        finally:
            client.close()

    async def _ping(self) -> bool:
        if not self.url:
            raise ProbeFailure("no cache url")
        return await asyncio.to_thread(self._round_trip)


class SecretStoreProbe(HealthProbe):
    name = "secret_store"

    def __init__(self, vault_url: str, secret_name: str = "planner-health-probe"):
        self.vault_url = vault_url
        self.secret_name = secret_name

    def _read_secret(self) -> bool:
        from azure.core.exceptions import ResourceNotFoundError
        from azure.identity import DefaultAzureCredential
        from azure.keyvault.secrets import SecretClient

        client = SecretClient(vault_url=self.vault_url, credential=DefaultAzureCredential())
        with client:
            try:
                client.get_secret(self.secret_name)
            except ResourceNotFoundError:
                # The vault answered; the probe secret just isn't there.
                pass
        return True

    async def _ping(self) -> bool:
        if not self.vault_url:
            raise ProbeFailure("no vault url")
        return await asyncio.to_thread(self._read_secret)


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------


class HealthAggregator:
    def __init__(self, probes: list[HealthProbe], timeout: float = DEFAULT_HEALTH_TIMEOUT):
        self.probes = list(probes)
        self.timeout = timeout

    async def _bounded(self, probe: HealthProbe) -> bool:
        try:
            return await asyncio.wait_for(probe.check(), timeout=self.timeout)
        except asyncio.TimeoutError:
            log.warning("Health probe %s timed out after %gs", probe.name, self.timeout)
            return False

    async def check_all(self) -> dict[str, bool]:
        """Run every probe concurrently; the call takes at most ~``timeout`` seconds."""
        results = await asyncio.gather(
            *(self._bounded(p) for p in self.probes), return_exceptions=True,
        )
        status: dict[str, bool] = {}
        for probe, result in zip(self.probes, results):
            if isinstance(result, BaseException):
                log.warning("Health probe %s raised %r", probe.name, result)
                result = False
            status[probe.name] = bool(result)
        return status


def build_probes(settings: Settings, engine: Engine | None,
                 providers: list[AnalysisProvider]) -> list[HealthProbe]:
    """Register probes for the store, configured inference backends, and
    whichever optional services have configuration."""
    probes: list[HealthProbe] = [DocumentStoreProbe(engine)]
    for provider in providers:
        if provider.name == "static_fallback" or not provider.is_configured():
            continue
        probes.append(InferenceProbe(provider))
    if settings.storage_connection_string:
        probes.append(ObjectStoreProbe(settings.storage_connection_string, settings.storage_container))
    if settings.redis_url:
        probes.append(CacheProbe(settings.redis_url))
    if settings.key_vault_url:
        probes.append(SecretStoreProbe(settings.key_vault_url))
    return probes


def summarize(status: dict[str, Any]) -> bool:
    """Overall health: every registered probe passed (and at least one ran)."""
    return bool(status) and all(status.values())
