"""Uploaded files pushed to Azure Blob Storage.

The SDK is imported on first use, the same way the health probe does it.
"""
from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import TYPE_CHECKING, Any

from planner.errors import ObjectStoreError

if TYPE_CHECKING:
    from planner.config import Settings

log = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def blob_name_for(filename: str, now_ms: int | None = None) -> str:
    """``<epoch ms>-<filename>``, with characters a blob path can't carry replaced."""
    stamp = int(time.time() * 1000) if now_ms is None else now_ms
    safe = _UNSAFE.sub("_", filename or "").strip("._") or "upload"
    return f"{stamp}-{safe}"


class ObjectStore:
    def __init__(self, connection_string: str, container: str):
        self.connection_string = connection_string
        self.container = container
        self._service: Any = None

    def _get_service(self) -> Any:
        if self._service is None:
            from azure.storage.blob import BlobServiceClient
            self._service = BlobServiceClient.from_connection_string(self.connection_string)
        return self._service

    def _put(self, blob_name: str, data: bytes, content_type: str | None) -> str:
        from azure.storage.blob import ContentSettings

        blob = self._get_service().get_blob_client(container=self.container, blob=blob_name)
        blob.upload_blob(
            data,
            overwrite=True,
            content_settings=ContentSettings(content_type=content_type or "application/octet-stream"),
        )
        return blob.url

    async def upload(self, name: str, data: bytes, content_type: str | None = None) -> str:
        """Store *data* under a timestamped name and return the blob URL.

        Raises:
            ObjectStoreError: the SDK is missing or the upload failed.
        """
        blob_name = blob_name_for(name)
        try:
            url = await asyncio.to_thread(self._put, blob_name, data, content_type)
        except Exception as exc:
            raise ObjectStoreError(f"upload of {blob_name} failed: {type(exc).__name__}: {exc}") from exc
        log.info("Uploaded %s (%d bytes) to container %s", blob_name, len(data), self.container)
        return url

    def close(self) -> None:
        if self._service is not None:
            self._service.close()
            self._service = None


def build_object_store(settings: Settings) -> ObjectStore | None:
    """An uploader when a connection string is configured, else None."""
    if not settings.storage_connection_string:
        return None
    return ObjectStore(settings.storage_connection_string, settings.storage_container)
