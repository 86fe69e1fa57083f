"""
Remote backend the outbox replays mutations against.
"""

import logging
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from memorymesh.config import Settings, get_settings
from memorymesh.errors import OutboxItemFailed

logger = logging.getLogger(__name__)


class SyncBackend(Protocol):
    """Record and blob writes the outbox needs."""

    async def insert_record(self, table: str, record: dict[str, Any]) -> None: ...

    async def upload_blob(
        self, bucket: str, path: str, content: bytes, content_type: str
    ) -> str: ...


class HttpSyncBackend:
    """
    PostgREST/storage-style HTTP backend.

    Records go to ``POST /rest/v1/{table}`` and blobs to
    ``POST /storage/v1/object/{bucket}/{path}``. Any non-2xx response or
    transport error raises OutboxItemFailed.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize the backend.

        Args:
            base_url: Backend root URL.
            api_key: Sent as ``apikey`` and bearer token when set.
            timeout_seconds: Per-request timeout.
            client: Pre-built client, mainly for tests. Not closed by ``close``.
        """
        self.base_url = base_url.rstrip("/")
        headers = {}
        if api_key:
            headers = {"apikey": api_key, "Authorization": f"Bearer {api_key}"}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout_seconds,
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "HttpSyncBackend":
        settings = settings or get_settings()
        return cls(
            base_url=settings.sync_backend_url,
            api_key=settings.sync_backend_api_key,
            timeout_seconds=settings.sync_backend_timeout_seconds,
        )

    def public_url(self, bucket: str, path: str) -> str:
        """Public URL of an uploaded blob."""
        return f"{self.base_url}/storage/v1/object/public/{bucket}/{quote(path)}"

    async def insert_record(self, table: str, record: dict[str, Any]) -> None:
        """
        Insert one row.

        Raises:
            OutboxItemFailed: If the backend rejects the row or is unreachable.
        """
        await self._post(
            f"/rest/v1/{table}",
            json=record,
            headers={"Prefer": "return=minimal"},
            what=f"insert into {table}",
        )

    async def upload_blob(self, bucket: str, path: str, content: bytes, content_type: str) -> str:
        """
        Upload a blob.

        Returns:
            The blob's public URL.

        Raises:
            OutboxItemFailed: If the upload is rejected or the backend is unreachable.
        """
        await self._post(
            f"/storage/v1/object/{bucket}/{quote(path)}",
            content=content,
            headers={"Content-Type": content_type},
            what=f"upload to {bucket}/{path}",
        )
        return self.public_url(bucket, path)

    async def _post(self, url: str, *, what: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.post(url, **kwargs)
        except httpx.HTTPError as e:
            raise OutboxItemFailed(f"Backend unreachable during {what}: {e}") from e

        if not response.is_success:
            raise OutboxItemFailed(
                f"Backend rejected {what}: {response.status_code} {response.text[:200]}"
            )
        return response

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
