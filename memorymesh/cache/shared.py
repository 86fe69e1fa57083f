"""
Shared cache tier backed by Redis.
"""

import logging
from typing import Any, Protocol, cast

from redis.asyncio import Redis

from memorymesh.config import Settings, get_settings

logger = logging.getLogger(__name__)


class SharedStore(Protocol):
    """
    Cross-process key/value tier.

    Each operation touches a single key, so the store's own atomicity is the
    only locking discipline. Values are JSON text.
    """

    async def connect(self) -> None: ...

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def flush(self) -> None: ...

    async def close(self) -> None: ...


class RedisSharedStore:
    """
    Redis implementation of the shared tier.

    All keys live under ``{prefix}:`` so that ``flush`` never touches broker
    keys on the same Redis instance.
    """

    def __init__(
        self,
        url: str,
        prefix: str = "cache",
        connect_timeout_seconds: float = 5.0,
    ):
        """
        Initialize the store. No connection is made until ``connect``.

        Args:
            url: Redis connection URL.
            prefix: Key namespace for cache entries.
            connect_timeout_seconds: Socket connect timeout.
        """
        self._url = url
        self._prefix = prefix
        self._connect_timeout = connect_timeout_seconds
        self._client: Redis | None = None

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RedisSharedStore":
        """Create a store using the broker connection settings."""
        settings = settings or get_settings()
        return cls(
            url=settings.broker_url,
            prefix=f"{settings.broker_key_prefix}:{settings.cache_key_prefix}",
            connect_timeout_seconds=settings.broker_connect_timeout_seconds,
        )

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    @property
    def client(self) -> Redis:
        """
        Get the Redis client instance.

        Raises:
            RuntimeError: If not connected.
        """
        if self._client is None:
            raise RuntimeError("Shared cache not connected. Call connect() first.")
        return self._client

    async def connect(self) -> None:
        """
        Open the connection and verify it with PING.

        Raises:
            redis.exceptions.RedisError: If Redis cannot be reached.
        """
        client = Redis.from_url(
            self._url,
            socket_connect_timeout=self._connect_timeout,
            decode_responses=True,
        )
        try:
            await cast(Any, client.ping())
        except Exception:
            await client.aclose()
            raise
        self._client = client
        logger.info("Shared cache connected", extra={"prefix": self._prefix})

    async def get(self, key: str) -> str | None:
        return await self.client.get(self._key(key))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(self._key(key), value, ex=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self.client.delete(self._key(key))

    async def flush(self) -> None:
        """Delete every key under the cache prefix."""
        batch: list[str] = []
        async for key in self.client.scan_iter(match=f"{self._prefix}:*", count=500):
            batch.append(key)
            if len(batch) >= 500:
                await self.client.delete(*batch)
                batch = []
        if batch:
            await self.client.delete(*batch)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
