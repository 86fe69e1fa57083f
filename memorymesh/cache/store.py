"""
Two-tier cache: a process-local map in front of a shared store.

Reads go local -> shared. A shared hit is copied into the local tier with a
short fixed TTL, so a local entry is never staler than the shared one by
more than that refresh interval. Expiry is lazy: entries are only evicted
when a read finds them expired.

The shared tier is connected on first use, once. If that connection fails
the cache stays local-only for the rest of the process lifetime.
"""

import asyncio
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from memorymesh.cache.shared import RedisSharedStore, SharedStore
from memorymesh.config import Settings, get_settings
from memorymesh.constants import DEFAULT_CACHE_TTL_SECONDS, LOCAL_REFRESH_TTL_SECONDS
from memorymesh.errors import CacheUnavailable
from memorymesh.observability.metrics import MetricsCollector, get_metrics

logger = logging.getLogger(__name__)

# Process-wide cache instance
_cache: "TieredCache | None" = None


@dataclass
class _LocalEntry:
    value: Any
    expires_at: float


class TieredCache:
    """
    Process-local cache backed by an optional shared tier.

    No method raises: shared-tier problems degrade to a miss or to a
    local-only write.
    """

    def __init__(
        self,
        shared: SharedStore | None = None,
        *,
        default_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        local_refresh_ttl_seconds: int = LOCAL_REFRESH_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the cache.

        Args:
            shared: Shared tier. None means local-only.
            default_ttl_seconds: TTL used by ``set`` when none is given.
            local_refresh_ttl_seconds: TTL for entries copied from the shared tier.
            clock: Monotonic seconds source for local expiry.
            metrics: Metrics collector. Defaults to the process collector.
        """
        self._local: dict[str, _LocalEntry] = {}
        self._shared = shared
        self._shared_ready = False
        self._shared_failed = False
        self._connect_lock = asyncio.Lock()
        self._default_ttl = default_ttl_seconds
        self._refresh_ttl = local_refresh_ttl_seconds
        self._clock = clock
        self._metrics = metrics or get_metrics()

    @property
    def shared_status(self) -> str:
        """One of disabled, pending, connected, unavailable."""
        if self._shared is None:
            return "disabled"
        if self._shared_failed:
            return "unavailable"
        return "connected" if self._shared_ready else "pending"

    def __len__(self) -> int:
        return len(self._local)

    async def _get_shared(self) -> SharedStore | None:
        """Return the shared tier, connecting it on first use."""
        if self._shared is None or self._shared_failed:
            return None
        if self._shared_ready:
            return self._shared

        async with self._connect_lock:
            if not self._shared_ready and not self._shared_failed:
                try:
                    await self._shared.connect()
                    self._shared_ready = True
                except Exception as e:
                    self._shared_failed = True
                    logger.warning(
                        "Shared cache unavailable, continuing with local tier only",
                        extra={"error": str(CacheUnavailable(str(e)))},
                    )

        return self._shared if self._shared_ready else None

    async def get(self, key: str) -> Any | None:
        """
        Look up a key, local tier first.

        Args:
            key: Cache key.

        Returns:
            The cached value, or None on miss or any internal failure.
        """
        now = self._clock()
        entry = self._local.get(key)
        if entry is not None:
            if entry.expires_at > now:
                self._metrics.record_cache_lookup("local", hit=True)
                return entry.value
            del self._local[key]
        self._metrics.record_cache_lookup("local", hit=False)

        shared = await self._get_shared()
        if shared is None:
            return None

        try:
            raw = await shared.get(key)
        except Exception as e:
            logger.warning("Shared cache get failed", extra={"key": key, "error": str(e)})
            return None

        if raw is None:
            self._metrics.record_cache_lookup("shared", hit=False)
            return None

        try:
            value = json.loads(raw)
        except ValueError:
            logger.warning("Discarding undecodable shared cache entry", extra={"key": key})
            return None

        self._metrics.record_cache_lookup("shared", hit=True)
        self._local[key] = _LocalEntry(value=value, expires_at=now + self._refresh_ttl)
        return value

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        """
        Store a value in the local tier and mirror it to the shared tier.

        Args:
            key: Cache key.
            value: Value to cache. Must be JSON-serializable to reach the shared tier.
            ttl_seconds: Time to live. Defaults to one hour.

        Returns:
            True once the local tier holds the value.
        """
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        self._local[key] = _LocalEntry(value=value, expires_at=self._clock() + ttl)

        shared = await self._get_shared()
        if shared is None:
            return True

        try:
            encoded = json.dumps(value)
        except (TypeError, ValueError) as e:
            logger.warning(
                "Value not JSON-serializable, cached locally only",
                extra={"key": key, "error": str(e)},
            )
            return True

        try:
            await shared.set(key, encoded, ttl)
        except Exception as e:
            logger.warning("Shared cache set failed", extra={"key": key, "error": str(e)})

        return True

    async def delete(self, key: str) -> bool:
        """Remove a key from both tiers."""
        self._local.pop(key, None)

        shared = await self._get_shared()
        if shared is not None:
            try:
                await shared.delete(key)
            except Exception as e:
                logger.warning(
                    "Shared cache delete failed", extra={"key": key, "error": str(e)}
                )
        return True

    async def flush(self) -> bool:
        """Remove every entry from both tiers. Safe to call repeatedly."""
        self._local.clear()

        shared = await self._get_shared()
        if shared is not None:
            try:
                await shared.flush()
            except Exception as e:
                logger.warning("Shared cache flush failed", extra={"error": str(e)})
        return True

    async def close(self) -> None:
        """Close the shared tier connection if one was opened."""
        if self._shared is not None and self._shared_ready:
            try:
                await self._shared.close()
            except Exception as e:
                logger.warning("Error closing shared cache", extra={"error": str(e)})
            self._shared_ready = False


def build_cache(settings: Settings | None = None) -> "TieredCache":
    """Construct a cache from settings without registering it process-wide."""
    settings = settings or get_settings()
    shared = RedisSharedStore.from_settings(settings) if settings.cache_shared_enabled else None
    return TieredCache(
        shared,
        default_ttl_seconds=settings.cache_default_ttl_seconds,
        local_refresh_ttl_seconds=settings.cache_local_refresh_ttl_seconds,
    )


def setup_cache(cache: TieredCache | None = None) -> TieredCache:
    """
    Register the process-wide cache. The first call wins.

    Args:
        cache: Cache to register. Built from settings if omitted.

    Returns:
        The registered instance, which is the existing one on later calls.
    """
    global _cache
    if _cache is None:
        _cache = cache if cache is not None else build_cache()
    return _cache


def get_cache() -> TieredCache:
    """Get the process-wide cache, creating it from settings on first use."""
    if _cache is None:
        return setup_cache()
    return _cache


def reset_cache() -> None:
    """Forget the process-wide cache. Intended for tests."""
    global _cache
    _cache = None
