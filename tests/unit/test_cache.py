"""
Unit tests for the two-tier cache.
"""

import json

import pytest

from memorymesh.cache.store import TieredCache, get_cache, setup_cache


class TestTieredCache:
    """Tests for local/shared tier behavior."""

    @pytest.mark.asyncio
    async def test_set_then_get_hits_local_tier(self, cache: TieredCache, shared_store):
        """A value just written is served without touching the shared tier."""
        assert await cache.set("k", {"caption": "a dog"}) is True

        assert await cache.get("k") == {"caption": "a dog"}
        assert shared_store.get_calls == 0

    @pytest.mark.asyncio
    async def test_set_mirrors_to_shared_tier_as_json(self, cache: TieredCache, shared_store):
        """Writes reach the shared tier JSON-encoded with the same TTL."""
        await cache.set("k", [1, 2, 3], ttl_seconds=120)

        assert json.loads(shared_store.data["k"]) == [1, 2, 3]
        assert shared_store.ttls["k"] == 120

    @pytest.mark.asyncio
    async def test_default_ttl_is_one_hour(self, cache: TieredCache, shared_store):
        await cache.set("k", "v")

        assert shared_store.ttls["k"] == 3600

    @pytest.mark.asyncio
    async def test_expired_local_entry_is_a_miss(self, cache: TieredCache, shared_store, mono_clock):
        """A locally expired entry is evicted on read."""
        await cache.set("k", "v", ttl_seconds=10)
        shared_store.data.clear()

        mono_clock.advance(11)

        assert await cache.get("k") is None
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_shared_hit_repopulates_local_with_refresh_ttl(
        self, cache: TieredCache, shared_store, mono_clock
    ):
        """A shared hit is cached locally for 60 seconds regardless of its TTL."""
        shared_store.data["k"] = json.dumps({"tags": ["beach"]})

        assert await cache.get("k") == {"tags": ["beach"]}
        assert shared_store.get_calls == 1

        # Served locally inside the refresh window
        mono_clock.advance(59)
        assert await cache.get("k") == {"tags": ["beach"]}
        assert shared_store.get_calls == 1

        # Refreshed from the shared tier after it
        shared_store.data["k"] = json.dumps({"tags": ["mountain"]})
        mono_clock.advance(2)
        assert await cache.get("k") == {"tags": ["mountain"]}
        assert shared_store.get_calls == 2

    @pytest.mark.asyncio
    async def test_miss_in_both_tiers(self, cache: TieredCache):
        assert await cache.get("missing") is None

    @pytest.mark.asyncio
    async def test_shared_connect_failure_pins_local_only(self, cache: TieredCache, shared_store):
        """One failed connect means the shared tier is never tried again."""
        shared_store.fail_connect = True

        assert await cache.set("a", 1) is True
        assert await cache.get("a") == 1
        assert await cache.get("b") is None
        await cache.delete("a")
        await cache.flush()

        assert shared_store.connect_calls == 1
        assert shared_store.set_calls == 0
        assert cache.shared_status == "unavailable"

    @pytest.mark.asyncio
    async def test_shared_connects_once(self, cache: TieredCache, shared_store):
        await cache.set("a", 1)
        await cache.set("b", 2)
        await cache.get("c")

        assert shared_store.connect_calls == 1
        assert cache.shared_status == "connected"

    @pytest.mark.asyncio
    async def test_shared_operation_failure_degrades_call(self, cache: TieredCache, shared_store):
        """A shared-tier error mid-operation is a miss or a local-only write."""
        await cache.set("warmup", 0)
        shared_store.fail_ops = True

        assert await cache.set("k", "v") is True
        assert await cache.get("k") == "v"
        assert await cache.get("other") is None
        assert await cache.delete("k") is True
        assert await cache.flush() is True

    @pytest.mark.asyncio
    async def test_unserializable_value_cached_locally(self, cache: TieredCache, shared_store):
        value = {1, 2}

        assert await cache.set("k", value) is True

        assert await cache.get("k") == value
        assert "k" not in shared_store.data

    @pytest.mark.asyncio
    async def test_delete_removes_from_both_tiers(self, cache: TieredCache, shared_store):
        await cache.set("k", "v")

        assert await cache.delete("k") is True

        assert await cache.get("k") is None
        assert "k" not in shared_store.data

    @pytest.mark.asyncio
    async def test_flush_is_idempotent(self, cache: TieredCache, shared_store):
        await cache.set("a", 1)
        await cache.set("b", 2)

        assert await cache.flush() is True
        assert await cache.flush() is True

        assert await cache.get("a") is None
        assert shared_store.data == {}
        assert shared_store.flush_calls == 2

    @pytest.mark.asyncio
    async def test_local_only_cache(self, metrics):
        """Without a shared tier the cache works from the local map alone."""
        cache = TieredCache(metrics=metrics)

        await cache.set("k", "v")

        assert await cache.get("k") == "v"
        assert cache.shared_status == "disabled"

    @pytest.mark.asyncio
    async def test_close_closes_connected_shared_tier(self, cache: TieredCache, shared_store):
        await cache.set("k", "v")

        await cache.close()

        assert shared_store.closed is True


class TestProcessCache:
    """Tests for the process-wide cache accessor."""

    def test_first_setup_wins(self, metrics):
        first = TieredCache(metrics=metrics)
        second = TieredCache(metrics=metrics)

        assert setup_cache(first) is first
        assert setup_cache(second) is first
        assert get_cache() is first

    def test_get_cache_builds_one_when_missing(self):
        cache = get_cache()

        assert isinstance(cache, TieredCache)
        assert get_cache() is cache
