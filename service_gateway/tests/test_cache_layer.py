"""
Unit tests for the gateway cache layer and pool invalidation.
"""

import asyncio
import pytest

from service_gateway.app.caching.cache_layer import CacheLayer
from service_gateway.app.domain.invalidation import CacheInvalidator, NewDataEvent, pool_cache_keys
from shared.errors import ValidationError
from shared.metrics import MetricsCollector
from shared.test_helpers import FakeClock, InMemoryStore, TestDataFactory


class TestCacheLayer:
    """Test cases for CacheLayer."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def store(self, clock):
        return InMemoryStore(clock)

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("gateway-test")

    @pytest.fixture
    def cache(self, store, metrics):
        return CacheLayer(store, "fluxsight", metrics=metrics)

    @pytest.mark.asyncio
    async def test_set_then_get_until_ttl_expires(self, cache, clock):
        """A 5s entry is served immediately and gone 6s later."""
        pool = TestDataFactory.create_test_pool("X")
        await cache.set("pool:X", pool, ttl=5)

        assert await cache.get("pool:X") == pool

        clock.advance(6)
        assert await cache.get("pool:X") is None

    @pytest.mark.asyncio
    async def test_keys_are_namespaced(self, cache, store):
        await cache.set("tvl:X", {"tvl": "12.5"}, ttl=60)

        assert await store.get("fluxsight:tvl:X") == '{"tvl": "12.5"}'
        assert store.ttl_ms("fluxsight:tvl:X") == 60_000

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ttl", [0, -1, None])
    async def test_ttl_is_required(self, cache, ttl):
        with pytest.raises(ValidationError):
            await cache.set("pool:X", {"id": "X"}, ttl=ttl)

    @pytest.mark.asyncio
    async def test_none_is_not_cached(self, cache, store):
        assert await cache.set("pool:X", None, ttl=5) is False
        assert store.keys() == []

    @pytest.mark.asyncio
    async def test_unparseable_entry_is_a_miss(self, cache, store, metrics):
        await store.set("fluxsight:pool:X", "{not json", 5000)

        assert await cache.get("pool:X") is None
        assert metrics.sample_value("cache_lookups_total", result="error") == 1.0

    @pytest.mark.asyncio
    async def test_store_failure_is_a_miss(self, cache, store, metrics):
        store.fail = True

        assert await cache.get("pool:X") is None
        assert await cache.set("pool:X", {"id": "X"}, ttl=5) is False
        assert metrics.sample_value("store_errors_total", operation="cache_get") == 1.0
        assert metrics.sample_value("store_errors_total", operation="cache_set") == 1.0

    @pytest.mark.asyncio
    async def test_get_or_compute_calls_factory_once_per_miss(self, cache, clock):
        calls = []

        async def factory():
            calls.append(1)
            return {"id": "X", "version": len(calls)}

        first = await cache.get_or_compute("pool:X", 5, factory)
        second = await cache.get_or_compute("pool:X", 5, factory)

        assert len(calls) == 1
        assert first == second == {"id": "X", "version": 1}

        clock.advance(6)
        third = await cache.get_or_compute("pool:X", 5, factory)
        assert len(calls) == 2
        assert third["version"] == 2

    @pytest.mark.asyncio
    async def test_get_or_compute_accepts_sync_factory(self, cache):
        value = await cache.get_or_compute("tvl:X", 60, lambda: {"tvl": "1"})
        assert value == {"tvl": "1"}

    @pytest.mark.asyncio
    async def test_get_or_compute_does_not_cache_none(self, cache):
        calls = []

        def factory():
            calls.append(1)
            return None

        assert await cache.get_or_compute("pool:missing", 5, factory) is None
        assert await cache.get_or_compute("pool:missing", 5, factory) is None
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_concurrent_misses_each_call_factory(self, cache):
        """No stampede protection: factory calls never exceed concurrent misses."""
        calls = []
        release = asyncio.Event()

        async def factory():
            calls.append(1)
            await release.wait()
            return {"id": "X"}

        tasks = [asyncio.create_task(cache.get_or_compute("pool:X", 5, factory)) for _ in range(3)]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*tasks)

        assert 1 <= len(calls) <= 3
        assert all(result == {"id": "X"} for result in results)

        await cache.get_or_compute("pool:X", 5, factory)
        assert len(calls) <= 3

    @pytest.mark.asyncio
    async def test_factory_errors_propagate(self, cache):
        def factory():
            raise RuntimeError("backend down")

        with pytest.raises(RuntimeError):
            await cache.get_or_compute("pool:X", 5, factory)

    @pytest.mark.asyncio
    async def test_fetch_reports_hits(self, cache, metrics):
        miss = await cache.fetch("pool:X", 5, lambda: {"id": "X"})
        hit = await cache.fetch("pool:X", 5, lambda: {"id": "other"})

        assert miss.hit is False
        assert hit.hit is True
        assert hit.value == {"id": "X"}
        assert metrics.sample_value("cache_lookups_total", result="hit") == 1.0
        assert metrics.sample_value("cache_lookups_total", result="miss") == 1.0

    @pytest.mark.asyncio
    async def test_delete(self, cache):
        await cache.set("pool:X", {"id": "X"}, ttl=5)

        assert await cache.delete("pool:X") is True
        assert await cache.get("pool:X") is None
        assert await cache.delete("pool:X") is False

    @pytest.mark.asyncio
    async def test_delete_by_prefix_with_scan(self, cache):
        for page in range(15):
            await cache.set(f"swaps:X:{page}", [page], ttl=300)
        await cache.set("swaps:Y:0", [0], ttl=300)

        removed = await cache.delete_by_prefix("swaps:X:")

        assert removed == 15
        assert await cache.get("swaps:Y:0") == [0]

    @pytest.mark.asyncio
    async def test_delete_by_prefix_without_scan_uses_candidates(self, clock):
        store = InMemoryStore(clock, supports_prefix_scan=False)
        cache = CacheLayer(store, "fluxsight")
        for page in range(12):
            await cache.set(f"swaps:X:{page}", [page], ttl=300)

        removed = await cache.delete_by_prefix("swaps:X:", candidates=[f"swaps:X:{page}" for page in range(10)])

        assert removed == 10
        # Pages beyond the candidate list survive until their TTL.
        assert await cache.get("swaps:X:10") == [10]
        assert not any(operation == "scan_prefix" for operation, _ in store.calls)


class TestCacheInvalidator:
    """Test cases for CacheInvalidator."""

    @pytest.fixture
    def store(self):
        return InMemoryStore(FakeClock())

    @pytest.fixture
    def cache(self, store):
        return CacheLayer(store, "fluxsight")

    def test_pool_cache_keys(self):
        keys = pool_cache_keys("X", swap_pages=3)

        assert keys == ["pool:X", "tvl:X", "swaps:X:0", "swaps:X:1", "swaps:X:2"]

    @pytest.mark.asyncio
    async def test_invalidate_pool_removes_derived_keys(self, cache):
        await cache.set("pool:X", {"id": "X"}, ttl=300)
        await cache.set("tvl:X", {"tvl": "1"}, ttl=60)
        await cache.set("swaps:X:0", [], ttl=300)
        await cache.set("swaps:X:25", [], ttl=300)
        await cache.set("pool:Y", {"id": "Y"}, ttl=300)

        removed = await CacheInvalidator(cache).invalidate_pool("X")

        assert removed == 4
        for key in ("pool:X", "tvl:X", "swaps:X:0", "swaps:X:25"):
            assert await cache.get(key) is None
        assert await cache.get("pool:Y") == {"id": "Y"}

    @pytest.mark.asyncio
    async def test_invalidate_pool_without_scan_enumerates_pages(self):
        store = InMemoryStore(FakeClock(), supports_prefix_scan=False)
        cache = CacheLayer(store, "fluxsight")
        for page in range(10):
            await cache.set(f"swaps:X:{page}", [page], ttl=300)
        await cache.set("pool:X", {"id": "X"}, ttl=300)

        removed = await CacheInvalidator(cache, swap_pages_tracked=10).invalidate_pool("X")

        assert removed == 11
        assert store.keys() == []

    @pytest.mark.asyncio
    async def test_handle_new_data_deduplicates_pools(self, cache, store):
        await cache.set("pool:X", {"id": "X"}, ttl=300)
        await cache.set("pool:Y", {"id": "Y"}, ttl=300)

        removed = await CacheInvalidator(cache).handle_new_data(NewDataEvent(pool_ids=["X", "Y", "X"]))

        assert removed == 2
        assert store.keys() == []

    @pytest.mark.asyncio
    async def test_invalidation_failure_is_logged_not_raised(self, cache, store):
        store.fail = True

        assert await CacheInvalidator(cache).invalidate_pool("X") == 0
