"""
Unit tests for the tiered cache.

Covers TTL validity, insertion-order eviction, single-flight misses,
self-healing of corrupt durable records, namespace-scoped clearing and stats.
"""
import asyncio
import json

import pytest

from pizzaboard.cache import (
    CacheConfig,
    CacheEntry,
    MemoryStore,
    StorageError,
    TieredCache,
)


PREFIX = "test_cache_"


class FakeClock:
    """Settable clock in epoch seconds."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache(store, clock):
    config = CacheConfig(default_ttl_seconds=300, max_memory_items=5, storage_prefix=PREFIX)
    return TieredCache(config=config, store=store, clock=clock)


def make_compute(value, calls):
    async def compute():
        calls.append(1)
        await asyncio.sleep(0)
        return value
    return compute


# =============================================================================
# CacheEntry
# =============================================================================

class TestCacheEntry:

    def test_valid_until_ttl_elapses(self):
        entry = CacheEntry(key="k", data=1, created_at=100.0, ttl_seconds=10.0)
        assert entry.is_valid(100.0)
        assert entry.is_valid(109.999)
        assert not entry.is_valid(110.0)
        assert not entry.is_valid(125.0)

    def test_record_uses_milliseconds(self):
        entry = CacheEntry(key="k", data={"x": 1}, created_at=12.5, ttl_seconds=1.0)
        record = entry.to_record()
        assert record == {"data": {"x": 1}, "timestamp": 12500, "ttl": 1000, "key": "k"}

        restored = CacheEntry.from_record(record)
        assert restored.created_at == 12.5
        assert restored.ttl_seconds == 1.0
        assert restored.data == {"x": 1}

    @pytest.mark.parametrize("record", [
        "not an object",
        [1, 2, 3],
        {"timestamp": 1, "ttl": 1},
        {"data": 1, "timestamp": "yesterday", "ttl": 1},
        {"data": 1, "timestamp": 1},
        {"data": 1, "timestamp": 1, "ttl": True},
    ])
    def test_from_record_rejects_bad_shapes(self, record):
        with pytest.raises(ValueError):
            CacheEntry.from_record(record)


# =============================================================================
# TTL
# =============================================================================

class TestTTL:

    def test_get_sync_scenario(self, cache, clock):
        """TTL=1s: readable at +0.5s, gone at +1.5s."""
        cache.set("k", {"x": 1}, ttl=1.0)

        clock.advance(0.5)
        assert cache.get_sync("k") == {"x": 1}

        clock.advance(1.0)
        assert cache.get_sync("k") is None

    async def test_get_recomputes_after_expiry(self, cache, clock):
        cache.set("k", {"x": 1}, ttl=1.0)
        clock.advance(1.5)
        assert cache.get_sync("k") is None

        calls = []
        value = await cache.get("k", make_compute({"x": 2}, calls), ttl=1.0)
        assert value == {"x": 2}
        assert len(calls) == 1

    def test_entry_invalid_at_exactly_ttl(self, cache, clock):
        cache.set("k", "v", ttl=2.0)
        clock.advance(2.0)
        assert not cache.has("k")
        assert cache.get_sync("k") is None

    def test_default_ttl_applies(self, cache, clock):
        cache.set("k", "v")
        clock.advance(299)
        assert cache.has("k")
        clock.advance(1)
        assert not cache.has("k")

    def test_expired_durable_record_is_removed(self, cache, store, clock):
        cache.set("k", "v", ttl=1.0)
        clock.advance(5)
        assert cache.get_sync("k") is None
        assert store.get(PREFIX + "k") is None


# =============================================================================
# Eviction
# =============================================================================

class TestEviction:

    def test_memory_tier_bounded(self, cache):
        for i in range(8):
            cache.set(f"k{i}", i)
        assert cache.memory_keys() == ["k3", "k4", "k5", "k6", "k7"]
        assert cache.get_stats()["memoryItems"] == 5

    def test_eviction_ignores_access_order(self, cache):
        for i in range(5):
            cache.set(f"k{i}", i)
        # Reading k0 does not protect it
        assert cache.get_sync("k0") == 0
        cache.set("k5", 5)
        assert "k0" not in cache.memory_keys()
        assert "k1" in cache.memory_keys()

    def test_reset_moves_key_to_newest(self, cache):
        for i in range(5):
            cache.set(f"k{i}", i)
        cache.set("k0", "again")
        cache.set("k5", 5)
        assert cache.memory_keys() == ["k2", "k3", "k4", "k0", "k5"]

    def test_evicted_entry_still_readable_from_durable_tier(self, cache, store):
        for i in range(6):
            cache.set(f"k{i}", i)
        assert "k0" not in cache.memory_keys()
        assert store.get(PREFIX + "k0") is not None
        assert cache.get_sync("k0") == 0


# =============================================================================
# get() and single-flight
# =============================================================================

class TestGet:

    async def test_hit_skips_compute(self, cache):
        cache.set("k", "cached")
        calls = []
        assert await cache.get("k", make_compute("fresh", calls)) == "cached"
        assert calls == []

    async def test_concurrent_misses_share_one_compute(self, cache):
        calls = []
        compute = make_compute({"rows": [1, 2]}, calls)

        first, second = await asyncio.gather(
            cache.get("k", compute),
            cache.get("k", compute),
        )

        assert len(calls) == 1
        assert first == {"rows": [1, 2]}
        assert first is second

    async def test_result_written_to_both_tiers(self, cache, store, clock):
        await cache.get("k", make_compute([1], []), ttl=60)
        assert cache.memory_keys() == ["k"]
        record = json.loads(store.get(PREFIX + "k"))
        assert record["data"] == [1]
        assert record["ttl"] == 60000
        assert record["timestamp"] == int(clock.now * 1000)
        assert record["key"] == PREFIX + "k"

    async def test_failure_propagates_and_is_not_cached(self, cache, store):
        async def failing():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            await cache.get("k", failing)

        assert not cache.has("k")
        assert store.get(PREFIX + "k") is None

        calls = []
        assert await cache.get("k", make_compute("ok", calls)) == "ok"
        assert len(calls) == 1

    async def test_failure_reaches_every_waiter(self, cache):
        calls = []

        async def failing():
            calls.append(1)
            await asyncio.sleep(0)
            raise RuntimeError("down")

        results = await asyncio.gather(
            cache.get("k", failing),
            cache.get("k", failing),
            return_exceptions=True,
        )
        assert len(calls) == 1
        assert all(isinstance(r, RuntimeError) for r in results)
        assert results[0] is results[1]

    async def test_refetch_resets_timestamp(self, cache, clock):
        cache.set("k", "old", ttl=10)
        clock.advance(11)
        await cache.get("k", make_compute("new", []), ttl=10)
        clock.advance(9)
        assert cache.get_sync("k") == "new"


# =============================================================================
# Self-healing durable tier
# =============================================================================

class TestSelfHealing:

    def test_corrupt_record_removed_on_get_sync(self, cache, store):
        store.set(PREFIX + "k", "{not json")
        assert cache.get_sync("k") is None
        assert store.get(PREFIX + "k") is None

    def test_wrong_shape_removed_on_get_sync(self, cache, store):
        store.set(PREFIX + "k", json.dumps({"value": 1}))
        assert cache.get_sync("k") is None
        assert store.get(PREFIX + "k") is None

    def test_corrupt_record_removed_by_has(self, cache, store):
        store.set(PREFIX + "k", "garbage")
        assert not cache.has("k")
        assert store.get(PREFIX + "k") is None

    async def test_get_replaces_corrupt_record(self, cache, store):
        store.set(PREFIX + "k", "{not json")
        calls = []

        assert await cache.get("k", make_compute({"x": 1}, calls)) == {"x": 1}

        assert len(calls) == 1
        assert json.loads(store.get(PREFIX + "k"))["data"] == {"x": 1}

    async def test_get_removes_corrupt_record_when_compute_fails(self, cache, store):
        store.set(PREFIX + "k", "{not json")

        async def failing():
            raise RuntimeError("down")

        with pytest.raises(RuntimeError, match="down"):
            await cache.get("k", failing)

        assert store.get(PREFIX + "k") is None
        assert cache.get_stale("k") is None

    def test_valid_record_survives_restart(self, store, clock):
        config = CacheConfig(storage_prefix=PREFIX)
        first = TieredCache(config=config, store=store, clock=clock)
        first.set("k", {"x": 1})

        second = TieredCache(config=config, store=store, clock=clock)
        assert second.memory_keys() == []
        assert second.get_sync("k") == {"x": 1}
        assert second.memory_keys() == ["k"]


# =============================================================================
# delete / clear / clear_expired
# =============================================================================

class TestRemoval:

    def test_delete_removes_both_tiers(self, cache, store):
        cache.set("k", 1)
        cache.delete("k")
        assert cache.memory_keys() == []
        assert store.get(PREFIX + "k") is None
        assert cache.get_sync("k") is None

    async def test_delete_drops_in_flight_bookkeeping(self, cache):
        release = asyncio.Event()
        calls = []

        async def slow():
            calls.append(1)
            await release.wait()
            return len(calls)

        first = asyncio.ensure_future(cache.get("k", slow))
        await asyncio.sleep(0)
        cache.delete("k")
        second = asyncio.ensure_future(cache.get("k", slow))
        await asyncio.sleep(0)
        release.set()

        await asyncio.gather(first, second)
        assert len(calls) == 2

    def test_clear_is_namespace_scoped(self, cache, store):
        store.set("other_app_key", "keep me")
        store.set("pizzaWorld_earliestOrderDate", "2020-01-01")
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get_sync("a")

        cache.clear()

        assert store.keys(PREFIX) == []
        assert store.get("other_app_key") == "keep me"
        assert store.get("pizzaWorld_earliestOrderDate") == "2020-01-01"
        stats = cache.get_stats()
        assert stats["memoryItems"] == 0
        assert stats["storageItems"] == 0
        assert stats["totalRequests"] == 0
        assert stats["cacheHits"] == 0

    def test_clear_expired_sweeps_both_tiers(self, cache, store, clock):
        cache.set("short", 1, ttl=1)
        cache.set("long", 2, ttl=100)
        store.set(PREFIX + "corrupt", "][")
        clock.advance(2)

        removed = cache.clear_expired()

        # short from memory and storage, plus the corrupt record
        assert removed == 3
        assert cache.memory_keys() == ["long"]
        assert sorted(store.keys(PREFIX)) == [PREFIX + "long", PREFIX + "stats"]

    def test_clear_expired_keeps_stats_record(self, cache, store, clock):
        cache.set("k", 1, ttl=1)
        clock.advance(2)
        cache.clear_expired()
        assert store.get(PREFIX + "stats") is not None

    async def test_cleanup_loop_runs_sweep(self, cache, clock):
        cache.set("k", 1, ttl=1)
        clock.advance(2)
        cache.start_cleanup(interval_seconds=0.01)
        try:
            for _ in range(100):
                if not cache.memory_keys():
                    break
                await asyncio.sleep(0.01)
        finally:
            await cache.stop_cleanup()
        assert cache.memory_keys() == []


# =============================================================================
# Stats and configuration
# =============================================================================

class TestStats:

    async def test_hit_rate(self, cache):
        cache.set("k", 1)
        await cache.get("k", make_compute(2, []))
        cache.get_sync("k")
        cache.get_sync("missing")
        stats = cache.get_stats()
        assert stats["totalRequests"] == 3
        assert stats["cacheHits"] == 2
        assert stats["hitRate"] == 66.67

    async def test_memory_hits_skip_durable_key_scan(self, clock):
        class CountingStore(MemoryStore):
            def __init__(self):
                super().__init__()
                self.scans = 0

            def keys(self, prefix=""):
                self.scans += 1
                return super().keys(prefix)

        store = CountingStore()
        cache = TieredCache(config=CacheConfig(storage_prefix=PREFIX), store=store, clock=clock)
        cache.set("k", 1)
        scans = store.scans

        await cache.get("k", make_compute(2, []))
        cache.get_sync("k")

        assert store.scans == scans
        stats = cache.get_stats()
        assert stats["storageItems"] == 1
        assert stats["cacheHits"] == 2

    def test_counters_persisted_and_reloaded(self, store, clock):
        config = CacheConfig(storage_prefix=PREFIX)
        first = TieredCache(config=config, store=store, clock=clock)
        first.set("k", 1)
        first.get_sync("k")
        first.get_sync("nope")

        assert json.loads(store.get(PREFIX + "stats")) == {"totalRequests": 2, "cacheHits": 1}

        second = TieredCache(config=config, store=store, clock=clock)
        stats = second.get_stats()
        assert stats["totalRequests"] == 2
        assert stats["cacheHits"] == 1
        assert stats["storageItems"] == 1

    def test_update_config_partial(self, cache):
        cache.update_config(max_memory_items=2)
        assert cache.config.max_memory_items == 2
        assert cache.config.storage_prefix == PREFIX
        for i in range(4):
            cache.set(f"k{i}", i)
        assert cache.memory_keys() == ["k2", "k3"]

    def test_update_config_rejects_unknown_and_invalid(self, cache):
        with pytest.raises(ValueError):
            cache.update_config(colour="blue")
        with pytest.raises(ValueError):
            cache.update_config(max_memory_items=0)
        assert cache.config.max_memory_items == 5

    def test_persistence_disabled(self, store, clock):
        config = CacheConfig(persist_to_storage=False, storage_prefix=PREFIX)
        cache = TieredCache(config=config, store=store, clock=clock)
        cache.set("k", 1)
        assert len(store) == 0
        assert cache.get_sync("k") == 1
        assert cache.get_stats()["storageItems"] == 0


# =============================================================================
# Storage failures
# =============================================================================

class TestStorageFailures:

    def test_quota_error_keeps_memory_copy(self, clock):
        store = MemoryStore(max_items=1)
        cache = TieredCache(config=CacheConfig(storage_prefix=PREFIX), store=store, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.get_sync("a") == 1
        assert cache.get_sync("b") == 2

    def test_unserializable_value_stays_in_memory(self, cache, store):
        value = {1, 2, 3}
        cache.set("k", value)
        assert store.get(PREFIX + "k") is None
        assert cache.get_sync("k") == value

    def test_store_raises_storage_error(self):
        store = MemoryStore(max_items=0)
        with pytest.raises(StorageError):
            store.set("x", "y")
