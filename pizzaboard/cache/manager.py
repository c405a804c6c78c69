"""
Tiered cache: bounded in-memory tier over a durable key/value store.
"""
import asyncio
import contextlib
import json
import time
import logging
from typing import Dict, Optional, Callable, Any, Awaitable, List

from .core import CacheEntry, CacheConfig, CacheStats, RequestCounters
from .coalescer import RequestCoalescer
from .storage import PersistentStore, MemoryStore, StorageError

logger = logging.getLogger("cache.manager")

# Expired entries are swept on this interval
CLEANUP_INTERVAL_SECONDS = 300

STATS_KEY = "stats"


class TieredCache:
    """
    Main cache orchestration with:
    - Memory tier bounded to max_memory_items, evicting the oldest insertion
    - Durable tier holding a JSON copy of every entry
    - Request coalescing for concurrent duplicate misses
    - Hit/request counters persisted alongside the entries

    Keys passed in are logical keys; both tiers address entries as
    storage_prefix + key.

    One instance is created by the application and handed to whatever
    needs it. Not safe for use from multiple threads.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        store: Optional[PersistentStore] = None,
        clock: Callable[[], float] = time.time,
        coalescer: Optional[RequestCoalescer] = None,
    ):
        """
        Initialize the cache.

        Args:
            config: Cache behaviour; defaults to CacheConfig()
            store: Durable tier; defaults to a process-local MemoryStore
            clock: Returns the current time in epoch seconds
            coalescer: Shared in-flight registry; one is created if omitted
        """
        self.config = config or CacheConfig()
        self.store = store if store is not None else MemoryStore()
        self._clock = clock
        self._coalescer = coalescer or RequestCoalescer()
        self._memory: Dict[str, CacheEntry] = {}
        self._counters = self._load_counters()
        self._stats = CacheStats()
        self._storage_items = 0
        self._cleanup_task: Optional["asyncio.Task[None]"] = None
        self._update_stats(persist=False)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get(
        self,
        key: str,
        compute: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
    ) -> Any:
        """
        Get data from the memory tier or compute it.

        Concurrent misses for the same key share one computation. The result
        is written to both tiers before the shared computation settles.
        Errors propagate and are never cached. On a miss, a corrupt durable
        record for the key is removed.

        Args:
            key: Logical cache key
            compute: Coroutine factory producing the value on a miss
            ttl: TTL in seconds for a freshly computed value
        """
        self._counters.total_requests += 1
        cache_key = self._cache_key(key)
        entry = self._memory.get(cache_key)
        now = self._clock()

        if entry is not None and entry.is_valid(now):
            self._counters.cache_hits += 1
            self._update_stats(recount=False)
            logger.debug(f"CACHE HIT: {key} [age={entry.age_seconds(now):.1f}s]")
            return entry.data

        if self._coalescer.is_in_flight(cache_key):
            logger.debug(f"CACHE MISS (joining in-flight): {key}")
        else:
            logger.info(f"CACHE MISS: {key}")
            # Removes a corrupt durable record; a valid one is left for get_sync
            self._read_storage(cache_key)

        async def compute_and_store():
            data = await compute()
            self.set(key, data, ttl)
            return data

        return await self._coalescer.run(cache_key, compute_and_store)

    def set(self, key: str, data: Any, ttl: Optional[float] = None) -> None:
        """Store data in both tiers with a fresh timestamp."""
        cache_key = self._cache_key(key)
        entry = CacheEntry(
            key=cache_key,
            data=data,
            created_at=self._clock(),
            ttl_seconds=ttl or self.config.default_ttl_seconds,
        )
        self._set_in_memory(cache_key, entry)
        if self.config.persist_to_storage:
            self._set_in_storage(cache_key, entry)
        self._update_stats()

    def get_sync(self, key: str) -> Optional[Any]:
        """
        Read a valid entry without computing anything.

        Tries the memory tier, then the durable tier. Durable records that
        are corrupt or expired are removed. A valid durable record is copied
        back into the memory tier.

        Returns:
            The cached data, or None if neither tier has a valid entry
        """
        self._counters.total_requests += 1
        cache_key = self._cache_key(key)
        now = self._clock()

        entry = self._memory.get(cache_key)
        if entry is not None:
            if entry.is_valid(now):
                self._counters.cache_hits += 1
                self._update_stats(recount=False)
                return entry.data
            del self._memory[cache_key]

        entry = self._read_storage(cache_key)
        if entry is not None and not entry.is_valid(now):
            logger.debug(f"Stored entry expired: {key}")
            self._remove_from_storage(cache_key)
            entry = None

        if entry is None:
            self._update_stats()
            return None

        self._set_in_memory(cache_key, entry)
        self._counters.cache_hits += 1
        self._update_stats()
        return entry.data

    def get_stale(self, key: str) -> Optional[CacheEntry]:
        """
        Return the newest copy of an entry regardless of TTL.

        Used as a fallback when refreshing the value fails. Corrupt durable
        records are still removed.
        """
        cache_key = self._cache_key(key)
        entry = self._memory.get(cache_key)
        if entry is not None:
            return entry
        return self._read_storage(cache_key)

    def has(self, key: str) -> bool:
        """Check if a valid entry exists in either tier."""
        cache_key = self._cache_key(key)
        now = self._clock()
        entry = self._memory.get(cache_key)
        if entry is not None and entry.is_valid(now):
            return True
        entry = self._read_storage(cache_key)
        return entry is not None and entry.is_valid(now)

    def delete(self, key: str) -> None:
        """Remove a key from both tiers and drop any in-flight bookkeeping."""
        cache_key = self._cache_key(key)
        self._memory.pop(cache_key, None)
        self._coalescer.forget(cache_key)
        if self.config.persist_to_storage:
            self._remove_from_storage(cache_key)
        self._update_stats()

    def clear(self) -> int:
        """
        Clear every entry in the cache namespace and reset the counters.

        Durable keys outside storage_prefix are left alone.

        Returns:
            Number of entries removed from the memory tier
        """
        count = len(self._memory)
        self._memory.clear()
        self._coalescer.clear()

        if self.config.persist_to_storage:
            for storage_key in self._storage_keys(include_stats=True):
                self._remove_from_storage(storage_key)

        self._counters = RequestCounters()
        # Zero counters need no record; leave the namespace empty
        self._update_stats(persist=False)
        logger.info(f"Cleared {count} cache entries")
        return count

    def clear_expired(self) -> int:
        """
        Sweep both tiers, removing entries that are no longer valid.

        Durable records that cannot be parsed are removed too.

        Returns:
            Number of entries removed across both tiers
        """
        now = self._clock()
        removed = 0

        for cache_key in [k for k, e in self._memory.items() if not e.is_valid(now)]:
            del self._memory[cache_key]
            removed += 1

        if self.config.persist_to_storage:
            for storage_key in self._storage_keys():
                entry = self._read_storage(storage_key)
                if entry is None:
                    # Corrupt records were already removed by the read
                    removed += 1
                elif not entry.is_valid(now):
                    self._remove_from_storage(storage_key)
                    removed += 1

        if removed:
            logger.info(f"Removed {removed} expired cache items")
            self._update_stats()
        return removed

    def update_config(self, **changes: Any) -> CacheConfig:
        """
        Change any subset of the configuration at runtime.

        Raises:
            ValueError: On unknown fields or invalid values
        """
        self.config = self.config.updated(**changes)
        logger.info(f"Cache config updated: {changes}")
        self._update_stats()
        return self.config

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        stats = self._stats.to_dict()
        stats["coalescer"] = self._coalescer.get_stats()
        return stats

    def memory_keys(self) -> List[str]:
        """Logical keys in the memory tier, oldest insertion first."""
        prefix = self.config.storage_prefix
        return [k[len(prefix):] if k.startswith(prefix) else k for k in self._memory]

    # ------------------------------------------------------------------
    # Periodic sweep
    # ------------------------------------------------------------------

    def start_cleanup(self, interval_seconds: float = CLEANUP_INTERVAL_SECONDS) -> None:
        """Run clear_expired() every interval_seconds on the running loop."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self._cleanup_task = asyncio.get_running_loop().create_task(
            self._cleanup_loop(interval_seconds)
        )

    async def stop_cleanup(self) -> None:
        if self._cleanup_task is None:
            return
        self._cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._cleanup_task
        self._cleanup_task = None

    async def _cleanup_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                self.clear_expired()
            except StorageError as e:
                logger.warning(f"Expired-entry sweep failed: {e}")

    # ------------------------------------------------------------------
    # Tiers
    # ------------------------------------------------------------------

    def _cache_key(self, key: str) -> str:
        return f"{self.config.storage_prefix}{key}"

    @property
    def _stats_key(self) -> str:
        return self._cache_key(STATS_KEY)

    def _set_in_memory(self, cache_key: str, entry: CacheEntry) -> None:
        # Re-setting a key counts as a new insertion
        self._memory.pop(cache_key, None)
        while len(self._memory) >= self.config.max_memory_items:
            oldest_key = next(iter(self._memory))
            del self._memory[oldest_key]
            logger.debug(f"Evicted oldest cache entry: {oldest_key}")
        self._memory[cache_key] = entry

    def _set_in_storage(self, cache_key: str, entry: CacheEntry) -> None:
        try:
            payload = json.dumps(entry.to_record())
        except (TypeError, ValueError) as e:
            logger.warning(f"Failed to serialize cache item {cache_key}: {e}")
            return
        try:
            self.store.set(cache_key, payload)
        except StorageError as e:
            logger.warning(f"Failed to store cache item {cache_key}: {e}")

    def _read_storage(self, cache_key: str) -> Optional[CacheEntry]:
        """Parse a durable record, removing it if it is corrupt."""
        if not self.config.persist_to_storage:
            return None
        try:
            raw = self.store.get(cache_key)
        except StorageError as e:
            logger.warning(f"Failed to read cache item {cache_key}: {e}")
            return None
        if raw is None:
            return None

        try:
            return CacheEntry.from_record(json.loads(raw))
        except ValueError as e:
            # json.JSONDecodeError is a ValueError too
            logger.warning(f"Failed to parse cached item {cache_key}: {e}")
            self._remove_from_storage(cache_key)
            return None

    def _remove_from_storage(self, cache_key: str) -> None:
        try:
            self.store.remove(cache_key)
        except StorageError as e:
            logger.warning(f"Failed to remove cache item {cache_key}: {e}")

    def _storage_keys(self, include_stats: bool = False) -> List[str]:
        try:
            keys = self.store.keys(self.config.storage_prefix)
        except StorageError as e:
            logger.warning(f"Failed to list cache items: {e}")
            return []
        if include_stats:
            return keys
        return [k for k in keys if k != self._stats_key]

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def _update_stats(self, persist: bool = True, recount: bool = True) -> None:
        """
        Refresh the stats snapshot and save the counters.

        recount=False reuses the last durable item count; reads that leave
        the durable tier untouched pass it to skip the key scan.
        """
        if recount:
            self._storage_items = (
                len(self._storage_keys()) if self.config.persist_to_storage else 0
            )
        self._stats = CacheStats(
            memory_items=len(self._memory),
            storage_items=self._storage_items,
            total_requests=self._counters.total_requests,
            cache_hits=self._counters.cache_hits,
        )
        if persist and self.config.persist_to_storage:
            try:
                self.store.set(self._stats_key, json.dumps(self._counters.to_record()))
            except StorageError as e:
                logger.warning(f"Failed to save cache stats: {e}")

    def _load_counters(self) -> RequestCounters:
        if not self.config.persist_to_storage:
            return RequestCounters()
        try:
            raw = self.store.get(self._stats_key)
            if raw:
                return RequestCounters.from_record(json.loads(raw))
        except (StorageError, ValueError) as e:
            logger.warning(f"Failed to load cache stats: {e}")
        return RequestCounters()
