"""
Two-tier caching with request coalescing and a durable fallback store.
"""
from .core import CacheEntry, CacheConfig, CacheStats
from .storage import PersistentStore, MemoryStore, SqliteStore, StorageError
from .ttl_policies import (
    TTL_CONFIG,
    build_key,
    get_ttl_for_resource,
)
from .coalescer import RequestCoalescer
from .manager import TieredCache, CLEANUP_INTERVAL_SECONDS

__all__ = [
    # Core types
    "CacheEntry",
    "CacheConfig",
    "CacheStats",
    # Durable tier
    "PersistentStore",
    "MemoryStore",
    "SqliteStore",
    "StorageError",
    # Keys and TTL policies
    "TTL_CONFIG",
    "build_key",
    "get_ttl_for_resource",
    # Coalescing
    "RequestCoalescer",
    # Manager
    "TieredCache",
    "CLEANUP_INTERVAL_SECONDS",
]
