"""
Core cache data structures.
"""
from dataclasses import dataclass, fields, asdict
from typing import Any, Dict


@dataclass
class CacheEntry:
    """
    A cached value with the metadata needed for TTL checks.

    Times are epoch seconds in memory; the durable record stores them as
    epoch milliseconds.
    """
    key: str
    data: Any
    created_at: float
    ttl_seconds: float

    def age_seconds(self, now: float) -> float:
        """Seconds since the entry was created."""
        return now - self.created_at

    def is_valid(self, now: float) -> bool:
        """Valid strictly before created_at + ttl."""
        return self.age_seconds(now) < self.ttl_seconds

    def to_record(self) -> Dict[str, Any]:
        """Durable-tier representation."""
        return {
            "data": self.data,
            "timestamp": int(round(self.created_at * 1000)),
            "ttl": int(round(self.ttl_seconds * 1000)),
            "key": self.key,
        }

    @classmethod
    def from_record(cls, record: Any) -> "CacheEntry":
        """
        Rebuild an entry from a parsed durable record.

        Raises:
            ValueError: If the record does not have the expected shape
        """
        if not isinstance(record, dict):
            raise ValueError("cache record is not an object")
        if "data" not in record:
            raise ValueError("cache record has no data")

        timestamp = record.get("timestamp")
        ttl = record.get("ttl")
        for name, value in (("timestamp", timestamp), ("ttl", ttl)):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"cache record has invalid {name}: {value!r}")

        return cls(
            key=str(record.get("key", "")),
            data=record["data"],
            created_at=timestamp / 1000.0,
            ttl_seconds=ttl / 1000.0,
        )


@dataclass
class CacheConfig:
    """Runtime-tunable cache behaviour."""
    default_ttl_seconds: float = 300.0    # 5 minutes
    max_memory_items: int = 100
    persist_to_storage: bool = True
    storage_prefix: str = "pizzaWorld_cache_"

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if self.default_ttl_seconds <= 0:
            raise ValueError("default_ttl_seconds must be positive")
        if self.max_memory_items < 1:
            raise ValueError("max_memory_items must be at least 1")
        if not self.storage_prefix:
            raise ValueError("storage_prefix must not be empty")

    def updated(self, **changes: Any) -> "CacheConfig":
        """
        Return a copy with the given fields replaced.

        Raises:
            ValueError: On unknown fields or invalid values
        """
        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown cache config fields: {sorted(unknown)}")
        merged = {**asdict(self), **changes}
        return CacheConfig(**merged)


@dataclass
class CacheStats:
    """Observational counters, recomputed on every mutating operation."""
    memory_items: int = 0
    storage_items: int = 0
    total_requests: int = 0
    cache_hits: int = 0

    @property
    def hit_rate(self) -> float:
        """Hit rate as a percentage."""
        if self.total_requests == 0:
            return 0.0
        return round(self.cache_hits / self.total_requests * 100, 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memoryItems": self.memory_items,
            "storageItems": self.storage_items,
            "hitRate": self.hit_rate,
            "totalRequests": self.total_requests,
            "cacheHits": self.cache_hits,
        }


@dataclass
class RequestCounters:
    """The part of the stats that is persisted across reloads."""
    total_requests: int = 0
    cache_hits: int = 0

    def to_record(self) -> Dict[str, int]:
        return {"totalRequests": self.total_requests, "cacheHits": self.cache_hits}

    @classmethod
    def from_record(cls, record: Any) -> "RequestCounters":
        if not isinstance(record, dict):
            return cls()
        return cls(
            total_requests=int(record.get("totalRequests") or 0),
            cache_hits=int(record.get("cacheHits") or 0),
        )
