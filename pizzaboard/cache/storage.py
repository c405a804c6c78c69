"""
Durable key/value tier for the cache.

The cache only needs get/set/remove/enumerate-by-prefix, so any store that
provides those four operations can back it. Values are JSON strings.
"""
import sqlite3
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger("cache.storage")

# Default database path
DEFAULT_DB_PATH = Path(__file__).parent.parent.parent / "data" / "cache.db"


SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class StorageError(Exception):
    """Raised when the durable store cannot complete an operation."""
    pass


class PersistentStore(ABC):
    """Narrow key/value interface consumed by the tiered cache."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored string, or None if the key is absent."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store a string, replacing any previous value (last write wins)."""

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove a key. Removing an absent key is not an error."""

    @abstractmethod
    def keys(self, prefix: str = "") -> List[str]:
        """All keys starting with prefix."""


class MemoryStore(PersistentStore):
    """
    Dict-backed store.

    Used in tests and when nothing needs to survive a restart. An optional
    max_items quota makes writes of new keys fail the way a full browser
    storage area does.
    """

    def __init__(self, max_items: Optional[int] = None):
        self._data: Dict[str, str] = {}
        self.max_items = max_items

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if (
            self.max_items is not None
            and key not in self._data
            and len(self._data) >= self.max_items
        ):
            raise StorageError(f"Storage quota exceeded ({self.max_items} items)")
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self, prefix: str = "") -> List[str]:
        return [k for k in self._data if k.startswith(prefix)]

    def __len__(self) -> int:
        return len(self._data)


class SqliteStore(PersistentStore):
    """
    SQLite-backed store that survives process restarts.

    Opens a short-lived connection per operation, so several processes can
    share one file; concurrent writers race and the last write wins.
    """

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        """Initialize database with schema."""
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)
            conn.commit()
        logger.info(f"Cache store initialized at: {self.db_path}")

    @contextmanager
    def _get_connection(self):
        """Get a database connection, translating driver errors."""
        try:
            conn = sqlite3.connect(str(self.db_path))
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open cache store {self.db_path}: {e}") from e
        try:
            yield conn
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e
        finally:
            conn.close()

    def get(self, key: str) -> Optional[str]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT value FROM kv_store WHERE key = ?", (key,)
            ).fetchone()
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO kv_store (key, value) VALUES (?, ?)",
                (key, value),
            )
            conn.commit()

    def remove(self, key: str) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()

    def keys(self, prefix: str = "") -> List[str]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT key FROM kv_store").fetchall()
        # Prefix filtering in Python: LIKE would treat '_' in prefixes as a wildcard
        return [row[0] for row in rows if row[0].startswith(prefix)]
