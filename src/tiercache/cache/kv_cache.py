"""
Key-value LocalStore implementations.

- InMemoryKVCache: dict-based store for tests and ephemeral processes,
  with optional LRU eviction when a size limit is reached
- SQLiteKVCache: async SQLite-backed durable store using aiosqlite
"""

from __future__ import annotations

from collections import OrderedDict
from pathlib import Path

import aiosqlite

from tiercache.cache.base import LocalStore
from tiercache.exceptions import StorageError
from tiercache.logging import get_logger
from tiercache.types import utc_now

logger = get_logger(__name__)


class InMemoryKVCache(LocalStore):
    """Simple dict-based LocalStore.

    Args:
        max_entries: Evict least recently used keys beyond this size.
            None means unbounded.
    """

    name = "memory"

    def __init__(self, max_entries: int | None = None) -> None:
        self.max_entries = max_entries
        self._data: OrderedDict[str, str] = OrderedDict()

    async def get(self, key: str) -> str | None:
        value = self._data.get(key)
        if value is not None:
            self._data.move_to_end(key)
        return value

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value
        self._data.move_to_end(key)
        if self.max_entries is not None:
            while len(self._data) > self.max_entries:
                evicted, _ = self._data.popitem(last=False)
                logger.debug("Evicted local entry", key=evicted)

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)

    def keys(self) -> list[str]:
        return list(self._data)


class SQLiteKVCache(LocalStore):
    """Durable LocalStore in a single SQLite table.

    Call ``init()`` before use and ``close()`` when done.
    """

    name = "sqlite"

    def __init__(self, db_path: str | Path) -> None:
        """Initialize the store.

        Args:
            db_path: Path of the SQLite database file.
        """
        self.db_path = Path(db_path)
        self._db: aiosqlite.Connection | None = None

    async def init(self) -> None:
        """Open the database and create the schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        await self._db.commit()
        logger.info("SQLite local store initialized", db_path=str(self.db_path))

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    def _conn(self) -> aiosqlite.Connection:
        if not self._db:
            raise RuntimeError("SQLiteKVCache not initialized. Call init() first.")
        return self._db

    async def get(self, key: str) -> str | None:
        db = self._conn()
        try:
            async with db.execute("SELECT value FROM kv WHERE key = ?", (key,)) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise StorageError(
                "SQLite read failed",
                context={"store": self.name, "key": key, "operation": "get", "error": str(e)},
            ) from e
        return row["value"] if row else None

    async def set(self, key: str, value: str) -> None:
        db = self._conn()
        try:
            await db.execute(
                """
                INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, value, utc_now().isoformat()),
            )
            await db.commit()
        except aiosqlite.Error as e:
            raise StorageError(
                "SQLite write failed",
                context={"store": self.name, "key": key, "operation": "set", "error": str(e)},
            ) from e

    async def remove(self, key: str) -> None:
        db = self._conn()
        try:
            await db.execute("DELETE FROM kv WHERE key = ?", (key,))
            await db.commit()
        except aiosqlite.Error as e:
            raise StorageError(
                "SQLite delete failed",
                context={"store": self.name, "key": key, "operation": "remove", "error": str(e)},
            ) from e

    async def count(self) -> int:
        """Get total number of stored keys."""
        async with self._conn().execute("SELECT COUNT(*) FROM kv") as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0
