"""Persistent key-value stores backing the tiered cache.

SqliteKeyValueStore uses aiosqlite for non-blocking access with WAL mode.
MemoryKeyValueStore keeps everything in a dict (tests, or CACHE_PERSIST=false).

Stores speak plain strings; encoding is the cache's concern. Any failure is
raised as PersistenceError so the cache can log it and carry on in memory.
"""

import os
from abc import ABC, abstractmethod
from typing import Self

import aiosqlite

from price_engine.exceptions import PersistenceError
from price_engine.logging import get_logger

logger = get_logger(__name__)

_CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at REAL NOT NULL DEFAULT (strftime('%s', 'now'))
);
"""


class KeyValueStore(ABC):
    """Minimal async string store, modelled on browser localStorage."""

    @abstractmethod
    async def get_item(self, key: str) -> str | None:
        ...

    @abstractmethod
    async def set_item(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    async def remove_item(self, key: str) -> None:
        ...

    @abstractmethod
    async def keys(self, prefix: str = "") -> list[str]:
        """Return all keys starting with prefix."""
        ...


class MemoryKeyValueStore(KeyValueStore):
    """Dict-backed store. Never fails."""

    def __init__(self) -> None:
        self._items: dict[str, str] = {}

    async def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    async def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    async def keys(self, prefix: str = "") -> list[str]:
        return [k for k in self._items if k.startswith(prefix)]


class SqliteKeyValueStore(KeyValueStore):
    """aiosqlite-backed store.

    Usage:
        async with SqliteKeyValueStore("data/price_cache.db") as store:
            await store.set_item("cache_XLM", "...")
    """

    def __init__(self, db_path: str = "data/price_cache.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        """Access the raw aiosqlite connection.

        Raises PersistenceError if not connected.
        """
        if self._connection is None:
            raise PersistenceError("Key-value store not connected. Call connect() first.")
        return self._connection

    async def connect(self) -> None:
        """Open the database, configure pragmas, and create the table."""
        db_dir = os.path.dirname(self._db_path)
        try:
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)
            self._connection = await aiosqlite.connect(self._db_path)
            await self._connection.execute("PRAGMA journal_mode=WAL")
            await self._connection.execute("PRAGMA synchronous=NORMAL")
            await self._connection.executescript(_CREATE_TABLE_SQL)
            await self._connection.commit()
        except (aiosqlite.Error, OSError) as e:
            raise PersistenceError(f"Cannot open {self._db_path}: {e}") from e
        logger.info("kv_store_connected", db_path=self._db_path)

    async def close(self) -> None:
        """Close the connection if open."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("kv_store_closed", db_path=self._db_path)

    async def get_item(self, key: str) -> str | None:
        try:
            cursor = await self.db.execute(
                "SELECT value FROM kv_store WHERE key = ?", (key,)
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise PersistenceError(f"get_item({key}) failed: {e}") from e
        return row[0] if row is not None else None

    async def set_item(self, key: str, value: str) -> None:
        try:
            await self.db.execute(
                "INSERT OR REPLACE INTO kv_store (key, value, updated_at) "
                "VALUES (?, ?, strftime('%s', 'now'))",
                (key, value),
            )
            await self.db.commit()
        except aiosqlite.Error as e:
            raise PersistenceError(f"set_item({key}) failed: {e}") from e

    async def remove_item(self, key: str) -> None:
        try:
            await self.db.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            await self.db.commit()
        except aiosqlite.Error as e:
            raise PersistenceError(f"remove_item({key}) failed: {e}") from e

    async def keys(self, prefix: str = "") -> list[str]:
        try:
            # Exact, case-sensitive prefix match; "_" is literal.
            cursor = await self.db.execute(
                "SELECT key FROM kv_store WHERE substr(key, 1, ?) = ?",
                (len(prefix), prefix),
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise PersistenceError(f"keys({prefix}) failed: {e}") from e
        return [row[0] for row in rows]

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()
