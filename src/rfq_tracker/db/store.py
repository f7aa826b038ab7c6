"""Durable key-value store.

The engine persists its records through the ``KeyValueStore`` protocol and
never assumes a storage engine. ``SqliteKeyValueStore`` is the production
implementation (aiosqlite, WAL); ``MemoryKeyValueStore`` keeps everything in
a dict for tests and dry runs.

Usage:
    store = SqliteKeyValueStore("data/rfq_tracker.db")
    await store.initialize()
    await store.put("rfq_tracker:ledger", b"{...}")
    raw = await store.get("rfq_tracker:ledger")
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Protocol

import aiosqlite

from rfq_tracker.core.errors import PersistenceError
from rfq_tracker.core.logging import get_logger
from rfq_tracker.db.models import init_database

logger = get_logger(__name__)


class KeyValueStore(Protocol):
    """Generic durable key-value interface."""

    async def get(self, key: str) -> bytes | None: ...

    async def put(self, key: str, value: bytes) -> None: ...

    async def delete(self, key: str) -> None: ...


class SqliteKeyValueStore:
    """KeyValueStore on a single SQLite table.

    Every operation opens its own connection, so the store is safe to share
    between the CLI's event loop and the web app's request handlers.

    Raises PersistenceError (wrapping aiosqlite.Error) from every method.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        """Create the schema if needed. Must be called before any other operation."""
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open a connection with the reliability PRAGMAs set.

        - busy_timeout: 10s, for the CLI and web app writing concurrently
        - synchronous: NORMAL (safe with WAL)
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA synchronous = NORMAL")
            yield db

    async def get(self, key: str) -> bytes | None:
        """Get the value for a key, or None if absent."""
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            logger.error("kv_get_failed", key=key, error=str(e))
            raise PersistenceError(f"Failed to read key '{key}' from {self.db_path}: {e}", key=key) from e

        if row is None:
            return None
        value = row[0]
        return value.encode("utf-8") if isinstance(value, str) else bytes(value)

    async def put(self, key: str, value: bytes) -> None:
        """Insert or replace the value for a key."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO kv_store (key, value, updated_at)
                    VALUES (?, ?, datetime('now'))
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (key, value),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("kv_put_failed", key=key, error=str(e))
            raise PersistenceError(f"Failed to write key '{key}' to {self.db_path}: {e}", key=key) from e

    async def delete(self, key: str) -> None:
        """Delete a key. Deleting a missing key is a no-op."""
        try:
            async with self._db() as db:
                await db.execute("DELETE FROM kv_store WHERE key = ?", (key,))
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("kv_delete_failed", key=key, error=str(e))
            raise PersistenceError(f"Failed to delete key '{key}' from {self.db_path}: {e}", key=key) from e

    async def checkpoint_wal(self) -> None:
        """Checkpoint and truncate the WAL file. Failures are logged, not raised."""
        try:
            async with self._db() as db:
                await db.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        except aiosqlite.Error as e:
            logger.warning("wal_checkpoint_failed", error=str(e))


class MemoryKeyValueStore:
    """In-process KeyValueStore. Nothing survives the process."""

    def __init__(self) -> None:
        self.data: dict[str, bytes] = {}

    async def get(self, key: str) -> bytes | None:
        return self.data.get(key)

    async def put(self, key: str, value: bytes) -> None:
        self.data[key] = bytes(value)

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)
