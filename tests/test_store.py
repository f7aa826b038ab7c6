"""Tests for the durable key-value store."""

from pathlib import Path

import aiosqlite
import pytest

from rfq_tracker.core.errors import PersistenceError
from rfq_tracker.db import (
    MemoryKeyValueStore,
    SqliteKeyValueStore,
    init_database,
    verify_schema,
)


@pytest.fixture
async def db_path(data_dir: Path) -> Path:
    """Create a test database path."""
    return data_dir / "test.db"


@pytest.fixture
async def store(db_path: Path) -> SqliteKeyValueStore:
    """Create and initialize a SqliteKeyValueStore."""
    store = SqliteKeyValueStore(db_path)
    await store.initialize()
    return store


class TestDatabaseInitialization:
    """Tests for database initialization."""

    @pytest.mark.asyncio
    async def test_init_database_creates_file(self, db_path: Path) -> None:
        """Test that init_database creates the database file."""
        assert not db_path.exists()
        await init_database(db_path)
        assert db_path.exists()

    @pytest.mark.asyncio
    async def test_init_database_enables_wal_mode(self, db_path: Path) -> None:
        """Test that WAL mode is enabled."""
        await init_database(db_path)

        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("PRAGMA journal_mode")
            row = await cursor.fetchone()
            assert row[0].lower() == "wal"

    @pytest.mark.asyncio
    async def test_init_database_is_idempotent(self, db_path: Path) -> None:
        """Test that initializing twice keeps the schema intact."""
        await init_database(db_path)
        await init_database(db_path)
        assert await verify_schema(db_path)

    @pytest.mark.asyncio
    async def test_verify_schema_missing_table(self, db_path: Path) -> None:
        """Test that an empty database fails verification."""
        async with aiosqlite.connect(db_path) as db:
            await db.execute("CREATE TABLE other (id INTEGER)")
            await db.commit()
        assert not await verify_schema(db_path)


class TestSqliteKeyValueStore:
    """Tests for SqliteKeyValueStore operations."""

    @pytest.mark.asyncio
    async def test_put_and_get(self, store: SqliteKeyValueStore) -> None:
        """Test that a stored value is read back as bytes."""
        await store.put("rfq_tracker:ledger", b'{"batch_id": "b1"}')
        assert await store.get("rfq_tracker:ledger") == b'{"batch_id": "b1"}'

    @pytest.mark.asyncio
    async def test_get_missing_key(self, store: SqliteKeyValueStore) -> None:
        """Test that a missing key returns None."""
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_put_overwrites(self, store: SqliteKeyValueStore) -> None:
        """Test that put replaces an existing value."""
        await store.put("k", b"one")
        await store.put("k", b"two")
        assert await store.get("k") == b"two"

    @pytest.mark.asyncio
    async def test_delete(self, store: SqliteKeyValueStore) -> None:
        """Test that delete removes the key and tolerates missing keys."""
        await store.put("k", b"v")
        await store.delete("k")
        await store.delete("k")
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_values_survive_reopen(self, store: SqliteKeyValueStore, db_path: Path) -> None:
        """Test that a new store instance sees earlier writes."""
        await store.put("k", b"durable")
        await store.checkpoint_wal()

        reopened = SqliteKeyValueStore(db_path)
        await reopened.initialize()
        assert await reopened.get("k") == b"durable"

    @pytest.mark.asyncio
    async def test_missing_schema_raises_persistence_error(self, db_path: Path) -> None:
        """Test that SQLite errors surface as PersistenceError."""
        uninitialized = SqliteKeyValueStore(db_path)
        with pytest.raises(PersistenceError) as exc_info:
            await uninitialized.get("k")
        assert exc_info.value.key == "k"


class TestMemoryKeyValueStore:
    """Tests for the in-memory store."""

    @pytest.mark.asyncio
    async def test_basic_operations(self) -> None:
        """Test put, get and delete."""
        store = MemoryKeyValueStore()
        await store.put("k", b"v")
        assert await store.get("k") == b"v"
        await store.delete("k")
        await store.delete("k")
        assert await store.get("k") is None
