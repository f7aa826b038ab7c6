"""SQLite schema and initialization for the durable key-value store.

A single table backs every persisted record (dispatch ledger, baseline,
progress snapshot, counted reply sets, in-flight marker). The engine owns
the serialization; the database only sees opaque bytes per key.

Usage:
    from rfq_tracker.db.models import init_database

    await init_database("data/rfq_tracker.db")
"""

import stat
from pathlib import Path

import aiosqlite

from rfq_tracker.core.errors import PersistenceError
from rfq_tracker.core.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

REQUIRED_TABLES = ("kv_store",)

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value BLOB NOT NULL,
    updated_at TEXT DEFAULT (datetime('now'))
);
"""


async def init_database(db_path: str | Path) -> None:
    """Create the database file and schema if missing, in WAL mode.

    The file is restricted to its owner (mode 600); it holds supplier
    addresses and subjects.

    Raises:
        PersistenceError: If the database cannot be created or opened
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("PRAGMA journal_mode=WAL")
            mode = await cursor.fetchone()
            if mode and str(mode[0]).lower() != "wal":
                logger.warning("wal_mode_not_enabled", actual=mode[0], db_path=str(db_path))

            await db.executescript(SCHEMA_SQL)
            await db.commit()
    except aiosqlite.Error as e:
        logger.error("database_init_failed", db_path=str(db_path), error=str(e))
        raise PersistenceError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e

    db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
    for suffix in ("-wal", "-shm"):
        side_file = db_path.with_suffix(db_path.suffix + suffix)
        if side_file.exists():
            side_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

    logger.info("database_initialized", db_path=str(db_path), schema_version=SCHEMA_VERSION)


async def verify_schema(db_path: str | Path) -> bool:
    """Check that every required table exists.

    Returns:
        True if the schema is complete, False otherwise (including on error)
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing = {row[0] for row in await cursor.fetchall()}
    except aiosqlite.Error as e:
        logger.error("schema_verification_failed", db_path=str(db_path), error=str(e))
        return False

    missing = set(REQUIRED_TABLES) - existing
    if missing:
        logger.warning("database_tables_missing", missing=sorted(missing), db_path=str(db_path))
        return False
    return True
