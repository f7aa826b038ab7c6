"""Durable key-value persistence.

Usage:
    from rfq_tracker.db import SqliteKeyValueStore

    store = SqliteKeyValueStore("data/rfq_tracker.db")
    await store.initialize()
"""

from rfq_tracker.db.models import SCHEMA_VERSION, init_database, verify_schema
from rfq_tracker.db.store import KeyValueStore, MemoryKeyValueStore, SqliteKeyValueStore

__all__ = [
    "SCHEMA_VERSION",
    "init_database",
    "verify_schema",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "SqliteKeyValueStore",
]
