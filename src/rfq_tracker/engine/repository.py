"""Typed persistence for batch records on top of the key-value store.

All records live under the ``rfq_tracker:`` key prefix as UTF-8 JSON.

Write failures are logged and reported as ``False`` rather than raised: an
in-memory batch stays usable when the disk is unavailable, it just will not
survive a restart. Read failures and corrupt values are logged and treated as
"nothing stored".

Usage:
    from rfq_tracker.engine.repository import BatchRepository

    repo = BatchRepository(store)
    await repo.save_batch(batch)
    batch = await repo.load_batch()
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any, TypeVar

from rfq_tracker.core.errors import PersistenceError
from rfq_tracker.core.logging import get_logger
from rfq_tracker.engine.records import (
    Baseline,
    CountedReplySet,
    DispatchBatch,
    InFlightMarker,
    ProgressSnapshot,
)

if TYPE_CHECKING:
    from rfq_tracker.db.store import KeyValueStore

logger = get_logger(__name__)

T = TypeVar("T")

KEY_PREFIX = "rfq_tracker:"

LEDGER_KEY = f"{KEY_PREFIX}ledger"
BASELINE_KEY = f"{KEY_PREFIX}baseline"
SNAPSHOT_KEY = f"{KEY_PREFIX}snapshot"
COUNTED_KEY = f"{KEY_PREFIX}counted_replies"
FILED_KEY = f"{KEY_PREFIX}filed_replies"
INFLIGHT_KEY = f"{KEY_PREFIX}inflight"

# Everything describing the active batch. The snapshot is kept on clear so the
# last progress stays visible after completion.
BATCH_KEYS = (LEDGER_KEY, BASELINE_KEY, COUNTED_KEY, FILED_KEY)


class BatchRepository:
    """Loads and saves batch records through a KeyValueStore."""

    def __init__(self, store: KeyValueStore):
        self._store = store

    # ------------------------------------------------------------------
    # Raw JSON helpers
    # ------------------------------------------------------------------

    async def _save_json(self, key: str, payload: Any) -> bool:
        try:
            await self._store.put(key, json.dumps(payload).encode("utf-8"))
        except PersistenceError as e:
            logger.error("batch_record_save_failed", key=key, error=str(e))
            return False
        return True

    async def _load_json(self, key: str) -> Any | None:
        try:
            raw = await self._store.get(key)
        except PersistenceError as e:
            logger.warning("batch_record_load_failed", key=key, error=str(e))
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning("batch_record_corrupt", key=key, error=str(e))
            return None

    async def _load_record(self, key: str, parse: Callable[[Any], T]) -> T | None:
        data = await self._load_json(key)
        if data is None:
            return None
        try:
            return parse(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("batch_record_corrupt", key=key, error=str(e))
            return None

    async def _delete(self, key: str) -> bool:
        try:
            await self._store.delete(key)
        except PersistenceError as e:
            logger.error("batch_record_delete_failed", key=key, error=str(e))
            return False
        return True

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    async def save_batch(self, batch: DispatchBatch) -> bool:
        return await self._save_json(LEDGER_KEY, batch.to_dict())

    async def load_batch(self) -> DispatchBatch | None:
        return await self._load_record(LEDGER_KEY, DispatchBatch.from_dict)

    # ------------------------------------------------------------------
    # Baseline
    # ------------------------------------------------------------------

    async def save_baseline(self, baseline: Baseline) -> bool:
        return await self._save_json(BASELINE_KEY, baseline.to_dict())

    async def load_baseline(self) -> Baseline | None:
        return await self._load_record(BASELINE_KEY, Baseline.from_dict)

    # ------------------------------------------------------------------
    # Progress snapshot
    # ------------------------------------------------------------------

    async def save_snapshot(self, snapshot: ProgressSnapshot) -> bool:
        return await self._save_json(SNAPSHOT_KEY, snapshot.to_dict())

    async def load_snapshot(self) -> ProgressSnapshot | None:
        return await self._load_record(SNAPSHOT_KEY, ProgressSnapshot.from_dict)

    # ------------------------------------------------------------------
    # Counted / filed reply sets
    # ------------------------------------------------------------------

    async def save_counted(self, counted: Iterable[str]) -> bool:
        return await self._save_json(COUNTED_KEY, sorted(counted))

    async def load_counted(self) -> CountedReplySet:
        ids = await self._load_record(COUNTED_KEY, _string_list)
        return CountedReplySet(ids or ())

    async def save_filed(self, filed: Iterable[str]) -> bool:
        return await self._save_json(FILED_KEY, sorted(filed))

    async def load_filed(self) -> set[str]:
        ids = await self._load_record(FILED_KEY, _string_list)
        return set(ids or ())

    # ------------------------------------------------------------------
    # In-flight marker
    # ------------------------------------------------------------------

    async def save_marker(self, marker: InFlightMarker) -> bool:
        return await self._save_json(INFLIGHT_KEY, marker.to_dict())

    async def load_marker(self) -> InFlightMarker | None:
        return await self._load_record(INFLIGHT_KEY, InFlightMarker.from_dict)

    async def clear_marker(self) -> bool:
        return await self._delete(INFLIGHT_KEY)

    # ------------------------------------------------------------------
    # Batch lifecycle
    # ------------------------------------------------------------------

    async def clear_batch(self, *, include_snapshot: bool = False) -> bool:
        """Delete the active batch's ledger, baseline and reply sets.

        Args:
            include_snapshot: Also delete the last progress snapshot

        Returns:
            True if every delete succeeded
        """
        keys = (*BATCH_KEYS, SNAPSHOT_KEY) if include_snapshot else BATCH_KEYS
        results = [await self._delete(key) for key in keys]
        return all(results)


def _string_list(data: Any) -> list[str]:
    if not isinstance(data, list):
        raise TypeError(f"expected a list of ids, got {type(data).__name__}")
    return [str(item) for item in data]
