"""Dispatch ledger: the durable record of what one batch actually sent.

The ledger holds at most one active batch. Each confirmed send appends a
DispatchRecord and the whole batch is persisted immediately, so a crash
never loses a send that was acknowledged.

Usage:
    ledger = DispatchLedger(repository)
    batch = await ledger.begin(["MAT-1001", "MAT-1002"], expected_total=2)
    await ledger.record_send(record)
"""

from __future__ import annotations

import asyncio
import uuid
from typing import TYPE_CHECKING

from rfq_tracker.core.errors import BatchStateError
from rfq_tracker.core.logging import get_logger
from rfq_tracker.engine.records import DispatchBatch, DispatchRecord, utc_now

if TYPE_CHECKING:
    from rfq_tracker.engine.repository import BatchRepository

logger = get_logger(__name__)


class DispatchLedger:
    """Append-only record of sent messages for the active batch."""

    def __init__(self, repository: BatchRepository):
        self._repository = repository
        self._batch: DispatchBatch | None = None
        self._lock = asyncio.Lock()

    @property
    def batch(self) -> DispatchBatch | None:
        return self._batch

    async def load(self) -> DispatchBatch | None:
        """Load the persisted batch, if any, replacing the in-memory one."""
        self._batch = await self._repository.load_batch()
        if self._batch is not None:
            logger.info(
                "ledger_loaded",
                batch_id=self._batch.batch_id,
                sent_count=self._batch.sent_count,
            )
        return self._batch

    async def begin(
        self,
        correlation_keys: list[str] | tuple[str, ...] = (),
        expected_total: int | None = None,
        batch_id: str | None = None,
    ) -> DispatchBatch:
        """Start a new batch, discarding any previous one.

        Args:
            correlation_keys: Material codes the batch is about
            expected_total: Number of sends the caller intends to make
            batch_id: Explicit id (a UUID4 is generated when None)

        Returns:
            The new, empty batch
        """
        async with self._lock:
            now = utc_now()
            self._batch = DispatchBatch(
                batch_id=batch_id or str(uuid.uuid4()),
                started_at=now,
                correlation_keys=tuple(k.upper() for k in correlation_keys),
                expected_total=expected_total,
                updated_at=now,
            )
            await self._repository.save_batch(self._batch)

        logger.info(
            "batch_started",
            batch_id=self._batch.batch_id,
            correlation_keys=list(self._batch.correlation_keys),
            expected_total=expected_total,
        )
        return self._batch

    async def record_send(self, record: DispatchRecord) -> DispatchBatch:
        """Append a confirmed send and persist the batch.

        A record whose provider_message_id is already in the batch is ignored,
        so retried acknowledgements cannot inflate sent_count.

        Raises:
            BatchStateError: If no batch is active
        """
        async with self._lock:
            batch = self.get_batch()
            if record.provider_message_id in batch.provider_message_ids:
                logger.warning(
                    "duplicate_send_ignored",
                    batch_id=batch.batch_id,
                    provider_message_id=record.provider_message_id[:20],
                )
                return batch

            self._batch = batch.with_record(record)
            await self._repository.save_batch(self._batch)

        logger.info(
            "send_recorded",
            batch_id=self._batch.batch_id,
            correlation_key=record.correlation_key,
            sent_count=self._batch.sent_count,
        )
        return self._batch

    async def record_failure(self) -> DispatchBatch:
        """Count a failed send. Raises BatchStateError if no batch is active."""
        async with self._lock:
            self._batch = self.get_batch().with_failure()
            await self._repository.save_batch(self._batch)
        return self._batch

    def get_batch(self) -> DispatchBatch:
        """The active batch.

        Raises:
            BatchStateError: If no batch is active
        """
        if self._batch is None:
            raise BatchStateError("No active batch")
        return self._batch

    async def clear(self) -> None:
        """Forget the active batch in memory and in storage."""
        async with self._lock:
            batch_id = self._batch.batch_id if self._batch else None
            self._batch = None
            await self._repository.clear_batch()
        logger.info("ledger_cleared", batch_id=batch_id)
