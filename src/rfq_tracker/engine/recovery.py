"""Startup recovery from the persisted in-flight marker and batch records.

Runs once when the process starts, before anything else touches the batch:

- marker phase "sending": the process died mid-batch. Report how many RFQs
  went out, restore the snapshot to that count and clear the marker. The
  poller is not resumed; which drafts were still queued is unknown.
- marker phase "idle" with a pending banner: the batch finished. Show the
  completion banner once, then clear the marker.
- a batch older than the recovery window: acknowledged and cleared.
- a recent batch: ledger and snapshot restored, monitoring left to the caller.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING

from rfq_tracker.core.logging import get_logger
from rfq_tracker.engine.records import ProgressSnapshot, utc_now

if TYPE_CHECKING:
    from rfq_tracker.config_schema import AppConfig
    from rfq_tracker.engine.records import DispatchBatch, InFlightMarker
    from rfq_tracker.engine.repository import BatchRepository

logger = get_logger(__name__)


class RecoveryKind(StrEnum):
    NOTHING = "nothing"
    INTERRUPTED_SEND = "interrupted_send"
    COMPLETED_BANNER = "completed_banner"
    PARTIAL_BANNER = "partial_banner"
    RESTORED = "restored"
    STALE = "stale"


@dataclass(frozen=True, slots=True)
class RecoveryOutcome:
    """What recovery found and what to tell the user.

    Attributes:
        kind: Recovery path taken
        message: One-shot message for the user, if any
        snapshot: Snapshot to show (None when there is nothing to show)
        batch: Batch restored as the active batch, if any
    """

    kind: RecoveryKind
    message: str | None = None
    snapshot: ProgressSnapshot | None = None
    batch: DispatchBatch | None = None


def interrupted_message(sent: int, total: int) -> str:
    if sent <= 0:
        return "Sending was interrupted before any RFQ was sent. Please try again."
    return f"Sending was interrupted: {sent} of {total} RFQs sent."


def banner_message(marker: InFlightMarker) -> str:
    if marker.last_result == "partial":
        return "Most RFQs were sent. Some may need to be resent."
    if marker.last_result == "error":
        return "RFQs could not be sent. Please try again."
    return f"Sent {marker.sent_count} RFQ(s) successfully. {marker.scheduled_count} auto-replies scheduled."


class RecoveryRoutine:
    """Inspects persisted state on startup and decides what to restore."""

    def __init__(
        self,
        repository: BatchRepository,
        config: AppConfig,
        now: Callable[[], datetime] = utc_now,
    ):
        self._repository = repository
        self._config = config
        self._now = now

    @property
    def window(self) -> timedelta:
        return timedelta(minutes=self._config.monitor.recovery_window_minutes)

    async def run(self) -> RecoveryOutcome:
        marker = await self._repository.load_marker()
        snapshot = await self._repository.load_snapshot()
        batch = await self._repository.load_batch()

        if marker is not None and marker.phase == "sending":
            return await self._interrupted_send(marker, snapshot, batch)

        if marker is not None and marker.show_banner:
            await self._repository.clear_marker()
            if self._now() - marker.updated_at <= self.window:
                kind = (
                    RecoveryKind.COMPLETED_BANNER
                    if marker.last_result == "success"
                    else RecoveryKind.PARTIAL_BANNER
                )
                message = banner_message(marker)
                logger.info("recovery_banner", batch_id=marker.batch_id, result=marker.last_result)
                restored = batch if batch is not None and batch.batch_id == marker.batch_id else None
                return RecoveryOutcome(kind=kind, message=message, snapshot=snapshot, batch=restored)
            logger.info("recovery_banner_expired", batch_id=marker.batch_id)
        elif marker is not None:
            await self._repository.clear_marker()

        if batch is None:
            return RecoveryOutcome(kind=RecoveryKind.NOTHING, snapshot=snapshot)

        last_activity = batch.updated_at or batch.started_at
        if self._now() - last_activity > self.window:
            await self._repository.clear_batch(include_snapshot=True)
            logger.info(
                "recovery_stale_batch",
                batch_id=batch.batch_id,
                sent_count=batch.sent_count,
                last_activity=last_activity.isoformat(),
            )
            return RecoveryOutcome(
                kind=RecoveryKind.STALE,
                message=(
                    f"A previous batch of {batch.sent_count} RFQ(s) from "
                    f"{last_activity:%Y-%m-%d %H:%M} UTC was not restored."
                ),
            )

        if snapshot is None or snapshot.batch_id != batch.batch_id:
            snapshot = ProgressSnapshot(batch_id=batch.batch_id)
        snapshot = snapshot.advance(
            sent_count=batch.sent_count,
            failed_count=batch.failed_count,
            expected_total=batch.expected_total,
            material_codes=batch.material_codes,
        )
        logger.info("recovery_batch_restored", batch_id=batch.batch_id, sent_count=batch.sent_count)
        return RecoveryOutcome(kind=RecoveryKind.RESTORED, snapshot=snapshot, batch=batch)

    async def _interrupted_send(
        self,
        marker: InFlightMarker,
        snapshot: ProgressSnapshot | None,
        batch: DispatchBatch | None,
    ) -> RecoveryOutcome:
        same_batch = batch is not None and batch.batch_id == marker.batch_id
        sent = max(marker.sent_count, batch.sent_count if same_batch else 0)
        total = max(marker.total, sent)

        if snapshot is None or snapshot.batch_id != marker.batch_id:
            snapshot = ProgressSnapshot(batch_id=marker.batch_id)
        snapshot = snapshot.advance(
            sent_count=sent,
            scheduled_count=marker.scheduled_count,
            failed_count=marker.failed_count,
            expected_total=total,
            material_codes=marker.material_codes,
        )

        await self._repository.save_snapshot(snapshot)
        await self._repository.clear_marker()

        logger.warning(
            "recovery_interrupted_send",
            batch_id=marker.batch_id,
            sent_count=sent,
            total=total,
        )
        return RecoveryOutcome(
            kind=RecoveryKind.INTERRUPTED_SEND,
            message=interrupted_message(sent, total),
            snapshot=snapshot,
            batch=batch if same_batch else None,
        )
