"""Batch control: the one entry point callers use to run a batch.

    handle = await controller.start_batch(["MAT-1001", "MAT-1002"], expected_total=2)
    await controller.record_send(handle, sent_message)
    await controller.finish_sending(handle)
    await controller.start_monitoring(handle)
    snapshot = controller.get_snapshot(handle)

The controller owns the ledger, the baseline establisher, the single
reconciliation poller and the published ProgressSnapshot. Observers
subscribed with ``subscribe()`` receive every new snapshot, after each send
and after each poll tick.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from rfq_tracker.classifier.rules import ReplyClassifier
from rfq_tracker.classifier.subject import extract_correlation_key
from rfq_tracker.core.errors import BatchStateError
from rfq_tracker.core.logging import get_logger
from rfq_tracker.engine.baseline import BaselineEstablisher
from rfq_tracker.engine.ledger import DispatchLedger
from rfq_tracker.engine.poller import PollerHandle, PollerState, ProgressCallback, ReconciliationPoller
from rfq_tracker.engine.records import (
    DispatchRecord,
    InFlightMarker,
    MarkerPhase,
    ProgressSnapshot,
    SendResult,
    utc_now,
)
from rfq_tracker.engine.recovery import RecoveryOutcome, RecoveryRoutine

if TYPE_CHECKING:
    from rfq_tracker.config_schema import AppConfig
    from rfq_tracker.engine.records import DispatchBatch
    from rfq_tracker.engine.repository import BatchRepository
    from rfq_tracker.graph.gateway import MailGateway
    from rfq_tracker.graph.models import SentMessage

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class BatchHandle:
    """Caller-held reference to a batch. Stale once another batch starts."""

    batch_id: str
    started_at: datetime
    correlation_keys: tuple[str, ...] = ()


class BatchController:
    """Batch Control API over ledger, baseline, poller and recovery.

    Attributes:
        ledger: Dispatch ledger of the active batch
        poller: The process's single reconciliation poller
    """

    def __init__(
        self,
        gateway: MailGateway,
        repository: BatchRepository,
        config: AppConfig,
        classifier: ReplyClassifier | None = None,
        now: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self._repository = repository
        self._config = config
        self.ledger = DispatchLedger(repository)
        self._baseline = BaselineEstablisher(gateway, repository, config, now)
        self.poller = ReconciliationPoller(
            gateway,
            classifier or ReplyClassifier(config.classifier),
            repository,
            config,
            monotonic,
        )
        self._recovery = RecoveryRoutine(repository, config, now)
        self._snapshot = ProgressSnapshot()
        self._observers: list[ProgressCallback] = []
        self._watch_task: asyncio.Task[PollerState] | None = None
        self._recovery_message: str | None = None

    # ------------------------------------------------------------------
    # Batch lifecycle
    # ------------------------------------------------------------------

    async def start_batch(
        self,
        correlation_keys: list[str] | tuple[str, ...] = (),
        expected_total: int | None = None,
    ) -> BatchHandle:
        """Start a new batch. Any running monitoring is cancelled first."""
        self.poller.cancel()
        await self._repository.clear_batch()
        batch = await self.ledger.begin(correlation_keys, expected_total)

        self._snapshot = ProgressSnapshot(
            batch_id=batch.batch_id,
            expected_total=expected_total,
            material_codes=batch.material_codes,
        )
        await self._repository.save_snapshot(self._snapshot)
        await self._publish(self._snapshot)
        return _handle_for(batch)

    def current_handle(self) -> BatchHandle | None:
        """Handle for the active (possibly recovered) batch."""
        batch = self.ledger.batch
        return _handle_for(batch) if batch is not None else None

    async def record_send(
        self,
        handle: BatchHandle,
        sent: SentMessage,
        *,
        local_id: str | None = None,
        correlation_key: str | None = None,
        scheduled: bool = False,
    ) -> ProgressSnapshot:
        """Record a confirmed send.

        Args:
            handle: Batch handle from start_batch
            sent: The confirmed sent message
            local_id: Caller-side id (defaults to the sent message id)
            correlation_key: Material code (extracted from the subject when None)
            scheduled: Whether the scheduled stage is already satisfied for this send

        Returns:
            The published snapshot

        Raises:
            BatchStateError: If the handle is stale
        """
        self._check(handle)
        key = correlation_key or extract_correlation_key(
            sent.subject, self._config.classifier.correlation_pattern
        )
        before = self.ledger.get_batch().sent_count
        batch = await self.ledger.record_send(
            DispatchRecord(
                local_id=local_id or sent.id,
                provider_message_id=sent.id,
                conversation_id=sent.conversation_id,
                correlation_key=key,
                sent_at=sent.sent_at,
                subject=sent.subject,
                recipient=sent.recipient,
            )
        )
        added = batch.sent_count - before
        return await self._advance(
            batch,
            sent_count=batch.sent_count,
            scheduled_count=self._snapshot.scheduled_count + (added if scheduled else 0),
            material_codes=batch.material_codes,
        )

    async def record_scheduled(self, handle: BatchHandle, count: int = 1) -> ProgressSnapshot:
        """Count auto-replies scheduled for already-recorded sends."""
        self._check(handle)
        return await self._advance(
            self.ledger.get_batch(),
            scheduled_count=self._snapshot.scheduled_count + count,
        )

    async def record_send_failure(self, handle: BatchHandle, reason: str | None = None) -> ProgressSnapshot:
        """Count a failed send. The batch continues with the remaining drafts."""
        self._check(handle)
        batch = await self.ledger.record_failure()
        logger.warning("send_failed", batch_id=batch.batch_id, failed_count=batch.failed_count, reason=reason)
        return await self._advance(batch, failed_count=batch.failed_count)

    async def mark_sending(self, handle: BatchHandle) -> InFlightMarker:
        """Persist a "sending" marker with the current counts, before a send."""
        self._check(handle)
        return await self._write_marker("sending")

    async def finish_sending(
        self,
        handle: BatchHandle,
        result: SendResult | None = None,
        *,
        projected_sent: int | None = None,
    ) -> InFlightMarker:
        """Mark sending finished and leave the completion banner for the next start.

        Args:
            handle: Batch handle
            result: Outcome; derived from the sent and failed counts when None
            projected_sent: Count to report instead of the ledger's, for the
                marker written just before the final send
        """
        self._check(handle)
        batch = self.ledger.get_batch()
        sent = projected_sent if projected_sent is not None else batch.sent_count
        if result is None:
            if sent == 0:
                result = "error"
            elif batch.failed_count:
                result = "partial"
            else:
                result = "success"
        return await self._write_marker("idle", result=result, sent_count=sent)

    async def abandon(self) -> None:
        """Drop the active batch and all of its persisted state."""
        batch_id = self.ledger.batch.batch_id if self.ledger.batch else None
        self.poller.cancel()
        await self.ledger.clear()
        await self._repository.clear_batch(include_snapshot=True)
        await self._repository.clear_marker()
        self._snapshot = ProgressSnapshot()
        logger.info("batch_abandoned", batch_id=batch_id)
        await self._publish(self._snapshot)

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    async def start_monitoring(self, handle: BatchHandle, *, autorun: bool = True) -> PollerHandle:
        """Establish the baseline and start the reconciliation poller.

        Raises:
            BatchStateError: If the handle is stale or nothing was sent
        """
        self._check(handle)
        batch = self.ledger.get_batch()
        if batch.sent_count == 0:
            raise BatchStateError(f"Batch {batch.batch_id} has no sent RFQs to monitor")

        baseline = await self._baseline.establish(
            batch.material_codes, batch.records, batch_id=batch.batch_id
        )
        poller_handle = await self.poller.start(
            batch,
            baseline,
            self._on_poll_progress,
            snapshot=self._snapshot,
            autorun=autorun,
        )
        self._snapshot = self.poller.snapshot
        self._watch_task = asyncio.create_task(self._watch(poller_handle))
        return poller_handle

    async def cancel_monitoring(self, handle: BatchHandle) -> ProgressSnapshot:
        """Stop polling. The last snapshot is kept and the batch stays restartable."""
        self._check(handle)
        self.poller.cancel()
        return self._snapshot

    async def wait_monitoring(self, timeout: float | None = None) -> PollerState:
        """Wait for the current monitoring run, and its completion handling, to finish."""
        if self._watch_task is None:
            return self.poller.state
        try:
            return await asyncio.wait_for(asyncio.shield(self._watch_task), timeout)
        except TimeoutError:
            return self.poller.state

    async def _watch(self, poller_handle: PollerHandle) -> PollerState:
        state = await poller_handle.wait()
        if state == PollerState.COMPLETED and poller_handle is self.poller.handle:
            # Batch done: forget the ledger, keep the final snapshot
            await self.ledger.clear()
            logger.info(
                "batch_completed",
                batch_id=poller_handle.batch_id,
                received_count=self._snapshot.received_count,
                filed_count=self._snapshot.filed_count,
            )
        elif state == PollerState.TIMED_OUT:
            logger.info(
                "batch_monitoring_timed_out",
                batch_id=poller_handle.batch_id,
                received_count=self._snapshot.received_count,
                sent_count=self._snapshot.sent_count,
            )
        return state

    async def _on_poll_progress(self, snapshot: ProgressSnapshot) -> None:
        if snapshot.batch_id != self._snapshot.batch_id:
            logger.debug("stale_poll_progress_ignored", batch_id=snapshot.batch_id)
            return
        # Scheduled count may have moved since the poller last merged it
        self._snapshot = snapshot.advance(scheduled_count=self._snapshot.scheduled_count)
        await self._publish(self._snapshot)

    def shutdown(self) -> None:
        self.poller.shutdown()

    # ------------------------------------------------------------------
    # Snapshot, observers, recovery
    # ------------------------------------------------------------------

    def get_snapshot(self, handle: BatchHandle | None = None) -> ProgressSnapshot:
        """Current snapshot. A handle for another batch raises BatchStateError."""
        if handle is not None and handle.batch_id != self._snapshot.batch_id:
            raise BatchStateError(f"Stale batch handle: {handle.batch_id}")
        return self._snapshot

    def subscribe(self, observer: ProgressCallback) -> Callable[[], None]:
        """Register a progress observer. Returns a function that unsubscribes it."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    async def recover(self) -> RecoveryOutcome:
        """Run startup recovery and adopt whatever it restored."""
        outcome = await self._recovery.run()
        if outcome.batch is not None:
            await self.ledger.load()
        if outcome.snapshot is not None:
            self._snapshot = outcome.snapshot
        self._recovery_message = outcome.message
        logger.info("recovery_complete", kind=outcome.kind.value, batch_restored=outcome.batch is not None)
        return outcome

    def take_recovery_message(self) -> str | None:
        """The recovery message, returned once."""
        message, self._recovery_message = self._recovery_message, None
        return message

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check(self, handle: BatchHandle) -> None:
        batch = self.ledger.batch
        if batch is None or batch.batch_id != handle.batch_id:
            raise BatchStateError(f"Stale batch handle: {handle.batch_id}")

    async def _advance(self, batch: DispatchBatch, **changes: object) -> ProgressSnapshot:
        self._snapshot = self._snapshot.advance(**changes)
        self.poller.update_batch(batch, self._snapshot)
        await self._repository.save_snapshot(self._snapshot)
        await self._publish(self._snapshot)
        return self._snapshot

    async def _write_marker(
        self,
        phase: MarkerPhase,
        result: SendResult | None = None,
        sent_count: int | None = None,
    ) -> InFlightMarker:
        batch = self.ledger.get_batch()
        sent = batch.sent_count if sent_count is None else sent_count
        marker = InFlightMarker(
            phase=phase,
            batch_id=batch.batch_id,
            sent_count=sent,
            total=max(batch.expected_total or 0, sent + batch.failed_count),
            scheduled_count=min(self._snapshot.scheduled_count, sent),
            failed_count=batch.failed_count,
            material_codes=batch.material_codes,
            last_result=result,
            show_banner=phase == "idle",
        )
        await self._repository.save_marker(marker)
        return marker

    async def _publish(self, snapshot: ProgressSnapshot) -> None:
        for observer in list(self._observers):
            try:
                outcome = observer(snapshot)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error("progress_observer_failed", error=str(e), error_type=type(e).__name__)


def _handle_for(batch: DispatchBatch) -> BatchHandle:
    return BatchHandle(
        batch_id=batch.batch_id,
        started_at=batch.started_at,
        correlation_keys=batch.correlation_keys,
    )
