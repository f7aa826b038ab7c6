"""Reconciliation poller: counts and files supplier replies for one batch.

Runs as an APScheduler interval job on the caller's event loop. Every tick:

1. Conversation sweep: fetch every tracked conversation (bounded fan-out)
2. Supplementary sweep: inbox + destination folders, subject filtered on
   the topic marker, for replies whose conversation linkage is missing
3. Skip dispatch records, drafts, outgoing folders and already-counted ids;
   classify the rest against the baseline
4. Record ids seen inside destination folders as filed
   (with folders.file_replies, move new replies still outside one)
5. Persist the reply sets and the snapshot, publish, notify the observer
6. Stop as completed once every sent RFQ has a reply and every reply is filed

A failed gateway query is logged and skipped; it contributes nothing this
tick and is simply retried on the next one. An absolute time budget stops
the run as timed_out; the last snapshot stays valid.

Only one run is active per poller. ``start()`` pre-empts any previous run,
and cancellation is cooperative: an in-flight query completes but its
results are discarded.

Each tick generates a UUID4 poll_tick_id for log correlation.

Usage:
    poller = ReconciliationPoller(gateway, classifier, repository, config)
    handle = await poller.start(batch, baseline, on_progress=print)
    state = await handle.wait()
"""

from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from rfq_tracker.core.logging import get_logger, set_correlation_id
from rfq_tracker.engine.destinations import WatchedFolders, resolve_watched_folders
from rfq_tracker.engine.filing import ReplyFiler
from rfq_tracker.engine.records import CountedReplySet, ProgressSnapshot

if TYPE_CHECKING:
    from rfq_tracker.classifier.rules import ReplyClassifier
    from rfq_tracker.config_schema import AppConfig, ReplyKind
    from rfq_tracker.engine.records import Baseline, DispatchBatch
    from rfq_tracker.engine.repository import BatchRepository
    from rfq_tracker.graph.gateway import MailGateway
    from rfq_tracker.graph.models import Folder, Message

logger = get_logger(__name__)

ProgressCallback = Callable[[ProgressSnapshot], Awaitable[None] | None]


class PollerState(StrEnum):
    IDLE = "idle"
    POLLING = "polling"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({PollerState.COMPLETED, PollerState.TIMED_OUT, PollerState.CANCELLED})


class CancellationToken:
    """Cooperative cancellation flag checked between tick sub-steps."""

    __slots__ = ("_cancelled",)

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass(eq=False)
class PollerHandle:
    """The single owned handle of one monitoring run.

    Attributes:
        batch_id: Batch being monitored
        state: Current poller state
        token: Cancellation token for the run
        ticks: Ticks completed so far
        done: Set once the run reaches a terminal state
    """

    batch_id: str
    state: PollerState = PollerState.POLLING
    token: CancellationToken = field(default_factory=CancellationToken)
    ticks: int = 0
    done: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def active(self) -> bool:
        return self.state == PollerState.POLLING and not self.token.cancelled

    async def wait(self, timeout: float | None = None) -> PollerState:
        """Wait for the run to end. Returns the state reached (POLLING if the wait timed out)."""
        try:
            await asyncio.wait_for(self.done.wait(), timeout)
        except TimeoutError:
            pass
        return self.state


@dataclass
class TickResult:
    """Result of a single reconciliation tick."""

    tick_id: str
    duration_ms: int = 0
    messages_seen: int = 0
    new_replies: int = 0
    new_bounces: int = 0
    new_filed: int = 0
    failed_queries: int = 0
    discarded: bool = False
    state: PollerState = PollerState.POLLING
    snapshot: ProgressSnapshot | None = None


class ReconciliationPoller:
    """Periodic reconciliation of sent RFQs against mailbox replies.

    All mutable reply state (counted set, filed set, snapshot) is owned by
    the poller and only mutated from its ticks.

    Attributes:
        _gateway: Mail gateway
        _classifier: Reply/bounce classifier
        _repository: Persistence for reply sets and snapshots
        _config: Application configuration
        _monotonic: Monotonic clock used for the time budget
    """

    def __init__(
        self,
        gateway: MailGateway,
        classifier: ReplyClassifier,
        repository: BatchRepository,
        config: AppConfig,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self._gateway = gateway
        self._classifier = classifier
        self._repository = repository
        self._config = config
        self._monotonic = monotonic
        self._filer = ReplyFiler(gateway, config) if config.folders.file_replies else None

        self._scheduler: AsyncIOScheduler | None = None
        self._handle: PollerHandle | None = None
        self._batch: DispatchBatch | None = None
        self._baseline: Baseline | None = None
        self._on_progress: ProgressCallback | None = None
        self._deadline = 0.0

        self._counted = CountedReplySet()
        self._filed: set[str] = set()
        self._bounces: set[str] = set()
        self._snapshot = ProgressSnapshot()
        self._watched = WatchedFolders()

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def handle(self) -> PollerHandle | None:
        return self._handle

    @property
    def state(self) -> PollerState:
        return self._handle.state if self._handle else PollerState.IDLE

    @property
    def snapshot(self) -> ProgressSnapshot:
        return self._snapshot

    @property
    def counted(self) -> CountedReplySet:
        return self._counted

    @property
    def filed_ids(self) -> frozenset[str]:
        return frozenset(self._filed)

    async def start(
        self,
        batch: DispatchBatch,
        baseline: Baseline,
        on_progress: ProgressCallback | None = None,
        *,
        snapshot: ProgressSnapshot | None = None,
        autorun: bool = True,
    ) -> PollerHandle:
        """Start monitoring a batch, pre-empting any active run.

        Args:
            batch: Batch whose replies to reconcile
            baseline: Baseline established for the batch
            on_progress: Observer invoked with every published snapshot
            snapshot: Last known snapshot to continue from
            autorun: Schedule ticks on the event loop (tests drive tick() directly)

        Returns:
            The new PollerHandle
        """
        if self._handle is not None and self._handle.active:
            logger.info("poller_preempted", batch_id=self._handle.batch_id)
            self.cancel()

        self._batch = batch
        self._baseline = baseline
        self._on_progress = on_progress
        self._bounces = set()

        # Reply sets survive restarts; only reuse them for the same batch
        stored = await self._repository.load_snapshot()
        if stored is not None and stored.batch_id == batch.batch_id:
            self._counted = await self._repository.load_counted()
            self._filed = await self._repository.load_filed()
        else:
            self._counted = CountedReplySet()
            self._filed = set()

        base = snapshot or (stored if stored and stored.batch_id == batch.batch_id else None)
        if base is None or base.batch_id != batch.batch_id:
            base = ProgressSnapshot(batch_id=batch.batch_id)
        self._snapshot = base.advance(
            sent_count=batch.sent_count,
            failed_count=batch.failed_count,
            expected_total=batch.expected_total,
            material_codes=batch.material_codes,
        )

        handle = PollerHandle(batch_id=batch.batch_id)
        self._handle = handle
        budget = self._config.monitor.timeout_minutes * 60
        self._deadline = self._monotonic() + budget

        logger.info(
            "poller_started",
            batch_id=batch.batch_id,
            conversations=len(batch.conversation_ids),
            sent_count=batch.sent_count,
            restored_replies=len(self._counted),
            timeout_minutes=self._config.monitor.timeout_minutes,
        )

        if autorun:
            self._schedule(handle, budget)
        return handle

    def update_batch(self, batch: DispatchBatch, snapshot: ProgressSnapshot | None = None) -> None:
        """Pick up sends recorded while monitoring is running."""
        if self._batch is None or batch.batch_id != self._batch.batch_id:
            return
        self._batch = batch
        changes: dict[str, Any] = {
            "sent_count": batch.sent_count,
            "failed_count": batch.failed_count,
            "material_codes": batch.material_codes,
        }
        if snapshot is not None:
            changes["scheduled_count"] = snapshot.scheduled_count
        self._snapshot = self._snapshot.advance(**changes)

    def cancel(self) -> None:
        """Stop the active run. The last published snapshot is kept."""
        handle = self._handle
        if handle is None or handle.state in TERMINAL_STATES:
            return
        handle.token.cancel()
        self._finish(handle, PollerState.CANCELLED)

    def shutdown(self) -> None:
        """Cancel any run and stop the scheduler."""
        self.cancel()
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _schedule(self, handle: PollerHandle, budget_seconds: float) -> None:
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        if not self._scheduler.running:
            self._scheduler.start()

        now = datetime.now(UTC)
        self._scheduler.add_job(
            self._scheduled_tick,
            "interval",
            seconds=self._config.monitor.poll_interval_seconds,
            args=[handle],
            id=f"reconcile-{handle.batch_id}",
            next_run_time=now,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.add_job(
            self._on_deadline,
            "date",
            run_date=now + timedelta(seconds=budget_seconds),
            args=[handle],
            id=f"reconcile-deadline-{handle.batch_id}",
            replace_existing=True,
        )

    def _unschedule(self, batch_id: str) -> None:
        if self._scheduler is None:
            return
        for job_id in (f"reconcile-{batch_id}", f"reconcile-deadline-{batch_id}"):
            try:
                self._scheduler.remove_job(job_id)
            except JobLookupError:
                pass

    async def _scheduled_tick(self, handle: PollerHandle) -> None:
        if handle is not self._handle or not handle.active:
            return
        try:
            await self.tick()
        except Exception as e:
            logger.error("poll_tick_error", batch_id=handle.batch_id, error=str(e), error_type=type(e).__name__)

    async def _on_deadline(self, handle: PollerHandle) -> None:
        if handle is self._handle and handle.active:
            self._finish(handle, PollerState.TIMED_OUT)

    def _finish(self, handle: PollerHandle, state: PollerState) -> None:
        handle.state = state
        self._unschedule(handle.batch_id)
        handle.done.set()
        logger.info(
            "poller_stopped",
            batch_id=handle.batch_id,
            state=state.value,
            ticks=handle.ticks,
            received_count=self._snapshot.received_count,
            filed_count=self._snapshot.filed_count,
            sent_count=self._snapshot.sent_count,
        )

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self) -> TickResult | None:
        """Run one reconciliation tick.

        Returns:
            TickResult, or None when no run is active
        """
        handle = self._handle
        if handle is None or not handle.active or self._batch is None:
            return None
        if self._monotonic() >= self._deadline:
            self._finish(handle, PollerState.TIMED_OUT)
            return None

        tick_id = str(uuid.uuid4())
        set_correlation_id(tick_id)
        start_time = time.monotonic()
        result = TickResult(tick_id=tick_id)

        try:
            batch = self._batch

            # a. Conversation sweep
            conversation_msgs, failed = await self._fan_out(
                batch.conversation_ids, self._gateway.list_by_conversation, "conversation"
            )
            result.failed_queries += failed
            if handle.token.cancelled:
                result.discarded = True
                return result

            # b. Supplementary folder sweep
            folder_msgs, failed = await self._folder_sweep()
            result.failed_queries += failed
            if handle.token.cancelled:
                result.discarded = True
                return result

            # c. Classify and record filing; sets are updated before anything is published
            messages = conversation_msgs + folder_msgs
            new_kinds = self._reconcile(messages, batch, result)
            if self._filer is not None:
                await self._file_replies(handle, messages, result)

            # d. Publish
            snapshot = self._publish_counts(new_kinds)
            result.snapshot = snapshot
            if not await self._persist(handle, snapshot):
                result.discarded = True
                return result
            await self._notify(snapshot)

            handle.ticks += 1
            if not handle.active:
                result.state = handle.state
                return result

            # e. Completion
            if _is_complete(snapshot):
                self._finish(handle, PollerState.COMPLETED)
            # f. Time budget
            elif self._monotonic() >= self._deadline:
                self._finish(handle, PollerState.TIMED_OUT)

            result.state = handle.state
            return result

        finally:
            result.duration_ms = int((time.monotonic() - start_time) * 1000)
            logger.info(
                "poll_tick_complete",
                batch_id=handle.batch_id,
                duration_ms=result.duration_ms,
                messages_seen=result.messages_seen,
                new_replies=result.new_replies,
                new_bounces=result.new_bounces,
                new_filed=result.new_filed,
                failed_queries=result.failed_queries,
                discarded=result.discarded,
                state=handle.state.value,
            )
            set_correlation_id(None)

    async def _fan_out(
        self,
        keys: Iterable[str],
        query: Callable[[str], Awaitable[list[Message]]],
        source: str,
    ) -> tuple[list[Message], int]:
        """Run one query per key, at most fan_out at a time.

        Returns:
            (messages from the queries that succeeded, number that failed)
        """
        keys = list(keys)
        chunk_size = self._config.monitor.fan_out
        messages: list[Message] = []
        failed = 0

        for i in range(0, len(keys), chunk_size):
            chunk = keys[i : i + chunk_size]
            results = await asyncio.gather(*(query(key) for key in chunk), return_exceptions=True)
            for key, res in zip(chunk, results, strict=True):
                if isinstance(res, BaseException):
                    failed += 1
                    logger.warning(
                        "sweep_query_failed",
                        source=source,
                        key=key[:20] + "...",
                        error=str(res),
                        error_type=type(res).__name__,
                    )
                    continue
                messages.extend(res)

        return messages, failed

    async def _folder_sweep(self) -> tuple[list[Message], int]:
        failed = 0
        try:
            folders = await self._gateway.list_folders()
        except Exception as e:
            # Keep sweeping the folders resolved last tick
            logger.warning("folder_list_failed", error=str(e), error_type=type(e).__name__)
            folders = None
            failed += 1

        if folders is not None:
            self._watched = resolve_watched_folders(folders, self._config.folders, self._batch.material_codes)
            self._log_folder_growth(folders)

        marker = self._config.classifier.topic_marker

        async def list_folder(folder_id: str) -> list[Message]:
            messages = await self._gateway.list_by_folder(folder_id, subject_contains=marker)
            # Some providers omit parentFolderId; the folder queried is authoritative
            return [m if m.folder_id else _with_folder(m, folder_id) for m in messages]

        messages, query_failures = await self._fan_out(self._watched.sweep_ids, list_folder, "folder")
        return messages, failed + query_failures

    def _reconcile(
        self, messages: list[Message], batch: DispatchBatch, result: TickResult
    ) -> dict[str, ReplyKind]:
        """Classify new candidates and record filing. Returns the kind of each newly counted reply."""
        sent_ids = batch.provider_message_ids
        watched = self._watched
        unfiled_kind = self._config.classifier.unfiled_reply_kind
        seen: set[str] = set()
        new_kinds: dict[str, ReplyKind] = {}

        for message in messages:
            if message.id in sent_ids or message.is_draft:
                continue
            if message.folder_id in watched.excluded:
                continue
            result.messages_seen += message.id not in seen
            seen.add(message.id)

            in_destination = message.folder_id in watched.destinations

            if message.id not in self._counted:
                verdict = self._classifier.classify(message, self._baseline)
                if verdict.is_bounce and message.id not in self._bounces:
                    self._bounces.add(message.id)
                    result.new_bounces += 1
                    logger.info("bounce_detected", message_id=message.id[:20] + "...", rule=verdict.rule)
                if not verdict.is_reply:
                    continue
                self._counted.add(message.id)
                result.new_replies += 1
                new_kinds[message.id] = watched.destinations[message.folder_id] if in_destination else unfiled_kind
                logger.info(
                    "reply_counted",
                    message_id=message.id[:20] + "...",
                    in_destination=in_destination,
                )

            if in_destination and message.id not in self._filed:
                self._filed.add(message.id)
                result.new_filed += 1

        return new_kinds

    async def _file_replies(self, handle: PollerHandle, messages: list[Message], result: TickResult) -> None:
        """Move counted replies still outside every destination folder.

        A reply outside a destination folder was tallied with the unfiled
        kind when first counted, so it is routed by that kind. One that
        failed to move is tried again on the next tick that sees it.
        """
        filed, counted, watched = self._filed, self._counted, self._watched
        kind = self._config.classifier.unfiled_reply_kind
        pending = {
            m.id: m
            for m in messages
            if m.id in counted
            and m.id not in filed
            and m.folder_id not in watched.destinations
            and m.folder_id not in watched.excluded
        }
        for message_id, message in pending.items():
            if handle.token.cancelled:
                return
            # Ids are immutable, so the moved message keeps its counted id
            if await self._filer.file(message, kind):
                filed.add(message_id)
                result.new_filed += 1

    def _publish_counts(self, kinds: dict[str, ReplyKind]) -> ProgressSnapshot:
        quotes = sum(1 for kind in kinds.values() if kind == "quote")
        clarifications = sum(1 for kind in kinds.values() if kind == "clarification")

        current = self._snapshot
        self._snapshot = current.advance(
            sent_count=self._batch.sent_count,
            failed_count=self._batch.failed_count,
            received_count=len(self._counted),
            filed_count=sum(1 for mid in self._filed if mid in self._counted),
            bounce_count=len(self._bounces),
            quote_count=current.quote_count + quotes,
            clarification_count=current.clarification_count + clarifications,
            material_codes=self._batch.material_codes,
        )
        return self._snapshot

    async def _persist(self, handle: PollerHandle, snapshot: ProgressSnapshot) -> bool:
        """Save the reply sets and snapshot. Returns False once the run was cancelled mid-write."""
        # A pre-empting start() replaces the sets; keep writing this run's
        counted, filed = self._counted, self._filed
        writes = (
            lambda: self._repository.save_counted(counted),
            lambda: self._repository.save_filed(filed),
            lambda: self._repository.save_snapshot(snapshot),
        )
        for write in writes:
            if handle.token.cancelled:
                return False
            await write()
        return not handle.token.cancelled

    async def _notify(self, snapshot: ProgressSnapshot) -> None:
        if self._on_progress is None:
            return
        try:
            outcome = self._on_progress(snapshot)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error("progress_observer_failed", error=str(e), error_type=type(e).__name__)

    def _log_folder_growth(self, folders: list[Folder]) -> None:
        if self._baseline is None:
            return
        counts = self._baseline.per_folder_count
        for folder in folders:
            before = counts.get(folder.id)
            if before is not None and folder.total_item_count > before:
                logger.debug(
                    "folder_growth",
                    folder=folder.path,
                    before=before,
                    now=folder.total_item_count,
                )


def _is_complete(snapshot: ProgressSnapshot) -> bool:
    return (
        snapshot.sent_count > 0
        and snapshot.received_count >= snapshot.sent_count
        and snapshot.filed_count >= snapshot.received_count
    )


def _with_folder(message: Message, folder_id: str) -> Message:
    return replace(message, folder_id=folder_id)
