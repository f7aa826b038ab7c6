"""Tests for the batch controller.

Covers the batch lifecycle, stale handles, the in-flight marker, observer
notification and monitoring start/cancel/completion.
"""

import asyncio
from datetime import UTC, datetime

import pytest

from conftest import FakeGateway, ManualClock
from rfq_tracker.config_schema import AppConfig
from rfq_tracker.core.errors import BatchStateError
from rfq_tracker.engine.controller import BatchController
from rfq_tracker.engine.poller import PollerState
from rfq_tracker.engine.records import ProgressSnapshot
from rfq_tracker.engine.repository import BatchRepository
from rfq_tracker.graph.models import Folder, Message, SentMessage

SENT_AT = datetime(2025, 6, 2, 9, 0, tzinfo=UTC)


def _sent(n: int, material: str = "MAT-1001") -> SentMessage:
    """Create a confirmed send for testing."""
    return SentMessage(
        id=f"sent-{n}",
        conversation_id=f"conv-{n}",
        sent_at=SENT_AT,
        subject=f"RFQ for {material} - 500 pcs",
        recipient=f"supplier{n}@example.com",
        internet_message_id=f"<draft-{n}@example.com>",
    )


@pytest.fixture
def controller(
    gateway: FakeGateway,
    repository: BatchRepository,
    sample_config: AppConfig,
    clock: ManualClock,
) -> BatchController:
    """Return a controller over the in-memory gateway and store."""
    gateway.folders = [
        Folder(id="inbox", display_name="Inbox", well_known_name="inbox"),
        Folder(id="m1", display_name="MAT-1001"),
        Folder(id="m1-quotes", display_name="Quotes", parent_folder_id="m1"),
    ]
    return BatchController(gateway, repository, sample_config, monotonic=clock)


class TestBatchLifecycle:
    """Tests for starting batches and recording sends."""

    @pytest.mark.asyncio
    async def test_start_batch_publishes_empty_snapshot(self, controller: BatchController) -> None:
        """Test that a new batch starts from an empty snapshot."""
        handle = await controller.start_batch(["MAT-1001"], expected_total=3)

        snapshot = controller.get_snapshot(handle)
        assert snapshot.batch_id == handle.batch_id
        assert snapshot.sent_count == 0
        assert snapshot.expected_total == 3
        assert handle.correlation_keys == ("MAT-1001",)

    @pytest.mark.asyncio
    async def test_record_send_updates_snapshot(
        self, controller: BatchController, repository: BatchRepository
    ) -> None:
        """Test that each confirmed send is recorded and persisted."""
        handle = await controller.start_batch(["MAT-1001"], expected_total=2)
        await controller.record_send(handle, _sent(1))
        snapshot = await controller.record_send(handle, _sent(2, "MAT-2002"))

        assert snapshot.sent_count == 2
        assert snapshot.scheduled_count == 0
        assert snapshot.material_codes == ("MAT-1001", "MAT-2002")

        batch = await repository.load_batch()
        assert batch.sent_count == 2
        assert batch.records[1].correlation_key == "MAT-2002"

    @pytest.mark.asyncio
    async def test_scheduled_counts(self, controller: BatchController) -> None:
        """Test that scheduled sends advance the scheduled stage up to sent."""
        handle = await controller.start_batch(expected_total=2)
        await controller.record_send(handle, _sent(1), scheduled=True)
        await controller.record_send(handle, _sent(2))
        snapshot = await controller.record_scheduled(handle)

        assert snapshot.scheduled_count == 2

        snapshot = await controller.record_scheduled(handle)
        assert snapshot.scheduled_count == 2

    @pytest.mark.asyncio
    async def test_duplicate_send_counts_once(self, controller: BatchController) -> None:
        """Test that recording the same sent message twice does not double count."""
        handle = await controller.start_batch()
        await controller.record_send(handle, _sent(1), scheduled=True)
        snapshot = await controller.record_send(handle, _sent(1), scheduled=True)

        assert snapshot.sent_count == 1
        assert snapshot.scheduled_count == 1

    @pytest.mark.asyncio
    async def test_send_failure_is_counted(self, controller: BatchController) -> None:
        """Test that failures are counted without raising."""
        handle = await controller.start_batch(expected_total=2)
        snapshot = await controller.record_send_failure(handle, "550 mailbox unavailable")

        assert snapshot.failed_count == 1
        assert snapshot.sent_count == 0

    @pytest.mark.asyncio
    async def test_stale_handle_rejected(self, controller: BatchController) -> None:
        """Test that a handle from a replaced batch raises BatchStateError."""
        old = await controller.start_batch()
        await controller.start_batch()

        with pytest.raises(BatchStateError):
            await controller.record_send(old, _sent(1))
        with pytest.raises(BatchStateError):
            controller.get_snapshot(old)

    @pytest.mark.asyncio
    async def test_abandon_clears_everything(
        self, controller: BatchController, repository: BatchRepository
    ) -> None:
        """Test that abandon() drops the batch, snapshot and marker."""
        handle = await controller.start_batch()
        await controller.record_send(handle, _sent(1))
        await controller.mark_sending(handle)

        await controller.abandon()

        assert controller.current_handle() is None
        assert controller.get_snapshot().batch_id is None
        assert await repository.load_batch() is None
        assert await repository.load_snapshot() is None
        assert await repository.load_marker() is None


class TestInFlightMarker:
    """Tests for the crash-recovery marker."""

    @pytest.mark.asyncio
    async def test_mark_sending(self, controller: BatchController, repository: BatchRepository) -> None:
        """Test that the sending marker carries the current counts."""
        handle = await controller.start_batch(["MAT-1001"], expected_total=5)
        await controller.record_send(handle, _sent(1), scheduled=True)
        await controller.mark_sending(handle)

        marker = await repository.load_marker()
        assert marker.phase == "sending"
        assert marker.sent_count == 1
        assert marker.total == 5
        assert marker.scheduled_count == 1
        assert not marker.show_banner

    @pytest.mark.asyncio
    async def test_finish_sending_derives_result(
        self, controller: BatchController, repository: BatchRepository
    ) -> None:
        """Test that the banner marker's result follows the sent and failed counts."""
        handle = await controller.start_batch(expected_total=2)
        await controller.record_send(handle, _sent(1))
        await controller.record_send_failure(handle)

        marker = await controller.finish_sending(handle)

        assert marker.phase == "idle"
        assert marker.show_banner
        assert marker.last_result == "partial"
        assert (await repository.load_marker()).last_result == "partial"

    @pytest.mark.asyncio
    async def test_finish_sending_projected_count(self, controller: BatchController) -> None:
        """Test that the marker written before the final send reports the projected count."""
        handle = await controller.start_batch(expected_total=1)
        marker = await controller.finish_sending(handle, "success", projected_sent=1)

        assert marker.sent_count == 1
        assert marker.last_result == "success"

    @pytest.mark.asyncio
    async def test_finish_sending_with_nothing_sent(self, controller: BatchController) -> None:
        """Test that finishing with no sends is an error result."""
        handle = await controller.start_batch()
        marker = await controller.finish_sending(handle)
        assert marker.last_result == "error"


class TestObservers:
    """Tests for snapshot subscribers."""

    @pytest.mark.asyncio
    async def test_observers_receive_snapshots(self, controller: BatchController) -> None:
        """Test that subscribers see every published snapshot until they unsubscribe."""
        seen: list[ProgressSnapshot] = []
        unsubscribe = controller.subscribe(seen.append)

        handle = await controller.start_batch()
        await controller.record_send(handle, _sent(1))
        unsubscribe()
        await controller.record_send(handle, _sent(2))

        assert [s.sent_count for s in seen] == [0, 1]

    @pytest.mark.asyncio
    async def test_failing_observer_is_isolated(self, controller: BatchController) -> None:
        """Test that one failing observer does not block the others."""
        seen: list[int] = []

        def broken(snapshot: ProgressSnapshot) -> None:
            raise ValueError("boom")

        async def working(snapshot: ProgressSnapshot) -> None:
            seen.append(snapshot.sent_count)

        controller.subscribe(broken)
        controller.subscribe(working)
        handle = await controller.start_batch()
        await controller.record_send(handle, _sent(1))

        assert seen == [0, 1]


class TestMonitoring:
    """Tests for starting and stopping monitoring through the controller."""

    @pytest.mark.asyncio
    async def test_monitoring_requires_sends(self, controller: BatchController) -> None:
        """Test that a batch with nothing sent cannot be monitored."""
        handle = await controller.start_batch()
        with pytest.raises(BatchStateError):
            await controller.start_monitoring(handle, autorun=False)

    @pytest.mark.asyncio
    async def test_monitoring_establishes_baseline(
        self, controller: BatchController, repository: BatchRepository
    ) -> None:
        """Test that start_monitoring persists a baseline and starts polling."""
        handle = await controller.start_batch(["MAT-1001"])
        await controller.record_send(handle, _sent(1))

        poller_handle = await controller.start_monitoring(handle, autorun=False)

        baseline = await repository.load_baseline()
        assert baseline.batch_id == handle.batch_id
        assert baseline.cutoff < SENT_AT
        assert poller_handle.state == PollerState.POLLING
        controller.shutdown()

    @pytest.mark.asyncio
    async def test_poll_progress_is_published(self, controller: BatchController, gateway: FakeGateway) -> None:
        """Test that poll ticks reach the controller's snapshot and observers."""
        seen: list[int] = []
        controller.subscribe(lambda s: seen.append(s.received_count))
        handle = await controller.start_batch(["MAT-1001"])
        await controller.record_send(handle, _sent(1))
        await controller.record_send(handle, _sent(2))
        gateway.add_message(
            Message(
                id="reply-1",
                conversation_id="conv-1",
                subject="RE: RFQ for MAT-1001 - 500 pcs",
                sender_address="sales@supplier.example",
                body_excerpt="Our best price is 4.20 EUR per piece, delivery in three weeks.",
                received_at=SENT_AT.replace(hour=10),
                folder_id="inbox",
            )
        )

        await controller.start_monitoring(handle, autorun=False)
        await controller.poller.tick()

        assert controller.get_snapshot(handle).received_count == 1
        assert seen[-1] == 1
        controller.shutdown()

    @pytest.mark.asyncio
    async def test_completion_clears_ledger_keeps_snapshot(
        self, controller: BatchController, gateway: FakeGateway, repository: BatchRepository
    ) -> None:
        """Test that a completed batch forgets its ledger but keeps its final snapshot."""
        handle = await controller.start_batch(["MAT-1001"])
        await controller.record_send(handle, _sent(1), scheduled=True)
        gateway.add_message(
            Message(
                id="reply-1",
                conversation_id="conv-1",
                subject="RE: RFQ for MAT-1001 - 500 pcs",
                sender_address="sales@supplier.example",
                body_excerpt="Our best price is 4.20 EUR per piece, delivery in three weeks.",
                received_at=SENT_AT.replace(hour=10),
                folder_id="m1-quotes",
            )
        )

        await controller.start_monitoring(handle, autorun=False)
        await controller.poller.tick()
        state = await controller.wait_monitoring(timeout=1)

        assert state == PollerState.COMPLETED
        assert controller.current_handle() is None
        assert await repository.load_batch() is None
        snapshot = await repository.load_snapshot()
        assert snapshot.filed_count == 1
        assert controller.get_snapshot().received_count == 1

    @pytest.mark.asyncio
    async def test_cancel_monitoring_keeps_snapshot(self, controller: BatchController) -> None:
        """Test that cancelling keeps the batch restartable."""
        handle = await controller.start_batch()
        await controller.record_send(handle, _sent(1))
        await controller.start_monitoring(handle, autorun=False)

        snapshot = await controller.cancel_monitoring(handle)

        assert controller.poller.state == PollerState.CANCELLED
        assert snapshot.sent_count == 1
        assert controller.current_handle() == handle
        assert await controller.wait_monitoring(timeout=1) == PollerState.CANCELLED

    @pytest.mark.asyncio
    async def test_new_batch_cancels_monitoring(self, controller: BatchController) -> None:
        """Test that starting a batch stops monitoring of the previous one."""
        handle = await controller.start_batch()
        await controller.record_send(handle, _sent(1))
        poller_handle = await controller.start_monitoring(handle, autorun=False)

        await controller.start_batch()

        assert poller_handle.state == PollerState.CANCELLED

    @pytest.mark.asyncio
    async def test_new_batch_during_tick_is_not_overwritten(
        self, controller: BatchController, gateway: FakeGateway, repository: BatchRepository
    ) -> None:
        """Test that a tick pre-empted while persisting never publishes into the new batch."""
        handle = await controller.start_batch(["MAT-1001"])
        await controller.record_send(handle, _sent(1))
        gateway.add_message(
            Message(
                id="reply-1",
                conversation_id="conv-1",
                subject="RE: RFQ for MAT-1001 - 500 pcs",
                sender_address="sales@supplier.example",
                body_excerpt="Our best price is 4.20 EUR per piece, delivery in three weeks.",
                received_at=SENT_AT.replace(hour=10),
                folder_id="inbox",
            )
        )
        await controller.start_monitoring(handle, autorun=False)

        entered = asyncio.Event()
        release = asyncio.Event()
        save_counted = repository.save_counted

        async def blocking_save_counted(counted) -> bool:
            entered.set()
            await release.wait()
            return await save_counted(counted)

        repository.save_counted = blocking_save_counted
        tick = asyncio.create_task(controller.poller.tick())
        await entered.wait()
        new_handle = await controller.start_batch(["MAT-2002"])
        release.set()
        await tick

        snapshot = controller.get_snapshot(new_handle)
        assert snapshot.batch_id == new_handle.batch_id
        assert snapshot.received_count == 0
        assert (await repository.load_snapshot()).batch_id == new_handle.batch_id
