"""Tests for the batch send workflow and the auto-reply client."""

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import requests

from conftest import FakeGateway
from rfq_tracker.config_schema import AppConfig, AutoReplyConfig
from rfq_tracker.core.errors import AuthenticationError, AutoReplyError, BatchSendError, RateLimitExceeded
from rfq_tracker.engine.controller import BatchController
from rfq_tracker.engine.dispatch import (
    DEFAULT_QUANTITY,
    AutoReplyClient,
    BatchSender,
    extract_quantity,
)
from rfq_tracker.engine.repository import BatchRepository
from rfq_tracker.graph.models import Message


def _draft(draft_id: str, material: str = "MAT-1001", quantity: int = 500) -> Message:
    """Create an RFQ draft for testing."""
    return Message(
        id=draft_id,
        conversation_id=f"conv-{draft_id}",
        subject=f"RFQ for {material} - {quantity} pcs",
        recipients=(f"{draft_id}@supplier.example",),
        is_draft=True,
    )


def _mock_session(ok: bool = True, status_code: int = 200, body: dict[str, Any] | None = None) -> MagicMock:
    """Create a requests.Session mock returning one canned response."""
    response = MagicMock()
    response.ok = ok
    response.status_code = status_code
    response.reason = "OK" if ok else "Bad Request"
    response.content = b"{}" if body is None else b"{...}"
    response.json.return_value = body or {}
    session = MagicMock()
    session.post.return_value = response
    return session


@pytest.fixture
def controller(gateway: FakeGateway, repository: BatchRepository, sample_config: AppConfig) -> BatchController:
    """Return a controller over the in-memory gateway and store."""
    return BatchController(gateway, repository, sample_config)


@pytest.fixture
def drafts(gateway: FakeGateway) -> list[Message]:
    """Register three RFQ drafts and one unrelated draft."""
    gateway.drafts = [
        _draft("d1"),
        _draft("d2", "MAT-2002", 40),
        _draft("d3"),
        Message(id="other", subject="Lunch plans", is_draft=True),
    ]
    return gateway.drafts


@pytest.fixture
def auto_reply_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a config with auto-replies enabled."""
    return AppConfig(
        **{
            **sample_config_dict,
            "auto_reply": {"enabled": True, "api_base_url": "http://backend.test/api", "delay_seconds": 3},
            "user_email": "buyer@example.com",
        }
    )


class TestQuantity:
    """Tests for extract_quantity."""

    def test_extracts_pieces(self) -> None:
        """Test that the piece count is read from the subject."""
        assert extract_quantity("RFQ for MAT-1001 - 500 pcs") == 500
        assert extract_quantity("RFQ for MAT-1001 - 12PCS") == 12

    def test_default_quantity(self) -> None:
        """Test that a subject without a quantity uses the default."""
        assert extract_quantity("RFQ for MAT-1001") == DEFAULT_QUANTITY


class TestAutoReplyClient:
    """Tests for the demo auto-reply HTTP client."""

    def test_schedule_posts_payload(self) -> None:
        """Test that schedule() posts the expected JSON body."""
        session = _mock_session(body={"status": "scheduled"})
        client = AutoReplyClient(AutoReplyConfig(api_base_url="http://backend.test/api/", delay_seconds=7), session)

        result = client.schedule("buyer@example.com", "RFQ for MAT-1001 - 500 pcs", "<d1@example.com>", "MAT-1001")

        assert result == {"status": "scheduled"}
        url = session.post.call_args.args[0]
        payload = session.post.call_args.kwargs["json"]
        assert url == "http://backend.test/api/auto-replies/schedule"
        assert payload["to_email"] == "buyer@example.com"
        assert payload["internet_message_id"] == "<d1@example.com>"
        assert payload["material"] == "MAT-1001"
        assert payload["quantity"] == 500
        assert payload["delay_seconds"] == 7
        assert payload["reply_type"] == "random"

    def test_missing_material_uses_placeholder(self) -> None:
        """Test that a subject without a material code is still scheduled."""
        session = _mock_session()
        client = AutoReplyClient(AutoReplyConfig(), session)

        client.schedule("buyer@example.com", "RFQ for brackets", "<x@example.com>", None)

        assert session.post.call_args.kwargs["json"]["material"] == "Unknown Material"

    def test_http_error_raises(self) -> None:
        """Test that a non-2xx response raises AutoReplyError with its detail."""
        session = _mock_session(ok=False, status_code=400, body={"detail": "Invalid email"})
        client = AutoReplyClient(AutoReplyConfig(), session)

        with pytest.raises(AutoReplyError, match="Invalid email") as exc_info:
            client.schedule("bad", "RFQ", "<x@example.com>", "MAT-1001")
        assert exc_info.value.status_code == 400

    def test_timeout_raises(self) -> None:
        """Test that a timeout raises AutoReplyError."""
        session = MagicMock()
        session.post.side_effect = requests.exceptions.Timeout("slow")
        client = AutoReplyClient(AutoReplyConfig(), session)

        with pytest.raises(AutoReplyError, match="timed out"):
            client.schedule("buyer@example.com", "RFQ", "<x@example.com>", "MAT-1001")

    def test_network_error_raises(self) -> None:
        """Test that a connection error names the backend URL."""
        session = MagicMock()
        session.post.side_effect = requests.exceptions.ConnectionError("refused")
        client = AutoReplyClient(AutoReplyConfig(api_base_url="http://backend.test/api"), session)

        with pytest.raises(AutoReplyError, match="backend.test"):
            client.schedule("buyer@example.com", "RFQ", "<x@example.com>", "MAT-1001")


class TestBatchSender:
    """Tests for sending a batch of RFQ drafts."""

    @pytest.mark.asyncio
    async def test_sends_every_rfq_draft_current_last(
        self,
        gateway: FakeGateway,
        controller: BatchController,
        sample_config: AppConfig,
        drafts: list[Message],
    ) -> None:
        """Test that all prefixed drafts are sent with the open draft last."""
        sender = BatchSender(gateway, controller, sample_config)

        result = await sender.send_batch(current_draft_id="d1")

        assert gateway.sent == ["d2", "d3", "d1"]
        assert result.attempted == 3
        assert result.sent == 3
        assert result.failed == 0
        assert result.result == "success"
        assert result.material_codes == ["MAT-2002", "MAT-1001"]

    @pytest.mark.asyncio
    async def test_snapshot_after_send(
        self,
        gateway: FakeGateway,
        controller: BatchController,
        sample_config: AppConfig,
        drafts: list[Message],
    ) -> None:
        """Test that sends are recorded and scheduled is satisfied without auto-replies."""
        sender = BatchSender(gateway, controller, sample_config)

        result = await sender.send_batch()

        snapshot = controller.get_snapshot()
        assert snapshot.batch_id == result.batch_id
        assert snapshot.sent_count == 3
        assert snapshot.scheduled_count == 3
        assert snapshot.expected_total == 3
        assert result.scheduled == 3

    @pytest.mark.asyncio
    async def test_sent_rfqs_are_filed_and_labelled(
        self,
        gateway: FakeGateway,
        controller: BatchController,
        sample_config: AppConfig,
        drafts: list[Message],
    ) -> None:
        """Test that each sent copy is moved to its material's Sent RFQs folder and labelled."""
        sender = BatchSender(gateway, controller, sample_config)

        result = await sender.send_batch()

        assert result.filed == 3
        assert ("sent-d1", "folder:MAT-1001/Sent RFQs") in gateway.moves
        assert ("sent-d2", "folder:MAT-2002/Sent RFQs") in gateway.moves
        assert ("moved-sent-d3", "SENT RFQ") in gateway.labels
        # Material tree is created once per material
        assert gateway.ensured.count("MAT-1001/Quotes") == 1
        assert "MAT-2002/Engineer Response" in gateway.ensured

    @pytest.mark.asyncio
    async def test_filing_failure_does_not_fail_send(
        self,
        gateway: FakeGateway,
        controller: BatchController,
        sample_config: AppConfig,
        drafts: list[Message],
    ) -> None:
        """Test that a failed move is logged and the batch still succeeds."""
        gateway.fail_moves = True
        sender = BatchSender(gateway, controller, sample_config)

        result = await sender.send_batch()

        assert result.sent == 3
        assert result.filed == 0
        assert result.result == "success"

    @pytest.mark.asyncio
    async def test_unlocated_sent_copy_is_not_filed(
        self,
        gateway: FakeGateway,
        controller: BatchController,
        sample_config: AppConfig,
        drafts: list[Message],
        repository: BatchRepository,
    ) -> None:
        """Test that a send whose Sent Items copy was not found is recorded but not moved."""
        gateway.locate_sent = False
        sender = BatchSender(gateway, controller, sample_config)

        result = await sender.send_batch()

        assert result.sent == 3
        assert gateway.moves == []
        batch = await repository.load_batch()
        assert all(record.sent_at is None for record in batch.records)

    @pytest.mark.asyncio
    async def test_partial_failure(
        self,
        gateway: FakeGateway,
        controller: BatchController,
        sample_config: AppConfig,
        drafts: list[Message],
        repository: BatchRepository,
    ) -> None:
        """Test that one failing draft is counted and the rest are sent."""
        gateway.fail_sends.add("d2")
        sender = BatchSender(gateway, controller, sample_config)

        result = await sender.send_batch()

        assert result.sent == 2
        assert result.failed == 1
        assert result.result == "partial"
        assert len(result.errors) == 1
        assert controller.get_snapshot().failed_count == 1

        marker = await repository.load_marker()
        assert marker.phase == "idle"
        assert marker.last_result == "partial"

    @pytest.mark.asyncio
    async def test_rate_limited_draft_does_not_abort_batch(
        self,
        gateway: FakeGateway,
        controller: BatchController,
        sample_config: AppConfig,
        drafts: list[Message],
        repository: BatchRepository,
    ) -> None:
        """Test that a throttled or unauthenticated send is counted as a failure."""
        gateway.send_errors["d1"] = RateLimitExceeded("Rate limit exceeded (429)")
        sender = BatchSender(gateway, controller, sample_config)

        result = await sender.send_batch()

        assert gateway.sent == ["d2", "d3"]
        assert result.sent == 2
        assert result.failed == 1
        assert controller.get_snapshot().failed_count == 1
        assert (await repository.load_marker()).phase == "idle"

    @pytest.mark.asyncio
    async def test_rate_limited_filing_does_not_abort_batch(
        self,
        gateway: FakeGateway,
        controller: BatchController,
        sample_config: AppConfig,
        drafts: list[Message],
    ) -> None:
        """Test that a non-Graph error while filing only skips the filing."""
        gateway.ensure_folder = AsyncMock(side_effect=AuthenticationError("token expired"))
        sender = BatchSender(gateway, controller, sample_config)

        result = await sender.send_batch()

        assert result.sent == 3
        assert result.filed == 0
        assert result.result == "success"

    @pytest.mark.asyncio
    async def test_all_sends_fail(
        self,
        gateway: FakeGateway,
        controller: BatchController,
        sample_config: AppConfig,
        drafts: list[Message],
        repository: BatchRepository,
    ) -> None:
        """Test that a batch where nothing was sent raises BatchSendError."""
        gateway.fail_sends.update({"d1", "d2", "d3"})
        sender = BatchSender(gateway, controller, sample_config)

        with pytest.raises(BatchSendError) as exc_info:
            await sender.send_batch()

        assert exc_info.value.attempted == 3
        assert exc_info.value.failed == 3
        assert (await repository.load_marker()).last_result == "error"

    @pytest.mark.asyncio
    async def test_no_drafts(
        self, gateway: FakeGateway, controller: BatchController, sample_config: AppConfig
    ) -> None:
        """Test that an empty drafts folder raises BatchSendError."""
        sender = BatchSender(gateway, controller, sample_config)

        with pytest.raises(BatchSendError, match="No drafts"):
            await sender.send_batch()

    @pytest.mark.asyncio
    async def test_completion_banner_marker(
        self,
        gateway: FakeGateway,
        controller: BatchController,
        sample_config: AppConfig,
        drafts: list[Message],
        repository: BatchRepository,
    ) -> None:
        """Test that a finished batch leaves the completion banner marker."""
        sender = BatchSender(gateway, controller, sample_config)

        await sender.send_batch()

        marker = await repository.load_marker()
        assert marker.phase == "idle"
        assert marker.show_banner
        assert marker.last_result == "success"
        assert marker.sent_count == 3
        assert marker.scheduled_count == 3


class TestBatchSenderAutoReplies:
    """Tests for scheduling simulated replies during a batch."""

    @pytest.mark.asyncio
    async def test_auto_replies_scheduled(
        self,
        gateway: FakeGateway,
        repository: BatchRepository,
        auto_reply_config: AppConfig,
        drafts: list[Message],
    ) -> None:
        """Test that every sent RFQ gets an auto-reply and the scheduled stage follows."""
        controller = BatchController(gateway, repository, auto_reply_config)
        session = _mock_session(body={"status": "scheduled"})
        sender = BatchSender(
            gateway, controller, auto_reply_config, auto_reply=AutoReplyClient(auto_reply_config.auto_reply, session)
        )

        result = await sender.send_batch()

        assert result.scheduled == 3
        assert session.post.call_count == 3
        assert controller.get_snapshot().scheduled_count == 3
        first_payload = session.post.call_args_list[0].kwargs["json"]
        assert first_payload["to_email"] == "buyer@example.com"
        assert first_payload["internet_message_id"] == "<d1@example.com>"

    @pytest.mark.asyncio
    async def test_auto_reply_failure_leaves_scheduled_behind(
        self,
        gateway: FakeGateway,
        repository: BatchRepository,
        auto_reply_config: AppConfig,
        drafts: list[Message],
    ) -> None:
        """Test that a rejected auto-reply is logged and not counted as scheduled."""
        controller = BatchController(gateway, repository, auto_reply_config)
        session = _mock_session(ok=False, status_code=500, body={"detail": "backend down"})
        sender = BatchSender(
            gateway, controller, auto_reply_config, auto_reply=AutoReplyClient(auto_reply_config.auto_reply, session)
        )

        result = await sender.send_batch()

        assert result.sent == 3
        assert result.scheduled == 0
        assert controller.get_snapshot().scheduled_count == 0

    @pytest.mark.asyncio
    async def test_disabled_auto_reply_client_is_ignored(
        self,
        gateway: FakeGateway,
        controller: BatchController,
        sample_config: AppConfig,
        drafts: list[Message],
    ) -> None:
        """Test that a client passed with auto-replies disabled is never called."""
        session = _mock_session()
        sender = BatchSender(
            gateway, controller, sample_config, auto_reply=AutoReplyClient(sample_config.auto_reply, session)
        )

        await sender.send_batch()

        session.post.assert_not_called()
