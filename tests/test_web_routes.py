"""Tests for the progress API routes.

Tests the FastAPI application routes using httpx AsyncClient against a
controller backed by the in-memory gateway and store.
"""

from contextlib import asynccontextmanager
from datetime import UTC, datetime

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from conftest import FakeGateway
from rfq_tracker.config_schema import AppConfig
from rfq_tracker.db.store import MemoryKeyValueStore
from rfq_tracker.engine.controller import BatchController
from rfq_tracker.engine.records import DispatchBatch, DispatchRecord, InFlightMarker
from rfq_tracker.engine.repository import BatchRepository
from rfq_tracker.graph.models import SentMessage
from rfq_tracker.web.app import create_app

SENT_AT = datetime(2025, 6, 2, 9, 0, tzinfo=UTC)

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def controller(
    gateway: FakeGateway,
    repository: BatchRepository,
    sample_config: AppConfig,
) -> BatchController:
    """Return a controller over the in-memory gateway and store."""
    c = BatchController(gateway, repository, sample_config)
    yield c
    c.shutdown()


@pytest.fixture
def app(
    controller: BatchController,
    kv_store: MemoryKeyValueStore,
    sample_config: AppConfig,
) -> FastAPI:
    """Create a FastAPI app with test dependencies."""
    test_app = create_app()

    test_app.state.config = sample_config
    test_app.state.store = kv_store
    test_app.state.controller = controller
    test_app.state.recovery = None

    return test_app


@pytest.fixture
async def client(app: FastAPI) -> AsyncClient:
    """Return an httpx AsyncClient for the test app."""
    # Override lifespan to avoid real initialization
    app.router.lifespan_context = _noop_lifespan
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@asynccontextmanager
async def _noop_lifespan(app: FastAPI):
    """No-op lifespan that preserves existing app.state."""
    yield


def _sent(n: int) -> SentMessage:
    return SentMessage(
        id=f"sent-{n}",
        conversation_id=f"conv-{n}",
        sent_at=SENT_AT,
        subject="RFQ for MAT-1001 - 500 pcs",
        recipient=f"supplier{n}@example.com",
    )


# ---------------------------------------------------------------------------
# Tests: Health and progress
# ---------------------------------------------------------------------------


async def test_health_reports_poller_state(client: AsyncClient):
    """Health endpoint reports an initialized tracker."""
    response = await client.get("/api/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["config_loaded"] is True
    assert data["poller_state"] == "idle"


async def test_progress_without_batch(client: AsyncClient):
    """Progress before any batch is an empty snapshot."""
    response = await client.get("/api/progress")

    assert response.status_code == 200
    data = response.json()
    assert data["active_batch_id"] is None
    assert data["snapshot"]["sent_count"] == 0
    assert [s["stage"] for s in data["stages"]] == ["sent", "scheduled", "received", "filed"]


async def test_progress_follows_sends(client: AsyncClient, controller: BatchController):
    """Progress reflects recorded sends and the stage message."""
    handle = await controller.start_batch(["MAT-1001"], expected_total=2)
    await controller.record_send(handle, _sent(1), scheduled=True)
    await controller.record_send(handle, _sent(2), scheduled=True)

    response = await client.get("/api/progress")

    data = response.json()
    assert data["active_batch_id"] == handle.batch_id
    assert data["snapshot"]["sent_count"] == 2
    assert data["stages"][0]["status"] == "completed"
    assert data["stages"][2]["status"] == "active"
    assert data["message"]


async def test_routes_unavailable_without_controller(app: FastAPI, client: AsyncClient):
    """Routes answer 503 when startup could not build the controller."""
    app.state.controller = None

    response = await client.get("/api/progress")
    assert response.status_code == 503

    health = await client.get("/api/health")
    assert health.json()["status"] == "degraded"


# ---------------------------------------------------------------------------
# Tests: Recovery
# ---------------------------------------------------------------------------


async def test_recovery_message_returned_once(
    client: AsyncClient,
    controller: BatchController,
    repository: BatchRepository,
):
    """The interrupted-send message is delivered once, then null."""
    record = DispatchRecord(
        local_id="draft-1",
        provider_message_id="sent-1",
        conversation_id="conv-1",
        correlation_key="MAT-1001",
        sent_at=datetime.now(UTC),
        subject="RFQ for MAT-1001 - 500 pcs",
    )
    await repository.save_batch(
        DispatchBatch(batch_id="b1", started_at=datetime.now(UTC), records=(record,), expected_total=2)
    )
    await repository.save_marker(InFlightMarker(phase="sending", batch_id="b1", sent_count=1, total=2))
    await controller.recover()

    first = await client.get("/api/recovery")
    second = await client.get("/api/recovery")

    assert first.json()["message"] == "Sending was interrupted: 1 of 2 RFQs sent."
    assert second.json()["message"] is None


# ---------------------------------------------------------------------------
# Tests: Monitoring
# ---------------------------------------------------------------------------


async def test_start_monitoring_without_batch(client: AsyncClient):
    """Starting monitoring with no active batch is a conflict."""
    response = await client.post("/api/monitoring/start")
    assert response.status_code == 409


async def test_start_monitoring_with_nothing_sent(client: AsyncClient, controller: BatchController):
    """A batch with no confirmed sends cannot be monitored."""
    await controller.start_batch()

    response = await client.post("/api/monitoring/start")
    assert response.status_code == 409


async def test_start_and_cancel_monitoring(client: AsyncClient, controller: BatchController):
    """Monitoring starts for the active batch and cancel keeps the snapshot."""
    handle = await controller.start_batch(["MAT-1001"])
    await controller.record_send(handle, _sent(1))

    started = await client.post("/api/monitoring/start")

    assert started.status_code == 200
    assert started.json() == {"batch_id": handle.batch_id, "state": "polling"}

    cancelled = await client.post("/api/monitoring/cancel")

    assert cancelled.status_code == 200
    data = cancelled.json()
    assert data["poller_state"] == "cancelled"
    assert data["snapshot"]["sent_count"] == 1
    assert data["active_batch_id"] == handle.batch_id


async def test_cancel_without_batch(client: AsyncClient):
    """Cancelling with no active batch is a conflict."""
    response = await client.post("/api/monitoring/cancel")
    assert response.status_code == 409
