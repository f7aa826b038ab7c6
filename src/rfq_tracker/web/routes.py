"""JSON API routes for batch progress and reply monitoring.

All routes use FastAPI dependency injection to access shared state.
Progress responses always carry the best currently-known snapshot; polling
problems never surface as errors here.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request

from rfq_tracker.core.errors import BatchStateError
from rfq_tracker.core.logging import get_logger
from rfq_tracker.engine.controller import BatchController
from rfq_tracker.engine.progress import derive_stages, status_message
from rfq_tracker.engine.records import ProgressSnapshot
from rfq_tracker.web.dependencies import get_controller

logger = get_logger(__name__)

api_router = APIRouter(prefix="/api")


def _progress_payload(controller: BatchController, snapshot: ProgressSnapshot) -> dict[str, Any]:
    stages = derive_stages(snapshot)
    handle = controller.current_handle()
    return {
        "snapshot": snapshot.to_dict(),
        "stages": [view.to_dict() for view in stages],
        "message": status_message(snapshot, stages),
        "poller_state": controller.poller.state.value,
        "active_batch_id": handle.batch_id if handle else None,
    }


@api_router.get("/health")
async def health_check(request: Request):
    """Health check endpoint for monitoring."""
    controller: BatchController | None = request.app.state.controller
    return {
        "status": "healthy" if controller is not None else "degraded",
        "config_loaded": request.app.state.config is not None,
        "poller_state": controller.poller.state.value if controller else None,
        "version": "0.1.0",
    }


@api_router.get("/progress")
async def get_progress(controller: BatchController = Depends(get_controller)):
    """Current snapshot, stage views and status message."""
    return _progress_payload(controller, controller.get_snapshot())


@api_router.get("/recovery")
async def get_recovery(controller: BatchController = Depends(get_controller)):
    """The recovery message from startup. Returned once, then null."""
    return {"message": controller.take_recovery_message()}


@api_router.post("/monitoring/start")
async def start_monitoring(controller: BatchController = Depends(get_controller)):
    """Start monitoring replies for the active batch."""
    handle = controller.current_handle()
    if handle is None:
        raise HTTPException(status_code=409, detail="No active batch to monitor")

    try:
        poller_handle = await controller.start_monitoring(handle)
    except BatchStateError as e:
        raise HTTPException(status_code=409, detail=str(e)) from None

    logger.info("monitoring_started_via_api", batch_id=handle.batch_id)
    return {"batch_id": handle.batch_id, "state": poller_handle.state.value}


@api_router.post("/monitoring/cancel")
async def cancel_monitoring(controller: BatchController = Depends(get_controller)):
    """Stop monitoring. The last snapshot is kept."""
    handle = controller.current_handle()
    if handle is None:
        raise HTTPException(status_code=409, detail="No active batch")

    snapshot = await controller.cancel_monitoring(handle)
    return _progress_payload(controller, snapshot)
