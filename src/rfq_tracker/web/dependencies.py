"""FastAPI dependency injection helpers.

Extracts shared dependencies from app.state for use in route handlers.
All dependencies are initialized during the FastAPI lifespan and stored
on app.state.

Usage:
    from rfq_tracker.web.dependencies import get_controller

    @router.get("/progress")
    async def progress(controller: BatchController = Depends(get_controller)):
        snapshot = controller.get_snapshot()
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import HTTPException, Request

if TYPE_CHECKING:
    from rfq_tracker.config_schema import AppConfig
    from rfq_tracker.engine.controller import BatchController


def get_config(request: Request) -> AppConfig | None:
    """Get the loaded AppConfig from app state (None if loading failed)."""
    return request.app.state.config


def get_controller(request: Request) -> BatchController:
    """Get the BatchController from app state.

    Raises:
        HTTPException: 503 when startup could not build the controller
    """
    controller = request.app.state.controller
    if controller is None:
        raise HTTPException(status_code=503, detail="Tracker not initialized; check config.yaml")
    return controller
