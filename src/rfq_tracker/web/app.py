"""FastAPI application for the RFQ reply tracker progress API.

Creates the FastAPI app with:
- Lifespan context manager for dependency initialization and recovery
- The JSON API router

Monitoring runs on uvicorn's event loop: the reconciliation poller schedules
its ticks with APScheduler's AsyncIOScheduler, so no extra thread is needed.

Usage:
    from rfq_tracker.web.app import create_app

    app = create_app()
    # Run with: uvicorn.run(app, host="127.0.0.1", port=8000)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from rfq_tracker.core.logging import get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize dependencies on startup, clean up on shutdown.

    On startup:
    1. Load config
    2. Initialize auth, Graph client and mail gateway
    3. Initialize the key-value store
    4. Build the batch controller and run recovery

    On shutdown:
    - Stop the poller and its scheduler
    """
    from rfq_tracker.auth.msal_auth import GraphAuth
    from rfq_tracker.config import get_config
    from rfq_tracker.core.errors import AuthenticationError, ConfigLoadError, PersistenceError
    from rfq_tracker.db.store import SqliteKeyValueStore
    from rfq_tracker.engine.controller import BatchController
    from rfq_tracker.engine.repository import BatchRepository
    from rfq_tracker.graph.client import GraphClient
    from rfq_tracker.graph.folders import FolderManager
    from rfq_tracker.graph.gateway import GraphMailGateway
    from rfq_tracker.graph.messages import MessageManager

    app.state.config = None
    app.state.store = None
    app.state.controller = None
    app.state.recovery = None

    # 1. Load config
    try:
        config = get_config()
    except (ConfigLoadError, Exception) as e:
        logger.error("config_load_failed", error=str(e))
        yield
        return

    app.state.config = config

    # 2. Initialize auth and Graph gateway
    try:
        auth = GraphAuth(
            client_id=config.auth.client_id,
            tenant_id=config.auth.tenant_id,
            scopes=config.auth.scopes,
            token_cache_path=config.auth.token_cache_path,
        )
    except AuthenticationError as e:
        logger.error("auth_init_failed", error=str(e))
        yield
        return

    graph_client = GraphClient(auth)
    gateway = GraphMailGateway(
        messages=MessageManager(graph_client),
        folders=FolderManager(graph_client),
        conversation_limit=config.monitor.conversation_scan_limit,
        folder_limit=config.monitor.folder_scan_limit,
        sent_lookup_attempts=config.dispatch.sent_lookup_attempts,
        sent_lookup_delay=config.dispatch.sent_lookup_delay_seconds,
    )

    # 3. Initialize store
    db_path = Path(config.storage.db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = SqliteKeyValueStore(db_path)
    try:
        await store.initialize()
    except PersistenceError as e:
        logger.error("store_init_failed", error=str(e))
        yield
        return
    app.state.store = store

    # 4. Controller and recovery
    controller = BatchController(gateway, BatchRepository(store), config)
    app.state.recovery = await controller.recover()
    app.state.controller = controller

    yield

    # Shutdown
    controller.shutdown()
    await store.checkpoint_wal()
    logger.info("tracker_stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI instance
    """
    from rfq_tracker.web.routes import api_router

    app = FastAPI(
        title="RFQ Reply Tracker",
        description="Batch progress and reply monitoring API",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(api_router)

    return app
