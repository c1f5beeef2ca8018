"""
FastAPI application for clinisync.

Serves the sync control API and runs the sync engine for the lifetime of
the application.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from clinisync.api.sync_control import router as sync_control_router
from clinisync.config.settings import AppSettings
from clinisync.sync.orchestrator.sync_orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


def create_app(
    orchestrator: SyncOrchestrator,
    app_settings: Optional[AppSettings] = None,
    manage_engine: bool = True
) -> FastAPI:
    """
    Build the application around an engine.

    Args:
        orchestrator: The sync engine served by this application
        app_settings: Application settings, taken from the engine when omitted
        manage_engine: Initialize the engine on startup and stop it on shutdown
    """
    app_settings = app_settings or orchestrator.settings.app

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start the sync engine with the application and stop it on shutdown."""
        logger.info(f"Starting {app_settings.app_name} v{app_settings.app_version}")
        if manage_engine:
            try:
                await orchestrator.initialize()
            except Exception as e:
                logger.error(f"Failed to initialize sync engine: {e}")
                raise
        try:
            yield
        finally:
            logger.info("Shutting down application")
            if manage_engine:
                await orchestrator.stop()

    app = FastAPI(
        title="clinisync",
        description="Bidirectional sync between the clinic's legacy database and the cloud store",
        version=app_settings.app_version,
        debug=app_settings.debug,
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health/live")
    async def liveness_probe():
        """Liveness probe - the process is serving requests."""
        return {"status": "alive"}

    @app.get("/health/ready")
    async def readiness_probe():
        """Readiness probe - the sync engine is running."""
        state = orchestrator.state.value
        return {"ready": state == "running", "state": state, "degraded": orchestrator.degraded}

    app.include_router(sync_control_router)
    return app
