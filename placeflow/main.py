"""
Placeflow - FastAPI Application

Creates the app, opens the AppContext on startup and closes it on shutdown.

Run with: uvicorn placeflow.main:app --reload
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI

from . import __version__
from .context import AppContext
from .core.config import Settings, get_settings
from .core.errors import setup_error_handlers
from .core.logging import configure_logging
from .routers import health_router, monitoring_router, places_router, queue_router

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, context: Optional[AppContext] = None) -> FastAPI:
    """
    Application factory.

    Args:
        settings: defaults to get_settings()
        context: pre-built component graph (tests); built from settings otherwise
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        configure_logging(level=settings.LOG_LEVEL, json_output=settings.LOG_JSON)
        logger.info(f"Starting Placeflow v{__version__} ({settings.ENVIRONMENT})")

        app_context = context or AppContext(settings)
        await app_context.open()
        app.state.context = app_context
        try:
            yield
        finally:
            logger.info("Shutting down Placeflow...")
            await app_context.close()
            logger.info("Shutdown complete")

    app = FastAPI(
        title="Placeflow",
        description="Place import, validation and enrichment pipeline backed by a durable job queue.",
        version=__version__,
        lifespan=lifespan,
    )

    setup_error_handlers(app)

    app.include_router(health_router)
    app.include_router(places_router)
    app.include_router(queue_router)
    app.include_router(monitoring_router)

    return app


def __getattr__(name: str) -> FastAPI:
    # `uvicorn placeflow.main:app` builds the app on first access
    if name == "app":
        application = create_app()
        globals()["app"] = application
        return application
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
