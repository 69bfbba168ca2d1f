"""GlucoSync API: FastAPI application entry point.

Run locally:
    uvicorn glucosync.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from glucosync.config import Settings, get_settings
from glucosync.pipeline import Pipeline, build_pipeline
from glucosync.routers import connections, glucose, health, sync

# ---------- Logging ----------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("glucosync")


# ---------- App factory ----------

def create_app(
    settings: Settings | None = None,
    pipeline_factory=build_pipeline,
) -> FastAPI:
    """Build the application.

    Args:
        settings:         Overrides ``get_settings()`` (tests pass their own).
        pipeline_factory: Callable(settings) → Pipeline, run at startup.
    """
    settings = settings or get_settings()
    logging.getLogger("glucosync").setLevel(settings.log_level.upper())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Startup / shutdown hooks."""
        logger.info("Starting GlucoSync API v%s [%s]", settings.app_version, settings.environment)
        pipeline: Pipeline = pipeline_factory(settings)
        await pipeline.store.create_schema()
        app.state.pipeline = pipeline
        if settings.autostart_sync:
            pipeline.coordinator.start()
        yield
        await pipeline.aclose()
        app.state.pipeline = None
        logger.info("GlucoSync API shut down")

    app = FastAPI(
        title="GlucoSync API",
        description="Continuous glucose reading acquisition and reconciliation.",
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.dependency_overrides[get_settings] = lambda: settings

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(health.router, prefix=v1_prefix)
    app.include_router(glucose.router, prefix=v1_prefix)
    app.include_router(sync.router, prefix=v1_prefix)
    app.include_router(connections.router, prefix=v1_prefix)

    return app


app = create_app()
