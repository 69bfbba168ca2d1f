"""Health check endpoint."""

from __future__ import annotations

import logging

from fastapi import APIRouter

from glucosync.dependencies import AppSettings, PipelineDep
from glucosync.models import utc_now

router = APIRouter(tags=["system"])
logger = logging.getLogger("glucosync.health")


@router.get("/health")
async def health_check(settings: AppSettings, pipeline: PipelineDep) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also performs a lightweight store connectivity check.
    """
    db_ok = await pipeline.store.ping()
    if not db_ok:
        logger.warning("Health check store probe failed")

    state = pipeline.coordinator.state
    return {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "connected" if db_ok else "unreachable",
        "sync_active": state.is_active,
        "timestamp": utc_now().isoformat() + "Z",
    }
