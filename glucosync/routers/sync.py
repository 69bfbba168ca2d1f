"""Sync loop control: status, one-off run, lifecycle events."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter

from glucosync.dependencies import CoordinatorDep, PipelineDep
from glucosync.errors import GlucoSyncError
from glucosync.routers.errors import http_error
from glucosync.schemas import LifecycleResponse, SyncRunResponse, SyncStateRead
from glucosync.sync.lifecycle import LifecycleEvent

router = APIRouter(tags=["sync"])
logger = logging.getLogger("glucosync.routers.sync")


@router.get("/sync/status", response_model=SyncStateRead)
async def sync_status(coordinator: CoordinatorDep) -> Any:
    return coordinator.state


@router.post("/sync/run", response_model=SyncRunResponse)
async def sync_run(coordinator: CoordinatorDep) -> Any:
    try:
        outcome = await coordinator.sync_once()
    except GlucoSyncError as exc:
        raise http_error(exc) from exc
    return {"reading": outcome.reading, "saved": outcome.saved}


@router.post("/lifecycle/{event}", response_model=LifecycleResponse)
async def lifecycle_event(event: LifecycleEvent, pipeline: PipelineDep) -> Any:
    logger.info("Lifecycle event received: %s", event.value)
    pipeline.lifecycle.handle(event)
    return {
        "event": event.value,
        "pending_start": pipeline.lifecycle.has_pending_start,
        "is_active": pipeline.coordinator.is_active,
    }
