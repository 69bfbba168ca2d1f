"""Glucose reading endpoints: live latest, live window, stored history."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException, Query

from glucosync.dependencies import CoordinatorDep, HybridDep, StoreDep
from glucosync.errors import GlucoSyncError
from glucosync.models import SourceTag, TimeWindow
from glucosync.routers.errors import http_error
from glucosync.schemas import LatestReadingResponse, ReadingRead
from glucosync.sources.base import parse_iso_datetime

router = APIRouter(prefix="/glucose", tags=["glucose"])


def _window(start: datetime, end: datetime) -> TimeWindow:
    # Query params may carry a zone; everything internal is naive UTC.
    start = parse_iso_datetime(start.isoformat())
    end = parse_iso_datetime(end.isoformat())
    try:
        return TimeWindow(start=start, end=end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/latest", response_model=LatestReadingResponse)
async def latest_reading(hybrid: HybridDep, coordinator: CoordinatorDep) -> Any:
    coordinator.note_live_interest()
    try:
        reading = await hybrid.fetch_latest()
    except GlucoSyncError as exc:
        raise http_error(exc) from exc
    return {"reading": reading}


@router.get("/live", response_model=list[ReadingRead])
async def live_window(
    hybrid: HybridDep,
    start: datetime = Query(...),
    end: datetime = Query(...),
) -> Any:
    window = _window(start, end)
    try:
        return await hybrid.fetch_window(window)
    except GlucoSyncError as exc:
        raise http_error(exc) from exc


@router.get("/readings", response_model=list[ReadingRead])
async def stored_readings(
    store: StoreDep,
    start: datetime = Query(...),
    end: datetime = Query(...),
    source: SourceTag | None = Query(default=None),
) -> Any:
    window = _window(start, end)
    try:
        return await store.query(window, source_tag=source)
    except GlucoSyncError as exc:
        raise http_error(exc) from exc
