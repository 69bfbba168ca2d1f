"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from glucosync.config import Settings, get_settings
from glucosync.pipeline import Pipeline
from glucosync.sources.hybrid import HybridSource
from glucosync.store import ReadingStore
from glucosync.sync.coordinator import SyncCoordinator


def get_pipeline(request: Request) -> Pipeline:
    """Return the pipeline built by the app lifespan."""
    pipeline: Pipeline | None = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialised")
    return pipeline


def get_hybrid(pipeline: Annotated[Pipeline, Depends(get_pipeline)]) -> HybridSource:
    return pipeline.hybrid


def get_store(pipeline: Annotated[Pipeline, Depends(get_pipeline)]) -> ReadingStore:
    return pipeline.store


def get_coordinator(pipeline: Annotated[Pipeline, Depends(get_pipeline)]) -> SyncCoordinator:
    return pipeline.coordinator


# Annotated shortcuts for route signatures
PipelineDep = Annotated[Pipeline, Depends(get_pipeline)]
HybridDep = Annotated[HybridSource, Depends(get_hybrid)]
StoreDep = Annotated[ReadingStore, Depends(get_store)]
CoordinatorDep = Annotated[SyncCoordinator, Depends(get_coordinator)]
AppSettings = Annotated[Settings, Depends(get_settings)]
