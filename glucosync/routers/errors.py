"""Translation of pipeline errors to HTTP responses."""

from __future__ import annotations

import logging

from fastapi import HTTPException

from glucosync.errors import (
    AuthExpired,
    GlucoSyncError,
    NetworkFailure,
    PersistenceFailure,
    RateLimited,
    UnexpectedResponse,
    ValidationFailure,
)

logger = logging.getLogger("glucosync.routers")


def http_error(exc: GlucoSyncError) -> HTTPException:
    """Map a pipeline error to the HTTPException a route should raise."""
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(int(exc.retry_after))} if exc.retry_after is not None else None
        return HTTPException(status_code=429, detail=str(exc), headers=headers)
    if isinstance(exc, AuthExpired):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, (NetworkFailure, UnexpectedResponse)):
        return HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, ValidationFailure):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, PersistenceFailure):
        return HTTPException(status_code=500, detail="Reading store unavailable")
    logger.error("Unmapped pipeline error: %r", exc)
    return HTTPException(status_code=500, detail=str(exc))
