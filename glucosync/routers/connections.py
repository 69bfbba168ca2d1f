"""Feed connection management: official OAuth flow and informal account."""

from __future__ import annotations

import secrets
from typing import Any

from fastapi import APIRouter, Query

from glucosync.dependencies import PipelineDep
from glucosync.errors import GlucoSyncError
from glucosync.routers.errors import http_error
from glucosync.schemas import AuthorizationUrlResponse, ConnectionStatus, InformalAccountUpdate

router = APIRouter(tags=["connections"])


@router.get("/connections", response_model=ConnectionStatus)
async def connection_status(pipeline: PipelineDep) -> Any:
    try:
        return {
            "official_connected": pipeline.official.is_connected(),
            "informal_configured": pipeline.informal.has_account(),
        }
    except GlucoSyncError as exc:
        raise http_error(exc) from exc


# ---------- Official feed (OAuth2) ----------

@router.get("/official/authorize", response_model=AuthorizationUrlResponse)
async def official_authorize(pipeline: PipelineDep) -> Any:
    return {"url": pipeline.official.authorization_url(state=secrets.token_urlsafe(16))}


@router.get("/official/callback", response_model=ConnectionStatus)
async def official_callback(pipeline: PipelineDep, code: str = Query(..., min_length=1)) -> Any:
    try:
        await pipeline.official.exchange_code(code)
    except GlucoSyncError as exc:
        raise http_error(exc) from exc
    return {"official_connected": True, "informal_configured": pipeline.informal.has_account()}


@router.delete("/official", status_code=204)
async def official_disconnect(pipeline: PipelineDep) -> None:
    try:
        pipeline.official.disconnect()
    except GlucoSyncError as exc:
        raise http_error(exc) from exc


# ---------- Informal feed (account) ----------

@router.put("/informal/account", response_model=ConnectionStatus)
async def informal_account(pipeline: PipelineDep, body: InformalAccountUpdate) -> Any:
    try:
        pipeline.informal.save_account(body.username, body.password)
        official_connected = pipeline.official.is_connected()
    except GlucoSyncError as exc:
        raise http_error(exc) from exc
    return {"official_connected": official_connected, "informal_configured": True}


@router.delete("/informal/account", status_code=204)
async def informal_account_delete(pipeline: PipelineDep) -> None:
    try:
        pipeline.informal.delete_account()
    except GlucoSyncError as exc:
        raise http_error(exc) from exc
