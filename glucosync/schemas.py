"""Pydantic response and request models for the HTTP surface."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from glucosync.models import SourceTag, SyncStatus


class GlucoSyncBase(BaseModel):
    """Base model with shared config for all GlucoSync schemas."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class ReadingRead(GlucoSyncBase):
    timestamp: datetime
    value: float
    source_tag: SourceTag
    device_label: str | None = None
    trend: str | None = None
    sync_status: SyncStatus = SyncStatus.SYNCED


class LatestReadingResponse(GlucoSyncBase):
    reading: ReadingRead | None = None


class SyncStateRead(GlucoSyncBase):
    is_active: bool
    started_at: datetime | None = None
    consecutive_error_count: int = 0
    last_sync_at: datetime | None = None
    last_error: str | None = None
    stop_reason: str | None = None
    connection_lost: bool = False
    readings_saved: int = 0


class SyncRunResponse(GlucoSyncBase):
    reading: ReadingRead | None = None
    saved: int


class LifecycleResponse(GlucoSyncBase):
    event: str
    pending_start: bool
    is_active: bool


class InformalAccountUpdate(GlucoSyncBase):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class AuthorizationUrlResponse(GlucoSyncBase):
    url: str


class ConnectionStatus(GlucoSyncBase):
    official_connected: bool
    informal_configured: bool


class ErrorDetail(BaseModel):
    detail: str
