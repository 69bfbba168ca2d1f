"""Canonical data models for the GlucoSync pipeline.

Both feed clients return ``Reading`` objects; the hybrid source merges them
and the store persists them.  Credentials are owned by the client that
created them; the vault only ever sees the bytes produced by ``to_bytes()``.

All datetimes are naive UTC.  Aware datetimes coming from a feed are
converted on parse (see ``sources.base.parse_iso_datetime``).
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum


def utc_now() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ---------------------------------------------------------------------------
# Readings
# ---------------------------------------------------------------------------


class SourceTag(str, Enum):
    """Which feed produced a reading."""

    OFFICIAL = "official"
    INFORMAL = "informal"


class SyncStatus(str, Enum):
    SYNCED = "synced"
    PENDING = "pending"
    FAILED = "failed"


#: Physiological range accepted by the store (mg/dL, inclusive).
MIN_GLUCOSE_MG_DL = 40.0
MAX_GLUCOSE_MG_DL = 400.0


@dataclass(frozen=True)
class Reading:
    """One sensor sample.

    Attributes:
        timestamp:    Naive UTC instant the sensor recorded the value.
        value:        Glucose concentration in mg/dL.
        source_tag:   Feed that reported the reading.
        device_label: Transmitter / display device name, when the feed has one.
        sync_status:  Persistence status carried with the row.
        trend:        Vendor trend-arrow name (e.g. "Flat", "SingleUp").
    """

    timestamp: datetime
    value: float
    source_tag: SourceTag
    device_label: str | None = None
    sync_status: SyncStatus = SyncStatus.SYNCED
    trend: str | None = None

    @property
    def in_physiological_range(self) -> bool:
        return MIN_GLUCOSE_MG_DL <= self.value <= MAX_GLUCOSE_MG_DL

    def with_status(self, status: SyncStatus) -> "Reading":
        return replace(self, sync_status=status)


@dataclass(frozen=True)
class TimeWindow:
    """Closed time interval ``[start, end]`` in naive UTC."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(f"Window start {self.start} is after end {self.end}")

    @classmethod
    def last(cls, delta: timedelta, now: datetime | None = None) -> "TimeWindow":
        """Window covering the ``delta`` before ``now``."""
        end = now or utc_now()
        return cls(start=end - delta, end=end)

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def contains(self, ts: datetime) -> bool:
        return self.start <= ts <= self.end

    def clamp(self, start: datetime | None = None, end: datetime | None = None) -> "TimeWindow":
        """Return the intersection with ``[start, end]``.

        Raises:
            ValueError: If the intersection is empty.
        """
        new_start = max(self.start, start) if start is not None else self.start
        new_end = min(self.end, end) if end is not None else self.end
        return TimeWindow(start=new_start, end=new_end)

    def split(self, max_span: timedelta) -> list["TimeWindow"]:
        """Cut the window into consecutive pieces no longer than ``max_span``."""
        if max_span <= timedelta(0):
            raise ValueError("max_span must be positive")
        pieces: list[TimeWindow] = []
        cursor = self.start
        while True:
            piece_end = min(cursor + max_span, self.end)
            pieces.append(TimeWindow(start=cursor, end=piece_end))
            if piece_end >= self.end:
                return pieces
            cursor = piece_end


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


def _dt_to_json(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _dt_from_json(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass
class OAuthCredential:
    """OAuth token pair for the official feed.

    Attributes:
        access_token:  Bearer token for API calls.
        refresh_token: Long-lived token used to obtain a new access_token.
        expires_at:    Naive UTC datetime when the access_token expires.
        token_type:    Token type, typically "Bearer".
        scope:         Granted OAuth scopes.
    """

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    token_type: str = "Bearer"
    scope: list[str] = field(default_factory=list)

    def is_expired(self, buffer_seconds: int = 0, now: datetime | None = None) -> bool:
        """True if the access token expires within ``buffer_seconds``.

        A credential without an expiry is treated as valid until the remote
        rejects it.
        """
        if self.expires_at is None:
            return False
        current = now or utc_now()
        return (self.expires_at - current).total_seconds() < buffer_seconds

    def to_bytes(self) -> bytes:
        return json.dumps(
            {
                "access_token": self.access_token,
                "refresh_token": self.refresh_token,
                "expires_at": _dt_to_json(self.expires_at),
                "token_type": self.token_type,
                "scope": self.scope,
            }
        ).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> "OAuthCredential":
        data = json.loads(raw.decode("utf-8"))
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=_dt_from_json(data.get("expires_at")),
            token_type=data.get("token_type", "Bearer"),
            scope=list(data.get("scope") or []),
        )


@dataclass
class SessionCredential:
    """Ephemeral session for the informal feed.

    The remote never tells us when a session dies, so validity is tracked
    locally from ``created_at`` and checked before every request.
    """

    session_id: str
    created_at: datetime

    def expires_at(self, validity: timedelta) -> datetime:
        return self.created_at + validity

    def is_near_expiry(
        self,
        validity: timedelta,
        refresh_buffer: timedelta,
        now: datetime | None = None,
    ) -> bool:
        current = now or utc_now()
        return current >= self.expires_at(validity) - refresh_buffer

    def to_bytes(self) -> bytes:
        return json.dumps(
            {"session_id": self.session_id, "created_at": _dt_to_json(self.created_at)}
        ).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> "SessionCredential":
        data = json.loads(raw.decode("utf-8"))
        return cls(
            session_id=data["session_id"],
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass
class InformalAccount:
    """Username/password pair used to open informal-feed sessions."""

    username: str
    password: str

    def to_bytes(self) -> bytes:
        return json.dumps({"username": self.username, "password": self.password}).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> "InformalAccount":
        data = json.loads(raw.decode("utf-8"))
        return cls(username=data["username"], password=data["password"])

    def __repr__(self) -> str:
        return f"InformalAccount(username={self.username!r}, password='***')"
