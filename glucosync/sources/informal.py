"""Informal (low-latency, session-based) glucose feed client.

Uses the follower/publisher web service: a username/password pair opens a
session through a two-step login, and the session id is passed as a query
parameter on every data request.  Sessions expire silently on the server,
so the client tracks their age locally and logs in again shortly before the
assumed expiry.

Endpoints used:
    /ShareWebServices/Services/General/AuthenticatePublisherAccount    - password → account id
    /ShareWebServices/Services/General/LoginPublisherAccountById       - account id → session id
    /ShareWebServices/Services/Publisher/ReadPublisherLatestGlucoseValues - recent readings
"""

from __future__ import annotations

import logging
import math
import re
import uuid
from datetime import datetime, timedelta
from typing import Callable

import httpx

from glucosync.config_loader import PipelineConfig
from glucosync.errors import (
    AuthExpired,
    InvalidCredentials,
    NetworkFailure,
    NoDataAvailable,
    NotConnected,
    RateLimited,
    UnexpectedResponse,
)
from glucosync.models import InformalAccount, Reading, SessionCredential, SourceTag, TimeWindow, utc_now
from glucosync.sources.base import FeedClient, SingleFlight, mask_secret, parse_iso_datetime
from glucosync.vault import CredentialVault

logger = logging.getLogger("glucosync.sources.informal")

_SERVICES = "/ShareWebServices/Services"
_AUTHENTICATE_PATH = _SERVICES + "/General/AuthenticatePublisherAccount"
_LOGIN_BY_ID_PATH = _SERVICES + "/General/LoginPublisherAccountById"
_READ_VALUES_PATH = _SERVICES + "/Publisher/ReadPublisherLatestGlucoseValues"

_NULL_SESSION_ID = "00000000-0000-0000-0000-000000000000"
_MAX_MINUTES = 1440
_MINUTES_PER_READING = 5

# Error codes the service returns (with HTTP 500) for a bad login.
_LOGIN_REJECTION_CODES = {
    "AccountPasswordInvalid",
    "SSO_AuthenticatePasswordInvalid",
    "SSO_AuthenticateAccountNotFound",
    "SSO_AuthenticateMaxAttemptsExceeed",
    "SSO_AuthenticateMaxAttemptsExceeded",
}

# Older payloads send the trend as an integer.
_TREND_NAMES = {
    0: None,
    1: "DoubleUp",
    2: "SingleUp",
    3: "FortyFiveUp",
    4: "Flat",
    5: "FortyFiveDown",
    6: "SingleDown",
    7: "DoubleDown",
    8: "NotComputable",
    9: "RateOutOfRange",
}

_DATE_PATTERN = re.compile(r"Date\((-?\d+)(?:[+-]\d{4})?\)")

_EPOCH = datetime(1970, 1, 1)


def parse_share_date(value: str | None) -> datetime | None:
    """Parse a service timestamp to naive UTC.

    Accepts ``Date(1691455258000)``, ``/Date(1691455258000+0200)/`` (the
    milliseconds are already UTC; the zone suffix is ignored) and ISO-8601.
    """
    if not value or not isinstance(value, str):
        return None
    match = _DATE_PATTERN.search(value)
    if match:
        try:
            return _EPOCH + timedelta(milliseconds=int(match.group(1)))
        except (OverflowError, ValueError):
            logger.warning("Share date out of range: %r", value)
            return None
    return parse_iso_datetime(value)


def _is_valid_session_id(value: str) -> bool:
    try:
        parsed = uuid.UUID(value)
    except ValueError:
        return False
    return str(parsed) != _NULL_SESSION_ID


class InformalSourceClient(FeedClient):
    """Client for the session-based low-latency feed.

    Usage::

        client = InformalSourceClient(vault, config, server="international")
        client.save_account("user@example.com", "secret")
        latest = await client.fetch_latest()
    """

    SOURCE_TAG = SourceTag.INFORMAL
    DISPLAY_NAME = "Informal feed"
    ACCOUNT_KEY = "informal.account"
    SESSION_KEY = "informal.session"

    def __init__(
        self,
        vault: CredentialVault,
        config: PipelineConfig,
        server: str = "international",
        application_id: str = "d8665ade-9673-4e27-9ff6-92db4ce13d13",
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(http_client, timeout_seconds=config.informal.request_timeout_seconds)
        self._vault = vault
        self._settings = config.informal
        self._base_url = config.informal.base_url(server)
        self._application_id = application_id
        self._clock = clock
        self._session: SessionCredential | None = None
        self._login = SingleFlight[SessionCredential]("informal-login")

    # ------------------------------------------------------------------
    # Account management
    # ------------------------------------------------------------------

    def save_account(self, username: str, password: str) -> None:
        """Store login details; any existing session is discarded."""
        if not username or not password:
            raise ValueError("username and password are required")
        self._vault.store(self.ACCOUNT_KEY, InformalAccount(username, password).to_bytes())
        self._drop_session()
        logger.info("Informal: account saved for %s", username)

    def delete_account(self) -> None:
        self._vault.clear(self.ACCOUNT_KEY)
        self._drop_session()
        logger.info("Informal: account removed")

    def has_account(self) -> bool:
        return self._vault.load(self.ACCOUNT_KEY) is not None

    # ------------------------------------------------------------------
    # Readings
    # ------------------------------------------------------------------

    async def fetch_latest(self) -> Reading | None:
        """Newest reading within the look-back period, or None."""
        minutes = self._settings.latest_lookback_minutes
        readings = await self._read_values(minutes, minutes // _MINUTES_PER_READING)
        if not readings:
            return None
        return max(readings, key=lambda r: r.timestamp)

    async def fetch_window(self, window: TimeWindow) -> list[Reading]:
        """Readings inside ``window``, ascending.

        The service only answers "the last N minutes", so the request
        reaches back from now to the window start and the result is filtered.
        """
        now = self._clock()
        if window.start > now:
            return []
        minutes = math.ceil((now - window.start).total_seconds() / 60)
        readings = await self._read_values(minutes, minutes // _MINUTES_PER_READING + 1)
        selected = sorted((r for r in readings if window.contains(r.timestamp)), key=lambda r: r.timestamp)
        logger.info("Informal: %d readings for %s → %s", len(selected), window.start, window.end)
        return selected

    async def _read_values(self, minutes: int, max_count: int) -> list[Reading]:
        try:
            return await self._request_readings(minutes, max_count)
        except NoDataAvailable as exc:
            logger.debug("Informal: %s", exc)
            return []

    async def _request_readings(self, minutes: int, max_count: int) -> list[Reading]:
        minutes = min(max(minutes, 1), _MAX_MINUTES)
        max_count = min(max(max_count, 1), self._settings.max_readings)

        session_id = await self._session_id()
        response = await self._request_values(session_id, minutes, max_count)

        if response.status_code in (401, 500):
            logger.info("Informal: session rejected (HTTP %d), logging in again", response.status_code)
            self._invalidate_session(session_id)
            session_id = await self._session_id()
            response = await self._request_values(session_id, minutes, max_count)
            if response.status_code == 401:
                raise AuthExpired("Informal feed rejected a fresh session")
            if response.status_code == 500:
                raise NetworkFailure("Informal feed failed with a fresh session (HTTP 500)")

        status = response.status_code
        if status == 404:
            raise NoDataAvailable("Informal feed has no readings (HTTP 404)")
        if status == 429:
            raise RateLimited("Informal feed rate limit exceeded", retry_after=self._retry_after(response))
        if status >= 500:
            raise NetworkFailure(f"Informal feed server error (HTTP {status})")
        if status != 200:
            raise UnexpectedResponse(f"Informal feed returned HTTP {status}", status)

        if not response.content.strip():
            raise NoDataAvailable("Informal feed returned an empty body")
        try:
            payload = response.json()
        except ValueError as exc:
            raise UnexpectedResponse("Informal feed returned a non-JSON body", status) from exc
        if not isinstance(payload, list):
            raise UnexpectedResponse("Informal feed payload is not a list", status)
        return self._parse_values(payload)

    async def _request_values(self, session_id: str, minutes: int, max_count: int) -> httpx.Response:
        return await self._send(
            "POST",
            self._base_url + _READ_VALUES_PATH,
            params={"sessionId": session_id, "minutes": minutes, "maxCount": max_count},
            headers={"Accept": "application/json"},
        )

    def _parse_values(self, entries: list) -> list[Reading]:
        readings = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            value = self._safe_float(entry.get("Value"))
            timestamp = parse_share_date(entry.get("ST")) or parse_share_date(entry.get("WT"))
            if value is None or timestamp is None:
                continue
            trend = entry.get("Trend")
            if isinstance(trend, int) and not isinstance(trend, bool):
                trend = _TREND_NAMES.get(trend)
            readings.append(
                Reading(
                    timestamp=timestamp,
                    value=value,
                    source_tag=self.SOURCE_TAG,
                    trend=trend,
                )
            )
        return readings

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def _load_session(self) -> SessionCredential | None:
        if self._session is not None:
            return self._session
        raw = self._vault.load(self.SESSION_KEY)
        if raw is None:
            return None
        try:
            self._session = SessionCredential.from_bytes(raw)
        except (ValueError, KeyError) as exc:
            logger.warning("Informal: stored session is unreadable, discarding: %s", exc)
            self._vault.clear(self.SESSION_KEY)
            return None
        return self._session

    def _drop_session(self) -> None:
        self._session = None
        self._vault.clear(self.SESSION_KEY)

    def _invalidate_session(self, session_id: str) -> None:
        """Forget ``session_id`` unless another caller has already replaced it."""
        current = self._load_session()
        if current is not None and current.session_id == session_id:
            self._drop_session()

    async def _session_id(self) -> str:
        session = self._load_session()
        if session is not None and not session.is_near_expiry(
            self._settings.session_validity,
            self._settings.session_refresh_buffer,
            now=self._clock(),
        ):
            return session.session_id
        if session is not None:
            logger.info("Informal: session %s near expiry, renewing", mask_secret(session.session_id))
        session = await self._login.run(self._authenticate)
        return session.session_id

    async def _authenticate(self) -> SessionCredential:
        raw = self._vault.load(self.ACCOUNT_KEY)
        if raw is None:
            raise NotConnected("Informal feed has no stored account")
        account = InformalAccount.from_bytes(raw)

        account_id = await self._login_step(
            _AUTHENTICATE_PATH,
            {"accountName": account.username, "password": account.password, "applicationId": self._application_id},
        )
        session_id = await self._login_step(
            _LOGIN_BY_ID_PATH,
            {"accountId": account_id, "password": account.password, "applicationId": self._application_id},
        )
        if not _is_valid_session_id(session_id):
            raise InvalidCredentials("Informal feed returned an invalid session id")

        session = SessionCredential(session_id=session_id, created_at=self._clock())
        self._vault.store(self.SESSION_KEY, session.to_bytes())
        self._session = session
        logger.info("Informal: new session %s", mask_secret(session_id))
        return session

    async def _login_step(self, path: str, body: dict) -> str:
        response = await self._send(
            "POST",
            self._base_url + path,
            json=body,
            headers={"Accept": "application/json"},
        )
        status = response.status_code
        if status in (401, 403):
            raise InvalidCredentials(f"Informal feed login refused (HTTP {status})")
        if status == 429:
            raise RateLimited("Informal feed login rate limited", retry_after=self._retry_after(response))
        if status >= 500:
            if self._error_code(response) in _LOGIN_REJECTION_CODES:
                raise InvalidCredentials("Informal feed login refused")
            raise NetworkFailure(f"Informal feed login failed (HTTP {status})")
        if status != 200:
            raise UnexpectedResponse(f"Informal feed login returned HTTP {status}", status)

        try:
            value = response.json()
        except ValueError as exc:
            raise UnexpectedResponse("Informal feed login returned a non-JSON body", status) from exc
        if not isinstance(value, str) or not value:
            raise UnexpectedResponse("Informal feed login did not return an id", status)
        return value

    @staticmethod
    def _error_code(response: httpx.Response) -> str | None:
        try:
            body = response.json()
        except ValueError:
            return None
        return body.get("Code") if isinstance(body, dict) else None
