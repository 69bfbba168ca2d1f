"""Official (regulated, delayed) glucose feed client.

OAuth2 authorization-code flow with refresh tokens.  The credential lives in
the vault under ``official.oauth`` and is cached in memory after first use.

API base: configured per environment in pipeline_config.yaml

Endpoints used:
    /v2/oauth2/login     - Browser-facing authorization page
    /v2/oauth2/token     - Authorization-code and refresh-token grants
    /v3/users/self/egvs  - Estimated glucose values for a date range

The client is delay-agnostic: it fetches whatever window it is given.
Keeping requests out of the publication-delay zone is the caller's job
(see ``HybridSource``).
"""

from __future__ import annotations

import logging
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
from glucosync.models import OAuthCredential, Reading, SourceTag, TimeWindow, utc_now
from glucosync.sources.base import FeedClient, SingleFlight, mask_secret, parse_iso_datetime
from glucosync.vault import CredentialVault

logger = logging.getLogger("glucosync.sources.official")

_AUTH_PATH = "/v2/oauth2/login"
_TOKEN_PATH = "/v2/oauth2/token"
_EGVS_PATH = "/v3/users/self/egvs"

# The EGV endpoint wants UTC without a zone suffix.
_QUERY_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


class OfficialSourceClient(FeedClient):
    """Client for the official OAuth2 glucose API.

    Usage::

        client = OfficialSourceClient(vault, config, client_id, client_secret, redirect_uri)
        readings = await client.fetch_readings(TimeWindow.last(timedelta(days=1)))
    """

    SOURCE_TAG = SourceTag.OFFICIAL
    DISPLAY_NAME = "Official feed"
    VAULT_KEY = "official.oauth"

    def __init__(
        self,
        vault: CredentialVault,
        config: PipelineConfig,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        environment: str = "production",
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the official client.

        Args:
            vault:         Where the OAuth credential is persisted.
            config:        Pipeline configuration (window limit, refresh buffer).
            client_id:     OAuth2 client ID.
            client_secret: OAuth2 client secret.
            redirect_uri:  Redirect URI registered with the vendor.
            environment:   Key into ``official.environments`` ("production", "sandbox").
            http_client:   Optional pre-configured httpx client (for testing).
            clock:         Returns the current naive UTC time.
        """
        super().__init__(http_client, timeout_seconds=config.official.request_timeout_seconds)
        self._vault = vault
        self._settings = config.official
        self._base_url = config.official.base_url(environment)
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._clock = clock
        self._credential: OAuthCredential | None = None
        self._refresh = SingleFlight[OAuthCredential]("official-token-refresh")

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def authorization_url(self, state: str) -> str:
        """Build the OAuth2 login URL the user is sent to."""
        url = httpx.URL(
            self._base_url + _AUTH_PATH,
            params={
                "client_id": self._client_id,
                "redirect_uri": self._redirect_uri,
                "response_type": "code",
                "scope": "offline_access",
                "state": state,
            },
        )
        return str(url)

    async def exchange_code(self, code: str) -> OAuthCredential:
        """Exchange an authorization code for tokens and store them.

        Raises:
            InvalidCredentials: If the vendor refuses the code.
        """
        logger.info("Official: exchanging authorization code")
        response = await self._send(
            "POST",
            self._base_url + _TOKEN_PATH,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self._redirect_uri,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
            },
        )
        if response.status_code in (400, 401, 403):
            raise InvalidCredentials(f"Authorization code rejected (HTTP {response.status_code})")
        data = self._token_payload(response)
        credential = self._credential_from_payload(data, previous_refresh_token=None)
        self._save_credential(credential)
        return credential

    def is_connected(self) -> bool:
        return self._load_credential() is not None

    def disconnect(self) -> None:
        """Forget the stored credential."""
        self._vault.clear(self.VAULT_KEY)
        self._credential = None
        logger.info("Official: disconnected")

    # ------------------------------------------------------------------
    # Readings
    # ------------------------------------------------------------------

    async def fetch_readings(self, window: TimeWindow) -> list[Reading]:
        """Fetch readings in ``window``, ascending by timestamp.

        Windows longer than ``official.max_window_days`` are fetched as
        consecutive sub-windows.

        Raises:
            AuthExpired:        No credential, or it was rejected after one refresh.
            RateLimited:        Remote returned 429.
            NetworkFailure:     Timeout, transport error, or 5xx.
            UnexpectedResponse: Any other status or an undecodable body.
        """
        pieces = window.split(self._settings.max_window)
        if len(pieces) > 1:
            logger.debug("Official: splitting %s → %s into %d requests", window.start, window.end, len(pieces))

        seen: set[tuple[datetime, float]] = set()
        readings: list[Reading] = []
        for piece in pieces:
            try:
                piece_readings = await self._fetch_piece(piece)
            except NoDataAvailable as exc:
                logger.debug("Official: %s", exc)
                continue
            for reading in piece_readings:
                key = (reading.timestamp, reading.value)
                # Adjacent pieces share their boundary instant.
                if key in seen or not window.contains(reading.timestamp):
                    continue
                seen.add(key)
                readings.append(reading)

        readings.sort(key=lambda r: r.timestamp)
        logger.info("Official: %d readings for %s → %s", len(readings), window.start, window.end)
        return readings

    async def _fetch_piece(self, window: TimeWindow) -> list[Reading]:
        token = await self._access_token()
        response = await self._request_egvs(window, token)

        if response.status_code == 401:
            logger.info("Official: access token rejected, refreshing once")
            credential = await self._refreshed_credential(stale_token=token)
            response = await self._request_egvs(window, credential.access_token)
            if response.status_code == 401:
                raise AuthExpired("Official feed rejected the refreshed access token")

        if response.status_code == 404:
            raise NoDataAvailable(f"Official feed has no readings for {window.start} → {window.end} (HTTP 404)")
        self._raise_for_status(response)

        try:
            payload = response.json()
        except ValueError as exc:
            raise UnexpectedResponse("Official feed returned a non-JSON body", response.status_code) from exc
        return self._parse_egvs(payload)

    async def _request_egvs(self, window: TimeWindow, access_token: str) -> httpx.Response:
        return await self._send(
            "GET",
            self._base_url + _EGVS_PATH,
            params={
                "startDate": window.start.strftime(_QUERY_DATE_FORMAT),
                "endDate": window.end.strftime(_QUERY_DATE_FORMAT),
            },
            headers={"Authorization": f"Bearer {access_token}"},
        )

    def _parse_egvs(self, payload: object) -> list[Reading]:
        if not isinstance(payload, dict):
            raise UnexpectedResponse("Official feed payload is not an object")
        records = payload.get("records")
        if records is None:
            records = payload.get("egvs") or []
        if not isinstance(records, list):
            raise UnexpectedResponse("Official feed 'records' is not a list")

        readings = []
        for record in records:
            if not isinstance(record, dict):
                continue
            value = self._safe_float(record.get("value"))
            timestamp = parse_iso_datetime(record.get("systemTime"))
            if value is None or timestamp is None:
                continue
            readings.append(
                Reading(
                    timestamp=timestamp,
                    value=value,
                    source_tag=self.SOURCE_TAG,
                    device_label=record.get("transmitterGeneration") or record.get("displayDevice"),
                    trend=record.get("trend"),
                )
            )
        return readings

    # ------------------------------------------------------------------
    # Token lifecycle
    # ------------------------------------------------------------------

    def _load_credential(self) -> OAuthCredential | None:
        if self._credential is not None:
            return self._credential
        raw = self._vault.load(self.VAULT_KEY)
        if raw is None:
            return None
        try:
            self._credential = OAuthCredential.from_bytes(raw)
        except (ValueError, KeyError) as exc:
            logger.warning("Official: stored credential is unreadable, discarding: %s", exc)
            self._vault.clear(self.VAULT_KEY)
            return None
        return self._credential

    def _save_credential(self, credential: OAuthCredential) -> None:
        self._vault.store(self.VAULT_KEY, credential.to_bytes())
        self._credential = credential

    async def _access_token(self) -> str:
        credential = self._load_credential()
        if credential is None:
            raise NotConnected("Official feed is not connected")
        if credential.is_expired(self._settings.token_refresh_buffer_seconds, now=self._clock()):
            credential = await self._refreshed_credential(stale_token=credential.access_token)
        return credential.access_token

    async def _refreshed_credential(self, stale_token: str) -> OAuthCredential:
        """Return a credential newer than ``stale_token``, refreshing at most once.

        If another caller already replaced the stale token, the replacement
        is returned without contacting the remote.
        """
        current = self._credential
        if (
            current is not None
            and current.access_token != stale_token
            and not current.is_expired(self._settings.token_refresh_buffer_seconds, now=self._clock())
        ):
            return current
        return await self._refresh.run(self._perform_refresh)

    async def _perform_refresh(self) -> OAuthCredential:
        credential = self._load_credential()
        if credential is None or not credential.refresh_token:
            self.disconnect()
            raise AuthExpired("No refresh token available for the official feed")

        logger.info("Official: refreshing access token %s", mask_secret(credential.access_token))
        response = await self._send(
            "POST",
            self._base_url + _TOKEN_PATH,
            data={
                "grant_type": "refresh_token",
                "refresh_token": credential.refresh_token,
                "redirect_uri": self._redirect_uri,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
            },
        )
        if response.status_code in (400, 401, 403):
            logger.warning("Official: refresh token rejected (HTTP %d), clearing credential", response.status_code)
            self.disconnect()
            raise AuthExpired("Official feed refresh token was rejected")

        data = self._token_payload(response)
        refreshed = self._credential_from_payload(data, previous_refresh_token=credential.refresh_token)
        # Persist before any waiter can use the new token.
        self._save_credential(refreshed)
        return refreshed

    def _token_payload(self, response: httpx.Response) -> dict:
        self._raise_for_status(response)
        try:
            data = response.json()
        except ValueError as exc:
            raise UnexpectedResponse("Token endpoint returned a non-JSON body", response.status_code) from exc
        if not isinstance(data, dict) or not data.get("access_token"):
            raise UnexpectedResponse("Token endpoint response has no access_token", response.status_code)
        return data

    def _credential_from_payload(self, data: dict, previous_refresh_token: str | None) -> OAuthCredential:
        expires_in = self._safe_float(data.get("expires_in"))
        expires_at = self._clock() + timedelta(seconds=expires_in) if expires_in is not None else None
        scope = data.get("scope") or ""
        return OAuthCredential(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or previous_refresh_token,
            expires_at=expires_at,
            token_type=data.get("token_type", "Bearer"),
            scope=scope.split() if isinstance(scope, str) else list(scope),
        )

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status == 200:
            return
        if status == 429:
            raise RateLimited("Official feed rate limit exceeded", retry_after=self._retry_after(response))
        if status >= 500:
            raise NetworkFailure(f"Official feed server error (HTTP {status})")
        raise UnexpectedResponse(f"Official feed returned HTTP {status}", status)
