"""Shared plumbing for the glucose feed clients.

Both feed clients subclass ``FeedClient`` to get:

- an ``httpx.AsyncClient`` (injected for tests, or owned and closed by ``aclose()``)
- ``_send()``, which maps transport problems and timeouts to ``NetworkFailure``
- the tolerant parsing helpers used when normalizing vendor JSON

``SingleFlight`` is the one synchronization primitive of the pipeline: it
makes concurrent callers share a single in-flight credential refresh.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Generic, TypeVar

import httpx

from glucosync.errors import NetworkFailure
from glucosync.models import SourceTag

logger = logging.getLogger("glucosync.sources")

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """Run at most one instance of an async operation at a time.

    The first caller starts the operation as a task; callers arriving while
    it is running await the same task and receive the same result (or
    exception).  Awaiting goes through ``asyncio.shield`` so a cancelled
    caller does not cancel the shared work for everyone else.

    Usage::

        refresh = SingleFlight("official-token-refresh")
        token = await refresh.run(self._perform_refresh)
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._task: asyncio.Task[T] | None = None

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        task = self._task
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(operation(), name=self._name)
            task.add_done_callback(self._on_done)
            self._task = task
        else:
            logger.debug("%s already in flight, joining", self._name)
        return await asyncio.shield(task)

    def _on_done(self, task: asyncio.Task) -> None:
        if self._task is task:
            self._task = None
        # Mark the exception as retrieved even if every waiter went away.
        if not task.cancelled():
            task.exception()


class FeedClient(ABC):
    """Base class for the two vendor feed clients."""

    #: Tag stamped on every reading this client produces.
    SOURCE_TAG: SourceTag

    #: Human-readable name for logging.
    DISPLAY_NAME: str = "Unknown feed"

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30,
    ) -> None:
        self._timeout = httpx.Timeout(timeout_seconds)
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=self._timeout)

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._http.aclose()

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Issue one HTTP request with the client's timeout.

        Raises:
            NetworkFailure: On timeout or any transport-level error.
        """
        kwargs.setdefault("timeout", self._timeout)
        try:
            return await self._http.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("%s: request timed out: %s %s", self.DISPLAY_NAME, method, url)
            raise NetworkFailure(f"{self.DISPLAY_NAME} request timed out") from exc
        except httpx.TransportError as exc:
            logger.warning("%s: transport error on %s %s: %s", self.DISPLAY_NAME, method, url, exc)
            raise NetworkFailure(f"{self.DISPLAY_NAME} transport error: {exc}") from exc

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _safe_float(value: object) -> float | None:
        """Safely coerce a value to float, returning None on failure."""
        if value is None or isinstance(value, bool):
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _retry_after(response: httpx.Response) -> float | None:
        raw = response.headers.get("Retry-After")
        if raw is None:
            return None
        try:
            return max(float(raw), 0.0)
        except ValueError:
            return None


def parse_iso_datetime(value: str | None) -> datetime | None:
    """Parse an ISO-8601 datetime string to a naive UTC datetime.

    Handles both naive (assumed UTC) and timezone-aware strings.
    Returns None if the value is None or unparseable.
    """
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        logger.warning("Could not parse datetime string: %r", value)
        return None
    # Convert to UTC if tz-aware, leave naive as-is (assumed UTC)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def mask_secret(value: str | None, visible: int = 4) -> str:
    """Shorten a token or session id for log output."""
    if not value:
        return "<none>"
    return value[:visible] + "…" if len(value) > visible else "…"
