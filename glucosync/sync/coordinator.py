"""Background polling loop that keeps the reading store current.

State machine::

    Idle ──start()──▶ Active ──(stop | max run | error threshold | auth lost)──▶ Idle

While active, one task repeats:

1. Check for a stop request and the maximum continuous run time
2. Sleep for the adaptive interval (interrupted immediately by ``stop()``)
3. ``HybridSource.fetch_latest()``, raced against ``stop()``
4. Save any reading through ``ReadingStore.save_many``

The interval is short while a display surface shows live data
(``note_live_interest()``), longer otherwise, and widened after each
rate-limit response.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable

from glucosync.config_loader import PipelineConfig
from glucosync.errors import AuthExpired, GlucoSyncError, PersistenceFailure, RateLimited
from glucosync.models import Reading, utc_now
from glucosync.sources.hybrid import HybridSource
from glucosync.store import ReadingStore

logger = logging.getLogger("glucosync.sync.coordinator")

STOP_REQUESTED = "stopped"
STOP_MAX_DURATION = "max_duration"
STOP_ERROR_THRESHOLD = "error_threshold"
STOP_CONNECTION_LOST = "connection_lost"
STOP_CRASHED = "crashed"


@dataclass
class SyncState:
    """Snapshot of the coordinator.

    Attributes:
        is_active:               True while the polling loop runs.
        started_at:              UTC time of the last ``start()``.
        consecutive_error_count: Failures since the last successful poll.
        last_sync_at:            UTC time of the last successful poll.
        last_error:              Message of the most recent failure.
        stop_reason:             Why the loop last ended (None while running).
        connection_lost:         A feed reported that re-authentication is needed.
        readings_saved:          Rows inserted since ``start()``.
    """

    is_active: bool = False
    started_at: datetime | None = None
    consecutive_error_count: int = 0
    last_sync_at: datetime | None = None
    last_error: str | None = None
    stop_reason: str | None = None
    connection_lost: bool = False
    readings_saved: int = 0


@dataclass
class SyncOutcome:
    """Result of one fetch-and-save pass."""

    reading: Reading | None
    saved: int


class SyncCoordinator:
    """Drives periodic acquisition of the latest reading.

    Usage::

        coordinator = SyncCoordinator(hybrid_source, store, config)
        coordinator.start()
        coordinator.note_live_interest()   # a screen is showing live data
        coordinator.stop()
        await coordinator.wait_stopped()
    """

    def __init__(
        self,
        source: HybridSource,
        store: ReadingStore,
        config: PipelineConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._source = source
        self._store = store
        self._settings = config.sync
        self._clock = clock
        self._state = SyncState()
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()
        self._backoff = 1.0
        self._retry_after: float | None = None
        self._live_interest_at: float | None = None

    @property
    def state(self) -> SyncState:
        """A copy of the current state."""
        return replace(self._state)

    @property
    def is_active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start the polling loop.  Returns False if it is already running."""
        if self.is_active:
            logger.debug("SyncCoordinator: start ignored, already active")
            return False

        self._state = SyncState(is_active=True, started_at=self._clock())
        self._stop_event = asyncio.Event()
        self._backoff = 1.0
        self._retry_after = None
        self._task = asyncio.get_running_loop().create_task(self._run(), name="glucosync-sync")
        self._task.add_done_callback(self._on_task_done)
        logger.info("SyncCoordinator: started")
        return True

    def stop(self) -> None:
        """Ask the loop to stop at its next suspension point."""
        if self.is_active:
            logger.info("SyncCoordinator: stop requested")
        self._stop_event.set()

    async def wait_stopped(self) -> SyncState:
        """Wait for the loop to finish; returns the final state."""
        if self._task is not None:
            await asyncio.wait({self._task})
        return self.state

    def note_live_interest(self) -> None:
        """Record that a display surface wants live data right now."""
        self._live_interest_at = time.monotonic()

    def current_interval(self) -> float:
        """Seconds to sleep before the next poll."""
        settings = self._settings
        live = (
            self._live_interest_at is not None
            and time.monotonic() - self._live_interest_at <= settings.live_interest_window_seconds
        )
        base = settings.live_interval_seconds if live else settings.idle_interval_seconds
        interval = base * self._backoff
        if self._retry_after is not None:
            interval = max(interval, self._retry_after)
        return min(interval, settings.max_interval_seconds)

    async def sync_once(self) -> SyncOutcome:
        """Fetch the latest reading and save it, outside the loop.

        Raises:
            GlucoSyncError: Whatever the source or store raised.
        """
        reading = await self._source.fetch_latest()
        saved = await self._store.save_many([reading]) if reading is not None else 0
        self._state.last_sync_at = self._clock()
        self._state.readings_saved += saved
        return SyncOutcome(reading=reading, saved=saved)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.max_run_seconds
        reason = STOP_REQUESTED
        try:
            await self._prune()
            while True:
                if self._stop_event.is_set():
                    reason = STOP_REQUESTED
                    break
                remaining = deadline - loop.time()
                if remaining <= 0:
                    reason = STOP_MAX_DURATION
                    break

                if await self._sleep(min(self.current_interval(), remaining)):
                    reason = STOP_REQUESTED
                    break
                if loop.time() >= deadline:
                    reason = STOP_MAX_DURATION
                    break

                reason = await self._poll()
                if reason is not None:
                    break
        except Exception:
            reason = STOP_CRASHED
            logger.exception("SyncCoordinator: loop crashed")
            raise
        finally:
            self._state.is_active = False
            self._state.stop_reason = reason
            logger.info(
                "SyncCoordinator: stopped (%s) after %d saved readings, %d consecutive errors",
                reason,
                self._state.readings_saved,
                self._state.consecutive_error_count,
            )

    async def _sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``.  Returns True if ``stop()`` interrupted it."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=max(seconds, 0))
        except asyncio.TimeoutError:
            return False
        return True

    async def _poll(self) -> str | None:
        """One fetch-and-save pass.  Returns a stop reason, or None to continue."""
        fetch = asyncio.ensure_future(self._source.fetch_latest())
        stopper = asyncio.ensure_future(self._stop_event.wait())
        try:
            await asyncio.wait({fetch, stopper}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            fetch.cancel()
            raise
        finally:
            stopper.cancel()

        if self._stop_event.is_set():
            if fetch.done():
                if not fetch.cancelled():
                    fetch.exception()
            else:
                fetch.cancel()
                await asyncio.wait({fetch})
            logger.info("SyncCoordinator: in-flight fetch discarded after stop")
            return STOP_REQUESTED

        try:
            reading = fetch.result()
            saved = await self._store.save_many([reading]) if reading is not None else 0
        except AuthExpired as exc:
            self._record_failure(exc)
            self._state.connection_lost = True
            logger.warning("SyncCoordinator: connection lost: %s", exc)
            return STOP_CONNECTION_LOST
        except RateLimited as exc:
            self._record_failure(exc)
            self._backoff = min(
                self._backoff * self._settings.rate_limit_backoff_factor,
                self._settings.max_interval_seconds,
            )
            self._retry_after = exc.retry_after
            logger.warning("SyncCoordinator: rate limited, next interval %.1fs", self.current_interval())
        except PersistenceFailure as exc:
            self._record_failure(exc)
            logger.critical("SyncCoordinator: store unavailable: %s", exc)
        except GlucoSyncError as exc:
            self._record_failure(exc)
            logger.warning("SyncCoordinator: poll failed: %s", exc)
        else:
            self._state.consecutive_error_count = 0
            self._state.last_error = None
            self._state.last_sync_at = self._clock()
            self._state.readings_saved += saved
            self._backoff = 1.0
            self._retry_after = None
            return None

        if self._state.consecutive_error_count >= self._settings.max_consecutive_errors:
            logger.error(
                "SyncCoordinator: %d consecutive errors, giving up",
                self._state.consecutive_error_count,
            )
            return STOP_ERROR_THRESHOLD
        return None

    def _record_failure(self, exc: GlucoSyncError) -> None:
        self._state.consecutive_error_count += 1
        self._state.last_error = f"{type(exc).__name__}: {exc}"

    async def _prune(self) -> None:
        cutoff = self._store.retention_cutoff()
        try:
            await self._store.prune_older_than(cutoff)
        except PersistenceFailure as exc:
            self._state.last_error = f"{type(exc).__name__}: {exc}"
            logger.critical("SyncCoordinator: retention prune failed: %s", exc)

    def _on_task_done(self, task: asyncio.Task) -> None:
        # The exception was already logged by _run.
        if not task.cancelled():
            task.exception()
