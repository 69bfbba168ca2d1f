"""Hybrid source: routes requests between the delayed and the live feed.

The official feed is authoritative but publishes readings only after a
regulatory delay.  The informal feed is near-real-time but less reliable.
Everything older than the split point comes from the official feed,
everything newer from the informal one::

    split = now − (publication_delay + safety_margin)

    ───────── official ─────────┤├──────── informal ────────▶ now
                              split

A window straddling the split queries both feeds concurrently and merges
the results, preferring official readings on collisions.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable

from glucosync.config_loader import PipelineConfig
from glucosync.errors import GlucoSyncError
from glucosync.models import Reading, TimeWindow, utc_now
from glucosync.sources.informal import InformalSourceClient
from glucosync.sources.official import OfficialSourceClient
from glucosync.sync.dedup import merge_readings

logger = logging.getLogger("glucosync.sources.hybrid")


class HybridSource:
    def __init__(
        self,
        official: OfficialSourceClient,
        informal: InformalSourceClient,
        config: PipelineConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._official = official
        self._informal = informal
        self._config = config
        self._clock = clock

    def split_point(self, now: datetime | None = None) -> datetime:
        """Boundary between official (before) and informal (after) coverage."""
        return (now or self._clock()) - self._config.split_offset

    async def fetch_window(self, window: TimeWindow) -> list[Reading]:
        """Readings for ``window`` from whichever feed(s) cover it.

        Raises:
            GlucoSyncError: From the only queried feed, or the official
                feed's error when both feeds fail on a straddling window.
        """
        split = self.split_point()

        if window.end <= split:
            logger.debug("Hybrid: %s → %s is official-only", window.start, window.end)
            return merge_readings(await self._official.fetch_readings(window))
        if window.start >= split:
            logger.debug("Hybrid: %s → %s is informal-only", window.start, window.end)
            return merge_readings(await self._informal.fetch_window(window))

        official_result, informal_result = await asyncio.gather(
            self._official.fetch_readings(window.clamp(end=split)),
            self._informal.fetch_window(window),
            return_exceptions=True,
        )
        for result in (official_result, informal_result):
            if isinstance(result, BaseException) and not isinstance(result, GlucoSyncError):
                raise result

        if isinstance(official_result, GlucoSyncError) and isinstance(informal_result, GlucoSyncError):
            logger.error("Hybrid: both feeds failed (official: %s; informal: %s)", official_result, informal_result)
            raise official_result
        if isinstance(official_result, GlucoSyncError):
            logger.warning("Hybrid: official feed failed, using informal only: %s", official_result)
            return merge_readings(informal_result)
        if isinstance(informal_result, GlucoSyncError):
            logger.warning("Hybrid: informal feed failed, using official only: %s", informal_result)
            return merge_readings(official_result)

        merged = merge_readings(official_result, informal_result)
        logger.info(
            "Hybrid: merged %d official + %d informal → %d readings",
            len(official_result),
            len(informal_result),
            len(merged),
        )
        return merged

    async def fetch_latest(self) -> Reading | None:
        """Most recent reading, preferring the live feed.

        Falls back to the newest official reading just before the split
        point when the informal feed fails or has nothing.

        Raises:
            GlucoSyncError: The official feed's error, when both feeds fail.
        """
        informal_error: GlucoSyncError | None = None
        try:
            latest = await self._informal.fetch_latest()
        except GlucoSyncError as exc:
            logger.warning("Hybrid: informal latest failed, falling back to official: %s", exc)
            informal_error = exc
        else:
            if latest is not None:
                return latest

        now = self._clock()
        lookback = timedelta(minutes=self._config.informal.latest_lookback_minutes)
        fallback = TimeWindow(
            start=self.split_point(now) - lookback,
            end=now - self._config.official.publication_delay,
        )
        try:
            readings = await self._official.fetch_readings(fallback)
        except GlucoSyncError as exc:
            if informal_error is None:
                logger.info("Hybrid: no live data and official fallback failed: %s", exc)
                return None
            logger.error("Hybrid: both feeds failed for latest reading")
            raise

        return readings[-1] if readings else None
