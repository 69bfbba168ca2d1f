"""Foreground/background intake for the sync coordinator.

Foreground schedules a start after a short debounce; background stops
immediately.  Rapid toggling therefore produces at most one start, issued
once the app has stayed in the foreground for the whole debounce window.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum

from glucosync.config_loader import PipelineConfig
from glucosync.sync.coordinator import SyncCoordinator

logger = logging.getLogger("glucosync.sync.lifecycle")


class LifecycleEvent(str, Enum):
    FOREGROUND = "foreground"
    BACKGROUND = "background"


class AppLifecycleMonitor:
    def __init__(self, coordinator: SyncCoordinator, config: PipelineConfig) -> None:
        self._coordinator = coordinator
        self._debounce = config.sync.foreground_debounce_seconds
        self._pending: asyncio.Task | None = None
        self.starts_issued = 0

    @property
    def has_pending_start(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def handle(self, event: LifecycleEvent) -> None:
        """Feed one lifecycle event in."""
        self._cancel_pending()
        if event is LifecycleEvent.FOREGROUND:
            self._pending = asyncio.get_running_loop().create_task(self._start_after_debounce())
            logger.debug("Lifecycle: foreground, start scheduled in %.1fs", self._debounce)
        else:
            logger.debug("Lifecycle: background, stopping sync")
            self._coordinator.stop()

    async def aclose(self) -> None:
        """Drop any pending start."""
        task = self._pending
        self._cancel_pending()
        if task is not None:
            await asyncio.wait({task})

    async def _start_after_debounce(self) -> None:
        await asyncio.sleep(self._debounce)
        if self._coordinator.start():
            self.starts_issued += 1

    def _cancel_pending(self) -> None:
        if self.has_pending_start:
            self._pending.cancel()
        self._pending = None
