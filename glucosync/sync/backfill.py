"""Historical backfill of glucose readings.

Imports a past range through ``HybridSource.fetch_window`` and saves it
with ``ReadingStore.save_many``.  Designed to:
- Process in configurable chunks (default 30 days, the official window limit)
- Respect API rate limits (configurable delay between chunks)
- Skip chunks already completed by this orchestrator
- Never reach back further than the store's retention period

Usage::

    orchestrator = BackfillOrchestrator(hybrid_source, store, config)
    async for progress in orchestrator.run(start, end):
        logger.info("Backfill progress: %.1f%%", progress.pct_complete)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import AsyncIterator

from glucosync.config_loader import PipelineConfig
from glucosync.errors import GlucoSyncError, RateLimited
from glucosync.models import TimeWindow
from glucosync.sources.hybrid import HybridSource
from glucosync.store import ReadingStore
from glucosync.sync.dedup import InMemoryDedupCache, window_key

logger = logging.getLogger("glucosync.sync.backfill")


@dataclass
class BackfillProgress:
    """Progress update emitted during a backfill run.

    Attributes:
        current_end:      End of the chunk just processed.
        processed_chunks: Chunks processed so far (including skipped ones).
        total_chunks:     Chunks in the run.
        readings_saved:   Rows inserted so far.
        errors:           Error messages encountered.
        is_complete:      True on the final update.
    """

    current_end: datetime
    processed_chunks: int
    total_chunks: int
    readings_saved: int
    errors: list[str] = field(default_factory=list)
    is_complete: bool = False

    @property
    def pct_complete(self) -> float:
        if self.total_chunks == 0:
            return 100.0
        return round(self.processed_chunks / self.total_chunks * 100, 1)


class BackfillOrchestrator:
    """Chunked, rate-limited historical import."""

    def __init__(self, source: HybridSource, store: ReadingStore, config: PipelineConfig) -> None:
        self._source = source
        self._store = store
        self._config = config.backfill
        self._dedup = InMemoryDedupCache()

    async def run(self, start: datetime, end: datetime) -> AsyncIterator[BackfillProgress]:
        """Backfill ``[start, end]``.

        This is an async generator.  Yields a BackfillProgress after each
        chunk and a final one with ``is_complete=True``.  A rate-limit
        response aborts the run; other errors are recorded and the next
        chunk is attempted.
        """
        cutoff = self._store.retention_cutoff()
        if start < cutoff:
            logger.info("Backfill start %s clamped to retention cutoff %s", start, cutoff)
            start = cutoff
        if start >= end:
            yield BackfillProgress(current_end=end, processed_chunks=0, total_chunks=0, readings_saved=0, is_complete=True)
            return

        chunks = TimeWindow(start, end).split(timedelta(days=self._config.batch_days))
        rate_limit_s = self._config.rate_limit_ms / 1000.0
        errors: list[str] = []
        saved = 0
        processed = 0

        for index, chunk in enumerate(chunks):
            key = window_key(chunk)
            if self._dedup.is_seen(key):
                logger.debug("Backfill: chunk %s already done, skipping", key)
            else:
                try:
                    readings = await self._source.fetch_window(chunk)
                    saved += await self._store.save_many(readings)
                    self._dedup.mark_seen(key)
                except RateLimited as exc:
                    logger.warning("Backfill: rate limited at %s, aborting run", chunk.start)
                    errors.append(f"Rate limited at {chunk.start.isoformat()}: {exc}")
                    yield BackfillProgress(
                        current_end=chunk.start,
                        processed_chunks=processed,
                        total_chunks=len(chunks),
                        readings_saved=saved,
                        errors=errors,
                        is_complete=True,
                    )
                    return
                except GlucoSyncError as exc:
                    logger.warning("Backfill error for %s → %s: %s", chunk.start, chunk.end, exc)
                    errors.append(f"Error on {chunk.start.isoformat()}: {exc}")

            processed += 1
            if index < len(chunks) - 1:
                await asyncio.sleep(rate_limit_s)
                yield BackfillProgress(
                    current_end=chunk.end,
                    processed_chunks=processed,
                    total_chunks=len(chunks),
                    readings_saved=saved,
                    errors=errors[-5:],
                )

        logger.info("Backfill complete: %d chunks, %d readings, %d errors", processed, saved, len(errors))
        yield BackfillProgress(
            current_end=end,
            processed_chunks=processed,
            total_chunks=len(chunks),
            readings_saved=saved,
            errors=errors,
            is_complete=True,
        )
