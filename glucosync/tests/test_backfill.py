"""Tests for BackfillOrchestrator chunking and error handling."""

from __future__ import annotations

from datetime import timedelta

import pytest

from glucosync.errors import NetworkFailure, RateLimited
from glucosync.models import Reading, SourceTag, TimeWindow
from glucosync.store import ReadingStore
from glucosync.sync.backfill import BackfillOrchestrator, BackfillProgress
from glucosync.tests.conftest import TEST_NOW


class ChunkSource:
    """Returns one official reading per hour of each requested window."""

    def __init__(self, failures: dict[int, Exception] | None = None) -> None:
        self.windows: list[TimeWindow] = []
        self.failures = failures or {}

    async def fetch_window(self, window: TimeWindow) -> list[Reading]:
        call = len(self.windows)
        self.windows.append(window)
        if call in self.failures:
            raise self.failures[call]
        readings = []
        ts = window.start
        while ts <= window.end:
            readings.append(Reading(ts, 120, SourceTag.OFFICIAL))
            ts += timedelta(hours=1)
        return readings


async def _collect(orchestrator: BackfillOrchestrator, start, end) -> list[BackfillProgress]:
    return [progress async for progress in orchestrator.run(start, end)]


class TestChunking:
    @pytest.mark.asyncio
    async def test_range_split_into_configured_batches(self, store: ReadingStore, fast_config) -> None:
        source = ChunkSource()
        start, end = TEST_NOW - timedelta(days=75), TEST_NOW - timedelta(days=10)

        updates = await _collect(BackfillOrchestrator(source, store, fast_config), start, end)

        assert [w.duration for w in source.windows] == [timedelta(days=30), timedelta(days=30), timedelta(days=5)]
        assert source.windows[0].start == start
        assert source.windows[-1].end == end
        assert [u.processed_chunks for u in updates] == [1, 2, 3]
        assert [u.is_complete for u in updates] == [False, False, True]
        assert updates[-1].pct_complete == 100.0
        # Shared chunk boundaries are stored once
        assert updates[-1].readings_saved == await store.count()
        assert updates[-1].readings_saved == 65 * 24 + 1

    @pytest.mark.asyncio
    async def test_start_clamped_to_retention(self, store: ReadingStore, fast_config) -> None:
        source = ChunkSource()

        await _collect(BackfillOrchestrator(source, store, fast_config), TEST_NOW - timedelta(days=400), TEST_NOW)

        assert source.windows[0].start == TEST_NOW - timedelta(days=180)
        assert len(source.windows) == 6

    @pytest.mark.asyncio
    async def test_empty_range_completes_immediately(self, store: ReadingStore, fast_config) -> None:
        source = ChunkSource()

        updates = await _collect(BackfillOrchestrator(source, store, fast_config), TEST_NOW, TEST_NOW)

        assert len(updates) == 1
        assert updates[0].is_complete
        assert updates[0].total_chunks == 0
        assert updates[0].pct_complete == 100.0
        assert source.windows == []

    @pytest.mark.asyncio
    async def test_completed_chunks_skipped_on_rerun(self, store: ReadingStore, fast_config) -> None:
        source = ChunkSource()
        orchestrator = BackfillOrchestrator(source, store, fast_config)
        start, end = TEST_NOW - timedelta(days=40), TEST_NOW - timedelta(days=1)

        await _collect(orchestrator, start, end)
        first_calls = len(source.windows)
        updates = await _collect(orchestrator, start, end)

        assert len(source.windows) == first_calls
        assert updates[-1].readings_saved == 0
        assert updates[-1].processed_chunks == 2


class TestErrors:
    @pytest.mark.asyncio
    async def test_rate_limit_aborts_run(self, store: ReadingStore, fast_config) -> None:
        source = ChunkSource(failures={1: RateLimited("slow down", retry_after=30)})

        updates = await _collect(
            BackfillOrchestrator(source, store, fast_config),
            TEST_NOW - timedelta(days=90),
            TEST_NOW,
        )

        assert len(source.windows) == 2
        final = updates[-1]
        assert final.is_complete
        assert final.processed_chunks == 1
        assert final.total_chunks == 3
        assert len(final.errors) == 1 and "Rate limited" in final.errors[0]

    @pytest.mark.asyncio
    async def test_other_errors_recorded_and_run_continues(self, store: ReadingStore, fast_config) -> None:
        source = ChunkSource(failures={0: NetworkFailure("timeout")})
        orchestrator = BackfillOrchestrator(source, store, fast_config)
        start, end = TEST_NOW - timedelta(days=60), TEST_NOW

        updates = await _collect(orchestrator, start, end)

        assert len(source.windows) == 2
        final = updates[-1]
        assert final.is_complete
        assert final.processed_chunks == 2
        assert len(final.errors) == 1 and "timeout" in final.errors[0]

        # The failed chunk was not marked done, so a rerun retries it only
        await _collect(orchestrator, start, end)
        assert source.windows[2] == source.windows[0]
        assert len(source.windows) == 3
