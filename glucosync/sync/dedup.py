"""Deduplication logic for glucose readings.

The same sensor sample can arrive through both feeds, and the same feed can
report it again on the next poll.  Two kinds of duplicate are recognised:

    - merge duplicates:   (timestamp rounded to 1 s, value), across feeds.
                          Used when HybridSource merges the two feeds.
    - stored duplicates:  same source_tag within ±tolerance of an existing
                          timestamp.  Used by ReadingStore.save_many.
"""

from __future__ import annotations

import bisect
import logging
from datetime import datetime, timedelta
from typing import Iterable

from glucosync.models import Reading, TimeWindow

logger = logging.getLogger("glucosync.sync.dedup")

_EPOCH = datetime(1970, 1, 1)


def merge_key(reading: Reading) -> tuple[int, float]:
    """Dedup key for merging feeds: whole-second timestamp plus value."""
    seconds = round((reading.timestamp - _EPOCH).total_seconds())
    return seconds, reading.value


def merge_readings(*groups: Iterable[Reading]) -> list[Reading]:
    """Union of ``groups`` without merge duplicates, ascending by timestamp.

    When two readings share a key, the one from the earlier group wins, so
    pass the preferred feed first.
    """
    seen: set[tuple[int, float]] = set()
    merged: list[Reading] = []
    dropped = 0
    for group in groups:
        for reading in group:
            key = merge_key(reading)
            if key in seen:
                dropped += 1
                continue
            seen.add(key)
            merged.append(reading)
    if dropped:
        logger.debug("Merge dropped %d duplicate readings", dropped)
    merged.sort(key=lambda r: r.timestamp)
    return merged


def window_key(window: TimeWindow) -> str:
    """Dedup key for a fetched window (used by backfill to skip done chunks)."""
    return f"{window.start.isoformat()}:{window.end.isoformat()}"


class TimestampIndex:
    """Sorted timestamps of one source tag, for ±tolerance lookups.

    Usage::

        index = TimestampIndex(existing_timestamps, timedelta(seconds=1))
        if not index.has_neighbour(candidate.timestamp):
            index.add(candidate.timestamp)
    """

    def __init__(self, timestamps: Iterable[datetime], tolerance: timedelta) -> None:
        self._items = sorted(timestamps)
        self._tolerance = tolerance

    def has_neighbour(self, ts: datetime) -> bool:
        """True if an indexed timestamp lies within ±tolerance of ``ts``."""
        pos = bisect.bisect_left(self._items, ts - self._tolerance)
        return pos < len(self._items) and self._items[pos] <= ts + self._tolerance

    def add(self, ts: datetime) -> None:
        bisect.insort(self._items, ts)

    def __len__(self) -> int:
        return len(self._items)


class InMemoryDedupCache:
    """In-process dedup cache for short-lived sync sessions.

    Not a replacement for the store's duplicate check, which is the
    authoritative mechanism.  This cache prevents redundant API calls
    within a single backfill run.

    Usage::

        cache = InMemoryDedupCache()
        if cache.is_seen(key):
            logger.debug("Skipping duplicate: %s", key)
        else:
            cache.mark_seen(key)
    """

    def __init__(self) -> None:
        self._seen: set[str] = set()

    def is_seen(self, key: str) -> bool:
        return key in self._seen

    def mark_seen(self, key: str) -> None:
        self._seen.add(key)

    def clear(self) -> None:
        """Reset the cache."""
        self._seen.clear()

    def __len__(self) -> int:
        return len(self._seen)
