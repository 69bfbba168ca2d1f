"""Durable, deduplicated storage of glucose readings.

SQLAlchemy async engine; PostgreSQL (asyncpg) in production, SQLite
(aiosqlite) for local runs and tests.  One table::

    glucose_readings(id, timestamp, value, source_tag, device_label,
                     trend, sync_status, created_at)

Stored-row invariants, enforced by ``save_many``:
    - value within [40, 400] mg/dL
    - timestamp not in the future
    - no two rows of the same source_tag within ±duplicate_tolerance
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Iterable

from sqlalchemy import Column, DateTime, Float, Index, Integer, String, delete, func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from glucosync.config_loader import PipelineConfig
from glucosync.errors import PersistenceFailure, ValidationFailure
from glucosync.models import Reading, SourceTag, SyncStatus, TimeWindow, utc_now
from glucosync.sync.dedup import TimestampIndex

logger = logging.getLogger("glucosync.store")

Base = declarative_base()


class GlucoseReadingRow(Base):
    """One persisted reading.  Timestamps are naive UTC."""

    __tablename__ = "glucose_readings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime, nullable=False)
    value = Column(Float, nullable=False)  # mg/dL
    source_tag = Column(String(16), nullable=False)  # 'official'|'informal'
    device_label = Column(String(64), nullable=True)
    trend = Column(String(32), nullable=True)
    sync_status = Column(String(16), nullable=False, default=SyncStatus.SYNCED.value)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        Index("ix_glucose_time_source", "timestamp", "source_tag"),
        Index("ix_glucose_source_time", "source_tag", "timestamp"),
    )

    @classmethod
    def from_reading(cls, reading: Reading) -> "GlucoseReadingRow":
        return cls(
            timestamp=reading.timestamp,
            value=reading.value,
            source_tag=reading.source_tag.value,
            device_label=reading.device_label,
            trend=reading.trend,
            sync_status=reading.sync_status.value,
        )

    def to_reading(self) -> Reading:
        return Reading(
            timestamp=self.timestamp,
            value=self.value,
            source_tag=SourceTag(self.source_tag),
            device_label=self.device_label,
            sync_status=SyncStatus(self.sync_status),
            trend=self.trend,
        )


def validate_reading(reading: Reading, now: datetime) -> None:
    """Check the stored-row invariants for a single reading.

    Raises:
        ValidationFailure: If the value or timestamp is unacceptable.
    """
    if not reading.in_physiological_range:
        raise ValidationFailure(f"Glucose value {reading.value} mg/dL outside physiological range")
    if reading.timestamp > now:
        raise ValidationFailure(f"Reading timestamp {reading.timestamp} is in the future")


class ReadingStore:
    """Persistent reading store.

    ``save_many`` holds a per-store lock across its duplicate check and
    insert, and commits each batch in a single transaction.

    Usage::

        store = ReadingStore.from_url("sqlite+aiosqlite:///./glucosync.db", config)
        await store.create_schema()
        saved = await store.save_many(readings)
    """

    def __init__(
        self,
        engine: AsyncEngine,
        config: PipelineConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._engine = engine
        self._sessions = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
        self._settings = config.store
        self._clock = clock
        self._lock = asyncio.Lock()

    @classmethod
    def from_url(cls, url: str, config: PipelineConfig, **kwargs) -> "ReadingStore":
        """Create a store with its own engine.

        In-memory SQLite URLs get a single shared connection so every
        session sees the same database.
        """
        engine_kwargs: dict = {}
        if url.startswith("sqlite") and (":memory:" in url or url.rstrip("/").endswith(":")):
            engine_kwargs["poolclass"] = StaticPool
        elif not url.startswith("sqlite"):
            engine_kwargs.update(pool_pre_ping=True, pool_recycle=1800)
        return cls(create_async_engine(url, **engine_kwargs), config, **kwargs)

    async def create_schema(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self._engine.dispose()

    async def ping(self) -> bool:
        """True if the database answers a trivial query."""
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            logger.error("Store ping failed: %s", exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def save_many(self, readings: Iterable[Reading]) -> int:
        """Persist the valid, non-duplicate subset of ``readings``.

        Returns:
            Number of rows actually inserted.

        Raises:
            PersistenceFailure: If the database cannot be read or written.
        """
        now = self._clock()
        candidates: list[Reading] = []
        for reading in readings:
            try:
                validate_reading(reading, now)
            except ValidationFailure as exc:
                logger.warning("Dropping reading at %s: %s", reading.timestamp, exc)
                continue
            candidates.append(reading)
        if not candidates:
            return 0

        tolerance = self._settings.duplicate_tolerance
        async with self._lock:
            try:
                async with self._sessions() as session:
                    indexes: dict[SourceTag, TimestampIndex] = {}
                    for tag in {r.source_tag for r in candidates}:
                        stamps = [r.timestamp for r in candidates if r.source_tag == tag]
                        result = await session.execute(
                            select(GlucoseReadingRow.timestamp).where(
                                GlucoseReadingRow.source_tag == tag.value,
                                GlucoseReadingRow.timestamp >= min(stamps) - tolerance,
                                GlucoseReadingRow.timestamp <= max(stamps) + tolerance,
                            )
                        )
                        indexes[tag] = TimestampIndex(result.scalars().all(), tolerance)

                    rows = []
                    for reading in candidates:
                        index = indexes[reading.source_tag]
                        if index.has_neighbour(reading.timestamp):
                            continue
                        index.add(reading.timestamp)
                        rows.append(GlucoseReadingRow.from_reading(reading))

                    session.add_all(rows)
                    await session.commit()
            except SQLAlchemyError as exc:
                logger.critical("Failed to save %d readings: %s", len(candidates), exc)
                raise PersistenceFailure(f"Could not save readings: {exc}") from exc

        skipped = len(candidates) - len(rows)
        logger.info("Saved %d readings (%d duplicates skipped)", len(rows), skipped)
        return len(rows)

    async def prune_older_than(self, cutoff: datetime) -> int:
        """Delete readings with ``timestamp < cutoff``.  Returns rows removed."""
        stmt = delete(GlucoseReadingRow).where(GlucoseReadingRow.timestamp < cutoff)
        removed = await self._execute_write(stmt, f"prune readings older than {cutoff}")
        if removed:
            logger.info("Pruned %d readings older than %s", removed, cutoff)
        return removed

    async def delete_source(self, source_tag: SourceTag) -> int:
        """Delete every reading of one source.  Returns rows removed."""
        stmt = delete(GlucoseReadingRow).where(GlucoseReadingRow.source_tag == source_tag.value)
        removed = await self._execute_write(stmt, f"delete {source_tag.value} readings")
        logger.info("Deleted %d %s readings", removed, source_tag.value)
        return removed

    async def _execute_write(self, stmt, action: str) -> int:
        async with self._lock:
            try:
                async with self._sessions() as session:
                    result = await session.execute(stmt)
                    await session.commit()
            except SQLAlchemyError as exc:
                logger.critical("Failed to %s: %s", action, exc)
                raise PersistenceFailure(f"Could not {action}: {exc}") from exc
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def query(self, window: TimeWindow, source_tag: SourceTag | None = None) -> list[Reading]:
        """Readings with ``start <= timestamp <= end``, ascending."""
        stmt = select(GlucoseReadingRow).where(
            GlucoseReadingRow.timestamp >= window.start,
            GlucoseReadingRow.timestamp <= window.end,
        )
        if source_tag is not None:
            stmt = stmt.where(GlucoseReadingRow.source_tag == source_tag.value)
        stmt = stmt.order_by(GlucoseReadingRow.timestamp, GlucoseReadingRow.id)

        rows = await self._fetch_rows(stmt)
        return [row.to_reading() for row in rows]

    async def latest(self, source_tag: SourceTag | None = None) -> Reading | None:
        stmt = select(GlucoseReadingRow)
        if source_tag is not None:
            stmt = stmt.where(GlucoseReadingRow.source_tag == source_tag.value)
        stmt = stmt.order_by(GlucoseReadingRow.timestamp.desc()).limit(1)

        rows = await self._fetch_rows(stmt)
        return rows[0].to_reading() if rows else None

    async def count(self, source_tag: SourceTag | None = None) -> int:
        stmt = select(func.count(GlucoseReadingRow.id))
        if source_tag is not None:
            stmt = stmt.where(GlucoseReadingRow.source_tag == source_tag.value)
        try:
            async with self._sessions() as session:
                return (await session.execute(stmt)).scalar_one()
        except SQLAlchemyError as exc:
            logger.critical("Failed to count readings: %s", exc)
            raise PersistenceFailure(f"Could not count readings: {exc}") from exc

    async def _fetch_rows(self, stmt) -> list[GlucoseReadingRow]:
        try:
            async with self._sessions() as session:
                return list((await session.execute(stmt)).scalars().all())
        except SQLAlchemyError as exc:
            logger.critical("Failed to query readings: %s", exc)
            raise PersistenceFailure(f"Could not query readings: {exc}") from exc

    def retention_cutoff(self, now: datetime | None = None) -> datetime:
        """Oldest timestamp still inside the retention period."""
        return (now or self._clock()) - self._settings.retention
