"""In-process delivery counters, flushed to `metrics_snapshots` once a day.

Counters are best-effort observability. Nothing reads them for correctness, and
a process that dies before flushing simply loses its counts.
"""

import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cadence.core.datetime_utils import utc_now
from cadence.core.logging import get_logger
from cadence.models.metrics import MetricsSnapshot

logger = get_logger(__name__)

UNKNOWN_TIMEZONE = "unknown"


@dataclass
class MetricsCounts:
    total_attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    timezone_breakdown: Counter[str] = field(default_factory=Counter)

    def merge(self, other: "MetricsCounts") -> None:
        self.total_attempted += other.total_attempted
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.timezone_breakdown.update(other.timezone_breakdown)

    @property
    def is_empty(self) -> bool:
        return self.total_attempted == 0


class MetricsAggregator:
    """Thread-safe accumulator of delivery outcomes."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts = MetricsCounts()

    def record_attempt(self, timezone: str | None, success: bool) -> None:
        """Count one delivery attempt for a timezone."""
        with self._lock:
            self._counts.total_attempted += 1
            if success:
                self._counts.succeeded += 1
            else:
                self._counts.failed += 1
            self._counts.timezone_breakdown[timezone or UNKNOWN_TIMEZONE] += 1

    def snapshot(self) -> MetricsCounts:
        """Copy of the current counts, leaving them in place."""
        with self._lock:
            return MetricsCounts(
                total_attempted=self._counts.total_attempted,
                succeeded=self._counts.succeeded,
                failed=self._counts.failed,
                timezone_breakdown=Counter(self._counts.timezone_breakdown),
            )

    def snapshot_and_reset(self) -> MetricsCounts:
        """Atomically take the current counts and start from zero."""
        with self._lock:
            counts, self._counts = self._counts, MetricsCounts()
            return counts

    def restore(self, counts: MetricsCounts) -> None:
        """Merge counts back after a failed flush."""
        with self._lock:
            self._counts.merge(counts)

    async def flush_and_reset(self, db: AsyncSession, period_date: date) -> MetricsSnapshot | None:
        """Persist the current counts as a snapshot and reset them.

        If the write fails the counts are merged back (together with anything
        recorded meanwhile) and the error is re-raised.

        Returns:
            The stored snapshot, or None if nothing was recorded
        """
        counts = self.snapshot_and_reset()
        if counts.is_empty:
            logger.bind(period_date=str(period_date)).debug("metrics_flush_nothing_recorded")
            return None

        snapshot = MetricsSnapshot(
            period_date=period_date,
            total_attempted=counts.total_attempted,
            succeeded=counts.succeeded,
            failed=counts.failed,
            timezone_breakdown=dict(counts.timezone_breakdown),
        )
        try:
            db.add(snapshot)
            await db.commit()
        except Exception as e:
            await db.rollback()
            self.restore(counts)
            logger.bind(period_date=str(period_date), error=str(e)).error("metrics_flush_failed")
            raise

        logger.bind(
            period_date=str(period_date),
            total_attempted=counts.total_attempted,
            succeeded=counts.succeeded,
            failed=counts.failed,
        ).info("metrics_flushed")
        return snapshot


@lru_cache
def get_metrics_aggregator() -> MetricsAggregator:
    """Process-wide aggregator."""
    return MetricsAggregator()


async def flush_metrics(
    period_date: date | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> MetricsSnapshot | None:
    """Flush the process-wide aggregator in a fresh session.

    Args:
        period_date: Day the counts belong to, defaults to today (UTC)
        session_factory: Session factory, defaults to the application's
    """
    if session_factory is None:
        from cadence.core.database import AsyncSessionLocal

        session_factory = AsyncSessionLocal

    async with session_factory() as db:
        return await get_metrics_aggregator().flush_and_reset(db, period_date or utc_now().date())
