"""Tests for the delivery metrics aggregator."""

import asyncio
import threading
from datetime import date
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select

from cadence.models.metrics import MetricsSnapshot
from cadence.services.metrics import MetricsAggregator, flush_metrics, get_metrics_aggregator

pytestmark = pytest.mark.asyncio


class TestMetricsAggregator:
    """Tests for counting and resetting."""

    async def test_record_attempt_counts_by_timezone(self):
        metrics = MetricsAggregator()

        metrics.record_attempt("America/New_York", success=True)
        metrics.record_attempt("America/New_York", success=False)
        metrics.record_attempt("Asia/Tokyo", success=True)
        metrics.record_attempt(None, success=True)

        counts = metrics.snapshot()
        assert counts.total_attempted == 4
        assert counts.succeeded == 3
        assert counts.failed == 1
        assert counts.timezone_breakdown == {
            "America/New_York": 2,
            "Asia/Tokyo": 1,
            "unknown": 1,
        }

    async def test_snapshot_and_reset_starts_over(self):
        metrics = MetricsAggregator()
        metrics.record_attempt("Europe/Paris", success=True)

        taken = metrics.snapshot_and_reset()

        assert taken.total_attempted == 1
        assert metrics.snapshot().is_empty

    async def test_snapshot_does_not_reset(self):
        metrics = MetricsAggregator()
        metrics.record_attempt("Europe/Paris", success=True)

        metrics.snapshot()

        assert metrics.snapshot().total_attempted == 1

    async def test_concurrent_records_and_resets_lose_nothing(self):
        metrics = MetricsAggregator()
        workers, per_worker = 8, 2000
        start = threading.Barrier(workers + 1)

        def record(worker: int) -> None:
            start.wait()
            for i in range(per_worker):
                metrics.record_attempt(f"Zone/{worker % 3}", success=i % 2 == 0)

        threads = [threading.Thread(target=record, args=(w,)) for w in range(workers)]
        for thread in threads:
            thread.start()
        start.wait()
        taken = []
        while any(thread.is_alive() for thread in threads):
            taken.append(metrics.snapshot_and_reset())
        for thread in threads:
            thread.join()
        taken.append(metrics.snapshot_and_reset())

        for counts in taken:
            assert counts.succeeded + counts.failed == counts.total_attempted
            assert sum(counts.timezone_breakdown.values()) == counts.total_attempted
        assert sum(c.total_attempted for c in taken) == workers * per_worker
        assert sum(c.succeeded for c in taken) == workers * per_worker // 2
        assert metrics.snapshot().is_empty

    async def test_records_from_worker_threads_during_flush_are_kept(self, db_session, session_maker):
        metrics = MetricsAggregator()

        def record_many() -> None:
            for _ in range(500):
                metrics.record_attempt("Asia/Tokyo", success=True)

        results = await asyncio.gather(
            asyncio.to_thread(record_many),
            metrics.flush_and_reset(db_session, date(2026, 3, 2)),
            asyncio.to_thread(record_many),
        )

        async with session_maker() as session:
            rows = (await session.execute(select(MetricsSnapshot))).scalars().all()
        flushed = sum(row.total_attempted for row in rows)
        assert len(rows) == (1 if results[1] is not None else 0)
        assert flushed + metrics.snapshot().total_attempted == 1000

    async def test_process_wide_aggregator_is_shared(self):
        assert get_metrics_aggregator() is get_metrics_aggregator()


class TestFlush:
    """Tests for persisting counts."""

    async def test_flush_writes_snapshot_and_resets(self, db_session, session_maker):
        metrics = MetricsAggregator()
        metrics.record_attempt("America/New_York", success=True)
        metrics.record_attempt("Asia/Tokyo", success=False)

        snapshot = await metrics.flush_and_reset(db_session, date(2026, 3, 2))

        assert snapshot is not None
        assert metrics.snapshot().is_empty
        async with session_maker() as session:
            rows = (await session.execute(select(MetricsSnapshot))).scalars().all()
        assert len(rows) == 1
        assert rows[0].period_date == date(2026, 3, 2)
        assert rows[0].total_attempted == 2
        assert rows[0].succeeded == 1
        assert rows[0].failed == 1
        assert rows[0].timezone_breakdown == {"America/New_York": 1, "Asia/Tokyo": 1}

    async def test_empty_flush_writes_nothing(self, db_session, session_maker):
        snapshot = await MetricsAggregator().flush_and_reset(db_session, date(2026, 3, 2))

        assert snapshot is None
        async with session_maker() as session:
            rows = (await session.execute(select(MetricsSnapshot))).scalars().all()
        assert rows == []

    async def test_failed_write_restores_counts(self):
        """Counts survive a store failure and merge with later ones."""
        metrics = MetricsAggregator()
        metrics.record_attempt("America/New_York", success=True)
        db = MagicMock()
        db.commit = AsyncMock(side_effect=RuntimeError("store unavailable"))
        db.rollback = AsyncMock()

        with pytest.raises(RuntimeError):
            await metrics.flush_and_reset(db, date(2026, 3, 2))

        db.rollback.assert_awaited_once()
        metrics.record_attempt("America/New_York", success=False)
        counts = metrics.snapshot()
        assert counts.total_attempted == 2
        assert counts.succeeded == 1
        assert counts.failed == 1
        assert counts.timezone_breakdown == {"America/New_York": 2}

    async def test_flush_metrics_uses_given_session_factory(self, session_maker):
        get_metrics_aggregator().snapshot_and_reset()
        get_metrics_aggregator().record_attempt("Europe/Paris", success=True)

        snapshot = await flush_metrics(period_date=date(2026, 3, 1), session_factory=session_maker)

        assert snapshot.period_date == date(2026, 3, 1)
        assert snapshot.total_attempted == 1
        assert get_metrics_aggregator().snapshot().is_empty
