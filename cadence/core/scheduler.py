"""
APScheduler integration.

Runs the periodic jobs in-process:
- Delivery tick: serves every due coaching subscription (every few minutes)
- Retry sweep: re-attempts deliveries the dispatch worker gave up on (hourly)
- Metrics flush: persists the day's delivery counters (daily)

The scheduler is owned by a `JobRegistry` instance created by whoever runs the
process (the FastAPI lifespan stores it on `app.state`). Ticks are allowed to
overlap; correctness comes from the conditional claims, not from the scheduler.
"""

from datetime import datetime, timedelta
from typing import Any

from apscheduler import AsyncScheduler, ConflictPolicy, JobOutcome, JobReleased
from apscheduler.datastores.memory import MemoryDataStore
from apscheduler.triggers.cron import CronTrigger

from cadence.config import get_config, get_settings
from cadence.core.database import AsyncSessionLocal
from cadence.core.datetime_utils import utc_now
from cadence.core.logging import get_logger

logger = get_logger(__name__)

DELIVERY_TICK = "delivery_tick"
RETRY_SWEEP = "retry_sweep"
METRICS_FLUSH = "metrics_flush"


async def delivery_tick_job() -> None:
    """Serve every coaching subscription whose weekly slot has passed."""
    from cadence.services.delivery import run_delivery_tick

    logger.debug("delivery_tick_job_started")
    try:
        result = await run_delivery_tick()
        if result.processed:
            logger.bind(**result.as_dict()).info("delivery_tick_job_completed")
    except Exception as e:
        logger.bind(error=str(e)).error("delivery_tick_job_failed")
        raise  # Re-raise so APScheduler records the failure


async def retry_sweep_job() -> None:
    """Retry deliveries recorded as retry_scheduled."""
    from cadence.services.retry_sweeper import sweep_failed_deliveries

    logger.info("retry_sweep_job_started")
    try:
        result = await sweep_failed_deliveries()
        logger.bind(**result.as_dict()).info("retry_sweep_job_completed")
    except Exception as e:
        logger.bind(error=str(e)).error("retry_sweep_job_failed")
        raise


async def metrics_flush_job() -> None:
    """Persist this process's delivery counters for the day that just ended."""
    from cadence.services.metrics import flush_metrics

    try:
        await flush_metrics(period_date=(utc_now() - timedelta(days=1)).date())
    except Exception as e:
        logger.bind(error=str(e)).error("metrics_flush_job_failed")
        raise


async def _record_job_result(
    job_id: str,
    scheduled_at: datetime,
    started_at: datetime,
    outcome: JobOutcome,
    error: str | None = None,
) -> None:
    """Record job execution result to database."""
    from cadence.models.job_run import JobRun

    async with AsyncSessionLocal() as db:
        db.add(
            JobRun(
                job_id=job_id,
                scheduled_at=scheduled_at,
                started_at=started_at,
                finished_at=utc_now(),
                outcome=outcome.name,
                error=error,
            )
        )
        await db.commit()


async def _on_job_completed(event: Any) -> None:
    """Handle job completion events."""
    if isinstance(event, JobReleased):
        try:
            scheduled_at = getattr(event, "scheduled_fire_time", None) or utc_now()
            started_at = getattr(event, "started_at", None) or utc_now()
            exception = getattr(event, "exception", None)
            await _record_job_result(
                job_id=event.schedule_id or "unknown",
                scheduled_at=scheduled_at.replace(tzinfo=None),
                started_at=started_at.replace(tzinfo=None),
                outcome=event.outcome,
                error=str(exception) if event.outcome == JobOutcome.error and exception else None,
            )
        except Exception as e:
            logger.bind(error=str(e)).error("failed_to_record_job_result")


class JobRegistry:
    """Owns the AsyncScheduler and the schedules of the periodic jobs."""

    def __init__(self) -> None:
        self.scheduler: AsyncScheduler | None = None

    @property
    def running(self) -> bool:
        return self.scheduler is not None

    async def start(self) -> AsyncScheduler | None:
        """Create the scheduler, register the jobs and start processing."""
        settings = get_settings()
        if not settings.scheduler_enabled:
            logger.info("scheduler_disabled_by_config")
            return None
        if self.scheduler is not None:
            return self.scheduler

        cron = get_config().scheduler

        # Schedules don't persist across restarts; they are re-registered on start
        scheduler = AsyncScheduler(data_store=MemoryDataStore())

        # Start the scheduler first (required before calling other methods in APScheduler 4.x)
        await scheduler.__aenter__()
        scheduler.subscribe(_on_job_completed)

        await scheduler.add_schedule(
            delivery_tick_job,
            CronTrigger(minute=cron.delivery_tick_minute),
            id=DELIVERY_TICK,
            conflict_policy=ConflictPolicy.replace,
        )
        await scheduler.add_schedule(
            retry_sweep_job,
            CronTrigger(minute=cron.retry_sweep_minute),
            id=RETRY_SWEEP,
            conflict_policy=ConflictPolicy.replace,
        )
        await scheduler.add_schedule(
            metrics_flush_job,
            CronTrigger(hour=cron.metrics_flush_hour, minute=cron.metrics_flush_minute),
            id=METRICS_FLUSH,
            conflict_policy=ConflictPolicy.replace,
        )

        await scheduler.start_in_background()
        self.scheduler = scheduler

        logger.info("scheduler_started", jobs=[DELIVERY_TICK, RETRY_SWEEP, METRICS_FLUSH])
        return scheduler

    async def stop(self) -> None:
        """Gracefully stop the scheduler."""
        if self.scheduler:
            await self.scheduler.__aexit__(None, None, None)
            self.scheduler = None
            logger.info("scheduler_stopped")

    async def get_job_schedules(self) -> list[dict[str, Any]]:
        """Get all registered job schedules."""
        if not self.scheduler:
            return []

        schedules = await self.scheduler.get_schedules()
        return [
            {
                "id": s.id,
                "task_id": s.task_id,
                "trigger": str(s.trigger),
                "next_fire_time": s.next_fire_time.isoformat() if s.next_fire_time else None,
                "last_fire_time": s.last_fire_time.isoformat() if s.last_fire_time else None,
            }
            for s in schedules
        ]
