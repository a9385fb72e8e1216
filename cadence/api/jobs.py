"""Job monitoring API endpoints."""

import uuid
from datetime import datetime

from fastapi import APIRouter, Query
from pydantic import BaseModel
from sqlalchemy import func, select

from cadence.dependencies import DBSession, Registry
from cadence.models.job_run import JobRun

router = APIRouter()

# Runs considered when averaging durations
STATS_WINDOW = 100


class ScheduleResponse(BaseModel):
    """Response model for a job schedule."""

    id: str
    task_id: str
    trigger: str
    next_fire_time: str | None
    last_fire_time: str | None


class JobRunResponse(BaseModel):
    """Response model for a job run."""

    id: uuid.UUID
    job_id: str
    scheduled_at: datetime
    started_at: datetime
    finished_at: datetime
    duration_seconds: float
    outcome: str
    error: str | None


class JobStatsResponse(BaseModel):
    """Response model for job statistics."""

    job_id: str
    total_runs: int
    successful_runs: int
    failed_runs: int
    success_rate: float
    avg_duration_seconds: float | None
    last_run: datetime | None
    last_outcome: str | None


@router.get("/jobs/schedules", response_model=list[ScheduleResponse])
async def list_schedules(registry: Registry) -> list[ScheduleResponse]:
    """List the registered schedules with their next/last fire times."""
    schedules = await registry.get_job_schedules()
    return [ScheduleResponse(**s) for s in schedules]


@router.get("/jobs/runs", response_model=list[JobRunResponse])
async def list_job_runs(
    db: DBSession,
    job_id: str | None = Query(default=None, description="Filter by job ID"),
    limit: int = Query(default=50, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[JobRunResponse]:
    """List job execution history, most recent first."""
    query = select(JobRun).order_by(JobRun.scheduled_at.desc())

    if job_id:
        query = query.where(JobRun.job_id == job_id)

    result = await db.execute(query.offset(offset).limit(limit))
    return [
        JobRunResponse(
            id=run.id,
            job_id=run.job_id,
            scheduled_at=run.scheduled_at,
            started_at=run.started_at,
            finished_at=run.finished_at,
            duration_seconds=run.duration_seconds,
            outcome=run.outcome,
            error=run.error,
        )
        for run in result.scalars().all()
    ]


@router.get("/jobs/stats", response_model=list[JobStatsResponse])
async def get_job_stats(db: DBSession) -> list[JobStatsResponse]:
    """
    Aggregated statistics per job.

    Success counts cover all recorded runs; the average duration covers the
    most recent successful runs only.
    """
    counts_result = await db.execute(
        select(JobRun.job_id, JobRun.outcome, func.count(JobRun.id)).group_by(
            JobRun.job_id, JobRun.outcome
        )
    )
    totals: dict[str, int] = {}
    successes: dict[str, int] = {}
    for job_id, outcome, count in counts_result.all():
        totals[job_id] = totals.get(job_id, 0) + count
        if outcome == "success":
            successes[job_id] = successes.get(job_id, 0) + count

    stats = []
    for job_id in sorted(totals):
        total = totals[job_id]
        successful = successes.get(job_id, 0)

        recent_result = await db.execute(
            select(JobRun)
            .where(JobRun.job_id == job_id)
            .order_by(JobRun.scheduled_at.desc())
            .limit(STATS_WINDOW)
        )
        recent = list(recent_result.scalars().all())
        durations = [r.duration_seconds for r in recent if r.outcome == "success"]
        last_run = recent[0] if recent else None

        stats.append(
            JobStatsResponse(
                job_id=job_id,
                total_runs=total,
                successful_runs=successful,
                failed_runs=total - successful,
                success_rate=successful / total if total > 0 else 0.0,
                avg_duration_seconds=sum(durations) / len(durations) if durations else None,
                last_run=last_run.scheduled_at if last_run else None,
                last_outcome=last_run.outcome if last_run else None,
            )
        )

    return stats
