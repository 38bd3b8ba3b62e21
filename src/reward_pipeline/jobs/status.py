"""Read-only status projection of the job store."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from reward_pipeline.jobs.models import JobView
from reward_pipeline.jobs.repository import JobRepository
from reward_pipeline.jobs.states import JobStatus

DEFAULT_STUCK_LIMIT = 10
DEFAULT_QUEUED_LIMIT = 10
DEFAULT_RECENT_LIMIT = 5


class StatusProjection:
    """Builds the status document: counts, stuck jobs and recent jobs per bucket."""

    def __init__(self, *, repository: JobRepository, stuck_after: timedelta) -> None:
        self.repository = repository
        self.stuck_after = stuck_after

    def snapshot(
        self,
        *,
        stuck_limit: int = DEFAULT_STUCK_LIMIT,
        queued_limit: int = DEFAULT_QUEUED_LIMIT,
        completed_limit: int = DEFAULT_RECENT_LIMIT,
        error_limit: int = DEFAULT_RECENT_LIMIT,
    ) -> dict[str, Any]:
        now = self.repository.now()
        counts = self.repository.count_by_status()
        stuck = self.repository.list_stuck_jobs(stuck_after=self.stuck_after, limit=stuck_limit)
        queued = self.repository.list_recent_jobs(status=JobStatus.QUEUED, limit=queued_limit)
        completed = self.repository.list_recent_jobs(
            status=JobStatus.COMPLETED,
            limit=completed_limit,
        )
        errors = self.repository.list_recent_jobs(status=JobStatus.ERROR, limit=error_limit)

        return {
            "summary": {
                "queued": counts[JobStatus.QUEUED],
                "running": counts[JobStatus.RUNNING],
                "completed": counts[JobStatus.COMPLETED],
                "error": counts[JobStatus.ERROR],
                "total": sum(counts.values()),
            },
            "stuckJobs": [
                {
                    **_job_fields(job),
                    "lockedAt": _iso(job.locked_at),
                    "minutesRunning": _minutes_since(job.locked_at, now),
                }
                for job in stuck
            ],
            "recentQueued": [
                {
                    **_job_fields(job),
                    "scheduledAt": _iso(job.scheduled_at),
                    "createdAt": _iso(job.created_at),
                }
                for job in queued
            ],
            "recentCompleted": [
                {**_job_fields(job), "completedAt": _iso(job.updated_at)} for job in completed
            ],
            "recentErrors": [
                {
                    **_job_fields(job),
                    "error": job.last_error,
                    "failedAt": _iso(job.updated_at),
                }
                for job in errors
            ],
        }


def _job_fields(job: JobView) -> dict[str, Any]:
    return {
        "id": job.id,
        "correlationId": job.correlation_id,
        "stage": job.stage,
        "triggerType": job.trigger_type,
        "attempts": job.attempts,
    }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _minutes_since(value: datetime | None, now: datetime) -> int:
    if value is None:
        return 0
    return max(0, int((now - value).total_seconds() // 60))
