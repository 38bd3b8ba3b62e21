"""Best-effort dead-letter sink for jobs that end in error."""

from __future__ import annotations

import logging

from reward_pipeline.jobs.models import DeadLetterView, DeadLetterWrite, FailureClass, JobView
from reward_pipeline.jobs.repository import JobRepository

logger = logging.getLogger(__name__)


class DeadLetterSink:
    """Snapshots failed jobs; a failed write is logged and never undoes the job transition."""

    def __init__(self, repository: JobRepository) -> None:
        self.repository = repository

    def record(
        self,
        *,
        job: JobView,
        error_message: str,
        failure_class: FailureClass | None,
    ) -> DeadLetterView | None:
        entry = DeadLetterWrite(
            job_id=job.id,
            correlation_id=job.correlation_id,
            trigger_type=job.trigger_type,
            pipeline=job.pipeline,
            stage=job.stage,
            payload=job.payload,
            context=job.context,
            error_message=error_message,
            failure_class=failure_class,
            retry_count=job.attempts,
            job_created_at=job.created_at,
            failed_at=self.repository.now(),
        )
        try:
            stored = self.repository.add_dead_letter(entry)
        except Exception:  # noqa: BLE001
            logger.exception(
                "Dead-letter write failed for job %s (correlation_id=%s)",
                job.id,
                job.correlation_id,
            )
            return None
        logger.info(
            "Dead-lettered job %s at stage %s after %d attempt(s)",
            job.id,
            job.stage,
            job.attempts,
        )
        return stored
