"""Retry/backoff controller: requeue with exponential backoff or fail terminally."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from reward_pipeline.jobs.dead_letter import DeadLetterSink
from reward_pipeline.jobs.errors import LeaseLostError
from reward_pipeline.jobs.failure_classifier import FailureClassification, classify_failure
from reward_pipeline.jobs.models import FailureClass, JobView
from reward_pipeline.jobs.repository import JobRepository
from reward_pipeline.jobs.states import JobStatus, TransitionCause, ensure_transition

logger = logging.getLogger(__name__)

DEFAULT_ERROR_MAX_CHARS = 500


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """``min(max_seconds, base_seconds * 2 ** (attempts - 1))``."""

    base_seconds: int = 5
    max_seconds: int = 300

    def delay_seconds(self, attempts: int) -> int:
        return min(self.max_seconds, self.base_seconds * (2 ** max(attempts - 1, 0)))

    def next_run_at(self, *, now: datetime, attempts: int) -> datetime:
        return now + timedelta(seconds=self.delay_seconds(attempts))


class RetryDecision(str, Enum):
    RETRIED = "retried"
    FAILED = "failed"


@dataclass(slots=True)
class FailureOutcome:
    """What the controller did with one failed attempt."""

    decision: RetryDecision
    classification: FailureClassification
    error_summary: str
    run_after: datetime | None = None


def truncate_error(message: str, *, max_chars: int = DEFAULT_ERROR_MAX_CHARS) -> str:
    text = message.strip()
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "…"


class RetryController:
    """Turns a failed attempt into a retry or a terminal error with a dead letter."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        dead_letters: DeadLetterSink,
        policy: BackoffPolicy | None = None,
        error_max_chars: int = DEFAULT_ERROR_MAX_CHARS,
    ) -> None:
        self.repository = repository
        self.dead_letters = dead_letters
        self.policy = policy or BackoffPolicy()
        self.error_max_chars = error_max_chars

    def handle_failure(
        self,
        *,
        job: JobView,
        worker_id: str,
        error: BaseException,
    ) -> FailureOutcome:
        """Record a failed attempt of ``job`` (as claimed by ``worker_id``).

        Raises ``LeaseLostError`` when the job is no longer leased to the worker and
        ``InvalidTransitionError`` when ``job`` is not running.
        """

        classification = classify_failure(error)
        error_summary = truncate_error(
            f"{job.stage}: {type(error).__name__}: {error}",
            max_chars=self.error_max_chars,
        )
        details: dict[str, object] = {
            "stage": job.stage,
            "attempt": job.attempts,
            "max_attempts": job.max_attempts,
            **classification.to_event_details(),
        }

        if classification.retryable and job.attempts < job.max_attempts:
            ensure_transition(job.status, JobStatus.QUEUED, TransitionCause.RETRY)
            run_after = self.policy.next_run_at(now=self.repository.now(), attempts=job.attempts)
            scheduled = self.repository.schedule_retry(
                job_id=job.id,
                worker_id=worker_id,
                run_after=run_after,
                failure_class=classification.failure_class,
                error_summary=error_summary,
                details=details,
            )
            if not scheduled:
                raise LeaseLostError(job.id, worker_id)
            logger.warning(
                "Job %s failed at stage %s (attempt %d/%d, %s); retry at %s",
                job.id,
                job.stage,
                job.attempts,
                job.max_attempts,
                classification.failure_class.value,
                run_after.isoformat(),
            )
            return FailureOutcome(
                decision=RetryDecision.RETRIED,
                classification=classification,
                error_summary=error_summary,
                run_after=run_after,
            )

        failure_class = (
            FailureClass.ATTEMPTS_EXHAUSTED
            if classification.retryable
            else classification.failure_class
        )
        details["final_failure_class"] = failure_class.value
        ensure_transition(job.status, JobStatus.ERROR, TransitionCause.FAIL)
        failed = self.repository.fail_job(
            job_id=job.id,
            worker_id=worker_id,
            failure_class=failure_class,
            error_summary=error_summary,
            details=details,
        )
        if failed is None:
            raise LeaseLostError(job.id, worker_id)
        logger.error(
            "Job %s failed permanently at stage %s (attempt %d/%d, %s): %s",
            job.id,
            job.stage,
            job.attempts,
            job.max_attempts,
            failure_class.value,
            error_summary,
        )
        self.dead_letters.record(
            job=failed,
            error_message=error_summary,
            failure_class=failure_class,
        )
        return FailureOutcome(
            decision=RetryDecision.FAILED,
            classification=classification,
            error_summary=error_summary,
        )
