"""Queue worker that leases jobs and runs their pipeline stages."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

from reward_pipeline.jobs.errors import LeaseLostError
from reward_pipeline.jobs.executor import StageExecutor
from reward_pipeline.jobs.models import FailureClass, JobView
from reward_pipeline.jobs.reaper import StuckJobReaper
from reward_pipeline.jobs.repository import JobRepository
from reward_pipeline.jobs.retry import RetryController, RetryDecision
from reward_pipeline.jobs.states import Running

logger = logging.getLogger(__name__)

EXHAUSTED_REASON = "Attempts exhausted before the job could run again"


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    lease_lost: int = 0
    released: int = 0
    abandoned: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.claimed += other.claimed
        self.completed += other.completed
        self.retried += other.retried
        self.failed += other.failed
        self.lease_lost += other.lease_lost
        self.released += other.released
        self.abandoned += other.abandoned
        self.idle_polls += other.idle_polls


class JobOutcome(str, Enum):
    COMPLETED = "completed"
    RETRIED = "retried"
    FAILED = "failed"
    LEASE_LOST = "lease_lost"
    RELEASED = "released"
    ABANDONED = "abandoned"


class JobWorker:
    """Consumes queued jobs and executes them stage by stage."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        executor: StageExecutor,
        retry_controller: RetryController,
        worker_id: str,
        reaper: StuckJobReaper | None = None,
        batch_size: int = 10,
        concurrency: int = 1,
        poll_interval_seconds: float = 2.0,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        if concurrency <= 0:
            raise ValueError("concurrency must be > 0")
        self.repository = repository
        self.executor = executor
        self.retry_controller = retry_controller
        self.worker_id = worker_id
        self.reaper = reaper
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.poll_interval_seconds = poll_interval_seconds
        self._stop_event = threading.Event()
        self._stop_signal_name: str | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def request_stop(self, *, reason: str = "requested") -> None:
        """Stop claiming; in-flight jobs release their lease after the current stage."""

        if not self._stop_event.is_set():
            logger.info("Worker %s draining (%s)", self.worker_id, reason)
        self._stop_signal_name = reason
        self._stop_event.set()

    def run_once(self) -> WorkerRunSummary:
        """Housekeeping, then claim and process one batch."""

        summary = WorkerRunSummary()
        if self.stop_requested:
            summary.idle_polls = 1
            return summary

        try:
            if self.reaper is not None:
                self.reaper.run_once()
            summary.failed += self._fail_exhausted_jobs()
            jobs = self.repository.claim(worker_id=self.worker_id, limit=self.batch_size)
        except SQLAlchemyError:
            logger.exception("Worker %s could not claim jobs", self.worker_id)
            summary.idle_polls = 1
            return summary

        if not jobs:
            summary.idle_polls = 1
            return summary

        summary.claimed = len(jobs)
        if self.concurrency == 1 or len(jobs) == 1:
            outcomes = [self._process(job) for job in jobs]
        else:
            with ThreadPoolExecutor(
                max_workers=min(self.concurrency, len(jobs)),
                thread_name_prefix=f"{self.worker_id}-job",
            ) as pool:
                outcomes = list(pool.map(self._process, jobs))

        for outcome in outcomes:
            setattr(summary, outcome.value, getattr(summary, outcome.value) + 1)
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> WorkerRunSummary:
        """Run worker loop until the queue is idle, ``max_jobs`` is reached or a stop is requested.

        Args:
            max_jobs: Stop after claiming this many jobs (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting
                (None = poll forever).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self.stop_requested:
                    return aggregate
                if max_jobs is not None and aggregate.claimed >= max_jobs:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.claimed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def _process(self, job: JobView) -> JobOutcome:
        handler_error: Exception | None = None
        try:
            result = self.executor.execute(
                job,
                worker_id=self.worker_id,
                should_stop=lambda: self.stop_requested,
            )
            if result.error is not None:
                handler_error = result.error
                outcome = self.retry_controller.handle_failure(
                    job=result.job,
                    worker_id=self.worker_id,
                    error=handler_error,
                )
                if outcome.decision is RetryDecision.RETRIED:
                    return JobOutcome.RETRIED
                return JobOutcome.FAILED
            if result.stopped:
                if not self.repository.release_lease(
                    job_id=job.id,
                    worker_id=self.worker_id,
                    reason=self._stop_signal_name or "shutdown",
                ):
                    raise LeaseLostError(job.id, self.worker_id)
                logger.info("Released job %s at stage %s for shutdown", job.id, result.job.stage)
                return JobOutcome.RELEASED
            logger.info(
                "Job %s completed (%s, attempt %d/%d)",
                job.id,
                job.correlation_id,
                job.attempts,
                job.max_attempts,
            )
            return JobOutcome.COMPLETED
        except LeaseLostError as error:
            logger.warning("%s Abandoning job without a transition.", error)
            return JobOutcome.LEASE_LOST
        except Exception as error:  # noqa: BLE001
            logger.exception("Job %s failed outside its stage handler", job.id)
            # Classify the handler error, not the store error raised while recording it.
            return self._fail_after_store_error(job=job, error=handler_error or error)

    def _fail_after_store_error(self, *, job: JobView, error: Exception) -> JobOutcome:
        try:
            current = self.repository.get_job(job.id)
            if current is None:
                return JobOutcome.LEASE_LOST
            state = current.state
            if not isinstance(state, Running) or state.lease_owner != self.worker_id:
                return JobOutcome.LEASE_LOST
            outcome = self.retry_controller.handle_failure(
                job=current,
                worker_id=self.worker_id,
                error=error,
            )
        except LeaseLostError:
            return JobOutcome.LEASE_LOST
        except Exception:  # noqa: BLE001
            logger.exception(
                "Could not record failure of job %s; leaving it for the reaper",
                job.id,
            )
            return JobOutcome.ABANDONED
        if outcome.decision is RetryDecision.RETRIED:
            return JobOutcome.RETRIED
        return JobOutcome.FAILED

    def _fail_exhausted_jobs(self) -> int:
        failed = self.repository.fail_exhausted_jobs(reason=EXHAUSTED_REASON)
        for job in failed:
            logger.warning(
                "Job %s exhausted %d/%d attempts while queued; marking as error",
                job.id,
                job.attempts,
                job.max_attempts,
            )
            self.retry_controller.dead_letters.record(
                job=job,
                error_message=job.last_error or EXHAUSTED_REASON,
                failure_class=FailureClass.ATTEMPTS_EXHAUSTED,
            )
        return len(failed)

    def _sleep_with_stop(self, seconds: float) -> None:
        if seconds > 0:
            self._stop_event.wait(seconds)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(reason=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
