"""Stage pipeline executor: runs a leased job's remaining stages in order."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace

from reward_pipeline.jobs.errors import LeaseLostError, StageContractError
from reward_pipeline.jobs.models import JobView
from reward_pipeline.jobs.pipeline import COMPLETED_STAGE, JobDocument, PipelineRegistry
from reward_pipeline.jobs.repository import JobRepository
from reward_pipeline.jobs.states import JobStatus, TransitionCause, ensure_transition

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ExecutionResult:
    """Latest known job state after running as many stages as possible."""

    job: JobView
    completed: bool = False
    stopped: bool = False
    stages_run: int = 0
    error: Exception | None = None


class StageExecutor:
    """Runs stages of a leased job, committing context and stage after each one.

    A failing stage leaves ``stage`` and ``context`` exactly as they were; the
    error is returned on the result for the retry controller. A commit that no
    longer matches the lease raises ``LeaseLostError``.
    """

    def __init__(self, *, repository: JobRepository, pipelines: PipelineRegistry) -> None:
        self.repository = repository
        self.pipelines = pipelines

    def execute(
        self,
        job: JobView,
        *,
        worker_id: str,
        should_stop: Callable[[], bool] = lambda: False,
    ) -> ExecutionResult:
        result = ExecutionResult(job=job)
        try:
            pipeline = self.pipelines.get(job.pipeline)
            document = JobDocument.from_job(job)
        except Exception as error:  # noqa: BLE001
            result.error = error
            return result

        if job.stage == COMPLETED_STAGE:
            result.error = StageContractError(
                f"Job {job.id} is leased but already past its last stage.",
            )
            return result

        current = job
        while current.stage != COMPLETED_STAGE:
            if should_stop():
                result.stopped = True
                return result
            try:
                stage = pipeline.stage(current.stage)
                document.check_stage_entry(stage)
                output = stage.handler(document.stage_input(job=current, stage=stage))
                context = document.apply_output(stage, output)
            except Exception as error:  # noqa: BLE001
                result.error = error
                return result

            next_stage = pipeline.next_stage(stage.name)
            completed = next_stage == COMPLETED_STAGE
            if completed:
                ensure_transition(current.status, JobStatus.COMPLETED, TransitionCause.COMPLETE)
            committed = self.repository.commit_stage(
                job_id=current.id,
                worker_id=worker_id,
                expected_stage=stage.name,
                next_stage=next_stage,
                context=context,
                completed=completed,
            )
            if not committed:
                raise LeaseLostError(current.id, worker_id)

            logger.debug("Job %s committed stage %s -> %s", current.id, stage.name, next_stage)
            document.context = context
            current = replace(
                current,
                stage=next_stage,
                context=dict(context),
                status=JobStatus.COMPLETED if completed else current.status,
                locked_at=None if completed else current.locked_at,
                lock_owner=None if completed else current.lock_owner,
                last_error=None if completed else current.last_error,
            )
            result.job = current
            result.stages_run += 1

        result.completed = current.status is JobStatus.COMPLETED
        return result
