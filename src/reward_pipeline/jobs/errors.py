"""Exception taxonomy for job execution and queue bookkeeping."""

from __future__ import annotations


class JobError(Exception):
    """Base class for errors raised while processing a job."""


class RetryableJobError(JobError):
    """Transient failure: the same attempt may succeed later."""


class FatalJobError(JobError):
    """Permanent failure: retrying the job cannot succeed."""


class PayloadValidationError(FatalJobError):
    """Job payload does not have the shape its pipeline expects."""


class StageContractError(FatalJobError):
    """Job context violates the read/write contract of the stage about to run."""


class InvalidTransitionError(JobError):
    """Requested status change is not part of the job state machine."""

    def __init__(self, status_from: str, status_to: str, cause: str) -> None:
        super().__init__(
            f"Transition {status_from} -> {status_to} is not allowed for cause={cause}.",
        )
        self.status_from = status_from
        self.status_to = status_to
        self.cause = cause


class LeaseLostError(JobError):
    """Worker no longer owns the lease of the job it is executing."""

    def __init__(self, job_id: str, worker_id: str) -> None:
        super().__init__(f"Lease lost for job {job_id} (worker_id={worker_id}).")
        self.job_id = job_id
        self.worker_id = worker_id


class ProviderError(Exception):
    """Failure reported by an external provider adapter."""

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        transient: bool,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.transient = transient
        self.status_code = status_code
