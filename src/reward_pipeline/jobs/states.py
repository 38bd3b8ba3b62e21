"""Job status state machine.

A job's status is a closed tagged union. Each variant carries only the data
that is meaningful in that state: the lease exists only on ``Running`` and the
failure reason only on ``Error``. Status changes must be listed in
``ALLOWED_TRANSITIONS`` together with the cause that triggers them; anything
else raises ``InvalidTransitionError`` before touching the store.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from reward_pipeline.jobs.errors import InvalidTransitionError


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class TransitionCause(str, Enum):
    """Why a job changes status."""

    CLAIM = "claim"
    COMPLETE = "complete"
    RETRY = "retry"
    FAIL = "fail"
    EXHAUST = "exhaust"
    RECLAIM = "reclaim"
    RELEASE = "release"
    RESET = "reset"


@dataclass(frozen=True, slots=True)
class Queued:
    scheduled_at: datetime

    @property
    def status(self) -> JobStatus:
        return JobStatus.QUEUED


@dataclass(frozen=True, slots=True)
class Running:
    lease_owner: str
    leased_at: datetime

    @property
    def status(self) -> JobStatus:
        return JobStatus.RUNNING


@dataclass(frozen=True, slots=True)
class Completed:
    @property
    def status(self) -> JobStatus:
        return JobStatus.COMPLETED


@dataclass(frozen=True, slots=True)
class Error:
    reason: str | None

    @property
    def status(self) -> JobStatus:
        return JobStatus.ERROR


JobState = Queued | Running | Completed | Error

ALLOWED_TRANSITIONS: dict[tuple[JobStatus, JobStatus], frozenset[TransitionCause]] = {
    (JobStatus.QUEUED, JobStatus.RUNNING): frozenset({TransitionCause.CLAIM}),
    (JobStatus.QUEUED, JobStatus.ERROR): frozenset({TransitionCause.EXHAUST}),
    (JobStatus.RUNNING, JobStatus.COMPLETED): frozenset({TransitionCause.COMPLETE}),
    (JobStatus.RUNNING, JobStatus.QUEUED): frozenset(
        {
            TransitionCause.RETRY,
            TransitionCause.RECLAIM,
            TransitionCause.RELEASE,
            TransitionCause.RESET,
        },
    ),
    (JobStatus.RUNNING, JobStatus.ERROR): frozenset({TransitionCause.FAIL}),
    (JobStatus.ERROR, JobStatus.QUEUED): frozenset({TransitionCause.RESET}),
}


def ensure_transition(
    status_from: JobStatus,
    status_to: JobStatus,
    cause: TransitionCause,
) -> None:
    """Raise unless ``status_from -> status_to`` is enumerated for ``cause``."""

    allowed = ALLOWED_TRANSITIONS.get((status_from, status_to), frozenset())
    if cause not in allowed:
        raise InvalidTransitionError(status_from.value, status_to.value, cause.value)


def build_state(
    *,
    status: JobStatus,
    scheduled_at: datetime,
    locked_at: datetime | None,
    lock_owner: str | None,
    last_error: str | None,
) -> JobState:
    """Rebuild the tagged state from stored columns, checking the lease invariant."""

    if status is JobStatus.RUNNING:
        if locked_at is None or lock_owner is None:
            raise ValueError("Running job must carry locked_at and lock_owner.")
        return Running(lease_owner=lock_owner, leased_at=locked_at)
    if locked_at is not None or lock_owner is not None:
        raise ValueError(f"Lease fields must be empty for status={status.value}.")
    if status is JobStatus.QUEUED:
        return Queued(scheduled_at=scheduled_at)
    if status is JobStatus.COMPLETED:
        return Completed()
    if status is JobStatus.ERROR:
        return Error(reason=last_error)
    raise ValueError(f"Unknown job status: {status!r}")
