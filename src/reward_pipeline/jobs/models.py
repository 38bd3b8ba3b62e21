"""Domain models for the job queue and event intake."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from reward_pipeline.jobs.states import JobState, JobStatus, build_state


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    LOCK_CONTENTION = "lock_contention"
    PROVIDER_REJECTED = "provider_rejected"
    INVALID_PAYLOAD = "invalid_payload"
    INVARIANT_VIOLATION = "invariant_violation"
    UNEXPECTED = "unexpected"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"


class RunOutcome(str, Enum):
    """What the enqueuer did with one raw delivery."""

    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    RECOVERED = "recovered"
    IGNORED = "ignored"


@dataclass(slots=True)
class InboundEvent:
    """Event descriptor as delivered (at least once) by the upstream source."""

    event_id: str
    event_type: str
    resource_id: str
    tenant_hint: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing a job."""

    correlation_id: str
    trigger_type: str
    pipeline: str
    stage: str
    payload: dict[str, Any]
    job_id: str | None = None
    max_attempts: int = 5
    schema_version: int = 1
    delay: timedelta | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for worker, status and CLI logic."""

    id: str
    correlation_id: str
    pipeline: str
    trigger_type: str
    stage: str
    status: JobStatus
    schema_version: int
    payload: dict[str, Any]
    context: dict[str, Any]
    attempts: int
    max_attempts: int
    scheduled_at: datetime
    locked_at: datetime | None
    lock_owner: str | None
    last_error: str | None
    created_at: datetime
    updated_at: datetime

    def __post_init__(self) -> None:
        # Lease columns must agree with status; build_state raises otherwise.
        if self.state.status is not self.status:
            raise ValueError(f"Job {self.id} state does not match status={self.status.value}.")

    @property
    def state(self) -> JobState:
        return build_state(
            status=self.status,
            scheduled_at=self.scheduled_at,
            locked_at=self.locked_at,
            lock_owner=self.lock_owner,
            last_error=self.last_error,
        )


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job details with event stream."""

    job: JobView
    events: list[JobEventView]


@dataclass(slots=True)
class DeliveryRunView:
    """Stored record of one raw event delivery."""

    event_id: str
    event_type: str
    resource_id: str
    correlation_id: str
    tenant_hint: str | None
    outcome: RunOutcome
    job_ids: list[str]
    delivery_count: int
    first_seen_at: datetime
    last_seen_at: datetime


@dataclass(slots=True)
class EnqueueResult:
    """Outcome of handing one delivery to the enqueuer."""

    outcome: RunOutcome
    correlation_id: str
    run: DeliveryRunView
    jobs: list[JobView]


@dataclass(slots=True)
class DeadLetterWrite:
    """Terminal failure snapshot captured when a job enters error."""

    job_id: str
    correlation_id: str
    trigger_type: str
    pipeline: str
    stage: str
    payload: dict[str, Any]
    context: dict[str, Any]
    error_message: str
    failure_class: FailureClass | None
    retry_count: int
    job_created_at: datetime
    failed_at: datetime


@dataclass(slots=True)
class DeadLetterView:
    """Stored dead-letter entry."""

    id: int
    job_id: str
    correlation_id: str
    trigger_type: str
    pipeline: str
    stage: str
    payload: dict[str, Any]
    context: dict[str, Any]
    error_message: str
    failure_class: FailureClass | None
    retry_count: int
    job_created_at: datetime
    failed_at: datetime


@dataclass(slots=True)
class ResetResult:
    """Counts reported by the administrative reset."""

    error_reset: int = 0
    stuck_reset: int = 0

    @property
    def total(self) -> int:
        return self.error_reset + self.stuck_reset
