"""Persistent job store backed by SQLModel + SQLite.

Every status change is a conditional ``UPDATE`` guarded by the status (and,
for running jobs, the lease owner) the caller expects. The row count decides
whether the caller won; nothing is updated from a stale in-memory view. Write
sessions always start with the write statement so a SQLite writer waits on
``busy_timeout`` instead of failing on a stale read snapshot.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from reward_pipeline.jobs.models import (
    DeadLetterView,
    DeadLetterWrite,
    DeliveryRunView,
    FailureClass,
    InboundEvent,
    JobCreate,
    JobDetails,
    JobEventView,
    JobView,
    ResetResult,
    RunOutcome,
)
from reward_pipeline.jobs.states import Error, JobStatus, TransitionCause, ensure_transition
from reward_pipeline.storage.alembic_runner import upgrade_head
from reward_pipeline.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json_object,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from reward_pipeline.storage.sqlmodel_models import DeadLetter, DeliveryRun, Job, JobEvent

DEFAULT_BUSY_TIMEOUT_MS = 5_000


class JobRepository:
    """Job store facade: enqueue, lease, stage progress, runs and dead letters."""

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.sqlite_busy_timeout_ms = sqlite_busy_timeout_ms
        self._clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def now(self) -> datetime:
        return self._clock()

    # -- job store ----------------------------------------------------------

    def enqueue(self, payload: JobCreate) -> JobView:
        """Create a queued job.

        Raises ``RuntimeError`` when the ``(correlation_id, pipeline)`` lineage
        already has a job; use ``enqueue_or_get`` to converge instead.
        """

        view, created = self.enqueue_or_get(payload)
        if not created:
            raise RuntimeError(
                "Job already exists for lineage "
                f"(correlation_id={payload.correlation_id}, pipeline={payload.pipeline}, "
                f"job_id={view.id}).",
            )
        return view

    def enqueue_or_get(self, payload: JobCreate) -> tuple[JobView, bool]:
        """Insert a queued job, or return the existing job of the same lineage."""

        if payload.max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        if payload.delay is not None and payload.delay.total_seconds() < 0:
            raise ValueError("delay must be >= 0")

        now = self.now()
        scheduled_at = now + payload.delay if payload.delay is not None else now
        job_id = payload.job_id or str(uuid4())
        with Session(self.engine) as session:
            row = Job(
                id=job_id,
                correlation_id=payload.correlation_id,
                pipeline=payload.pipeline,
                trigger_type=payload.trigger_type,
                stage=payload.stage,
                status=JobStatus.QUEUED.value,
                schema_version=payload.schema_version,
                payload_json=dump_json(payload.payload),
                context_json=dump_json({}),
                attempts=0,
                max_attempts=payload.max_attempts,
                scheduled_at=to_db_datetime(scheduled_at),
                locked_at=None,
                lock_owner=None,
                last_error=None,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="enqueued",
                status_from=None,
                status_to=JobStatus.QUEUED,
                details={
                    "correlation_id": payload.correlation_id,
                    "pipeline": payload.pipeline,
                    "stage": payload.stage,
                    "max_attempts": payload.max_attempts,
                },
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = self.find_job(
                    correlation_id=payload.correlation_id,
                    pipeline=payload.pipeline,
                )
                if existing is None:
                    raise
                return existing, False
            session.refresh(row)
            return _to_job_view(row), True

    def find_job(self, *, correlation_id: str, pipeline: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Job).where(
                    Job.correlation_id == correlation_id,
                    Job.pipeline == pipeline,
                ),
            ).one_or_none()
            return _to_job_view(row) if row is not None else None

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.get(Job, job_id)
            return _to_job_view(row) if row is not None else None

    # -- lease scheduler ----------------------------------------------------

    def claim(self, *, worker_id: str, limit: int = 1) -> list[JobView]:
        """Atomically lease up to ``limit`` eligible queued jobs to ``worker_id``.

        A job is eligible when it is queued, its ``scheduled_at`` has passed and
        it still has attempts left. Each row is taken with its own conditional
        update, so concurrent callers can never both win the same job.
        """

        if limit <= 0:
            raise ValueError("limit must be > 0")
        if not worker_id:
            raise ValueError("worker_id must not be empty")
        ensure_transition(JobStatus.QUEUED, JobStatus.RUNNING, TransitionCause.CLAIM)

        claimed: list[JobView] = []
        tried: set[str] = set()
        while len(claimed) < limit:
            now = to_db_datetime(self.now())
            candidate_ids = self._claim_candidates(
                now=now,
                limit=limit - len(claimed),
                exclude=tried,
            )
            if not candidate_ids:
                break
            tried.update(candidate_ids)

            with Session(self.engine) as session:
                won: list[str] = []
                for job_id in candidate_ids:
                    result = session.exec(
                        _update(Job)
                        .where(
                            col(Job.id) == job_id,
                            col(Job.status) == JobStatus.QUEUED.value,
                            col(Job.scheduled_at) <= now,
                            col(Job.attempts) < col(Job.max_attempts),
                        )
                        .values(
                            status=JobStatus.RUNNING.value,
                            attempts=col(Job.attempts) + 1,
                            locked_at=now,
                            lock_owner=worker_id,
                            updated_at=now,
                        ),
                    )
                    if result.rowcount == 1:
                        won.append(job_id)
                if not won:
                    session.rollback()
                    continue

                rows = session.exec(
                    select(Job)
                    .where(col(Job.id).in_(won))
                    .order_by(col(Job.scheduled_at).asc(), col(Job.created_at).asc()),
                ).all()
                for row in rows:
                    self._add_event(
                        session=session,
                        job_id=row.id,
                        event_type="claimed",
                        status_from=JobStatus.QUEUED,
                        status_to=JobStatus.RUNNING,
                        details={
                            "worker_id": worker_id,
                            "attempt": row.attempts,
                            "stage": row.stage,
                        },
                    )
                views = [_to_job_view(row) for row in rows]
                session.commit()
                claimed.extend(views)
        return claimed

    def _claim_candidates(self, *, now: datetime, limit: int, exclude: set[str]) -> list[str]:
        with Session(self.engine) as session:
            statement = (
                select(Job.id)
                .where(
                    col(Job.status) == JobStatus.QUEUED.value,
                    col(Job.scheduled_at) <= now,
                    col(Job.attempts) < col(Job.max_attempts),
                )
                .order_by(col(Job.scheduled_at).asc(), col(Job.created_at).asc())
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            if exclude:
                statement = statement.where(col(Job.id).not_in(sorted(exclude)))
            return list(session.exec(statement).all())

    def fail_exhausted_jobs(self, *, reason: str) -> list[JobView]:
        """Move queued jobs without attempts left straight to error."""

        ensure_transition(JobStatus.QUEUED, JobStatus.ERROR, TransitionCause.EXHAUST)
        with Session(self.engine) as session:
            candidate_ids = list(
                session.exec(
                    select(Job.id).where(
                        col(Job.status) == JobStatus.QUEUED.value,
                        col(Job.attempts) >= col(Job.max_attempts),
                    ),
                ).all(),
            )
        if not candidate_ids:
            return []

        now = to_db_datetime(self.now())
        with Session(self.engine) as session:
            failed: list[str] = []
            for job_id in candidate_ids:
                result = session.exec(
                    _update(Job)
                    .where(
                        col(Job.id) == job_id,
                        col(Job.status) == JobStatus.QUEUED.value,
                        col(Job.attempts) >= col(Job.max_attempts),
                    )
                    .values(
                        status=JobStatus.ERROR.value,
                        last_error=func.coalesce(col(Job.last_error), reason),
                        updated_at=now,
                    ),
                )
                if result.rowcount == 1:
                    failed.append(job_id)
                    self._add_event(
                        session=session,
                        job_id=job_id,
                        event_type="attempts_exhausted",
                        status_from=JobStatus.QUEUED,
                        status_to=JobStatus.ERROR,
                        details={"reason": reason},
                    )
            session.commit()
            rows = session.exec(select(Job).where(col(Job.id).in_(failed))).all()
            return [_to_job_view(row) for row in rows]

    # -- stage executor -----------------------------------------------------

    def commit_stage(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        worker_id: str,
        expected_stage: str,
        next_stage: str,
        context: dict[str, Any],
        completed: bool,
    ) -> bool:
        """Persist one stage's output and advance ``stage`` in a single update.

        When ``completed`` is set the same update also finishes the job.
        Returns ``False`` if the job is no longer leased to ``worker_id`` at
        ``expected_stage``.
        """

        now = to_db_datetime(self.now())
        values: dict[str, Any] = {
            "stage": next_stage,
            "context_json": dump_json(context),
            "updated_at": now,
        }
        if completed:
            ensure_transition(JobStatus.RUNNING, JobStatus.COMPLETED, TransitionCause.COMPLETE)
            values.update(
                status=JobStatus.COMPLETED.value,
                locked_at=None,
                lock_owner=None,
                last_error=None,
            )

        with Session(self.engine) as session:
            result = session.exec(
                _update(Job)
                .where(
                    col(Job.id) == job_id,
                    col(Job.status) == JobStatus.RUNNING.value,
                    col(Job.lock_owner) == worker_id,
                    col(Job.stage) == expected_stage,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="stage_completed",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.RUNNING,
                details={"stage": expected_stage, "next_stage": next_stage},
            )
            if completed:
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="completed",
                    status_from=JobStatus.RUNNING,
                    status_to=JobStatus.COMPLETED,
                    details={"worker_id": worker_id},
                )
            session.commit()
            return True

    # -- retry controller ---------------------------------------------------

    def schedule_retry(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        worker_id: str,
        run_after: datetime,
        failure_class: FailureClass,
        error_summary: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Requeue a running job for automatic retry."""

        ensure_transition(JobStatus.RUNNING, JobStatus.QUEUED, TransitionCause.RETRY)
        now = to_db_datetime(self.now())
        with Session(self.engine) as session:
            result = session.exec(
                _update(Job)
                .where(
                    col(Job.id) == job_id,
                    col(Job.status) == JobStatus.RUNNING.value,
                    col(Job.lock_owner) == worker_id,
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    scheduled_at=to_db_datetime(run_after),
                    locked_at=None,
                    lock_owner=None,
                    last_error=error_summary,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="retry_scheduled",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.QUEUED,
                details={
                    "run_after": to_utc_aware_datetime(run_after).isoformat(),
                    "failure_class": failure_class.value,
                    **(details or {}),
                },
            )
            session.commit()
            return True

    def fail_job(
        self,
        *,
        job_id: str,
        worker_id: str,
        failure_class: FailureClass,
        error_summary: str,
        details: dict[str, object] | None = None,
    ) -> JobView | None:
        """Mark a running job as error; returns the failed job or ``None``."""

        ensure_transition(JobStatus.RUNNING, JobStatus.ERROR, TransitionCause.FAIL)
        now = to_db_datetime(self.now())
        with Session(self.engine) as session:
            result = session.exec(
                _update(Job)
                .where(
                    col(Job.id) == job_id,
                    col(Job.status) == JobStatus.RUNNING.value,
                    col(Job.lock_owner) == worker_id,
                )
                .values(
                    status=JobStatus.ERROR.value,
                    locked_at=None,
                    lock_owner=None,
                    last_error=error_summary,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="failed",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.ERROR,
                details={
                    "failure_class": failure_class.value,
                    "error_summary": error_summary,
                    **(details or {}),
                },
            )
            session.commit()
            row = session.get(Job, job_id)
            return _to_job_view(row) if row is not None else None

    def release_lease(self, *, job_id: str, worker_id: str, reason: str) -> bool:
        """Hand a running job back to the queue without consuming a retry."""

        ensure_transition(JobStatus.RUNNING, JobStatus.QUEUED, TransitionCause.RELEASE)
        now = to_db_datetime(self.now())
        with Session(self.engine) as session:
            result = session.exec(
                _update(Job)
                .where(
                    col(Job.id) == job_id,
                    col(Job.status) == JobStatus.RUNNING.value,
                    col(Job.lock_owner) == worker_id,
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    scheduled_at=now,
                    locked_at=None,
                    lock_owner=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="lease_released",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.QUEUED,
                details={"worker_id": worker_id, "reason": reason},
            )
            session.commit()
            return True

    # -- reaper -------------------------------------------------------------

    def reclaim_expired_leases(self, *, lease_timeout: timedelta) -> list[JobView]:
        """Return running jobs whose lease is at least ``lease_timeout`` old to the queue.

        ``stage``, ``context`` and ``attempts`` are left untouched.
        """

        if lease_timeout.total_seconds() <= 0:
            raise ValueError("lease_timeout must be > 0")
        ensure_transition(JobStatus.RUNNING, JobStatus.QUEUED, TransitionCause.RECLAIM)

        now = self.now()
        cutoff = to_db_datetime(now - lease_timeout)
        expired = self._expired_leases(cutoff=cutoff)
        if not expired:
            return []

        db_now = to_db_datetime(now)
        reclaimed: list[str] = []
        with Session(self.engine) as session:
            for job_id, lock_owner, locked_at in expired:
                result = session.exec(
                    _update(Job)
                    .where(
                        col(Job.id) == job_id,
                        col(Job.status) == JobStatus.RUNNING.value,
                        col(Job.lock_owner) == lock_owner,
                        col(Job.locked_at) == locked_at,
                    )
                    .values(
                        status=JobStatus.QUEUED.value,
                        locked_at=None,
                        lock_owner=None,
                        updated_at=db_now,
                    ),
                )
                if result.rowcount != 1:
                    continue
                reclaimed.append(job_id)
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="lease_reclaimed",
                    status_from=JobStatus.RUNNING,
                    status_to=JobStatus.QUEUED,
                    details={
                        "previous_owner": lock_owner,
                        "locked_at": to_utc_aware_datetime(locked_at).isoformat(),
                        "lease_timeout_seconds": int(lease_timeout.total_seconds()),
                    },
                )
            session.commit()
            rows = session.exec(select(Job).where(col(Job.id).in_(reclaimed))).all()
            return [_to_job_view(row) for row in rows]

    def _expired_leases(self, *, cutoff: datetime) -> list[tuple[str, str, datetime]]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(
                    col(Job.status) == JobStatus.RUNNING.value,
                    col(Job.locked_at) <= cutoff,
                )
                .order_by(col(Job.locked_at).asc()),
            ).all()
            return [
                (row.id, row.lock_owner, row.locked_at)
                for row in rows
                if row.lock_owner is not None and row.locked_at is not None
            ]

    # -- administrative reset -----------------------------------------------

    def reset_jobs(
        self,
        *,
        error_only: bool,
        stuck_only: bool,
        stuck_after: timedelta,
    ) -> ResetResult:
        """Requeue error and/or stuck jobs.

        With neither flag set both categories are reset. Error jobs restart
        with ``attempts = 0``; stuck jobs keep their attempts.
        """

        reset_errors = error_only or not stuck_only
        reset_stuck = stuck_only or not error_only
        result = ResetResult()
        if reset_errors:
            result.error_reset = self._reset_error_jobs(job_ids=None)
        if reset_stuck:
            result.stuck_reset = self._reset_stuck_jobs(stuck_after=stuck_after)
        return result

    def reset_job(self, *, job_id: str) -> JobView:
        """Requeue one error job (dead-letter replay)."""

        job = self.get_job(job_id)
        if job is None:
            raise RuntimeError(f"Job not found: {job_id}")
        if not isinstance(job.state, Error):
            raise RuntimeError(
                f"Only error jobs can be replayed, got status={job.status.value} (job_id={job_id}).",
            )
        ensure_transition(job.status, JobStatus.QUEUED, TransitionCause.RESET)
        if self._reset_error_jobs(job_ids=[job_id]) != 1:
            raise RuntimeError(
                "Job state changed concurrently while resetting; "
                f"please retry command (job_id={job_id}).",
            )
        refreshed = self.get_job(job_id)
        if refreshed is None:
            raise RuntimeError(f"Job not found: {job_id}")
        return refreshed

    def _reset_error_jobs(self, *, job_ids: list[str] | None) -> int:
        ensure_transition(JobStatus.ERROR, JobStatus.QUEUED, TransitionCause.RESET)
        if job_ids is None:
            with Session(self.engine) as session:
                job_ids = list(
                    session.exec(
                        select(Job.id).where(col(Job.status) == JobStatus.ERROR.value),
                    ).all(),
                )
        if not job_ids:
            return 0

        now = to_db_datetime(self.now())
        count = 0
        with Session(self.engine) as session:
            for job_id in job_ids:
                result = session.exec(
                    _update(Job)
                    .where(col(Job.id) == job_id, col(Job.status) == JobStatus.ERROR.value)
                    .values(
                        status=JobStatus.QUEUED.value,
                        attempts=0,
                        scheduled_at=now,
                        locked_at=None,
                        lock_owner=None,
                        last_error=None,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    continue
                count += 1
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="manual_reset",
                    status_from=JobStatus.ERROR,
                    status_to=JobStatus.QUEUED,
                    details={"category": "error"},
                )
            session.commit()
        return count

    def _reset_stuck_jobs(self, *, stuck_after: timedelta) -> int:
        ensure_transition(JobStatus.RUNNING, JobStatus.QUEUED, TransitionCause.RESET)
        now = self.now()
        expired = self._expired_leases(cutoff=to_db_datetime(now - stuck_after))
        if not expired:
            return 0

        db_now = to_db_datetime(now)
        count = 0
        with Session(self.engine) as session:
            for job_id, lock_owner, locked_at in expired:
                result = session.exec(
                    _update(Job)
                    .where(
                        col(Job.id) == job_id,
                        col(Job.status) == JobStatus.RUNNING.value,
                        col(Job.lock_owner) == lock_owner,
                        col(Job.locked_at) == locked_at,
                    )
                    .values(
                        status=JobStatus.QUEUED.value,
                        scheduled_at=db_now,
                        locked_at=None,
                        lock_owner=None,
                        last_error=None,
                        updated_at=db_now,
                    ),
                )
                if result.rowcount != 1:
                    continue
                count += 1
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="manual_reset",
                    status_from=JobStatus.RUNNING,
                    status_to=JobStatus.QUEUED,
                    details={"category": "stuck", "previous_owner": lock_owner},
                )
            session.commit()
        return count

    # -- delivery runs ------------------------------------------------------

    def get_run(self, event_id: str) -> DeliveryRunView | None:
        with Session(self.engine) as session:
            row = session.get(DeliveryRun, event_id)
            return _to_run_view(row) if row is not None else None

    def create_run(
        self,
        *,
        event: InboundEvent,
        correlation_id: str,
        outcome: RunOutcome,
    ) -> DeliveryRunView | None:
        """Record the first delivery of ``event``; ``None`` if it already exists."""

        now = to_db_datetime(self.now())
        with Session(self.engine) as session:
            row = DeliveryRun(
                event_id=event.event_id,
                event_type=event.event_type,
                resource_id=event.resource_id,
                correlation_id=correlation_id,
                tenant_hint=event.tenant_hint,
                outcome=outcome.value,
                job_ids_json="[]",
                delivery_count=1,
                first_seen_at=now,
                last_seen_at=now,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return None
            session.refresh(row)
            return _to_run_view(row)

    def update_run(
        self,
        *,
        event_id: str,
        outcome: RunOutcome | None = None,
        job_ids: list[str] | None = None,
        count_delivery: bool = False,
    ) -> DeliveryRunView:
        now = to_db_datetime(self.now())
        values: dict[str, Any] = {}
        if outcome is not None:
            values["outcome"] = outcome.value
        if job_ids is not None:
            values["job_ids_json"] = json.dumps(job_ids)
        if count_delivery:
            values["delivery_count"] = col(DeliveryRun.delivery_count) + 1
            values["last_seen_at"] = now
        with Session(self.engine) as session:
            if values:
                result = session.exec(
                    _update(DeliveryRun)
                    .where(col(DeliveryRun.event_id) == event_id)
                    .values(**values),
                )
                if result.rowcount != 1:
                    session.rollback()
                    raise RuntimeError(f"Delivery run not found: {event_id}")
                session.commit()
            row = session.get(DeliveryRun, event_id)
            if row is None:
                raise RuntimeError(f"Delivery run not found: {event_id}")
            return _to_run_view(row)

    # -- dead letters -------------------------------------------------------

    def add_dead_letter(self, entry: DeadLetterWrite) -> DeadLetterView:
        with Session(self.engine) as session:
            row = DeadLetter(
                job_id=entry.job_id,
                correlation_id=entry.correlation_id,
                trigger_type=entry.trigger_type,
                pipeline=entry.pipeline,
                stage=entry.stage,
                payload_json=dump_json(entry.payload),
                context_json=dump_json(entry.context),
                error_message=entry.error_message,
                failure_class=entry.failure_class.value if entry.failure_class else None,
                retry_count=entry.retry_count,
                job_created_at=to_db_datetime(entry.job_created_at),
                failed_at=to_db_datetime(entry.failed_at),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_dead_letter_view(row)

    def list_dead_letters(self, *, limit: int = 50) -> list[DeadLetterView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(DeadLetter).order_by(col(DeadLetter.failed_at).desc()).limit(limit),
            ).all()
        return [_to_dead_letter_view(row) for row in rows]

    # -- read models --------------------------------------------------------

    def count_by_status(self) -> dict[JobStatus, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job.status, func.count()).group_by(col(Job.status)),
            ).all()
        counts = {status: 0 for status in JobStatus}
        for status, count in rows:
            counts[JobStatus(status)] = int(count)
        return counts

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(Job).order_by(col(Job.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Job.status == status.value)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def list_recent_jobs(self, *, status: JobStatus, limit: int) -> list[JobView]:
        """Queued jobs in claim order; other statuses by latest update."""

        with Session(self.engine) as session:
            statement = select(Job).where(Job.status == status.value).limit(limit)
            if status is JobStatus.QUEUED:
                statement = statement.order_by(
                    col(Job.scheduled_at).asc(),
                    col(Job.created_at).asc(),
                )
            else:
                statement = statement.order_by(col(Job.updated_at).desc())
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def list_stuck_jobs(self, *, stuck_after: timedelta, limit: int) -> list[JobView]:
        cutoff = to_db_datetime(self.now() - stuck_after)
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(
                    col(Job.status) == JobStatus.RUNNING.value,
                    col(Job.locked_at) <= cutoff,
                )
                .order_by(col(Job.locked_at).asc())
                .limit(limit),
            ).all()
        return [_to_job_view(row) for row in rows]

    def get_job_details(self, *, job_id: str) -> JobDetails | None:
        """Return job details with event stream."""

        with Session(self.engine) as session:
            job = session.get(Job, job_id)
            if job is None:
                return None
            event_rows = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.created_at).asc(), col(JobEvent.id).asc()),
            ).all()
            job_view = _to_job_view(job)

        events = [
            JobEventView(
                event_id=row.id or 0,
                job_id=row.job_id,
                event_type=row.event_type,
                status_from=JobStatus(row.status_from) if row.status_from is not None else None,
                status_to=JobStatus(row.status_to) if row.status_to is not None else None,
                created_at=to_utc_aware_datetime(row.created_at),
                details=load_json_object(row.details_json),
            )
            for row in event_rows
        ]
        return JobDetails(job=job_view, events=events)

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(details) if details else None,
                created_at=to_db_datetime(self.now()),
            ),
        )


def _update(model: type[Job] | type[DeliveryRun]) -> Any:
    # No ORM objects are loaded before these statements, so skip session sync.
    return sa_update(model).execution_options(synchronize_session=False)


def _to_job_view(row: Job) -> JobView:
    return JobView(
        id=row.id,
        correlation_id=row.correlation_id,
        pipeline=row.pipeline,
        trigger_type=row.trigger_type,
        stage=row.stage,
        status=JobStatus(row.status),
        schema_version=row.schema_version,
        payload=load_json_object(row.payload_json),
        context=load_json_object(row.context_json),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        scheduled_at=to_utc_aware_datetime(row.scheduled_at),
        locked_at=to_utc_aware_datetime(row.locked_at) if row.locked_at is not None else None,
        lock_owner=row.lock_owner,
        last_error=row.last_error,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_run_view(row: DeliveryRun) -> DeliveryRunView:
    job_ids = json.loads(row.job_ids_json) if row.job_ids_json else []
    return DeliveryRunView(
        event_id=row.event_id,
        event_type=row.event_type,
        resource_id=row.resource_id,
        correlation_id=row.correlation_id,
        tenant_hint=row.tenant_hint,
        outcome=RunOutcome(row.outcome),
        job_ids=[str(job_id) for job_id in job_ids],
        delivery_count=row.delivery_count,
        first_seen_at=to_utc_aware_datetime(row.first_seen_at),
        last_seen_at=to_utc_aware_datetime(row.last_seen_at),
    )


def _to_dead_letter_view(row: DeadLetter) -> DeadLetterView:
    return DeadLetterView(
        id=row.id or 0,
        job_id=row.job_id,
        correlation_id=row.correlation_id,
        trigger_type=row.trigger_type,
        pipeline=row.pipeline,
        stage=row.stage,
        payload=load_json_object(row.payload_json),
        context=load_json_object(row.context_json),
        error_message=row.error_message,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        retry_count=row.retry_count,
        job_created_at=to_utc_aware_datetime(row.job_created_at),
        failed_at=to_utc_aware_datetime(row.failed_at),
    )
