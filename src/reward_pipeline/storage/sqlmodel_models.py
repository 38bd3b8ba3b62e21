"""SQLModel ORM tables for the job store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
)
from sqlmodel import Field, SQLModel

JOB_STATUS_VALUES = ("queued", "running", "completed", "error")


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("correlation_id", "pipeline", name="uq_jobs_correlation_pipeline"),
        Index("idx_jobs_claim", "status", "scheduled_at", "created_at"),
        Index("idx_jobs_lease", "status", "locked_at"),
        CheckConstraint(
            "status IN ('queued', 'running', 'completed', 'error')",
            name="ck_jobs_status",
        ),
        CheckConstraint(
            "(status = 'running' AND locked_at IS NOT NULL AND lock_owner IS NOT NULL) "
            "OR (status != 'running' AND locked_at IS NULL AND lock_owner IS NULL)",
            name="ck_jobs_lease_iff_running",
        ),
    )

    id: str = Field(primary_key=True)
    correlation_id: str = Field(index=True)
    pipeline: str = Field(index=True)
    trigger_type: str = Field(index=True)
    stage: str
    status: str = Field(index=True)
    schema_version: int = Field(default=1)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    context_json: str = Field(sa_column=Column(Text, nullable=False, server_default="{}"))
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=5)
    scheduled_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    locked_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    lock_owner: str | None = Field(default=None, index=True)
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None)
    status_to: str | None = Field(default=None)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class DeliveryRun(SQLModel, table=True):
    __tablename__ = "delivery_runs"  # type: ignore[bad-override]

    event_id: str = Field(primary_key=True)
    event_type: str = Field(index=True)
    resource_id: str
    correlation_id: str = Field(index=True)
    tenant_hint: str | None = None
    outcome: str = Field(index=True)
    job_ids_json: str = Field(sa_column=Column(Text, nullable=False, server_default="[]"))
    delivery_count: int = Field(default=1)
    first_seen_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_seen_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class DeadLetter(SQLModel, table=True):
    __tablename__ = "dead_letters"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_dead_letters_failed_at", "failed_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    correlation_id: str = Field(index=True)
    trigger_type: str
    pipeline: str
    stage: str
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    context_json: str = Field(sa_column=Column(Text, nullable=False))
    error_message: str = Field(sa_column=Column(Text, nullable=False))
    failure_class: str | None = None
    retry_count: int
    job_created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    failed_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
