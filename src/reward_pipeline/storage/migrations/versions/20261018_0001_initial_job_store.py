"""Initial job store schema: jobs, job events, delivery runs, dead letters."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "jobs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("correlation_id", sa.String(), nullable=False),
        sa.Column("pipeline", sa.String(), nullable=False),
        sa.Column("trigger_type", sa.String(), nullable=False),
        sa.Column("stage", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("schema_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("context_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lock_owner", sa.String(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("correlation_id", "pipeline", name="uq_jobs_correlation_pipeline"),
        sa.CheckConstraint(
            "status IN ('queued', 'running', 'completed', 'error')",
            name="ck_jobs_status",
        ),
        sa.CheckConstraint(
            "(status = 'running' AND locked_at IS NOT NULL AND lock_owner IS NOT NULL) "
            "OR (status != 'running' AND locked_at IS NULL AND lock_owner IS NULL)",
            name="ck_jobs_lease_iff_running",
        ),
    )
    op.create_index("ix_jobs_correlation_id", "jobs", ["correlation_id"], unique=False)
    op.create_index("ix_jobs_pipeline", "jobs", ["pipeline"], unique=False)
    op.create_index("ix_jobs_trigger_type", "jobs", ["trigger_type"], unique=False)
    op.create_index("ix_jobs_status", "jobs", ["status"], unique=False)
    op.create_index("ix_jobs_lock_owner", "jobs", ["lock_owner"], unique=False)
    op.create_index(
        "idx_jobs_claim",
        "jobs",
        ["status", "scheduled_at", "created_at"],
        unique=False,
    )
    op.create_index("idx_jobs_lease", "jobs", ["status", "locked_at"], unique=False)

    op.create_table(
        "job_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_job_events_job_id", "job_events", ["job_id"], unique=False)
    op.create_index("ix_job_events_event_type", "job_events", ["event_type"], unique=False)
    op.create_index(
        "idx_job_events_job_time",
        "job_events",
        ["job_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "delivery_runs",
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("resource_id", sa.String(), nullable=False),
        sa.Column("correlation_id", sa.String(), nullable=False),
        sa.Column("tenant_hint", sa.String(), nullable=True),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("job_ids_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("delivery_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index(
        "ix_delivery_runs_event_type",
        "delivery_runs",
        ["event_type"],
        unique=False,
    )
    op.create_index(
        "ix_delivery_runs_correlation_id",
        "delivery_runs",
        ["correlation_id"],
        unique=False,
    )
    op.create_index("ix_delivery_runs_outcome", "delivery_runs", ["outcome"], unique=False)

    op.create_table(
        "dead_letters",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("correlation_id", sa.String(), nullable=False),
        sa.Column("trigger_type", sa.String(), nullable=False),
        sa.Column("pipeline", sa.String(), nullable=False),
        sa.Column("stage", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("context_json", sa.Text(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=False),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("job_created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_dead_letters_job_id", "dead_letters", ["job_id"], unique=False)
    op.create_index(
        "ix_dead_letters_correlation_id",
        "dead_letters",
        ["correlation_id"],
        unique=False,
    )
    op.create_index("idx_dead_letters_failed_at", "dead_letters", ["failed_at"], unique=False)


def downgrade() -> None:
    op.drop_index("idx_dead_letters_failed_at", table_name="dead_letters")
    op.drop_index("ix_dead_letters_correlation_id", table_name="dead_letters")
    op.drop_index("ix_dead_letters_job_id", table_name="dead_letters")
    op.drop_table("dead_letters")
    op.drop_index("ix_delivery_runs_outcome", table_name="delivery_runs")
    op.drop_index("ix_delivery_runs_correlation_id", table_name="delivery_runs")
    op.drop_index("ix_delivery_runs_event_type", table_name="delivery_runs")
    op.drop_table("delivery_runs")
    op.drop_index("idx_job_events_job_time", table_name="job_events")
    op.drop_index("ix_job_events_event_type", table_name="job_events")
    op.drop_index("ix_job_events_job_id", table_name="job_events")
    op.drop_table("job_events")
    op.drop_index("idx_jobs_lease", table_name="jobs")
    op.drop_index("idx_jobs_claim", table_name="jobs")
    op.drop_index("ix_jobs_lock_owner", table_name="jobs")
    op.drop_index("ix_jobs_status", table_name="jobs")
    op.drop_index("ix_jobs_trigger_type", table_name="jobs")
    op.drop_index("ix_jobs_pipeline", table_name="jobs")
    op.drop_index("ix_jobs_correlation_id", table_name="jobs")
    op.drop_table("jobs")
