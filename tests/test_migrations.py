from pathlib import Path

import allure
from sqlalchemy import text

from reward_pipeline.jobs.repository import JobRepository

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Job Store"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(
            text("SELECT version_num FROM alembic_version LIMIT 1"),
        ).scalar_one()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table' AND name != 'alembic_version'
                ORDER BY name
                """,
            ),
        ).scalars().all()
        indexes = set(
            connection.execute(
                text("SELECT name FROM sqlite_master WHERE type = 'index'"),
            ).scalars().all(),
        )
    repository.close()

    assert version == "20261018_0001"
    assert tables == ["dead_letters", "delivery_runs", "job_events", "jobs"]
    assert {"idx_jobs_claim", "idx_jobs_lease", "idx_job_events_job_time"} <= indexes


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "migrations.db")

    repository.init_schema()
    repository.init_schema()

    assert set(repository.count_by_status().values()) == {0}
    repository.close()
