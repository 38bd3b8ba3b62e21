from __future__ import annotations

from collections.abc import Callable

import allure
import pytest

from reward_pipeline.jobs.dead_letter import DeadLetterSink
from reward_pipeline.jobs.models import DeadLetterWrite, FailureClass, JobView
from reward_pipeline.jobs.repository import JobRepository
from reward_pipeline.jobs.states import JobStatus

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Dead Letters"),
]


def _failed_job(repository: JobRepository, enqueue_job: Callable[..., JobView]) -> JobView:
    enqueue_job()
    job = repository.claim(worker_id="worker-a")[0]
    repository.commit_stage(
        job_id=job.id,
        worker_id="worker-a",
        expected_stage="resolve_tenant",
        next_stage="issue_instrument",
        context={"tenant_id": "tenant-1"},
        completed=False,
    )
    failed = repository.fail_job(
        job_id=job.id,
        worker_id="worker-a",
        failure_class=FailureClass.PROVIDER_REJECTED,
        error_summary="issue_instrument: ProviderError: declined",
    )
    assert failed is not None
    return failed


def test_record_snapshots_the_failed_job(
    repository: JobRepository,
    enqueue_job: Callable[..., JobView],
    clock,
) -> None:
    job = _failed_job(repository, enqueue_job)
    clock.advance(seconds=3)

    entry = DeadLetterSink(repository).record(
        job=job,
        error_message="issue_instrument: ProviderError: declined",
        failure_class=FailureClass.PROVIDER_REJECTED,
    )

    assert entry is not None
    assert entry.job_id == job.id
    assert entry.correlation_id == job.correlation_id
    assert entry.stage == "issue_instrument"
    assert entry.context == {"tenant_id": "tenant-1"}
    assert entry.payload == job.payload
    assert entry.retry_count == 1
    assert entry.job_created_at == job.created_at
    assert entry.failed_at == clock()


def test_failed_write_is_logged_and_job_stays_in_error(
    repository: JobRepository,
    enqueue_job: Callable[..., JobView],
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    job = _failed_job(repository, enqueue_job)

    def _broken(_: DeadLetterWrite) -> None:
        raise RuntimeError("dead letter table unavailable")

    monkeypatch.setattr(repository, "add_dead_letter", _broken)

    entry = DeadLetterSink(repository).record(
        job=job,
        error_message="declined",
        failure_class=FailureClass.PROVIDER_REJECTED,
    )

    stored = repository.get_job(job.id)
    assert entry is None
    assert stored is not None
    assert stored.status is JobStatus.ERROR
    assert "Dead-letter write failed" in caplog.text
