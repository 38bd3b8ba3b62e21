from __future__ import annotations

import sqlite3
from collections.abc import Callable
from typing import Any

import allure
import pytest
from sqlalchemy.exc import OperationalError

from reward_pipeline.jobs.errors import ProviderError
from reward_pipeline.jobs.models import FailureClass, JobView
from reward_pipeline.jobs.repository import JobRepository
from reward_pipeline.jobs.states import JobStatus
from reward_pipeline.jobs.worker import EXHAUSTED_REASON, JobWorker, WorkerRunSummary
from reward_pipeline.providers.base import ProviderSet

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Worker"),
]


def test_worker_completes_queued_jobs(
    repository: JobRepository,
    enqueue_job: Callable[..., JobView],
    make_worker: Callable[..., JobWorker],
    providers: ProviderSet,
) -> None:
    jobs = [enqueue_job() for _ in range(3)]
    before = repository.count_by_status()

    summary = make_worker().run_once()

    assert summary.claimed == 3
    assert summary.completed == 3
    after = repository.count_by_status()
    assert after[JobStatus.COMPLETED] == before[JobStatus.COMPLETED] + 3
    assert after[JobStatus.QUEUED] == 0
    for job in jobs:
        stored = repository.get_job(job.id)
        assert stored is not None
        assert stored.status is JobStatus.COMPLETED
        assert stored.attempts == 1
    assert len(providers.rewards.instruments) == 3
    assert len(providers.notifications.sent) == 3


def test_retry_resumes_at_failed_stage_without_repeating_side_effects(
    repository: JobRepository,
    enqueue_job: Callable[..., JobView],
    make_worker: Callable[..., JobWorker],
    providers: ProviderSet,
    clock,
) -> None:
    providers.rewards.fail_next(
        "activate",
        ProviderError("reward service unavailable", provider="reward", transient=True),
    )
    job = enqueue_job()
    worker = make_worker()

    first = worker.run_once()
    stored = repository.get_job(job.id)
    assert first.retried == 1
    assert stored is not None
    assert stored.stage == "activate_instrument"
    assert set(stored.context) == {"tenant_id", "instrument_id"}

    clock.advance(seconds=5)
    second = worker.run_once()

    completed = repository.get_job(job.id)
    assert second.completed == 1
    assert completed is not None
    assert completed.status is JobStatus.COMPLETED
    assert completed.attempts == 2
    assert providers.tenants.calls["resolve"] == 1
    assert providers.rewards.calls["issue"] == 1
    assert providers.rewards.calls["activate"] == 2
    assert len(providers.rewards.instruments) == 1
    instrument = providers.rewards.instruments[completed.context["instrument_id"]]
    assert instrument["balance_cents"] == 1000


def test_lost_commit_reissues_with_same_idempotency_key(
    repository: JobRepository,
    enqueue_job: Callable[..., JobView],
    make_worker: Callable[..., JobWorker],
    providers: ProviderSet,
    monkeypatch: pytest.MonkeyPatch,
    clock,
) -> None:
    original_commit = repository.commit_stage
    failures = {"left": 1}

    def _flaky_commit(**kwargs: Any) -> bool:
        if kwargs["expected_stage"] == "issue_instrument" and failures["left"]:
            failures["left"] -= 1
            raise OperationalError(
                "UPDATE jobs",
                {},
                sqlite3.OperationalError("database is locked"),
            )
        return original_commit(**kwargs)

    monkeypatch.setattr(repository, "commit_stage", _flaky_commit)
    job = enqueue_job()
    worker = make_worker()

    first = worker.run_once()
    clock.advance(seconds=5)
    second = worker.run_once()

    assert first.retried == 1
    assert second.completed == 1
    assert providers.rewards.calls["issue"] == 2
    assert len(providers.rewards.instruments) == 1
    stored = repository.get_job(job.id)
    assert stored is not None
    assert stored.context["instrument_id"] in providers.rewards.instruments
    details = repository.get_job_details(job_id=job.id)
    assert details is not None
    retry_event = next(e for e in details.events if e.event_type == "retry_scheduled")
    assert retry_event.details["failure_class"] == FailureClass.LOCK_CONTENTION.value


def test_invalid_payload_fails_without_retry(
    repository: JobRepository,
    enqueue_job: Callable[..., JobView],
    make_worker: Callable[..., JobWorker],
    reward_payload: Callable[..., dict[str, Any]],
) -> None:
    job = enqueue_job(payload=reward_payload(amount_cents=-5))

    summary = make_worker().run_once()

    stored = repository.get_job(job.id)
    assert summary.failed == 1
    assert stored is not None
    assert stored.status is JobStatus.ERROR
    assert stored.attempts == 1
    assert "amount_cents" in (stored.last_error or "")
    entries = repository.list_dead_letters()
    assert [entry.failure_class for entry in entries] == [FailureClass.INVALID_PAYLOAD]


def test_stop_request_releases_lease_after_current_stage(
    repository: JobRepository,
    enqueue_job: Callable[..., JobView],
    make_worker: Callable[..., JobWorker],
    providers: ProviderSet,
) -> None:
    job = enqueue_job()
    worker = make_worker()
    original_issue = providers.rewards.issue

    def _issue_then_stop(**kwargs: Any) -> str:
        worker.request_stop(reason="SIGTERM")
        return original_issue(**kwargs)

    providers.rewards.issue = _issue_then_stop  # type: ignore[method-assign]

    summary = worker.run_once()

    stored = repository.get_job(job.id)
    assert summary.released == 1
    assert stored is not None
    assert stored.status is JobStatus.QUEUED
    assert stored.stage == "activate_instrument"
    assert stored.attempts == 1
    assert stored.lock_owner is None
    assert worker.stop_requested
    assert worker.run_once().claimed == 0


def test_stopped_worker_loop_exits_without_claiming(
    enqueue_job: Callable[..., JobView],
    make_worker: Callable[..., JobWorker],
) -> None:
    enqueue_job()
    worker = make_worker()
    worker.request_stop(reason="test")

    summary = worker.run_loop(max_idle_polls=None)

    assert summary == WorkerRunSummary()


def test_run_loop_stops_after_max_jobs(
    enqueue_job: Callable[..., JobView],
    make_worker: Callable[..., JobWorker],
) -> None:
    for _ in range(5):
        enqueue_job()

    summary = make_worker(batch_size=2).run_loop(max_jobs=3)

    assert summary.claimed == 4
    assert summary.completed == 4


def test_run_loop_drains_queue_then_idles_out(
    enqueue_job: Callable[..., JobView],
    make_worker: Callable[..., JobWorker],
) -> None:
    for _ in range(3):
        enqueue_job()

    summary = make_worker(batch_size=2).run_loop(max_idle_polls=2)

    assert summary.claimed == 3
    assert summary.completed == 3
    assert summary.idle_polls == 2


def test_concurrent_processing_completes_batch(
    repository: JobRepository,
    enqueue_job: Callable[..., JobView],
    make_worker: Callable[..., JobWorker],
) -> None:
    for _ in range(6):
        enqueue_job()

    summary = make_worker(concurrency=3).run_once()

    assert summary.claimed == 6
    assert summary.completed == 6
    assert repository.count_by_status()[JobStatus.COMPLETED] == 6


def test_lease_lost_mid_run_is_abandoned_without_transition(
    repository: JobRepository,
    enqueue_job: Callable[..., JobView],
    make_worker: Callable[..., JobWorker],
    providers: ProviderSet,
) -> None:
    job = enqueue_job()
    original_issue = providers.rewards.issue

    def _issue_after_reclaim(**kwargs: Any) -> str:
        repository.release_lease(job_id=job.id, worker_id="worker-a", reason="reclaimed")
        repository.claim(worker_id="worker-b")
        return original_issue(**kwargs)

    providers.rewards.issue = _issue_after_reclaim  # type: ignore[method-assign]

    summary = make_worker().run_once()

    stored = repository.get_job(job.id)
    assert summary.lease_lost == 1
    assert stored is not None
    assert stored.status is JobStatus.RUNNING
    assert stored.lock_owner == "worker-b"
    assert stored.stage == "issue_instrument"
    assert repository.list_dead_letters() == []


def test_store_failure_while_recording_failure_is_abandoned(
    repository: JobRepository,
    enqueue_job: Callable[..., JobView],
    make_worker: Callable[..., JobWorker],
    providers: ProviderSet,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    job = enqueue_job()
    providers.tenants.fail_next(
        "resolve",
        ProviderError("timed out", provider="tenant", transient=True),
    )

    def _broken(**_: Any) -> bool:
        raise OperationalError("UPDATE jobs", {}, sqlite3.OperationalError("disk I/O error"))

    monkeypatch.setattr(repository, "schedule_retry", _broken)

    summary = make_worker().run_once()

    stored = repository.get_job(job.id)
    assert summary.abandoned == 1
    assert stored is not None
    assert stored.status is JobStatus.RUNNING


def test_store_failure_while_failing_keeps_fatal_classification(
    repository: JobRepository,
    enqueue_job: Callable[..., JobView],
    make_worker: Callable[..., JobWorker],
    reward_payload: Callable[..., dict[str, Any]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    job = enqueue_job(payload=reward_payload(recipient=None))
    original_fail = repository.fail_job
    failures = {"left": 1}

    def _flaky_fail(**kwargs: Any) -> JobView | None:
        if failures["left"]:
            failures["left"] -= 1
            raise OperationalError(
                "UPDATE jobs",
                {},
                sqlite3.OperationalError("database is locked"),
            )
        return original_fail(**kwargs)

    monkeypatch.setattr(repository, "fail_job", _flaky_fail)

    summary = make_worker().run_once()

    stored = repository.get_job(job.id)
    assert summary.failed == 1
    assert summary.retried == 0
    assert stored is not None
    assert stored.status is JobStatus.ERROR
    assert stored.stage == "issue_instrument"
    assert "PayloadValidationError" in (stored.last_error or "")
    assert "database is locked" not in (stored.last_error or "")
    entries = repository.list_dead_letters()
    assert [entry.failure_class for entry in entries] == [FailureClass.INVALID_PAYLOAD]


def test_jobs_exhausted_while_queued_are_failed_and_dead_lettered(
    repository: JobRepository,
    enqueue_job: Callable[..., JobView],
    make_worker: Callable[..., JobWorker],
    clock,
) -> None:
    job = enqueue_job(max_attempts=1)
    repository.claim(worker_id="worker-x")
    clock.advance(minutes=10)
    worker = make_worker(with_reaper=True)

    summary = worker.run_once()

    stored = repository.get_job(job.id)
    assert summary.failed == 1
    assert summary.claimed == 0
    assert stored is not None
    assert stored.status is JobStatus.ERROR
    assert stored.last_error == EXHAUSTED_REASON
    entries = repository.list_dead_letters()
    assert [entry.failure_class for entry in entries] == [FailureClass.ATTEMPTS_EXHAUSTED]


def test_worker_validates_arguments(make_worker: Callable[..., JobWorker]) -> None:
    with pytest.raises(ValueError, match="batch_size"):
        make_worker(batch_size=0)
    with pytest.raises(ValueError, match="concurrency"):
        make_worker(concurrency=0)
