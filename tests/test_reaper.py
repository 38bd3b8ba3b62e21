from __future__ import annotations

import threading
import time
from collections.abc import Callable
from datetime import timedelta

import allure
import pytest

from reward_pipeline.jobs.models import JobView
from reward_pipeline.jobs.reaper import StuckJobReaper
from reward_pipeline.jobs.repository import JobRepository
from reward_pipeline.jobs.states import JobStatus

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Stuck-Job Reaper"),
]

LEASE_TIMEOUT = timedelta(minutes=5)


def _leased_job_at_second_stage(
    repository: JobRepository,
    enqueue_job: Callable[..., JobView],
) -> JobView:
    job = enqueue_job()
    repository.claim(worker_id="worker-a")
    assert repository.commit_stage(
        job_id=job.id,
        worker_id="worker-a",
        expected_stage="resolve_tenant",
        next_stage="issue_instrument",
        context={"tenant_id": "tenant-1"},
        completed=False,
    )
    return job


def test_reaper_rejects_non_positive_timeout(repository: JobRepository) -> None:
    with pytest.raises(ValueError, match="lease_timeout"):
        StuckJobReaper(repository=repository, lease_timeout=timedelta(0))


def test_lease_younger_than_timeout_is_kept(
    repository: JobRepository,
    enqueue_job: Callable[..., JobView],
    clock,
) -> None:
    job = _leased_job_at_second_stage(repository, enqueue_job)
    clock.advance(minutes=4, seconds=59)

    reclaimed = StuckJobReaper(repository=repository, lease_timeout=LEASE_TIMEOUT).run_once()

    stored = repository.get_job(job.id)
    assert reclaimed == []
    assert stored is not None
    assert stored.status is JobStatus.RUNNING


def test_lease_at_timeout_is_reclaimed_with_progress_kept(
    repository: JobRepository,
    enqueue_job: Callable[..., JobView],
    clock,
) -> None:
    job = _leased_job_at_second_stage(repository, enqueue_job)
    clock.advance(minutes=5)

    reclaimed = StuckJobReaper(repository=repository, lease_timeout=LEASE_TIMEOUT).run_once()

    assert [item.id for item in reclaimed] == [job.id]
    stored = reclaimed[0]
    assert stored.status is JobStatus.QUEUED
    assert stored.lock_owner is None
    assert stored.locked_at is None
    assert stored.stage == "issue_instrument"
    assert stored.context == {"tenant_id": "tenant-1"}
    assert stored.attempts == 1

    details = repository.get_job_details(job_id=job.id)
    assert details is not None
    assert details.events[-1].event_type == "lease_reclaimed"
    assert details.events[-1].details["previous_owner"] == "worker-a"


def test_reclaimed_job_resumes_with_next_claim(
    repository: JobRepository,
    enqueue_job: Callable[..., JobView],
    clock,
) -> None:
    job = _leased_job_at_second_stage(repository, enqueue_job)
    clock.advance(minutes=6)
    StuckJobReaper(repository=repository, lease_timeout=LEASE_TIMEOUT).run_once()

    claimed = repository.claim(worker_id="worker-b")

    assert [item.id for item in claimed] == [job.id]
    assert claimed[0].stage == "issue_instrument"
    assert claimed[0].attempts == 2
    assert claimed[0].lock_owner == "worker-b"


def test_previous_owner_cannot_commit_after_reclaim(
    repository: JobRepository,
    enqueue_job: Callable[..., JobView],
    clock,
) -> None:
    job = _leased_job_at_second_stage(repository, enqueue_job)
    clock.advance(minutes=5)
    StuckJobReaper(repository=repository, lease_timeout=LEASE_TIMEOUT).run_once()
    repository.claim(worker_id="worker-b")

    late_commit = repository.commit_stage(
        job_id=job.id,
        worker_id="worker-a",
        expected_stage="issue_instrument",
        next_stage="activate_instrument",
        context={"tenant_id": "tenant-1", "instrument_id": "inst_1"},
        completed=False,
    )

    stored = repository.get_job(job.id)
    assert late_commit is False
    assert stored is not None
    assert stored.lock_owner == "worker-b"
    assert "instrument_id" not in stored.context


def test_reaper_ignores_queued_and_finished_jobs(
    repository: JobRepository,
    enqueue_job: Callable[..., JobView],
    clock,
) -> None:
    enqueue_job()
    clock.advance(hours=1)

    assert StuckJobReaper(repository=repository, lease_timeout=LEASE_TIMEOUT).run_once() == []


def test_run_forever_scans_until_stopped(
    repository: JobRepository,
    enqueue_job: Callable[..., JobView],
    clock,
) -> None:
    job = _leased_job_at_second_stage(repository, enqueue_job)
    clock.advance(minutes=10)
    reaper = StuckJobReaper(repository=repository, lease_timeout=LEASE_TIMEOUT)
    stop_event = threading.Event()
    totals: list[int] = []
    thread = threading.Thread(
        target=lambda: totals.append(reaper.run_forever(stop_event, interval_seconds=0.01)),
    )

    thread.start()
    deadline = time.monotonic() + 10
    while time.monotonic() < deadline:
        stored = repository.get_job(job.id)
        if stored is not None and stored.status is JobStatus.QUEUED:
            break
        time.sleep(0.01)
    stop_event.set()
    thread.join(timeout=10)

    assert totals == [1]
