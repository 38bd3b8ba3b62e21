"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from reward_pipeline.jobs.dead_letter import DeadLetterSink
from reward_pipeline.jobs.executor import StageExecutor
from reward_pipeline.jobs.handlers import REWARD_PIPELINE, build_pipeline_registry
from reward_pipeline.jobs.models import JobCreate, JobView
from reward_pipeline.jobs.pipeline import PipelineRegistry
from reward_pipeline.jobs.reaper import StuckJobReaper
from reward_pipeline.jobs.repository import JobRepository
from reward_pipeline.jobs.retry import BackoffPolicy, RetryController
from reward_pipeline.jobs.worker import JobWorker
from reward_pipeline.providers.base import ProviderSet
from reward_pipeline.providers.fake import (
    FakeNotificationProvider,
    FakeRewardProvider,
    FakeTenantResolver,
)

T0 = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)


class FrozenClock:
    """Manually advanced UTC clock injected into the repository."""

    def __init__(self, start: datetime = T0) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "jobs.db"


@pytest.fixture()
def repository(db_path: Path, clock: FrozenClock) -> Iterator[JobRepository]:
    repo = JobRepository(db_path, clock=clock)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def providers() -> ProviderSet:
    return ProviderSet(
        tenants=FakeTenantResolver(tenants={"tenant-hint-1": "tenant-1"}),
        rewards=FakeRewardProvider(),
        notifications=FakeNotificationProvider(),
    )


@pytest.fixture()
def pipelines(providers: ProviderSet) -> PipelineRegistry:
    return build_pipeline_registry(providers)


def _reward_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "event_id": "evt-1",
        "event_type": "sale.completed",
        "resource_id": "sale-1",
        "tenant_hint": "tenant-hint-1",
        "recipient": "guest@example.com",
        "amount_cents": 1000,
        "currency": "USD",
        "notification_channel": "email",
        "notification_template": "reward_issued",
    }
    payload.update(overrides)
    return payload


@pytest.fixture()
def reward_payload() -> Callable[..., dict[str, Any]]:
    return _reward_payload


@pytest.fixture()
def enqueue_job(repository: JobRepository) -> Callable[..., JobView]:
    counter = {"value": 0}

    def _enqueue(
        *,
        correlation_id: str | None = None,
        max_attempts: int = 5,
        payload: dict[str, Any] | None = None,
        stage: str = "resolve_tenant",
        delay: timedelta | None = None,
    ) -> JobView:
        counter["value"] += 1
        return repository.enqueue(
            JobCreate(
                correlation_id=correlation_id or f"sale.completed:sale-{counter['value']}",
                trigger_type="sale.completed",
                pipeline=REWARD_PIPELINE,
                stage=stage,
                payload=payload or _reward_payload(resource_id=f"sale-{counter['value']}"),
                max_attempts=max_attempts,
                delay=delay,
            ),
        )

    return _enqueue


@pytest.fixture()
def make_worker(
    repository: JobRepository,
    pipelines: PipelineRegistry,
) -> Callable[..., JobWorker]:
    def _make(
        *,
        worker_id: str = "worker-a",
        batch_size: int = 10,
        concurrency: int = 1,
        with_reaper: bool = False,
    ) -> JobWorker:
        return JobWorker(
            repository=repository,
            executor=StageExecutor(repository=repository, pipelines=pipelines),
            retry_controller=RetryController(
                repository=repository,
                dead_letters=DeadLetterSink(repository),
                policy=BackoffPolicy(base_seconds=5, max_seconds=300),
            ),
            worker_id=worker_id,
            reaper=(
                StuckJobReaper(repository=repository, lease_timeout=timedelta(minutes=5))
                if with_reaper
                else None
            ),
            batch_size=batch_size,
            concurrency=concurrency,
            poll_interval_seconds=0,
        )

    return _make
