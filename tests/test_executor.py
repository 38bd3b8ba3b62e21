from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

import allure
import pytest

from reward_pipeline.jobs.errors import (
    FatalJobError,
    LeaseLostError,
    PayloadValidationError,
    StageContractError,
)
from reward_pipeline.jobs.executor import StageExecutor
from reward_pipeline.jobs.models import JobCreate, JobView
from reward_pipeline.jobs.pipeline import Pipeline, PipelineRegistry, StageInput, StageSpec
from reward_pipeline.jobs.repository import JobRepository
from reward_pipeline.jobs.states import JobStatus
from reward_pipeline.providers.base import ProviderSet

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Stage Executor"),
]


def _claim_one(repository: JobRepository) -> JobView:
    claimed = repository.claim(worker_id="worker-a")
    assert len(claimed) == 1
    return claimed[0]


def _enqueue_custom(
    repository: JobRepository,
    *,
    pipeline: str = "custom",
    stage: str = "first",
    schema_version: int = 1,
) -> JobView:
    return repository.enqueue(
        JobCreate(
            correlation_id="custom:1",
            trigger_type="custom",
            pipeline=pipeline,
            stage=stage,
            payload={"value": 1},
            schema_version=schema_version,
        ),
    )


def _custom_registry(*stages: StageSpec) -> PipelineRegistry:
    return PipelineRegistry([Pipeline(name="custom", stages=stages)])


def _returns(output: Mapping[str, Any]) -> Callable[[StageInput], Mapping[str, Any]]:
    return lambda _: dict(output)


def test_reward_job_runs_every_stage_to_completion(
    repository: JobRepository,
    pipelines: PipelineRegistry,
    providers: ProviderSet,
    enqueue_job: Callable[..., JobView],
) -> None:
    job = enqueue_job()
    executor = StageExecutor(repository=repository, pipelines=pipelines)

    result = executor.execute(_claim_one(repository), worker_id="worker-a")

    assert result.error is None
    assert result.completed is True
    assert result.stages_run == 4
    stored = repository.get_job(job.id)
    assert stored is not None
    assert stored.status is JobStatus.COMPLETED
    assert stored.stage == "done"
    assert set(stored.context) == {"tenant_id", "instrument_id", "balance_cents", "delivery_id"}
    assert stored.context["tenant_id"] == "tenant-1"
    assert stored.context["balance_cents"] == 1000
    assert len(providers.notifications.sent) == 1


def test_handler_sees_payload_and_prior_context(repository: JobRepository) -> None:
    seen: list[StageInput] = []

    def _second(stage_input: StageInput) -> Mapping[str, Any]:
        seen.append(stage_input)
        return {"b": stage_input.context["a"] + stage_input.payload["value"]}

    registry = _custom_registry(
        StageSpec(name="first", handler=_returns({"a": 10}), writes=("a",)),
        StageSpec(name="second", handler=_second, reads=("a",), writes=("b",)),
    )
    job = _enqueue_custom(repository)

    result = StageExecutor(repository=repository, pipelines=registry).execute(
        _claim_one(repository),
        worker_id="worker-a",
    )

    assert result.completed is True
    assert result.job.context == {"a": 10, "b": 11}
    assert seen[0].stage == "second"
    assert seen[0].correlation_id == "custom:1"
    assert seen[0].job_id == job.id
    with pytest.raises(TypeError):
        seen[0].context["a"] = 0  # type: ignore[index]


def test_failing_stage_leaves_stage_and_context_untouched(repository: JobRepository) -> None:
    def _boom(_: StageInput) -> Mapping[str, Any]:
        raise RuntimeError("provider exploded")

    registry = _custom_registry(
        StageSpec(name="first", handler=_returns({"a": 1}), writes=("a",)),
        StageSpec(name="second", handler=_boom, reads=("a",), writes=("b",)),
    )
    job = _enqueue_custom(repository)

    result = StageExecutor(repository=repository, pipelines=registry).execute(
        _claim_one(repository),
        worker_id="worker-a",
    )

    assert isinstance(result.error, RuntimeError)
    assert result.stages_run == 1
    assert result.job.stage == "second"
    stored = repository.get_job(job.id)
    assert stored is not None
    assert stored.stage == "second"
    assert stored.context == {"a": 1}
    assert stored.status is JobStatus.RUNNING


def test_undeclared_output_keys_violate_the_contract(repository: JobRepository) -> None:
    registry = _custom_registry(
        StageSpec(name="first", handler=_returns({"a": 1, "extra": 2}), writes=("a",)),
    )
    job = _enqueue_custom(repository)

    result = StageExecutor(repository=repository, pipelines=registry).execute(
        _claim_one(repository),
        worker_id="worker-a",
    )

    assert isinstance(result.error, StageContractError)
    stored = repository.get_job(job.id)
    assert stored is not None
    assert stored.stage == "first"
    assert stored.context == {}


def test_missing_read_key_violates_the_contract(repository: JobRepository) -> None:
    registry = _custom_registry(
        StageSpec(name="first", handler=_returns({"b": 1}), reads=("a",), writes=("b",)),
    )
    _enqueue_custom(repository)

    result = StageExecutor(repository=repository, pipelines=registry).execute(
        _claim_one(repository),
        worker_id="worker-a",
    )

    assert isinstance(result.error, StageContractError)
    assert "requires context keys" in str(result.error)


def test_job_past_last_stage_is_rejected(repository: JobRepository) -> None:
    registry = _custom_registry(StageSpec(name="first", handler=_returns({})))
    _enqueue_custom(repository, stage="done")

    result = StageExecutor(repository=repository, pipelines=registry).execute(
        _claim_one(repository),
        worker_id="worker-a",
    )

    assert isinstance(result.error, StageContractError)
    assert result.stages_run == 0


def test_unknown_stage_is_rejected(repository: JobRepository) -> None:
    registry = _custom_registry(StageSpec(name="first", handler=_returns({})))
    _enqueue_custom(repository, stage="renamed")

    result = StageExecutor(repository=repository, pipelines=registry).execute(
        _claim_one(repository),
        worker_id="worker-a",
    )

    assert isinstance(result.error, StageContractError)


def test_unknown_pipeline_is_fatal(repository: JobRepository) -> None:
    registry = _custom_registry(StageSpec(name="first", handler=_returns({})))
    _enqueue_custom(repository, pipeline="retired")

    result = StageExecutor(repository=repository, pipelines=registry).execute(
        _claim_one(repository),
        worker_id="worker-a",
    )

    assert isinstance(result.error, FatalJobError)


def test_unsupported_schema_version_is_invalid_payload(repository: JobRepository) -> None:
    registry = _custom_registry(StageSpec(name="first", handler=_returns({})))
    _enqueue_custom(repository, schema_version=99)

    result = StageExecutor(repository=repository, pipelines=registry).execute(
        _claim_one(repository),
        worker_id="worker-a",
    )

    assert isinstance(result.error, PayloadValidationError)


def test_stop_request_is_honoured_between_stages(repository: JobRepository) -> None:
    registry = _custom_registry(
        StageSpec(name="first", handler=_returns({"a": 1}), writes=("a",)),
        StageSpec(name="second", handler=_returns({"b": 2}), writes=("b",)),
    )
    job = _enqueue_custom(repository)
    checks = iter([False, True])

    result = StageExecutor(repository=repository, pipelines=registry).execute(
        _claim_one(repository),
        worker_id="worker-a",
        should_stop=lambda: next(checks),
    )

    assert result.stopped is True
    assert result.stages_run == 1
    stored = repository.get_job(job.id)
    assert stored is not None
    assert stored.stage == "second"
    assert stored.context == {"a": 1}


def test_commit_after_losing_lease_raises(repository: JobRepository) -> None:
    def _lose_lease(stage_input: StageInput) -> Mapping[str, Any]:
        repository.release_lease(job_id=stage_input.job_id, worker_id="worker-a", reason="test")
        return {"a": 1}

    registry = _custom_registry(
        StageSpec(name="first", handler=_lose_lease, writes=("a",)),
    )
    job = _enqueue_custom(repository)

    with pytest.raises(LeaseLostError):
        StageExecutor(repository=repository, pipelines=registry).execute(
            _claim_one(repository),
            worker_id="worker-a",
        )

    stored = repository.get_job(job.id)
    assert stored is not None
    assert stored.status is JobStatus.QUEUED
    assert stored.context == {}
