"""Pipelines, stage contracts and the versioned job document."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from reward_pipeline.jobs.errors import FatalJobError, PayloadValidationError, StageContractError
from reward_pipeline.jobs.models import InboundEvent, JobView

CURRENT_SCHEMA_VERSION = 1
SUPPORTED_SCHEMA_VERSIONS = frozenset({CURRENT_SCHEMA_VERSION})
COMPLETED_STAGE = "done"


@dataclass(frozen=True, slots=True)
class StageInput:
    """Read-only view handed to a stage handler."""

    job_id: str
    correlation_id: str
    stage: str
    payload: Mapping[str, Any]
    context: Mapping[str, Any]


StageHandler = Callable[[StageInput], Mapping[str, Any]]
PayloadBuilder = Callable[[InboundEvent], dict[str, Any]]


@dataclass(frozen=True, slots=True)
class StageSpec:
    """One step of a pipeline and the context keys it reads and writes."""

    name: str
    handler: StageHandler
    reads: tuple[str, ...] = ()
    writes: tuple[str, ...] = ()


@dataclass(slots=True)
class JobDocument:
    """Immutable payload plus the context accumulated by completed stages."""

    schema_version: int
    payload: dict[str, Any]
    context: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_job(cls, job: JobView) -> JobDocument:
        if job.schema_version not in SUPPORTED_SCHEMA_VERSIONS:
            raise PayloadValidationError(
                f"Unsupported job document schema_version={job.schema_version} "
                f"(supported: {sorted(SUPPORTED_SCHEMA_VERSIONS)}).",
            )
        return cls(
            schema_version=job.schema_version,
            payload=dict(job.payload),
            context=dict(job.context),
        )

    def check_stage_entry(self, stage: StageSpec) -> None:
        """Validate the context before ``stage`` runs."""

        missing = [key for key in stage.reads if key not in self.context]
        if missing:
            raise StageContractError(
                f"Stage '{stage.name}' requires context keys {missing} that earlier "
                "stages did not write.",
            )
        already_written = [key for key in stage.writes if key in self.context]
        if already_written:
            raise StageContractError(
                f"Stage '{stage.name}' would overwrite context keys {already_written}; "
                "its side effect is already recorded.",
            )

    def stage_input(self, *, job: JobView, stage: StageSpec) -> StageInput:
        return StageInput(
            job_id=job.id,
            correlation_id=job.correlation_id,
            stage=stage.name,
            payload=MappingProxyType(self.payload),
            context=MappingProxyType(self.context),
        )

    def apply_output(self, stage: StageSpec, output: Mapping[str, Any]) -> dict[str, Any]:
        """Return the context extended with ``output``; output must match ``writes`` exactly."""

        if set(output) != set(stage.writes):
            raise StageContractError(
                f"Stage '{stage.name}' returned keys {sorted(output)}, "
                f"declared writes are {sorted(stage.writes)}.",
            )
        return {**self.context, **output}


@dataclass(frozen=True, slots=True)
class Pipeline:
    """Named, ordered tuple of stages."""

    name: str
    stages: tuple[StageSpec, ...]
    payload_builder: PayloadBuilder | None = None

    def __post_init__(self) -> None:
        if not self.stages:
            raise ValueError(f"Pipeline '{self.name}' has no stages")
        names = [stage.name for stage in self.stages]
        if len(set(names)) != len(names):
            raise ValueError(f"Pipeline '{self.name}' has duplicate stage names: {names}")
        if COMPLETED_STAGE in names:
            raise ValueError(f"'{COMPLETED_STAGE}' is reserved and cannot name a stage")

    @property
    def first_stage(self) -> str:
        return self.stages[0].name

    @property
    def stage_names(self) -> tuple[str, ...]:
        return tuple(stage.name for stage in self.stages)

    def build_payload(self, event: InboundEvent) -> dict[str, Any]:
        """Job payload captured from ``event`` at enqueue time."""

        if self.payload_builder is not None:
            return self.payload_builder(event)
        return {
            "event_id": event.event_id,
            "event_type": event.event_type,
            "resource_id": event.resource_id,
            "tenant_hint": event.tenant_hint,
            "data": dict(event.data),
        }

    def stage(self, name: str) -> StageSpec:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise StageContractError(f"Pipeline '{self.name}' has no stage '{name}'.")

    def next_stage(self, name: str) -> str:
        names = self.stage_names
        index = names.index(self.stage(name).name)
        if index + 1 < len(names):
            return names[index + 1]
        return COMPLETED_STAGE


class PipelineRegistry:
    """Maps pipeline names stored on jobs to their stage definitions."""

    def __init__(self, pipelines: Iterable[Pipeline] = ()) -> None:
        self._pipelines: dict[str, Pipeline] = {}
        for pipeline in pipelines:
            self.register(pipeline)

    def register(self, pipeline: Pipeline) -> None:
        if pipeline.name in self._pipelines:
            raise ValueError(f"Pipeline '{pipeline.name}' is already registered")
        self._pipelines[pipeline.name] = pipeline

    def get(self, name: str) -> Pipeline:
        pipeline = self._pipelines.get(name)
        if pipeline is None:
            raise FatalJobError(f"Unknown pipeline '{name}'.")
        return pipeline

    def __contains__(self, name: object) -> bool:
        return name in self._pipelines

    def names(self) -> list[str]:
        return sorted(self._pipelines)
