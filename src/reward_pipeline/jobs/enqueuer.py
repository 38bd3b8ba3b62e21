"""Event intake: turns at-least-once deliveries into one job per routed pipeline."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence

from reward_pipeline.jobs.models import (
    DeliveryRunView,
    EnqueueResult,
    InboundEvent,
    JobCreate,
    JobView,
    RunOutcome,
)
from reward_pipeline.jobs.pipeline import CURRENT_SCHEMA_VERSION, PipelineRegistry
from reward_pipeline.jobs.repository import JobRepository

logger = logging.getLogger(__name__)


def build_correlation_id(event_type: str, resource_id: str) -> str:
    """Stable id of the business event, shared by every delivery and retry."""

    return f"{event_type}:{resource_id}"


class EventEnqueuer:
    """Records each delivery as a run and converges duplicates on existing jobs.

    The run keyed by the delivery's ``event_id`` answers "was this delivery
    seen"; the ``(correlation_id, pipeline)`` lineage answers "does the work
    exist". A run whose jobs are missing gets them recreated.
    """

    def __init__(
        self,
        *,
        repository: JobRepository,
        pipelines: PipelineRegistry,
        routes: Mapping[str, Sequence[str]],
        max_attempts: int,
    ) -> None:
        unknown = sorted(
            {name for names in routes.values() for name in names if name not in pipelines},
        )
        if unknown:
            raise ValueError(f"Event routes reference unknown pipelines: {unknown}")
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        self.repository = repository
        self.pipelines = pipelines
        self.routes = {event_type: tuple(names) for event_type, names in routes.items()}
        self.max_attempts = max_attempts

    def enqueue_event(self, event: InboundEvent) -> EnqueueResult:
        _validate_event(event)
        correlation_id = build_correlation_id(event.event_type, event.resource_id)
        pipeline_names = self.routes.get(event.event_type, ())

        run = self.repository.get_run(event.event_id)
        if run is None:
            created = self.repository.create_run(
                event=event,
                correlation_id=correlation_id,
                outcome=RunOutcome.ACCEPTED if pipeline_names else RunOutcome.IGNORED,
            )
            if created is not None:
                return self._accept(event, created, correlation_id, pipeline_names)
            run = self.repository.get_run(event.event_id)
            if run is None:
                raise RuntimeError(f"Delivery run vanished while enqueuing {event.event_id}")

        return self._redeliver(event, run, correlation_id, pipeline_names)

    def _accept(
        self,
        event: InboundEvent,
        run: DeliveryRunView,
        correlation_id: str,
        pipeline_names: tuple[str, ...],
    ) -> EnqueueResult:
        if not pipeline_names:
            logger.info(
                "No pipeline routed for event type %s; delivery %s ignored",
                event.event_type,
                event.event_id,
            )
            return EnqueueResult(
                outcome=RunOutcome.IGNORED,
                correlation_id=correlation_id,
                run=run,
                jobs=[],
            )

        jobs = [self._ensure_job(event, correlation_id, name)[0] for name in pipeline_names]
        run = self.repository.update_run(event_id=event.event_id, job_ids=[job.id for job in jobs])
        logger.info(
            "Accepted delivery %s as %s (jobs: %s)",
            event.event_id,
            correlation_id,
            ", ".join(job.id for job in jobs),
        )
        return EnqueueResult(
            outcome=RunOutcome.ACCEPTED,
            correlation_id=correlation_id,
            run=run,
            jobs=jobs,
        )

    def _redeliver(
        self,
        event: InboundEvent,
        run: DeliveryRunView,
        correlation_id: str,
        pipeline_names: tuple[str, ...],
    ) -> EnqueueResult:
        jobs: list[JobView] = []
        recreated: list[JobView] = []
        for name in pipeline_names:
            existing = self.repository.find_job(correlation_id=correlation_id, pipeline=name)
            if existing is not None:
                jobs.append(existing)
                continue
            job, created = self._ensure_job(event, correlation_id, name)
            jobs.append(job)
            if created:
                recreated.append(job)

        job_ids = [job.id for job in jobs]
        if recreated:
            logger.warning(
                "Delivery %s was recorded but job(s) for %s were missing; recreated %s",
                event.event_id,
                correlation_id,
                ", ".join(job.id for job in recreated),
            )
            run = self.repository.update_run(
                event_id=event.event_id,
                outcome=RunOutcome.RECOVERED,
                job_ids=job_ids,
                count_delivery=True,
            )
            return EnqueueResult(
                outcome=RunOutcome.RECOVERED,
                correlation_id=correlation_id,
                run=run,
                jobs=jobs,
            )

        run = self.repository.update_run(
            event_id=event.event_id,
            job_ids=job_ids if job_ids else None,
            count_delivery=True,
        )
        logger.info(
            "Duplicate delivery %s of %s (seen %d times)",
            event.event_id,
            correlation_id,
            run.delivery_count,
        )
        return EnqueueResult(
            outcome=RunOutcome.DUPLICATE,
            correlation_id=correlation_id,
            run=run,
            jobs=jobs,
        )

    def _ensure_job(
        self,
        event: InboundEvent,
        correlation_id: str,
        pipeline_name: str,
    ) -> tuple[JobView, bool]:
        pipeline = self.pipelines.get(pipeline_name)
        return self.repository.enqueue_or_get(
            JobCreate(
                correlation_id=correlation_id,
                trigger_type=event.event_type,
                pipeline=pipeline.name,
                stage=pipeline.first_stage,
                payload=pipeline.build_payload(event),
                max_attempts=self.max_attempts,
                schema_version=CURRENT_SCHEMA_VERSION,
            ),
        )


def _validate_event(event: InboundEvent) -> None:
    for field_name in ("event_id", "event_type", "resource_id"):
        if not str(getattr(event, field_name) or "").strip():
            raise ValueError(f"Inbound event is missing {field_name}")
