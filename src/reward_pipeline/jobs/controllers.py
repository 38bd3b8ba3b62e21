"""Controllers for job queue CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from reward_pipeline.config import Settings
from reward_pipeline.jobs.dead_letter import DeadLetterSink
from reward_pipeline.jobs.enqueuer import EventEnqueuer
from reward_pipeline.jobs.executor import StageExecutor
from reward_pipeline.jobs.handlers import RewardDefaults, build_pipeline_registry
from reward_pipeline.jobs.models import InboundEvent
from reward_pipeline.jobs.pipeline import PipelineRegistry
from reward_pipeline.jobs.reaper import StuckJobReaper
from reward_pipeline.jobs.repository import JobRepository
from reward_pipeline.jobs.retry import BackoffPolicy, RetryController
from reward_pipeline.jobs.states import JobStatus
from reward_pipeline.jobs.status import StatusProjection
from reward_pipeline.jobs.worker import JobWorker
from reward_pipeline.providers.base import ProviderSet
from reward_pipeline.providers.fake import build_fake_providers
from reward_pipeline.providers.http import build_http_providers


@dataclass(slots=True)
class JobsIngestCommand:
    """CLI input for one inbound event delivery."""

    db_path: Path | None
    event_id: str
    event_type: str
    resource_id: str
    tenant_hint: str | None
    data_json: str | None


@dataclass(slots=True)
class JobsWorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    batch_size: int | None
    max_idle_polls: int = 1


@dataclass(slots=True)
class JobsReapCommand:
    """CLI input for one reaper scan."""

    db_path: Path | None
    lease_timeout_seconds: int | None


@dataclass(slots=True)
class JobsStatusCommand:
    """CLI input for the status projection."""

    db_path: Path | None
    stuck_limit: int
    queued_limit: int
    recent_limit: int


@dataclass(slots=True)
class JobsResetCommand:
    """CLI input for administrative reset."""

    db_path: Path | None
    errors_only: bool
    stuck_only: bool


@dataclass(slots=True)
class JobsListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobsInspectCommand:
    """CLI input for job inspection."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobsDeadLettersCommand:
    """CLI input for dead-letter listing."""

    db_path: Path | None
    limit: int


@dataclass(slots=True)
class JobsReplayCommand:
    """CLI input for dead-letter replay."""

    db_path: Path | None
    job_id: str


class JobsCliController:
    """Coordinates intake, worker, reaper and inspection CLI operations."""

    def __init__(self, *, providers: ProviderSet | None = None) -> None:
        self._providers = providers

    def ingest(self, command: JobsIngestCommand) -> list[str]:
        settings = _settings(command.db_path)
        event = InboundEvent(
            event_id=command.event_id,
            event_type=command.event_type,
            resource_id=command.resource_id,
            tenant_hint=command.tenant_hint,
            data=_parse_data(command.data_json),
        )
        # Enqueueing only builds payloads, so no provider connections are opened.
        pipelines = _pipeline_registry(settings, self._providers or build_fake_providers())
        with _repository(settings) as repository:
            enqueuer = EventEnqueuer(
                repository=repository,
                pipelines=pipelines,
                routes=settings.routing.event_routes,
                max_attempts=settings.queue.max_attempts,
            )
            result = enqueuer.enqueue_event(event)

        lines = [
            f"Delivery {event.event_id}: outcome={result.outcome.value} "
            f"correlation_id={result.correlation_id} deliveries={result.run.delivery_count}",
        ]
        for job in result.jobs:
            lines.append(
                f"  job {job.id} pipeline={job.pipeline} stage={job.stage} "
                f"status={job.status.value}",
            )
        return lines

    def run_worker(self, command: JobsWorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository, self._open_providers(settings) as providers:
            worker = build_worker(
                repository=repository,
                settings=settings,
                pipelines=_pipeline_registry(settings, providers),
                batch_size=command.batch_size,
            )
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Worker summary: "
            f"claimed={summary.claimed} completed={summary.completed} "
            f"retried={summary.retried} failed={summary.failed} "
            f"lease_lost={summary.lease_lost} released={summary.released} "
            f"abandoned={summary.abandoned} idle_polls={summary.idle_polls}",
        ]

    def reap(self, command: JobsReapCommand) -> list[str]:
        settings = _settings(command.db_path)
        timeout_seconds = command.lease_timeout_seconds or settings.queue.lease_timeout_seconds
        with _repository(settings) as repository:
            reaper = StuckJobReaper(
                repository=repository,
                lease_timeout=timedelta(seconds=timeout_seconds),
            )
            reclaimed = reaper.run_once()

        lines = [f"Reclaimed leases: {len(reclaimed)} (lease_timeout={timeout_seconds}s)"]
        for job in reclaimed:
            lines.append(
                f"  {job.id} stage={job.stage} attempts={job.attempts}/{job.max_attempts}",
            )
        return lines

    def status(self, command: JobsStatusCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            projection = StatusProjection(
                repository=repository,
                stuck_after=timedelta(seconds=settings.queue.stuck_after_seconds),
            )
            snapshot = projection.snapshot(
                stuck_limit=command.stuck_limit,
                queued_limit=command.queued_limit,
                completed_limit=command.recent_limit,
                error_limit=command.recent_limit,
            )
        return json.dumps(snapshot, indent=2, ensure_ascii=False).splitlines()

    def reset(self, command: JobsResetCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            result = repository.reset_jobs(
                error_only=command.errors_only,
                stuck_only=command.stuck_only,
                stuck_after=timedelta(seconds=settings.queue.stuck_after_seconds),
            )
        return [
            f"Reset jobs: total={result.total} "
            f"error={result.error_reset} stuck={result.stuck_reset}",
        ]

    def list_jobs(self, command: JobsListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            jobs = repository.list_jobs(status=status_filter, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.id} {job.correlation_id} pipeline={job.pipeline} stage={job.stage} "
                f"status={job.status.value} attempts={job.attempts}/{job.max_attempts} "
                f"scheduled_at={job.scheduled_at.isoformat()}",
            )
        return lines

    def inspect_job(self, command: JobsInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(job_id=command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.id}",
            f"Correlation: {job.correlation_id}",
            f"Pipeline: {job.pipeline}",
            f"Trigger: {job.trigger_type}",
            f"Stage: {job.stage}",
            f"Status: {job.status.value}",
            f"Attempts: {job.attempts}/{job.max_attempts}",
            f"Scheduled at: {job.scheduled_at.isoformat()}",
            f"Lease: {job.lock_owner or '-'} "
            f"{job.locked_at.isoformat() if job.locked_at else '-'}",
            f"Error: {job.last_error or '-'}",
            f"Context: {json.dumps(job.context, sort_keys=True)}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def dead_letters(self, command: JobsDeadLettersCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            entries = repository.list_dead_letters(limit=command.limit)

        lines = [f"Dead letters: {len(entries)}"]
        for entry in entries:
            lines.append(
                f"  #{entry.id} job={entry.job_id} {entry.correlation_id} stage={entry.stage} "
                f"retries={entry.retry_count} "
                f"class={entry.failure_class.value if entry.failure_class else '-'} "
                f"failed_at={entry.failed_at.isoformat()} error={entry.error_message}",
            )
        return lines

    def replay(self, command: JobsReplayCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            job = repository.reset_job(job_id=command.job_id)
        return [f"Job re-queued: {job.id} stage={job.stage} attempts={job.attempts}"]

    @contextmanager
    def _open_providers(self, settings: Settings) -> Iterator[ProviderSet]:
        if self._providers is not None:
            # Injected providers belong to the caller.
            yield self._providers
            return
        with build_providers(settings) as providers:
            yield providers


def _pipeline_registry(settings: Settings, providers: ProviderSet) -> PipelineRegistry:
    return build_pipeline_registry(
        providers,
        RewardDefaults(
            amount_cents=settings.reward.amount_cents,
            currency=settings.reward.currency,
            notification_channel=settings.reward.notification_channel,
            notification_template=settings.reward.notification_template,
        ),
    )


def build_providers(settings: Settings) -> ProviderSet:
    if settings.providers.mode == "http":
        return build_http_providers(
            tenant_base_url=settings.providers.tenant_base_url,
            reward_base_url=settings.providers.reward_base_url,
            notify_base_url=settings.providers.notify_base_url,
            api_token=settings.providers.api_token,
            timeout_seconds=settings.providers.timeout_seconds,
            max_retries=settings.providers.max_retries,
        )
    return build_fake_providers()


def build_worker(
    *,
    repository: JobRepository,
    settings: Settings,
    pipelines: PipelineRegistry,
    batch_size: int | None = None,
) -> JobWorker:
    """Wire a worker from settings."""

    reaper = (
        StuckJobReaper(
            repository=repository,
            lease_timeout=timedelta(seconds=settings.queue.lease_timeout_seconds),
        )
        if settings.worker.reap_on_poll
        else None
    )
    return JobWorker(
        repository=repository,
        executor=StageExecutor(repository=repository, pipelines=pipelines),
        retry_controller=RetryController(
            repository=repository,
            dead_letters=DeadLetterSink(repository),
            policy=BackoffPolicy(
                base_seconds=settings.retry.base_seconds,
                max_seconds=settings.retry.max_seconds,
            ),
            error_max_chars=settings.retry.error_max_chars,
        ),
        worker_id=settings.worker.worker_id,
        reaper=reaper,
        batch_size=batch_size or settings.queue.claim_batch_size,
        concurrency=settings.worker.concurrency,
        poll_interval_seconds=settings.worker.poll_interval_seconds,
    )


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().lower())


def _parse_data(raw: str | None) -> dict[str, object]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"Event data must be a JSON object: {error}") from error
    if not isinstance(parsed, dict):
        raise ValueError(f"Event data must be a JSON object, got {type(parsed).__name__}")
    return parsed


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
