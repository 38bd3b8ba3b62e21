"""CLI entrypoint for reward-pipeline."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from reward_pipeline import __version__
from reward_pipeline.jobs.controllers import (
    JobsCliController,
    JobsDeadLettersCommand,
    JobsIngestCommand,
    JobsInspectCommand,
    JobsListCommand,
    JobsReapCommand,
    JobsReplayCommand,
    JobsResetCommand,
    JobsStatusCommand,
    JobsWorkerCommand,
)

click.rich_click.USE_MARKDOWN = True
JOBS_CONTROLLER = JobsCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="reward-pipeline")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for worker and queue diagnostics.",
)
def reward_pipeline(log_level: str) -> None:
    """Durable reward job queue CLI."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@reward_pipeline.group()
def jobs() -> None:
    """Job queue commands."""


@jobs.command("ingest")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--event-id", required=True, help="Delivery id assigned by the event source.")
@click.option("--event-type", required=True, help="Event type, for example `sale.completed`.")
@click.option("--resource-id", required=True, help="Id of the business resource.")
@click.option("--tenant-hint", default=None, help="Optional tenant identifier.")
@click.option(
    "--data",
    "data_json",
    default=None,
    help='Event data as a JSON object, for example `{"recipient": "a@b.c"}`.',
)
def jobs_ingest(  # noqa: PLR0913
    db_path: Path | None,
    event_id: str,
    event_type: str,
    resource_id: str,
    tenant_hint: str | None,
    data_json: str | None,
) -> None:
    """Enqueue jobs for one inbound event delivery."""

    _emit_lines(
        _run_or_fail(
            lambda: JOBS_CONTROLLER.ingest(
                JobsIngestCommand(
                    db_path=db_path,
                    event_id=event_id,
                    event_type=event_type,
                    resource_id=resource_id,
                    tenant_hint=tenant_hint,
                    data_json=data_json,
                ),
            ),
        ),
    )


@jobs.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for claimed jobs in loop mode.",
)
@click.option(
    "--batch-size",
    type=click.IntRange(min=1),
    default=None,
    help="Jobs claimed per poll (defaults to REWARD_PIPELINE_CLAIM_BATCH_SIZE).",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before the loop exits.",
)
def jobs_worker(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    batch_size: int | None,
    max_idle_polls: int,
) -> None:
    """Run the job worker."""

    _emit_lines(
        _run_or_fail(
            lambda: JOBS_CONTROLLER.run_worker(
                JobsWorkerCommand(
                    db_path=db_path,
                    once=once,
                    max_jobs=max_jobs,
                    batch_size=batch_size,
                    max_idle_polls=max_idle_polls,
                ),
            ),
        ),
    )


@jobs.command("reap")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--lease-timeout-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Override REWARD_PIPELINE_LEASE_TIMEOUT_SECONDS for this scan.",
)
def jobs_reap(db_path: Path | None, lease_timeout_seconds: int | None) -> None:
    """Return expired leases to the queue."""

    _emit_lines(
        _run_or_fail(
            lambda: JOBS_CONTROLLER.reap(
                JobsReapCommand(db_path=db_path, lease_timeout_seconds=lease_timeout_seconds),
            ),
        ),
    )


@jobs.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--stuck-limit",
    type=click.IntRange(min=1, max=500),
    default=10,
    show_default=True,
    help="Max stuck jobs listed.",
)
@click.option(
    "--queued-limit",
    type=click.IntRange(min=1, max=500),
    default=10,
    show_default=True,
    help="Max queued jobs listed.",
)
@click.option(
    "--recent-limit",
    type=click.IntRange(min=1, max=500),
    default=5,
    show_default=True,
    help="Max completed and error jobs listed.",
)
def jobs_status(
    db_path: Path | None,
    stuck_limit: int,
    queued_limit: int,
    recent_limit: int,
) -> None:
    """Print queue health as JSON."""

    _emit_lines(
        _run_or_fail(
            lambda: JOBS_CONTROLLER.status(
                JobsStatusCommand(
                    db_path=db_path,
                    stuck_limit=stuck_limit,
                    queued_limit=queued_limit,
                    recent_limit=recent_limit,
                ),
            ),
        ),
    )


@jobs.command("reset")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--errors", "errors_only", is_flag=True, help="Reset only error jobs.")
@click.option("--stuck", "stuck_only", is_flag=True, help="Reset only stuck running jobs.")
def jobs_reset(db_path: Path | None, errors_only: bool, stuck_only: bool) -> None:
    """Re-queue error and/or stuck jobs (both when no flag is given)."""

    _emit_lines(
        _run_or_fail(
            lambda: JOBS_CONTROLLER.reset(
                JobsResetCommand(db_path=db_path, errors_only=errors_only, stuck_only=stuck_only),
            ),
        ),
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(["queued", "running", "completed", "error"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List jobs."""

    _emit_lines(
        _run_or_fail(
            lambda: JOBS_CONTROLLER.list_jobs(
                JobsListCommand(db_path=db_path, status=status, limit=limit),
            ),
        ),
    )


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Inspect one job with event history."""

    _emit_lines(
        _run_or_fail(
            lambda: JOBS_CONTROLLER.inspect_job(JobsInspectCommand(db_path=db_path, job_id=job_id)),
        ),
    )


@jobs.command("dead-letters")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max entries to print.",
)
def jobs_dead_letters(db_path: Path | None, limit: int) -> None:
    """List dead-letter entries, newest first."""

    _emit_lines(
        _run_or_fail(
            lambda: JOBS_CONTROLLER.dead_letters(
                JobsDeadLettersCommand(db_path=db_path, limit=limit),
            ),
        ),
    )


@jobs.command("replay")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Id of an error job.")
def jobs_replay(db_path: Path | None, job_id: str) -> None:
    """Re-queue one error job with its attempts reset."""

    _emit_lines(
        _run_or_fail(
            lambda: JOBS_CONTROLLER.replay(JobsReplayCommand(db_path=db_path, job_id=job_id)),
        ),
    )


def _run_or_fail(action: Callable[[], list[str]]) -> list[str]:
    try:
        return action()
    except (RuntimeError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    reward_pipeline()
