"""Runtime configuration for the job queue, worker and providers."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_EVENT_ROUTES = "reservation.created=reward,sale.completed=reward"
PROVIDER_MODES = ("fake", "http")


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass(slots=True)
class QueueSettings:
    """Job store and lease settings."""

    max_attempts: int = 5
    claim_batch_size: int = 10
    lease_timeout_seconds: int = 300
    stuck_after_seconds: int = 300


@dataclass(slots=True)
class RetrySettings:
    """Exponential backoff settings."""

    base_seconds: int = 5
    max_seconds: int = 300
    error_max_chars: int = 500


@dataclass(slots=True)
class WorkerSettings:
    """Worker process settings."""

    worker_id: str = field(default_factory=default_worker_id)
    poll_interval_seconds: float = 2.0
    concurrency: int = 1
    reap_on_poll: bool = True


@dataclass(slots=True)
class RewardSettings:
    """Reward issued per accepted event."""

    amount_cents: int = 1000
    currency: str = "USD"
    notification_channel: str = "email"
    notification_template: str = "reward_issued"


@dataclass(slots=True)
class ProviderSettings:
    """External provider wiring."""

    mode: str = "fake"
    reward_base_url: str = ""
    notify_base_url: str = ""
    tenant_base_url: str = ""
    api_token: str | None = None
    timeout_seconds: float = 30.0
    max_retries: int = 3


@dataclass(slots=True)
class RoutingSettings:
    """Event type to pipeline routing."""

    event_routes: dict[str, tuple[str, ...]] = field(
        default_factory=lambda: parse_event_routes(DEFAULT_EVENT_ROUTES),
    )


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".reward_pipeline.db")
    sqlite_busy_timeout_ms: int = 5_000
    queue: QueueSettings = field(default_factory=QueueSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    reward: RewardSettings = field(default_factory=RewardSettings)
    providers: ProviderSettings = field(default_factory=ProviderSettings)
    routing: RoutingSettings = field(default_factory=RoutingSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("REWARD_PIPELINE_DB_PATH", ".reward_pipeline.db")),
            sqlite_busy_timeout_ms=int(
                os.getenv("REWARD_PIPELINE_SQLITE_BUSY_TIMEOUT_MS", "5000"),
            ),
            queue=QueueSettings(
                max_attempts=int(os.getenv("REWARD_PIPELINE_MAX_ATTEMPTS", "5")),
                claim_batch_size=int(os.getenv("REWARD_PIPELINE_CLAIM_BATCH_SIZE", "10")),
                lease_timeout_seconds=int(
                    os.getenv("REWARD_PIPELINE_LEASE_TIMEOUT_SECONDS", "300"),
                ),
                stuck_after_seconds=int(os.getenv("REWARD_PIPELINE_STUCK_AFTER_SECONDS", "300")),
            ),
            retry=RetrySettings(
                base_seconds=int(os.getenv("REWARD_PIPELINE_RETRY_BASE_SECONDS", "5")),
                max_seconds=int(os.getenv("REWARD_PIPELINE_RETRY_MAX_SECONDS", "300")),
                error_max_chars=int(os.getenv("REWARD_PIPELINE_ERROR_MAX_CHARS", "500")),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("REWARD_PIPELINE_WORKER_ID", "").strip()
                or default_worker_id(),
                poll_interval_seconds=float(
                    os.getenv("REWARD_PIPELINE_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                concurrency=int(os.getenv("REWARD_PIPELINE_WORKER_CONCURRENCY", "1")),
                reap_on_poll=_env_bool("REWARD_PIPELINE_REAP_ON_POLL", default=True),
            ),
            reward=RewardSettings(
                amount_cents=int(os.getenv("REWARD_PIPELINE_REWARD_AMOUNT_CENTS", "1000")),
                currency=os.getenv("REWARD_PIPELINE_REWARD_CURRENCY", "USD").strip().upper(),
                notification_channel=os.getenv(
                    "REWARD_PIPELINE_NOTIFICATION_CHANNEL",
                    "email",
                ).strip(),
                notification_template=os.getenv(
                    "REWARD_PIPELINE_NOTIFICATION_TEMPLATE",
                    "reward_issued",
                ).strip(),
            ),
            providers=ProviderSettings(
                mode=os.getenv("REWARD_PIPELINE_PROVIDER_MODE", "fake").strip().lower(),
                reward_base_url=os.getenv("REWARD_PIPELINE_REWARD_BASE_URL", "").strip(),
                notify_base_url=os.getenv("REWARD_PIPELINE_NOTIFY_BASE_URL", "").strip(),
                tenant_base_url=os.getenv("REWARD_PIPELINE_TENANT_BASE_URL", "").strip(),
                api_token=os.getenv("REWARD_PIPELINE_PROVIDER_API_TOKEN") or None,
                timeout_seconds=float(
                    os.getenv("REWARD_PIPELINE_PROVIDER_TIMEOUT_SECONDS", "30.0"),
                ),
                max_retries=int(os.getenv("REWARD_PIPELINE_PROVIDER_MAX_RETRIES", "3")),
            ),
            routing=RoutingSettings(
                event_routes=parse_event_routes(
                    os.getenv("REWARD_PIPELINE_EVENT_ROUTES", DEFAULT_EVENT_ROUTES),
                ),
            ),
        )

    def validate(self) -> None:  # noqa: C901
        """Raise configuration error naming the offending variable."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("REWARD_PIPELINE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.queue.max_attempts <= 0:
            raise ValueError("REWARD_PIPELINE_MAX_ATTEMPTS must be > 0.")
        if self.queue.claim_batch_size <= 0:
            raise ValueError("REWARD_PIPELINE_CLAIM_BATCH_SIZE must be > 0.")
        if self.queue.lease_timeout_seconds <= 0:
            raise ValueError("REWARD_PIPELINE_LEASE_TIMEOUT_SECONDS must be > 0.")
        if self.queue.stuck_after_seconds <= 0:
            raise ValueError("REWARD_PIPELINE_STUCK_AFTER_SECONDS must be > 0.")
        if self.retry.base_seconds <= 0:
            raise ValueError("REWARD_PIPELINE_RETRY_BASE_SECONDS must be > 0.")
        if self.retry.max_seconds < self.retry.base_seconds:
            raise ValueError(
                "REWARD_PIPELINE_RETRY_MAX_SECONDS must be >= REWARD_PIPELINE_RETRY_BASE_SECONDS.",
            )
        if self.retry.error_max_chars <= 0:
            raise ValueError("REWARD_PIPELINE_ERROR_MAX_CHARS must be > 0.")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("REWARD_PIPELINE_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.worker.concurrency <= 0:
            raise ValueError("REWARD_PIPELINE_WORKER_CONCURRENCY must be > 0.")
        if self.reward.amount_cents <= 0:
            raise ValueError("REWARD_PIPELINE_REWARD_AMOUNT_CENTS must be > 0.")
        if self.providers.mode not in PROVIDER_MODES:
            raise ValueError(
                f"REWARD_PIPELINE_PROVIDER_MODE must be one of {PROVIDER_MODES}, "
                f"got {self.providers.mode!r}.",
            )
        if self.providers.mode == "http":
            for env_name, value in (
                ("REWARD_PIPELINE_TENANT_BASE_URL", self.providers.tenant_base_url),
                ("REWARD_PIPELINE_REWARD_BASE_URL", self.providers.reward_base_url),
                ("REWARD_PIPELINE_NOTIFY_BASE_URL", self.providers.notify_base_url),
            ):
                _validate_base_url(env_name, value)


def parse_event_routes(raw: str) -> dict[str, tuple[str, ...]]:
    """Parse ``"<event_type>=<pipeline>[+<pipeline>],..."`` into a routing table."""

    routes: dict[str, tuple[str, ...]] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "=" not in token:
            raise ValueError(
                "Invalid REWARD_PIPELINE_EVENT_ROUTES entry: "
                f"{token!r}. Expected format '<event_type>=<pipeline>[+<pipeline>]'.",
            )
        event_type, pipelines_raw = token.split("=", 1)
        event_type = event_type.strip()
        pipelines = tuple(name.strip() for name in pipelines_raw.split("+") if name.strip())
        if not event_type or not pipelines:
            raise ValueError(f"Invalid REWARD_PIPELINE_EVENT_ROUTES entry: {token!r}")
        routes[event_type] = pipelines
    return routes


def _validate_base_url(env_name: str, value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"{env_name} must be an absolute http(s) URL when "
            f"REWARD_PIPELINE_PROVIDER_MODE=http, got {value!r}.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
