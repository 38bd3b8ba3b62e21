"""Provider protocols used by pipeline stage handlers.

Every side-effecting call takes an ``idempotency_key``. Providers must return
the original result when they see a key again, which is what makes re-running
a stage after a crash safe.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol


class TenantResolver(Protocol):
    def resolve(self, identifiers: Sequence[str]) -> str:
        """Return the tenant owning the first resolvable identifier."""


class RewardProvider(Protocol):
    def issue(
        self,
        *,
        amount_cents: int,
        currency: str,
        recipient: str,
        tenant_id: str,
        idempotency_key: str,
    ) -> str:
        """Create a reward instrument and return its id."""

    def activate(
        self,
        *,
        instrument_id: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
    ) -> int:
        """Load the instrument and return its balance in cents."""


class NotificationProvider(Protocol):
    def send(
        self,
        *,
        channel: str,
        recipient: str,
        template: str,
        data: Mapping[str, Any],
        idempotency_key: str,
    ) -> str:
        """Send a notification and return the delivery id."""


@dataclass(slots=True)
class ProviderSet:
    """Providers wired into one worker process."""

    tenants: TenantResolver
    rewards: RewardProvider
    notifications: NotificationProvider

    def close(self) -> None:
        """Close providers that hold connections (HTTP clients)."""

        for provider in (self.tenants, self.rewards, self.notifications):
            close = getattr(provider, "close", None)
            if close is not None:
                close()

    def __enter__(self) -> ProviderSet:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
