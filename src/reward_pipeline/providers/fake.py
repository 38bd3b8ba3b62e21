"""Deterministic in-memory providers.

Used by default in development and by the tests. They honour idempotency keys
the way real providers do and can be scripted to fail.
"""

from __future__ import annotations

import hashlib
import threading
from collections.abc import Mapping, Sequence
from typing import Any

from reward_pipeline.jobs.errors import ProviderError
from reward_pipeline.providers.base import ProviderSet


class _FailureScript:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: dict[str, list[BaseException]] = {}
        self.calls: dict[str, int] = {}

    def fail_next(self, operation: str, error: BaseException, *, times: int = 1) -> None:
        """Raise ``error`` on the next ``times`` calls of ``operation``."""

        with self._lock:
            self._pending.setdefault(operation, []).extend([error] * times)

    def _before_call(self, operation: str) -> None:
        with self._lock:
            self.calls[operation] = self.calls.get(operation, 0) + 1
            pending = self._pending.get(operation)
            error = pending.pop(0) if pending else None
        if error is not None:
            raise error


def _short_id(prefix: str, key: str) -> str:
    return f"{prefix}_{hashlib.sha256(key.encode('utf-8')).hexdigest()[:16]}"


class FakeTenantResolver(_FailureScript):
    def __init__(
        self,
        *,
        tenants: Mapping[str, str] | None = None,
        default_tenant: str | None = "tenant-default",
    ) -> None:
        super().__init__()
        self.tenants = dict(tenants or {})
        self.default_tenant = default_tenant

    def resolve(self, identifiers: Sequence[str]) -> str:
        self._before_call("resolve")
        for identifier in identifiers:
            tenant_id = self.tenants.get(identifier)
            if tenant_id is not None:
                return tenant_id
        if self.default_tenant is None:
            raise ProviderError(
                f"No tenant found for identifiers {list(identifiers)}",
                provider="tenant",
                transient=True,
            )
        return self.default_tenant


class FakeRewardProvider(_FailureScript):
    def __init__(self) -> None:
        super().__init__()
        self.instruments: dict[str, dict[str, Any]] = {}
        self._issued_by_key: dict[str, str] = {}
        self._activated_by_key: dict[str, int] = {}

    def issue(
        self,
        *,
        amount_cents: int,
        currency: str,
        recipient: str,
        tenant_id: str,
        idempotency_key: str,
    ) -> str:
        self._before_call("issue")
        with self._lock:
            existing = self._issued_by_key.get(idempotency_key)
            if existing is not None:
                return existing
            instrument_id = _short_id("inst", idempotency_key)
            self._issued_by_key[idempotency_key] = instrument_id
            self.instruments[instrument_id] = {
                "recipient": recipient,
                "tenant_id": tenant_id,
                "currency": currency,
                "amount_cents": amount_cents,
                "balance_cents": 0,
            }
            return instrument_id

    def activate(
        self,
        *,
        instrument_id: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
    ) -> int:
        self._before_call("activate")
        with self._lock:
            existing = self._activated_by_key.get(idempotency_key)
            if existing is not None:
                return existing
            instrument = self.instruments.get(instrument_id)
            if instrument is None:
                raise ProviderError(
                    f"Unknown instrument {instrument_id}",
                    provider="reward",
                    transient=False,
                    status_code=404,
                )
            if instrument["currency"] != currency:
                raise ProviderError(
                    f"Currency mismatch for {instrument_id}: {currency}",
                    provider="reward",
                    transient=False,
                    status_code=400,
                )
            instrument["balance_cents"] += amount_cents
            self._activated_by_key[idempotency_key] = instrument["balance_cents"]
            return instrument["balance_cents"]


class FakeNotificationProvider(_FailureScript):
    def __init__(self) -> None:
        super().__init__()
        self.sent: list[dict[str, Any]] = []
        self._delivered_by_key: dict[str, str] = {}

    def send(
        self,
        *,
        channel: str,
        recipient: str,
        template: str,
        data: Mapping[str, Any],
        idempotency_key: str,
    ) -> str:
        self._before_call("send")
        with self._lock:
            existing = self._delivered_by_key.get(idempotency_key)
            if existing is not None:
                return existing
            delivery_id = _short_id("dlv", idempotency_key)
            self._delivered_by_key[idempotency_key] = delivery_id
            self.sent.append(
                {
                    "delivery_id": delivery_id,
                    "channel": channel,
                    "recipient": recipient,
                    "template": template,
                    "data": dict(data),
                },
            )
            return delivery_id


def build_fake_providers() -> ProviderSet:
    return ProviderSet(
        tenants=FakeTenantResolver(),
        rewards=FakeRewardProvider(),
        notifications=FakeNotificationProvider(),
    )
