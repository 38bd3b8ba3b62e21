"""Stage handlers of the ``reward`` pipeline.

Each handler performs one external side effect and returns the context keys it
declared. Idempotency keys are derived from the correlation id and the stage,
so re-running a stage whose commit was lost returns the provider's original
result instead of a second instrument or notification.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass
from functools import partial
from typing import Any

from reward_pipeline.jobs.errors import PayloadValidationError
from reward_pipeline.jobs.idempotency import build_stage_key
from reward_pipeline.jobs.models import InboundEvent
from reward_pipeline.jobs.pipeline import Pipeline, PipelineRegistry, StageInput, StageSpec
from reward_pipeline.providers.base import ProviderSet

REWARD_PIPELINE = "reward"

STAGE_RESOLVE_TENANT = "resolve_tenant"
STAGE_ISSUE_INSTRUMENT = "issue_instrument"
STAGE_ACTIVATE_INSTRUMENT = "activate_instrument"
STAGE_NOTIFY = "notify"


@dataclass(frozen=True, slots=True)
class RewardDefaults:
    amount_cents: int = 1000
    currency: str = "USD"
    notification_channel: str = "email"
    notification_template: str = "reward_issued"


@dataclass(frozen=True, slots=True)
class RewardPayload:
    """Input captured at enqueue time; never changes afterwards."""

    event_id: str
    event_type: str
    resource_id: str
    tenant_hint: str | None
    recipient: str | None
    amount_cents: int
    currency: str
    notification_channel: str
    notification_template: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> RewardPayload:
        try:
            amount_cents = payload["amount_cents"]
            values = {
                "event_id": str(payload["event_id"]),
                "event_type": str(payload["event_type"]),
                "resource_id": str(payload["resource_id"]),
                "tenant_hint": payload.get("tenant_hint"),
                "recipient": payload.get("recipient"),
                "currency": str(payload["currency"]),
                "notification_channel": str(payload["notification_channel"]),
                "notification_template": str(payload["notification_template"]),
            }
        except KeyError as exc:
            raise PayloadValidationError(f"Reward payload is missing {exc.args[0]!r}") from exc
        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
            raise PayloadValidationError(
                f"Reward payload amount_cents must be a positive integer, got {amount_cents!r}",
            )
        return cls(amount_cents=amount_cents, **values)

    def require_recipient(self) -> str:
        if not self.recipient:
            raise PayloadValidationError(
                f"Reward payload for event {self.event_id} has no recipient",
            )
        return self.recipient


def build_reward_payload(event: InboundEvent, defaults: RewardDefaults) -> dict[str, Any]:
    """Capture the reward input for ``event``, falling back to configured defaults."""

    data = event.data
    recipient = data.get("recipient")
    return RewardPayload(
        event_id=event.event_id,
        event_type=event.event_type,
        resource_id=event.resource_id,
        tenant_hint=event.tenant_hint,
        recipient=str(recipient) if recipient else None,
        amount_cents=data.get("amount_cents", defaults.amount_cents),
        currency=str(data.get("currency") or defaults.currency),
        notification_channel=defaults.notification_channel,
        notification_template=defaults.notification_template,
    ).to_dict()


class RewardStages:
    """Stage handlers bound to a set of providers."""

    def __init__(self, providers: ProviderSet) -> None:
        self.providers = providers

    def resolve_tenant(self, stage_input: StageInput) -> dict[str, Any]:
        payload = RewardPayload.from_mapping(stage_input.payload)
        identifiers = [
            value
            for value in (payload.tenant_hint, payload.recipient, payload.resource_id)
            if value
        ]
        return {"tenant_id": self.providers.tenants.resolve(identifiers)}

    def issue_instrument(self, stage_input: StageInput) -> dict[str, Any]:
        payload = RewardPayload.from_mapping(stage_input.payload)
        instrument_id = self.providers.rewards.issue(
            amount_cents=payload.amount_cents,
            currency=payload.currency,
            recipient=payload.require_recipient(),
            tenant_id=str(stage_input.context["tenant_id"]),
            idempotency_key=build_stage_key(stage_input.correlation_id, stage_input.stage, "issue"),
        )
        return {"instrument_id": instrument_id}

    def activate_instrument(self, stage_input: StageInput) -> dict[str, Any]:
        payload = RewardPayload.from_mapping(stage_input.payload)
        balance_cents = self.providers.rewards.activate(
            instrument_id=str(stage_input.context["instrument_id"]),
            amount_cents=payload.amount_cents,
            currency=payload.currency,
            idempotency_key=build_stage_key(
                stage_input.correlation_id,
                stage_input.stage,
                "activate",
            ),
        )
        return {"balance_cents": balance_cents}

    def notify(self, stage_input: StageInput) -> dict[str, Any]:
        payload = RewardPayload.from_mapping(stage_input.payload)
        delivery_id = self.providers.notifications.send(
            channel=payload.notification_channel,
            recipient=payload.require_recipient(),
            template=payload.notification_template,
            data={
                "instrument_id": stage_input.context["instrument_id"],
                "balance_cents": stage_input.context["balance_cents"],
                "amount_cents": payload.amount_cents,
                "currency": payload.currency,
            },
            idempotency_key=build_stage_key(stage_input.correlation_id, stage_input.stage, "send"),
        )
        return {"delivery_id": delivery_id}


def build_reward_pipeline(
    providers: ProviderSet,
    defaults: RewardDefaults | None = None,
) -> Pipeline:
    stages = RewardStages(providers)
    reward_defaults = defaults or RewardDefaults()
    return Pipeline(
        name=REWARD_PIPELINE,
        payload_builder=partial(build_reward_payload, defaults=reward_defaults),
        stages=(
            StageSpec(
                name=STAGE_RESOLVE_TENANT,
                handler=stages.resolve_tenant,
                writes=("tenant_id",),
            ),
            StageSpec(
                name=STAGE_ISSUE_INSTRUMENT,
                handler=stages.issue_instrument,
                reads=("tenant_id",),
                writes=("instrument_id",),
            ),
            StageSpec(
                name=STAGE_ACTIVATE_INSTRUMENT,
                handler=stages.activate_instrument,
                reads=("instrument_id",),
                writes=("balance_cents",),
            ),
            StageSpec(
                name=STAGE_NOTIFY,
                handler=stages.notify,
                reads=("instrument_id", "balance_cents"),
                writes=("delivery_id",),
            ),
        ),
    )


def build_pipeline_registry(
    providers: ProviderSet,
    defaults: RewardDefaults | None = None,
) -> PipelineRegistry:
    return PipelineRegistry([build_reward_pipeline(providers, defaults)])
