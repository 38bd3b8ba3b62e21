"""httpx adapters for the tenant, reward and notification services."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

import httpx

from reward_pipeline.jobs.errors import ProviderError
from reward_pipeline.providers.base import ProviderSet

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_USER_AGENT = "reward-pipeline/0.1"
IDEMPOTENCY_HEADER = "Idempotency-Key"

_TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})


class ProviderHttpClient:
    """JSON-over-HTTP client that maps failures onto ``ProviderError``.

    Timeouts, connection errors, 408/425/429 and 5xx responses are transient.
    Any other non-success response is a rejection that retrying cannot fix.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        provider: str,
        base_url: str,
        api_token: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not base_url:
            raise ValueError(f"{provider} provider base URL is not configured")
        self.provider = provider
        headers = {"User-Agent": DEFAULT_USER_AGENT, "Accept": "application/json"}
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"
        self._client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def post_json(
        self,
        path: str,
        body: Mapping[str, Any],
        *,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        headers = {IDEMPOTENCY_HEADER: idempotency_key} if idempotency_key else None
        try:
            response = self._client.post(path, json=dict(body), headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("Timeout calling %s provider %s", self.provider, path)
            raise ProviderError(
                f"{self.provider} request timed out: {path}",
                provider=self.provider,
                transient=True,
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("HTTP error calling %s provider %s: %s", self.provider, path, exc)
            raise ProviderError(
                f"{self.provider} network error: {exc}",
                provider=self.provider,
                transient=True,
            ) from exc

        if not response.is_success:
            status = response.status_code
            transient = status in _TRANSIENT_STATUS_CODES or status >= 500  # noqa: PLR2004
            logger.warning("%s provider %s returned HTTP %d", self.provider, path, status)
            raise ProviderError(
                f"{self.provider} returned HTTP {status} for {path}: {response.text[:200]}",
                provider=self.provider,
                transient=transient,
                status_code=status,
            )
        try:
            parsed = response.json()
        except ValueError as exc:
            raise ProviderError(
                f"{self.provider} returned a non-JSON body for {path}",
                provider=self.provider,
                transient=False,
                status_code=response.status_code,
            ) from exc
        if not isinstance(parsed, dict):
            raise ProviderError(
                f"{self.provider} returned {type(parsed).__name__} instead of an object",
                provider=self.provider,
                transient=False,
                status_code=response.status_code,
            )
        return parsed

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> ProviderHttpClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _required(body: Mapping[str, Any], field: str, *, provider: str) -> Any:
    value = body.get(field)
    if value is None or value == "":
        raise ProviderError(
            f"{provider} response is missing '{field}'",
            provider=provider,
            transient=False,
        )
    return value


class HttpTenantResolver:
    def __init__(self, client: ProviderHttpClient) -> None:
        self.client = client

    def close(self) -> None:
        self.client.close()

    def resolve(self, identifiers: Sequence[str]) -> str:
        body = self.client.post_json("/tenants/resolve", {"identifiers": list(identifiers)})
        return str(_required(body, "tenant_id", provider=self.client.provider))


class HttpRewardProvider:
    def __init__(self, client: ProviderHttpClient) -> None:
        self.client = client

    def close(self) -> None:
        self.client.close()

    def issue(
        self,
        *,
        amount_cents: int,
        currency: str,
        recipient: str,
        tenant_id: str,
        idempotency_key: str,
    ) -> str:
        body = self.client.post_json(
            "/instruments",
            {
                "amount_cents": amount_cents,
                "currency": currency,
                "recipient": recipient,
                "tenant_id": tenant_id,
            },
            idempotency_key=idempotency_key,
        )
        return str(_required(body, "instrument_id", provider=self.client.provider))

    def activate(
        self,
        *,
        instrument_id: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
    ) -> int:
        body = self.client.post_json(
            f"/instruments/{instrument_id}/activate",
            {"amount_cents": amount_cents, "currency": currency},
            idempotency_key=idempotency_key,
        )
        balance = _required(body, "balance_cents", provider=self.client.provider)
        try:
            return int(balance)
        except (TypeError, ValueError) as exc:
            raise ProviderError(
                f"{self.client.provider} returned a non-integer balance: {balance!r}",
                provider=self.client.provider,
                transient=False,
            ) from exc


class HttpNotificationProvider:
    def __init__(self, client: ProviderHttpClient) -> None:
        self.client = client

    def close(self) -> None:
        self.client.close()

    def send(
        self,
        *,
        channel: str,
        recipient: str,
        template: str,
        data: Mapping[str, Any],
        idempotency_key: str,
    ) -> str:
        body = self.client.post_json(
            "/notifications",
            {
                "channel": channel,
                "recipient": recipient,
                "template": template,
                "data": dict(data),
            },
            idempotency_key=idempotency_key,
        )
        return str(_required(body, "delivery_id", provider=self.client.provider))


def build_http_providers(  # noqa: PLR0913
    *,
    tenant_base_url: str,
    reward_base_url: str,
    notify_base_url: str,
    api_token: str | None,
    timeout_seconds: float,
    max_retries: int,
    transport: httpx.BaseTransport | None = None,
) -> ProviderSet:
    def _client(provider: str, base_url: str) -> ProviderHttpClient:
        return ProviderHttpClient(
            provider=provider,
            base_url=base_url,
            api_token=api_token,
            timeout_seconds=timeout_seconds,
            max_retries=max_retries,
            transport=transport,
        )

    return ProviderSet(
        tenants=HttpTenantResolver(_client("tenant", tenant_base_url)),
        rewards=HttpRewardProvider(_client("reward", reward_base_url)),
        notifications=HttpNotificationProvider(_client("notification", notify_base_url)),
    )
