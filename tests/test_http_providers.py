from __future__ import annotations

import json

import allure
import httpx
import pytest

from reward_pipeline.jobs.errors import ProviderError
from reward_pipeline.providers.http import (
    IDEMPOTENCY_HEADER,
    HttpRewardProvider,
    ProviderHttpClient,
    build_http_providers,
)

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("HTTP Providers"),
]


def _client(handler, provider: str = "reward") -> ProviderHttpClient:
    return ProviderHttpClient(
        provider=provider,
        base_url="https://rewards.example.com",
        api_token="secret",
        transport=httpx.MockTransport(handler),
    )


def test_issue_posts_json_with_idempotency_key() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"instrument_id": "inst_1"})

    provider = HttpRewardProvider(_client(handler))

    instrument_id = provider.issue(
        amount_cents=1000,
        currency="USD",
        recipient="guest@example.com",
        tenant_id="tenant-1",
        idempotency_key="sale-completed:s1:issue_instrument:issue",
    )

    assert instrument_id == "inst_1"
    request = seen[0]
    assert request.method == "POST"
    assert request.url == "https://rewards.example.com/instruments"
    assert request.headers[IDEMPOTENCY_HEADER] == "sale-completed:s1:issue_instrument:issue"
    assert request.headers["Authorization"] == "Bearer secret"
    assert json.loads(request.content) == {
        "amount_cents": 1000,
        "currency": "USD",
        "recipient": "guest@example.com",
        "tenant_id": "tenant-1",
    }


def test_activate_returns_integer_balance() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/instruments/inst_1/activate"
        return httpx.Response(200, json={"balance_cents": "2500"})

    balance = HttpRewardProvider(_client(handler)).activate(
        instrument_id="inst_1",
        amount_cents=2500,
        currency="USD",
        idempotency_key="key",
    )

    assert balance == 2500


@pytest.mark.parametrize(
    ("status_code", "transient"),
    [(429, True), (408, True), (500, True), (503, True), (400, False), (404, False)],
)
def test_error_status_maps_to_provider_error(status_code: int, transient: bool) -> None:
    client = _client(lambda _: httpx.Response(status_code, text="nope"))

    with pytest.raises(ProviderError) as excinfo:
        client.post_json("/instruments", {})

    assert excinfo.value.transient is transient
    assert excinfo.value.status_code == status_code
    assert excinfo.value.provider == "reward"


def test_timeout_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(ProviderError, match="timed out") as excinfo:
        _client(handler).post_json("/instruments", {})

    assert excinfo.value.transient is True


def test_connection_error_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ProviderError, match="network error") as excinfo:
        _client(handler).post_json("/instruments", {})

    assert excinfo.value.transient is True


def test_non_object_body_is_rejected() -> None:
    client = _client(lambda _: httpx.Response(200, json=["inst_1"]))

    with pytest.raises(ProviderError, match="instead of an object") as excinfo:
        client.post_json("/instruments", {})

    assert excinfo.value.transient is False


def test_missing_response_field_is_rejected() -> None:
    provider = HttpRewardProvider(_client(lambda _: httpx.Response(200, json={})))

    with pytest.raises(ProviderError, match="instrument_id"):
        provider.issue(
            amount_cents=1,
            currency="USD",
            recipient="guest@example.com",
            tenant_id="tenant-1",
            idempotency_key="key",
        )


def test_build_http_providers_routes_each_service() -> None:
    hosts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        if request.url.path == "/tenants/resolve":
            return httpx.Response(200, json={"tenant_id": "tenant-9"})
        return httpx.Response(200, json={"delivery_id": "dlv_1"})

    providers = build_http_providers(
        tenant_base_url="https://tenants.example.com",
        reward_base_url="https://rewards.example.com",
        notify_base_url="https://notify.example.com",
        api_token=None,
        timeout_seconds=5,
        max_retries=0,
        transport=httpx.MockTransport(handler),
    )

    assert providers.tenants.resolve(["tenant-hint-1"]) == "tenant-9"
    assert providers.notifications.send(
        channel="email",
        recipient="guest@example.com",
        template="reward_issued",
        data={"balance_cents": 1000},
        idempotency_key="key",
    ) == "dlv_1"
    assert hosts == ["tenants.example.com", "notify.example.com"]


def test_missing_base_url_is_rejected() -> None:
    with pytest.raises(ValueError, match="base URL"):
        ProviderHttpClient(provider="reward", base_url="")


def test_provider_set_closes_every_http_client() -> None:
    providers = build_http_providers(
        tenant_base_url="https://tenants.example.com",
        reward_base_url="https://rewards.example.com",
        notify_base_url="https://notify.example.com",
        api_token=None,
        timeout_seconds=5,
        max_retries=0,
        transport=httpx.MockTransport(lambda _: httpx.Response(200, json={})),
    )

    with providers:
        pass

    clients = [
        providers.tenants.client,
        providers.rewards.client,
        providers.notifications.client,
    ]
    assert all(client._client.is_closed for client in clients)
