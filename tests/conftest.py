"""
Pytest configuration and shared fixtures.

The Spresso API is emulated in-process by MockSpressoApi, served to the
clients through httpx.MockTransport. Like the hosted mock server it honours
two debug query parameters on every endpoint:
- status=<code>  respond immediately with that status
- delay=<secs>   sleep before responding
"""

import asyncio
import json
from collections import Counter
from datetime import timedelta

import httpx
import pytest

from spresso.auth.token_provider import TokenProvider, TokenProviderOptions
from spresso.pricing.client import PriceClientOptions, PriceOptimizationClient
from spresso.services.cache import MemoryResponseCache
from spresso.services.circuit_breaker import CircuitBreakerRegistry
from spresso.services.resilience import ResiliencyConfig

BASE_URL = "https://mock.spresso.test"
CLIENT_ID = "test-client"
CLIENT_SECRET = "test-secret"


def optimized_price(default_price: float) -> float:
    """Deterministic stand-in for the mock server's +/-10% price."""
    return round(default_price * 1.05, 2)


class MockSpressoApi:
    """In-process Spresso API with per-endpoint request counts."""

    def __init__(self):
        self.counts: Counter[str] = Counter()
        self.requests: list[httpx.Request] = []
        self.expires_in = 86400
        self.batch_response_limit: int | None = None
        self.org_config_status = 200
        self.org_config_delay = 0.0
        self.malformed_token = False
        self.user_agent_blacklist = [
            {"name": "Googlebot", "regexp": "Googlebot", "status": "Active"},
            {"name": "Bingbot", "regexp": "bingbot", "status": 0},
            {"name": "Retired", "regexp": "Mozilla", "status": "Disabled"},
        ]
        self.catalog_updates: list[dict] = []
        self._tokens_issued = 0

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def count(self, method: str, path: str) -> int:
        return self.counts[f"{method} {path}"]

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        self.counts[f"{request.method} {path}"] += 1

        params = request.url.params
        if "status" in params:
            return httpx.Response(int(params["status"]))
        if "delay" in params:
            await asyncio.sleep(float(params["delay"]))

        if path == "/identity/v1/public/token":
            return self._token(request)

        if not request.headers.get("Authorization", "").startswith("Bearer token-"):
            return httpx.Response(401)

        if path == "/pim/v1/prices" and request.method == "GET":
            return self._single_price(params)
        if path == "/pim/v1/prices" and request.method == "POST":
            return self._batch_prices(request)
        if path == "/pim/v1/priceOptimizationOrgConfig":
            if self.org_config_delay:
                await asyncio.sleep(self.org_config_delay)
            if self.org_config_status != 200:
                return httpx.Response(self.org_config_status)
            return httpx.Response(
                200, json={"data": {"userAgentBlacklist": self.user_agent_blacklist}}
            )
        if path == "/pim/v1/variants" and request.method == "PUT":
            self.catalog_updates.extend(_json(request)["requests"])
            return httpx.Response(200)
        if path == "/pim/v1/prices/verify":
            return httpx.Response(
                200,
                json=[
                    {
                        "itemId": r["itemId"],
                        "deviceId": r.get("deviceId"),
                        "price": r["price"],
                        "priceStatus": "SpressoPrice",
                        "currentValidPrice": r["price"],
                    }
                    for r in _json(request)["requests"]
                ],
            )
        return httpx.Response(404)

    def _token(self, request: httpx.Request) -> httpx.Response:
        body = _json(request)
        if body.get("client_secret") != CLIENT_SECRET:
            return httpx.Response(401)
        if "forbidden" in body.get("scope", ""):
            return httpx.Response(403)
        if self.malformed_token:
            return httpx.Response(200, json={"unexpected": True})
        self._tokens_issued += 1
        return httpx.Response(
            200,
            json={
                "access_token": f"token-{self._tokens_issued}",
                "token_type": "Bearer",
                "expires_in": self.expires_in,
                "scope": body.get("scope") or "view edit",
            },
        )

    def _single_price(self, params: httpx.QueryParams) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "data": _price(
                    params["itemId"],
                    params["deviceId"],
                    float(params["defaultPrice"]),
                    params.get("overrideToDefaultPrice") == "true",
                    params.get("userId"),
                )
            },
        )

    def _batch_prices(self, request: httpx.Request) -> httpx.Response:
        items = _json(request)["requests"]
        if self.batch_response_limit is not None:
            items = items[: self.batch_response_limit]
        return httpx.Response(
            200,
            json=[
                _price(
                    r["itemId"],
                    r["deviceId"],
                    r["defaultPrice"],
                    r.get("overrideToDefaultPrice", False),
                    r.get("userId"),
                )
                for r in items
            ],
        )


def _json(request: httpx.Request) -> dict:
    return json.loads(request.content or b"{}")


def _price(item_id, device_id, default_price, override, user_id) -> dict:
    if override:
        price, optimized = default_price, False
    else:
        price, optimized = optimized_price(default_price), True
    return {
        "itemId": item_id,
        "deviceId": device_id,
        "price": price,
        "isPriceOptimized": optimized,
        "userId": user_id,
    }


def fast_resiliency(**overrides) -> ResiliencyConfig:
    """Resiliency settings small enough for unit tests."""
    values = {
        "max_retries": 2,
        "overall_timeout": timedelta(seconds=5),
        "circuit_breaker_threshold": 10,
        "circuit_breaker_break_duration": timedelta(seconds=60),
    }
    values.update(overrides)
    return ResiliencyConfig(**values)


@pytest.fixture
def mock_api():
    return MockSpressoApi()


@pytest.fixture
def http_client(mock_api):
    return httpx.AsyncClient(transport=mock_api.transport)


@pytest.fixture
def cache():
    return MemoryResponseCache()


@pytest.fixture
def make_token_provider(http_client, cache):
    """
    Factory for TokenProviders talking to the mock API.

    Usage:
        provider = make_token_provider(additional_parameters="status=500")
    """

    def factory(client_secret=CLIENT_SECRET, resiliency=None, **options):
        return TokenProvider(
            CLIENT_ID,
            client_secret,
            TokenProviderOptions(
                base_auth_url=BASE_URL,
                resiliency=resiliency or fast_resiliency(),
                **options,
            ),
            cache=cache,
            http_client=http_client,
        )

    return factory


@pytest.fixture
def make_price_client(make_token_provider, http_client, cache):
    """Factory for PriceOptimizationClients with a working token provider."""

    def factory(token_provider=None, resiliency=None, breakers=None, **options):
        return PriceOptimizationClient(
            token_provider or make_token_provider(),
            PriceClientOptions(
                base_url=BASE_URL,
                resiliency=resiliency or fast_resiliency(),
                **options,
            ),
            cache=cache,
            http_client=http_client,
            breakers=breakers or CircuitBreakerRegistry(),
        )

    return factory
