"""
PriceOptimizationClient - resolves optimized prices with graceful degradation.

Every remote call runs through a ResilientExecutor; any terminal failure is
turned into default, unoptimized prices carrying the typed error, unless
throw_on_failure is set.

Batch pipeline (get_prices):
1. reject batches above MAX_REQUEST_SIZE before any I/O
2. user-agent override short-circuit (fails open)
3. per-item cache lookup, hits placed at their original index
4. token, then one POST carrying only the misses
5. response i is zipped back to miss index i and cached
"""

import json
import re
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Iterable

import httpx
from loguru import logger
from pydantic import ValidationError

from spresso.auth.token_provider import DEFAULT_BASE_URL, TokenProvider
from spresso.pricing.models import (
    CatalogUpdateRequest,
    PriceOptimizationResult,
    PriceRequest,
    PriceVerification,
    PriceVerificationRequest,
    UserAgentRule,
    UserAgentStatus,
)
from spresso.services.cache import MemoryResponseCache, ResponseCache
from spresso.services.circuit_breaker import CircuitBreakerRegistry
from spresso.services.client import ApiClient
from spresso.services.errors import (
    BadRequestError,
    ServiceError,
    SpressoError,
    classify_error,
)
from spresso.services.redis_cache import RedisResponseCache
from spresso.services.resilience import ResiliencyConfig, ResilientExecutor
from spresso.services.result import Result

if TYPE_CHECKING:
    from spresso.settings import Settings

MAX_REQUEST_SIZE = 500

PRICES_PATH = "/pim/v1/prices"
PRICE_VERIFICATION_PATH = "/pim/v1/prices/verify"
CATALOG_UPDATES_PATH = "/pim/v1/variants"
ORG_CONFIG_PATH = "/pim/v1/priceOptimizationOrgConfig"

USER_AGENT_CACHE_KEY = "Spresso.Core.UserAgentKey"
PRICE_CACHE_PREFIX = "Spresso.PriceOptimizations"


@dataclass
class PriceClientOptions:
    """Pricing client configuration."""

    base_url: str = DEFAULT_BASE_URL
    # Cache namespace for price entries
    price_group: str = "default"
    http_timeout: timedelta = timedelta(seconds=10)
    cache_duration: timedelta = timedelta(hours=1)
    user_agent_cache_ttl: timedelta = timedelta(days=1)
    # Extra query string for debugging/testing, e.g. "status=500&delay=5"
    additional_parameters: str = ""
    resiliency: ResiliencyConfig = field(default_factory=ResiliencyConfig)


class PriceOptimizationClient:
    """
    Client for the price optimization API.

    Usage:
        tokens = TokenProvider("client-id", "client-secret")
        client = PriceOptimizationClient(tokens)

        result = await client.get_price(PriceRequest(device_id="d1", item_id="sku-1", default_price=9.99))
        price = result.value.price  # always usable, optimized or default
        if not result.is_success:
            logger.warning(f"using default price: {result.error}")
    """

    SERVICE_ID = "pricing"

    def __init__(
        self,
        token_provider: TokenProvider,
        options: PriceClientOptions | None = None,
        cache: ResponseCache | None = None,
        http_client: httpx.AsyncClient | None = None,
        breakers: CircuitBreakerRegistry | None = None,
    ):
        self.options = options or PriceClientOptions()
        self._token_provider = token_provider
        self._cache = cache or MemoryResponseCache()
        self._compiled_overrides: tuple[str, list[re.Pattern[str]]] | None = None
        # Resources created by from_settings and shared with the token provider
        self._owned_http_client: httpx.AsyncClient | None = None
        self._owned_cache: RedisResponseCache | None = None

        self._api = ApiClient(
            self.SERVICE_ID,
            self.options.base_url,
            timeout=self.options.http_timeout,
            http_client=http_client,
            additional_parameters=self.options.additional_parameters,
        )

        resiliency = self.options.resiliency

        self.breakers = breakers or CircuitBreakerRegistry()
        self._price_executor = ResilientExecutor.create(
            "price", resiliency, SpressoError, self.breakers
        )
        self._prices_executor = ResilientExecutor.create(
            "prices", resiliency, SpressoError, self.breakers
        )
        # Override lookups fail open, they never raise
        self._overrides_executor = ResilientExecutor.create(
            "user-agent-overrides",
            replace(resiliency, throw_on_failure=False),
            SpressoError,
            self.breakers,
        )
        self._catalog_executor = ResilientExecutor.create(
            "catalog-update", resiliency, SpressoError, self.breakers
        )
        self._verification_executor = ResilientExecutor.create(
            "price-verification", resiliency, SpressoError, self.breakers
        )

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        cache: ResponseCache | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> "PriceOptimizationClient":
        """Wire a client and its token provider sharing one cache."""
        owned_cache = None
        if cache is None:
            if settings.redis_url:
                cache = owned_cache = RedisResponseCache.from_url(settings.redis_url)
            else:
                cache = MemoryResponseCache()

        owned_http_client = None
        if http_client is None:
            http_client = owned_http_client = httpx.AsyncClient()

        token_provider = TokenProvider(
            settings.client_id,
            settings.client_secret,
            settings.token_provider_options(),
            cache=cache,
            http_client=http_client,
        )
        client = cls(
            token_provider,
            settings.price_client_options(),
            cache=cache,
            http_client=http_client,
        )
        client._owned_http_client = owned_http_client
        client._owned_cache = owned_cache
        return client

    # Price lookups

    async def get_price(
        self,
        request: PriceRequest,
        original_ip: str | None = None,
        http_headers: dict[str, str] | None = None,
    ) -> Result[PriceOptimizationResult, SpressoError]:
        """
        Get a single price optimization.

        On failure the result carries the error and the request's default price.
        """

        # Resolved outside the price pipeline so a slow org config fails open
        if request.user_agent and await self._is_user_agent_overridden(
            request.user_agent
        ):
            logger.debug(
                f"[get_price] user agent override [device: {request.device_id}, "
                f"itemId: {request.item_id}, user-agent: {request.user_agent}]"
            )
            return Result.ok(PriceOptimizationResult.default_for(request))

        async def operation() -> Result[PriceOptimizationResult, SpressoError]:
            cached = await self._get_cached_price(request)
            if cached is not None:
                return Result.ok(cached)

            token = await self._get_token("get_price")
            if not token.is_success:
                return token

            try:
                data = await self._api.request(
                    "GET",
                    PRICES_PATH,
                    params=request.to_api(exclude={"user_agent"}),
                    token=token.value,
                    original_ip=original_ip,
                    http_headers=http_headers,
                )
                optimization = PriceOptimizationResult.model_validate(_unwrap(data))
            except ServiceError as e:
                return Result.fail(classify_error(e), exception=e)
            except ValidationError as e:
                logger.error(f"[get_price] malformed price response: {e}")
                return Result.fail(SpressoError.UNKNOWN, exception=e, terminal=True)

            await self._cache_price(request, optimization)
            return Result.ok(optimization)

        result = await self._price_executor.execute(
            operation,
            fallback_value=lambda error: PriceOptimizationResult.default_for(request),
        )

        if result.is_success:
            logger.debug(
                f"[get_price] found result [device: {request.device_id}, "
                f"itemId: {request.item_id}]"
            )
        else:
            logger.debug(
                f"[get_price] failed getting price optimization, using fallback "
                f"[device: {request.device_id}, itemId: {request.item_id}]"
            )
        return result

    async def get_prices(
        self,
        requests: Iterable[PriceRequest],
        user_agent: str | None = None,
        original_ip: str | None = None,
        http_headers: dict[str, str] | None = None,
    ) -> Result[list[PriceOptimizationResult], SpressoError]:
        """
        Get price optimizations for a batch, in request order.

        On failure every item carries its default price, including items that
        were already resolved from cache.
        """
        requests = list(requests)

        def defaults(error: SpressoError | None = None) -> list[PriceOptimizationResult]:
            return [PriceOptimizationResult.default_for(r) for r in requests]

        if len(requests) > MAX_REQUEST_SIZE:
            return self._reject_oversized_batch("get_prices", len(requests), defaults())

        if user_agent and await self._is_user_agent_overridden(user_agent):
            logger.debug(f"[get_prices] user agent override [user-agent: {user_agent}]")
            return Result.ok(defaults())

        async def operation() -> Result[list[PriceOptimizationResult], SpressoError]:
            results: list[PriceOptimizationResult | None] = [None] * len(requests)
            miss_indices: list[int] = []
            for index, request in enumerate(requests):
                cached = await self._get_cached_price(request)
                if cached is not None:
                    results[index] = cached
                else:
                    miss_indices.append(index)

            if not miss_indices:
                logger.debug(f"[get_prices] all {len(requests)} prices served from cache")
                return Result.ok(results)

            token = await self._get_token("get_prices")
            if not token.is_success:
                return token

            misses = [requests[i] for i in miss_indices]
            try:
                data = await self._api.request(
                    "POST",
                    PRICES_PATH,
                    json_data={
                        "requests": [r.to_api(exclude={"user_agent"}) for r in misses]
                    },
                    token=token.value,
                    original_ip=original_ip,
                    http_headers=http_headers,
                )
                optimizations = [
                    PriceOptimizationResult.model_validate(item)
                    for item in _unwrap(data)
                ]
            except ServiceError as e:
                return Result.fail(classify_error(e), exception=e)
            except (ValidationError, TypeError) as e:
                logger.error(f"[get_prices] malformed price response: {e}")
                return Result.fail(SpressoError.UNKNOWN, exception=e, terminal=True)

            if len(optimizations) != len(misses):
                logger.error(
                    f"[get_prices] expected {len(misses)} prices, got {len(optimizations)}"
                )
                return Result.fail(SpressoError.UNKNOWN, terminal=True)

            for index, optimization in zip(miss_indices, optimizations):
                results[index] = optimization
                await self._cache_price(requests[index], optimization)

            return Result.ok(results)

        result = await self._prices_executor.execute(operation, fallback_value=defaults)

        if result.is_success:
            logger.debug("[get_prices] found results")
        else:
            logger.debug("[get_prices] failed getting batch price optimizations, using fallback")
        return result

    # User agent overrides

    async def get_user_agent_overrides(
        self,
    ) -> Result[list[re.Pattern[str]], SpressoError]:
        """Active bot/crawler signatures, compiled. Cached for user_agent_cache_ttl."""

        async def operation() -> Result[list[re.Pattern[str]], SpressoError]:
            raw = await self._cache.get(USER_AGENT_CACHE_KEY)
            if raw is not None:
                logger.debug(f"[get_user_agent_overrides] {USER_AGENT_CACHE_KEY} cache hit")
            else:
                logger.debug(f"[get_user_agent_overrides] {USER_AGENT_CACHE_KEY} cache miss")
                token = await self._get_token("get_user_agent_overrides")
                if not token.is_success:
                    return token

                try:
                    data = await self._api.request(
                        "GET",
                        ORG_CONFIG_PATH,
                        token=token.value,
                        include_additional_parameters=False,
                    )
                except ServiceError as e:
                    return Result.fail(classify_error(e), exception=e)

                raw = json.dumps(data)
                await self._cache.set(
                    USER_AGENT_CACHE_KEY, raw, ttl=self.options.user_agent_cache_ttl
                )

            try:
                return Result.ok(self._compile_overrides(raw))
            except (ValueError, KeyError, TypeError) as e:
                logger.error(f"[get_user_agent_overrides] malformed org config: {e}")
                return Result.fail(SpressoError.UNKNOWN, exception=e, terminal=True)

        return await self._overrides_executor.execute(
            operation, fallback_value=lambda error: []
        )

    async def _is_user_agent_overridden(self, user_agent: str) -> bool:
        overrides = await self.get_user_agent_overrides()
        if not overrides.is_success:
            logger.warning("Failed to get user agent overrides. Proceeding")
            return False
        return any(pattern.search(user_agent) for pattern in overrides.value)

    def _compile_overrides(self, raw: str) -> list[re.Pattern[str]]:
        if self._compiled_overrides and self._compiled_overrides[0] == raw:
            return self._compiled_overrides[1]

        rules = [
            UserAgentRule.model_validate(item)
            for item in json.loads(raw)["data"]["userAgentBlacklist"]
        ]
        patterns = []
        for rule in rules:
            if rule.status != UserAgentStatus.ACTIVE:
                continue
            try:
                patterns.append(re.compile(rule.regexp, re.DOTALL))
            except re.error as e:
                logger.warning(f"Skipping invalid user agent regexp '{rule.name}': {e}")

        self._compiled_overrides = (raw, patterns)
        return patterns

    # Catalog and verification

    async def update_catalog(
        self, requests: Iterable[CatalogUpdateRequest]
    ) -> Result[None, SpressoError]:
        """Push product catalog entries."""
        requests = list(requests)
        if len(requests) > MAX_REQUEST_SIZE:
            return self._reject_oversized_batch("update_catalog", len(requests), None)

        async def operation() -> Result[None, SpressoError]:
            token = await self._get_token("update_catalog")
            if not token.is_success:
                return token

            try:
                await self._api.request(
                    "PUT",
                    CATALOG_UPDATES_PATH,
                    json_data={"requests": [r.to_api() for r in requests]},
                    token=token.value,
                )
            except ServiceError as e:
                return Result.fail(classify_error(e), exception=e)
            return Result.ok(None)

        return await self._catalog_executor.execute(operation)

    async def verify_prices(
        self, requests: Iterable[PriceVerificationRequest]
    ) -> Result[list[PriceVerification], SpressoError]:
        """Check whether prices shown to users are valid."""
        requests = list(requests)
        if len(requests) > MAX_REQUEST_SIZE:
            return self._reject_oversized_batch("verify_prices", len(requests), [])

        async def operation() -> Result[list[PriceVerification], SpressoError]:
            token = await self._get_token("verify_prices")
            if not token.is_success:
                return token

            try:
                data = await self._api.request(
                    "POST",
                    PRICE_VERIFICATION_PATH,
                    json_data={"requests": [r.to_api() for r in requests]},
                    token=token.value,
                )
                verifications = [
                    PriceVerification.model_validate(item) for item in _unwrap(data)
                ]
            except ServiceError as e:
                return Result.fail(classify_error(e), exception=e)
            except (ValidationError, TypeError) as e:
                logger.error(f"[verify_prices] malformed verification response: {e}")
                return Result.fail(SpressoError.UNKNOWN, exception=e, terminal=True)
            return Result.ok(verifications)

        return await self._verification_executor.execute(
            operation, fallback_value=lambda error: []
        )

    # Helpers

    async def _get_token(self, caller: str) -> Result[str, SpressoError]:
        try:
            result = await self._token_provider.get_token()
        except Exception as e:
            logger.error(f"[{caller}] failed to get token: {e}")
            return Result.fail(SpressoError.AUTH_ERROR, exception=e)

        if not result.is_success:
            logger.error(f"[{caller}] failed to get token ({result.error.value})")
            return Result.fail(SpressoError.AUTH_ERROR)
        return Result.ok(result.value.value)

    def _price_cache_key(self, request: PriceRequest) -> str:
        return (
            f"{PRICE_CACHE_PREFIX}.{self.options.price_group}."
            f"{request.device_id}.{request.item_id}"
        )

    async def _get_cached_price(
        self, request: PriceRequest
    ) -> PriceOptimizationResult | None:
        # Override requests always defer to the service and are never cached
        if request.override_to_default_price:
            return None

        raw = await self._cache.get(self._price_cache_key(request))
        if raw is None:
            return None
        try:
            return PriceOptimizationResult.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring unreadable cached price {request.item_id}: {e}")
            return None

    async def _cache_price(
        self, request: PriceRequest, optimization: PriceOptimizationResult
    ) -> None:
        if request.override_to_default_price:
            return
        await self._cache.set(
            self._price_cache_key(request),
            optimization.model_dump_json(by_alias=True),
            ttl=self.options.cache_duration,
        )

    def _reject_oversized_batch(
        self, caller: str, count: int, value: Any
    ) -> Result[Any, SpressoError]:
        message = f"Max batch size is {MAX_REQUEST_SIZE} requests, got {count}"
        logger.warning(f"[{caller}] {message}")
        error = BadRequestError(message, service_id=self.SERVICE_ID)
        if self.options.resiliency.throw_on_failure:
            raise error
        return Result.fail(
            SpressoError.BAD_REQUEST, value=value, exception=error, terminal=True
        )

    async def close(self) -> None:
        await self._api.close()
        await self._token_provider.close()
        if self._owned_http_client is not None:
            await self._owned_http_client.aclose()
            self._owned_http_client = None
            logger.debug("[PriceOptimizationClient] shared HTTP client closed")
        if self._owned_cache is not None:
            await self._owned_cache.close()
            self._owned_cache = None
            logger.debug("[PriceOptimizationClient] redis cache closed")

    async def __aenter__(self) -> "PriceOptimizationClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def _unwrap(data: Any) -> Any:
    """Accept both bare payloads and {"data": ...} envelopes."""
    if isinstance(data, dict) and "data" in data:
        return data["data"]
    return data
