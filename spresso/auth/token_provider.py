"""
TokenProvider - client-credentials access tokens with caching.

Tokens are cached under a namespaced key and only handed out while
``now < expires_at - leeway``. Fetching goes through a ResilientExecutor:
- 401 -> InvalidCredentials (not retried)
- 403 -> InvalidScopes (not retried)
- 400 or a malformed body -> Unknown (not retried, logged as an error)
- timeout / connection refused -> Timeout (retried)
- 5xx and everything else -> Unknown (retried)
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import httpx
from loguru import logger
from pydantic import BaseModel, ValidationError

from spresso.services.cache import MemoryResponseCache, ResponseCache
from spresso.services.circuit_breaker import CircuitBreakerRegistry
from spresso.services.client import ApiClient
from spresso.services.errors import (
    AuthenticationError,
    AuthError,
    BadRequestError,
    RequestTimeoutError,
    ServiceError,
)
from spresso.services.resilience import ResiliencyConfig, ResilientExecutor
from spresso.services.result import Result

DEFAULT_BASE_URL = "https://api.spresso.com"
DEFAULT_AUDIENCE = "https://spresso-api"
TOKEN_PATH = "/identity/v1/public/token"
TOKEN_LEEWAY = timedelta(minutes=5)


class AccessToken(BaseModel):
    """Bearer token issued by the identity endpoint."""

    value: str
    expires_at: datetime
    scope: str = ""
    token_type: str = "Bearer"

    def is_valid(self, leeway: timedelta = TOKEN_LEEWAY) -> bool:
        return datetime.now(timezone.utc) < self.expires_at - leeway


class TokenPayload(BaseModel):
    """Identity endpoint response body."""

    access_token: str
    expires_in: int
    token_type: str | None = None
    scope: str | None = None


@dataclass
class TokenProviderOptions:
    """Token provider configuration."""

    base_auth_url: str = DEFAULT_BASE_URL
    audience: str = DEFAULT_AUDIENCE
    # Cache namespace; set when several clients or scope sets share one cache
    token_group: str = "default"
    scopes: list[str] | None = None
    # Extra query string for debugging/testing, e.g. "status=500&delay=5"
    additional_parameters: str = ""
    http_timeout: timedelta = timedelta(seconds=1)
    resiliency: ResiliencyConfig = field(default_factory=ResiliencyConfig)
    leeway: timedelta = TOKEN_LEEWAY


class TokenProvider:
    """
    Acquires and caches client-credentials tokens.

    Usage:
        provider = TokenProvider("client-id", "client-secret")
        result = await provider.get_token()
        if result.is_success:
            headers = {"Authorization": f"Bearer {result.value.value}"}
    """

    SERVICE_ID = "token"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        options: TokenProviderOptions | None = None,
        cache: ResponseCache | None = None,
        http_client: httpx.AsyncClient | None = None,
        breakers: CircuitBreakerRegistry | None = None,
    ):
        self.options = options or TokenProviderOptions()
        self._cache = cache or MemoryResponseCache()
        self._cache_key = f"Spresso.Auth.AuthKey.{self.options.token_group}"

        self._api = ApiClient(
            self.SERVICE_ID,
            self.options.base_auth_url,
            timeout=self.options.http_timeout,
            http_client=http_client,
            additional_parameters=self.options.additional_parameters,
        )

        self._token_request = {
            "client_id": client_id,
            "client_secret": client_secret,
            "audience": self.options.audience,
            "grant_type": "client_credentials",
        }
        if self.options.scopes:
            self._token_request["scope"] = " ".join(self.options.scopes)

        self.breakers = breakers or CircuitBreakerRegistry()
        self._executor = ResilientExecutor.create(
            self.SERVICE_ID, self.options.resiliency, AuthError, self.breakers
        )

    async def get_token(self) -> Result[AccessToken, AuthError]:
        """Return a cached token while valid, otherwise fetch a new one."""
        return await self._executor.execute(self._get_token)

    async def _get_token(self) -> Result[AccessToken, AuthError]:
        logger.debug("[TokenProvider] fetching token")

        cached = await self._cache.get(self._cache_key)
        if cached is not None:
            token = self._load_cached_token(cached)
            if token is not None and token.is_valid(self.options.leeway):
                logger.debug("[TokenProvider] cache hit")
                return Result.ok(token)
            # Only reachable when the backing store returns entries past their TTL
            logger.debug("[TokenProvider] cached token within leeway, refetching")
        else:
            logger.debug("[TokenProvider] cache miss")

        return await self._fetch_token()

    async def _fetch_token(self) -> Result[AccessToken, AuthError]:
        try:
            data = await self._api.request(
                "POST", TOKEN_PATH, json_data=self._token_request
            )
        except AuthenticationError as e:
            logger.debug(f"[TokenProvider] token status code {e.status_code}")
            error = (
                AuthError.INVALID_CREDENTIALS
                if e.status_code == 401
                else AuthError.INVALID_SCOPES
            )
            return Result.fail(error, exception=e)
        except BadRequestError as e:
            logger.error(f"[TokenProvider] token status code 400: {e}")
            return Result.fail(AuthError.UNKNOWN, exception=e, terminal=True)
        except RequestTimeoutError as e:
            logger.error(f"[TokenProvider] error getting token: {e}")
            return Result.fail(AuthError.TIMEOUT, exception=e)
        except ServiceError as e:
            logger.error(f"[TokenProvider] error getting token: {e}")
            return Result.fail(AuthError.UNKNOWN, exception=e)

        try:
            payload = TokenPayload.model_validate(data)
        except ValidationError as e:
            logger.error(f"[TokenProvider] malformed token response: {e}")
            return Result.fail(AuthError.UNKNOWN, exception=e, terminal=True)

        token = AccessToken(
            value=payload.access_token,
            expires_at=datetime.now(timezone.utc)
            + timedelta(seconds=payload.expires_in),
            scope=payload.scope or "",
            token_type=payload.token_type or "Bearer",
        )
        await self._cache.set(
            self._cache_key,
            self._dump_token(payload, token),
            absolute_expiration=token.expires_at - self.options.leeway,
        )
        return Result.ok(token)

    @staticmethod
    def _dump_token(payload: TokenPayload, token: AccessToken) -> str:
        """Raw payload plus the absolute expiry, so cached reads keep the real deadline."""
        raw = payload.model_dump()
        raw["expires_at"] = token.expires_at.isoformat()
        return json.dumps(raw)

    @staticmethod
    def _load_cached_token(raw: str) -> AccessToken | None:
        try:
            data = json.loads(raw)
            return AccessToken(
                value=data["access_token"],
                expires_at=datetime.fromisoformat(data["expires_at"]),
                scope=data.get("scope") or "",
                token_type=data.get("token_type") or "Bearer",
            )
        except (ValueError, KeyError, TypeError, ValidationError) as e:
            logger.warning(f"[TokenProvider] ignoring unreadable cached token: {e}")
            return None

    async def close(self) -> None:
        await self._api.close()
