import os
from datetime import timedelta

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from spresso.auth.token_provider import (
    DEFAULT_AUDIENCE,
    DEFAULT_BASE_URL,
    TokenProviderOptions,
)
from spresso.pricing.client import PriceClientOptions
from spresso.services.resilience import ResiliencyConfig


class Settings(BaseModel):
    # Credentials
    client_id: str = Field(default="", alias="SPRESSO_CLIENT_ID")
    client_secret: str = Field(default="", alias="SPRESSO_CLIENT_SECRET")

    # Endpoints
    base_url: str = Field(default=DEFAULT_BASE_URL, alias="SPRESSO_BASE_URL")
    base_auth_url: str | None = Field(default=None, alias="SPRESSO_BASE_AUTH_URL")
    audience: str = Field(default=DEFAULT_AUDIENCE, alias="SPRESSO_AUDIENCE")
    token_group: str = Field(default="default", alias="SPRESSO_TOKEN_GROUP")
    scopes: list[str] = Field(default_factory=list, alias="SPRESSO_SCOPES")
    additional_parameters: str = Field(default="", alias="SPRESSO_ADDITIONAL_PARAMETERS")

    # Resiliency
    max_retries: int = Field(default=3, alias="SPRESSO_MAX_RETRIES")
    timeout_seconds: float = Field(default=30, alias="SPRESSO_TIMEOUT_SECONDS")
    http_timeout_seconds: float | None = Field(
        default=None, alias="SPRESSO_HTTP_TIMEOUT_SECONDS"
    )
    circuit_breaker_threshold: int = Field(
        default=10, alias="SPRESSO_CIRCUIT_BREAKER_THRESHOLD"
    )
    circuit_breaker_break_seconds: float = Field(
        default=60, alias="SPRESSO_CIRCUIT_BREAKER_BREAK_SECONDS"
    )
    throw_on_failure: bool = Field(default=False, alias="SPRESSO_THROW_ON_FAILURE")

    # Caching
    price_cache_ttl_seconds: float = Field(
        default=3600, alias="SPRESSO_PRICE_CACHE_TTL_SECONDS"
    )
    redis_url: str | None = Field(default=None, alias="SPRESSO_REDIS_URL")

    log_level: str = Field(default="INFO", alias="SPRESSO_LOG_LEVEL")

    @field_validator("scopes", mode="before")
    @classmethod
    def split_scopes(cls, value):
        # "read:prices write:catalog" or "read:prices,write:catalog"
        if isinstance(value, str):
            return [s for s in value.replace(",", " ").split() if s]
        return value

    @field_validator("base_auth_url", "redis_url", "http_timeout_seconds", mode="before")
    @classmethod
    def empty_as_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def resiliency(self) -> ResiliencyConfig:
        return ResiliencyConfig(
            max_retries=self.max_retries,
            overall_timeout=timedelta(seconds=self.timeout_seconds),
            circuit_breaker_threshold=self.circuit_breaker_threshold,
            circuit_breaker_break_duration=timedelta(
                seconds=self.circuit_breaker_break_seconds
            ),
            throw_on_failure=self.throw_on_failure,
        )

    def token_provider_options(self) -> TokenProviderOptions:
        options = TokenProviderOptions(
            base_auth_url=self.base_auth_url or self.base_url,
            audience=self.audience,
            token_group=self.token_group,
            scopes=self.scopes or None,
            additional_parameters=self.additional_parameters,
            resiliency=self.resiliency(),
        )
        if self.http_timeout_seconds is not None:
            options.http_timeout = timedelta(seconds=self.http_timeout_seconds)
        return options

    def price_client_options(self) -> PriceClientOptions:
        options = PriceClientOptions(
            base_url=self.base_url,
            cache_duration=timedelta(seconds=self.price_cache_ttl_seconds),
            additional_parameters=self.additional_parameters,
            resiliency=self.resiliency(),
        )
        if self.http_timeout_seconds is not None:
            options.http_timeout = timedelta(seconds=self.http_timeout_seconds)
        return options


def load_settings(env_file: str | None = None) -> Settings:
    """Read settings from the environment, after loading a .env file if present."""
    load_dotenv(env_file)
    return Settings.model_validate(dict(os.environ))
