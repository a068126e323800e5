"""
Service layer infrastructure - resilience patterns for Spresso API calls.

Provides:
- ResponseCache: Memory and Redis backed response caching with TTL
- CircuitBreaker: Fails fast while an operation kind keeps failing
- ResilientExecutor: Fallback, circuit breaker, timeout and retry pipeline
- ApiClient: HTTP client mapping failures onto the error hierarchy
- Result: Typed success/error values
"""

from spresso.services.errors import (
    SpressoError,
    AuthError,
    ServiceError,
    CacheError,
    CircuitOpenError,
    RequestTimeoutError,
    AuthenticationError,
    BadRequestError,
    ResiliencyError,
    classify_error,
)
from spresso.services.result import Result
from spresso.services.cache import (
    ResponseCache,
    MemoryResponseCache,
    CacheEntry,
    CacheStats,
)
from spresso.services.redis_cache import RedisResponseCache
from spresso.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from spresso.services.resilience import (
    ResiliencyConfig,
    ResiliencyPolicyBuilder,
    ResilientExecutor,
)
from spresso.services.client import ApiClient

__all__ = [
    # Errors
    "SpressoError",
    "AuthError",
    "ServiceError",
    "CacheError",
    "CircuitOpenError",
    "RequestTimeoutError",
    "AuthenticationError",
    "BadRequestError",
    "ResiliencyError",
    "classify_error",
    # Result
    "Result",
    # Cache
    "ResponseCache",
    "MemoryResponseCache",
    "RedisResponseCache",
    "CacheEntry",
    "CacheStats",
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    # Resilience
    "ResiliencyConfig",
    "ResiliencyPolicyBuilder",
    "ResilientExecutor",
    # Client
    "ApiClient",
]
