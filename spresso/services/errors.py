"""
Service layer errors.

Two kinds of failure live here:
- the typed error taxonomy (SpressoError, AuthError) that results carry as data
- the exception hierarchy raised by the HTTP and cache layers
"""

from enum import Enum


class SpressoError(str, Enum):
    """Error taxonomy for pricing operations."""

    AUTH_ERROR = "AuthError"
    BAD_REQUEST = "BadRequest"
    TIMEOUT = "Timeout"
    UNKNOWN = "Unknown"


class AuthError(str, Enum):
    """Error taxonomy for token acquisition."""

    INVALID_CREDENTIALS = "InvalidCredentials"
    INVALID_SCOPES = "InvalidScopes"
    TIMEOUT = "Timeout"
    UNKNOWN = "Unknown"


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, service_id: str | None = None):
        self.service_id = service_id
        super().__init__(message)


class CacheError(ServiceError):
    """Cache operation failed."""

    pass


class CircuitOpenError(ServiceError):
    """Circuit breaker is open, request blocked."""

    def __init__(self, service_id: str, reset_after_seconds: float):
        self.reset_after_seconds = reset_after_seconds
        super().__init__(
            f"Circuit breaker open for service '{service_id}', "
            f"retry after {reset_after_seconds:.1f}s",
            service_id=service_id,
        )


class RequestTimeoutError(ServiceError):
    """Request timed out or the remote host refused the connection."""

    def __init__(self, service_id: str, timeout: float | None):
        self.timeout = timeout
        if timeout is None:
            message = f"Request to service '{service_id}' could not connect"
        else:
            message = f"Request to service '{service_id}' timed out after {timeout}s"
        super().__init__(message, service_id=service_id)


class AuthenticationError(ServiceError):
    """Remote service rejected the credentials or token (401/403)."""

    def __init__(self, service_id: str, status_code: int):
        self.status_code = status_code
        super().__init__(
            f"Service '{service_id}' rejected the request with HTTP {status_code}",
            service_id=service_id,
        )


class BadRequestError(ServiceError):
    """Remote service rejected the request payload (400)."""

    pass


class ResiliencyError(ServiceError):
    """Raised by the fallback policy when throw_on_failure is enabled."""

    def __init__(self, service_id: str, error: Enum):
        self.error = error
        super().__init__(
            f"Request to service '{service_id}' failed. Error {error.value}",
            service_id=service_id,
        )


def classify_error(exc: BaseException) -> SpressoError:
    """Map a service layer exception onto the pricing error taxonomy."""
    if isinstance(exc, AuthenticationError):
        return SpressoError.AUTH_ERROR
    if isinstance(exc, BadRequestError):
        return SpressoError.BAD_REQUEST
    if isinstance(exc, RequestTimeoutError):
        return SpressoError.TIMEOUT
    return SpressoError.UNKNOWN
