"""
ResilientExecutor - Composes fallback, circuit breaker, timeout and retry
around an async operation that returns a Result.

Order of application (outermost first):
1. Fallback        - logs terminal failures, raises or substitutes a value
2. Circuit breaker - fails fast while the operation is known to be failing
3. Timeout         - bounds the cumulative time of all attempts
4. Retry           - re-invokes the operation on transient errors
5. Operation       - guarded so exceptions and slow attempts become results

The order is fixed by ResiliencyPolicyBuilder regardless of the order in which
policies are added; retrying after the breaker opened would change semantics.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Generic, TypeVar

from loguru import logger

from spresso.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
)
from spresso.services.errors import (
    CircuitOpenError,
    RequestTimeoutError,
    ResiliencyError,
)
from spresso.services.result import Result

T = TypeVar("T")

Operation = Callable[[], Awaitable[Result[Any, Any]]]

MAX_RETRIES = 10
MAX_OVERALL_TIMEOUT = timedelta(seconds=180)


@dataclass
class ResiliencyConfig:
    """Resiliency settings for one remote operation kind."""

    max_retries: int = 3
    overall_timeout: timedelta = timedelta(seconds=30)
    per_call_timeout: timedelta | None = None
    circuit_breaker_threshold: int = 10
    circuit_breaker_break_duration: timedelta = timedelta(seconds=60)
    throw_on_failure: bool = False

    def __post_init__(self) -> None:
        self.max_retries = min(max(self.max_retries, 0), MAX_RETRIES)
        if self.overall_timeout > MAX_OVERALL_TIMEOUT:
            logger.warning(
                f"Overall timeout {self.overall_timeout.total_seconds()}s exceeds "
                f"{MAX_OVERALL_TIMEOUT.total_seconds()}s, clamping"
            )
            self.overall_timeout = MAX_OVERALL_TIMEOUT
        if self.circuit_breaker_threshold < 1:
            self.circuit_breaker_threshold = 1


class Policy(ABC):
    """One layer of the resiliency pipeline."""

    @abstractmethod
    async def execute(self, operation: Operation) -> Result[Any, Any]:
        ...


class RetryPolicy(Policy):
    """Re-invokes the operation while it fails with a transient error."""

    def __init__(
        self,
        name: str,
        max_retries: int,
        is_transient: Callable[[Result[Any, Any]], bool],
    ):
        self.name = name
        self.max_retries = max_retries
        self._is_transient = is_transient

    async def execute(self, operation: Operation) -> Result[Any, Any]:
        attempt = 0
        while True:
            result = await operation()
            if not self._is_transient(result) or attempt >= self.max_retries:
                return result

            attempt += 1
            logger.warning(
                f"[{self.name}] attempt {attempt} failed with {result.error.value}, "
                f"retrying ({attempt}/{self.max_retries})"
            )


class TimeoutPolicy(Policy):
    """Bounds the whole inner pipeline; expiry is reported as a Timeout result."""

    def __init__(self, name: str, timeout: timedelta, timeout_error: Enum):
        self.name = name
        self.timeout = timeout
        self._timeout_error = timeout_error

    async def execute(self, operation: Operation) -> Result[Any, Any]:
        seconds = self.timeout.total_seconds()
        try:
            return await asyncio.wait_for(operation(), timeout=seconds)
        except asyncio.TimeoutError:
            logger.debug(f"[{self.name}] timed out after {seconds}s")
            return Result.fail(
                self._timeout_error,
                exception=RequestTimeoutError(self.name, seconds),
            )


class CircuitBreakerPolicy(Policy):
    """Counts transient failures and short-circuits while the breaker is open."""

    def __init__(
        self,
        breaker: CircuitBreaker,
        is_transient: Callable[[Result[Any, Any]], bool],
        unknown_error: Enum,
    ):
        self.breaker = breaker
        self._is_transient = is_transient
        self._unknown_error = unknown_error

    async def execute(self, operation: Operation) -> Result[Any, Any]:
        generation = await self.breaker.try_acquire()
        if generation is None:
            return Result.fail(
                self.breaker.last_error or self._unknown_error,
                exception=CircuitOpenError(
                    self.breaker.service_id,
                    self.breaker.get_time_until_reset() or 0,
                ),
            )

        try:
            result = await operation()
        except BaseException:
            self.breaker.release_probe(generation)
            raise

        if self._is_transient(result):
            await self.breaker.record_failure(result.error, generation)
        else:
            await self.breaker.record_success(generation)
        return result


class FallbackPolicy:
    """
    Handles terminal failures.

    With throw_on_failure the original exception (or a ResiliencyError carrying
    the error kind) is raised; otherwise the failed result is returned with the
    caller's fallback value substituted.
    """

    def __init__(self, name: str, throw_on_failure: bool, unknown_error: Enum):
        self.name = name
        self.throw_on_failure = throw_on_failure
        self._unknown_error = unknown_error

    async def execute(
        self,
        operation: Operation,
        fallback_value: Callable[[Any], Any] | None = None,
    ) -> Result[Any, Any]:
        try:
            result = await operation()
        except Exception as e:
            result = Result.fail(self._unknown_error, exception=e)

        if result.is_success:
            return result

        logger.error(
            f"[{self.name}] request failed. Error {result.error.value}. "
            f"Exception (if applicable): {result.exception}"
        )

        if self.throw_on_failure:
            if result.exception is not None:
                raise result.exception
            raise ResiliencyError(self.name, result.error)

        if fallback_value is not None:
            return result.with_value(fallback_value(result.error))
        return result


class ResilientExecutor(Generic[T]):
    """
    Runs operations through a fixed fallback → circuit breaker → timeout →
    retry pipeline.

    Usage:
        executor = ResilientExecutor.create(
            "price", ResiliencyConfig(max_retries=2), SpressoError, registry
        )
        result = await executor.execute(
            fetch_price,
            fallback_value=lambda error: default_price,
        )
    """

    def __init__(
        self,
        name: str,
        error_type: type[Enum],
        policies: list[Policy],
        fallback: FallbackPolicy,
        per_call_timeout: timedelta | None = None,
    ):
        self.name = name
        self._error_type = error_type
        self._policies = policies
        self._fallback = fallback
        self._per_call_timeout = per_call_timeout

    @classmethod
    def create(
        cls,
        name: str,
        config: ResiliencyConfig,
        error_type: type[Enum],
        breakers: CircuitBreakerRegistry,
    ) -> "ResilientExecutor[Any]":
        """Build the standard pipeline for one operation kind."""
        breaker = breakers.get(
            name,
            CircuitBreakerConfig(
                failure_threshold=config.circuit_breaker_threshold,
                break_duration=config.circuit_breaker_break_duration,
            ),
        )
        return (
            ResiliencyPolicyBuilder(name, error_type)
            .with_fallback(config.throw_on_failure)
            .with_circuit_breaker(breaker)
            .with_timeout(config.overall_timeout)
            .with_retry(config.max_retries)
            .with_attempt_timeout(config.per_call_timeout)
            .build()
        )

    @property
    def throw_on_failure(self) -> bool:
        return self._fallback.throw_on_failure

    async def execute(
        self,
        operation: Operation,
        fallback_value: Callable[[Any], T] | None = None,
    ) -> Result[T, Any]:
        call: Operation = partial(self._attempt, operation)
        for policy in reversed(self._policies):
            call = partial(policy.execute, call)
        return await self._fallback.execute(call, fallback_value)

    async def _attempt(self, operation: Operation) -> Result[Any, Any]:
        """Run one attempt, turning exceptions and attempt timeouts into results."""
        try:
            if self._per_call_timeout is None:
                return await operation()
            seconds = self._per_call_timeout.total_seconds()
            try:
                return await asyncio.wait_for(operation(), timeout=seconds)
            except asyncio.TimeoutError:
                return Result.fail(
                    self._error_type.TIMEOUT,
                    exception=RequestTimeoutError(self.name, seconds),
                )
        except Exception as e:
            logger.debug(f"[{self.name}] attempt raised {type(e).__name__}: {e}")
            return Result.fail(self._error_type.UNKNOWN, exception=e)

    def is_transient(self, result: Result[Any, Any]) -> bool:
        return is_transient(result, self._error_type)


def is_transient(result: Result[Any, Any], error_type: type[Enum]) -> bool:
    """Timeout and Unknown failures are retried unless marked terminal."""
    return (
        not result.is_success
        and not result.terminal
        and result.error in (error_type.TIMEOUT, error_type.UNKNOWN)
    )


class ResiliencyPolicyBuilder:
    """
    Assembles a ResilientExecutor.

    Policies may be added in any order; build() always nests them as
    fallback → circuit breaker → timeout → retry → operation.
    """

    def __init__(self, name: str, error_type: type[Enum]):
        self.name = name
        self.error_type = error_type
        self._fallback: FallbackPolicy | None = None
        self._circuit_breaker: CircuitBreakerPolicy | None = None
        self._timeout: TimeoutPolicy | None = None
        self._retry: RetryPolicy | None = None
        self._attempt_timeout: timedelta | None = None

    def _transient(self, result: Result[Any, Any]) -> bool:
        return is_transient(result, self.error_type)

    def with_fallback(self, throw_on_failure: bool = False) -> "ResiliencyPolicyBuilder":
        self._fallback = FallbackPolicy(
            self.name, throw_on_failure, self.error_type.UNKNOWN
        )
        return self

    def with_circuit_breaker(self, breaker: CircuitBreaker) -> "ResiliencyPolicyBuilder":
        self._circuit_breaker = CircuitBreakerPolicy(
            breaker, self._transient, self.error_type.UNKNOWN
        )
        return self

    def with_timeout(self, timeout: timedelta) -> "ResiliencyPolicyBuilder":
        self._timeout = TimeoutPolicy(self.name, timeout, self.error_type.TIMEOUT)
        return self

    def with_retry(self, max_retries: int) -> "ResiliencyPolicyBuilder":
        self._retry = RetryPolicy(
            self.name, min(max(max_retries, 0), MAX_RETRIES), self._transient
        )
        return self

    def with_attempt_timeout(
        self, timeout: timedelta | None
    ) -> "ResiliencyPolicyBuilder":
        self._attempt_timeout = timeout
        return self

    def build(self) -> ResilientExecutor[Any]:
        policies: list[Policy] = [
            policy
            for policy in (self._circuit_breaker, self._timeout, self._retry)
            if policy is not None
        ]
        fallback = self._fallback or FallbackPolicy(
            self.name, False, self.error_type.UNKNOWN
        )
        return ResilientExecutor(
            self.name,
            self.error_type,
            policies,
            fallback,
            per_call_timeout=self._attempt_timeout,
        )
