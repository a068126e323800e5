"""
Tests for the ResilientExecutor pipeline.
"""

import asyncio
from datetime import timedelta

import pytest

from spresso.services.circuit_breaker import CircuitBreakerRegistry, CircuitState
from spresso.services.errors import (
    AuthError,
    CircuitOpenError,
    ResiliencyError,
    ServiceError,
    SpressoError,
)
from spresso.services.resilience import (
    ResiliencyConfig,
    ResiliencyPolicyBuilder,
    ResilientExecutor,
    is_transient,
)
from spresso.services.result import Result


class CountingOperation:
    """Returns queued results in order, repeating the last one."""

    def __init__(self, *results, delay: float = 0):
        self.results = list(results)
        self.delay = delay
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.results[min(self.calls, len(self.results)) - 1]
        if isinstance(result, BaseException):
            raise result
        return result


def make_executor(**config) -> ResilientExecutor:
    config.setdefault("max_retries", 3)
    return ResilientExecutor.create(
        "test", ResiliencyConfig(**config), SpressoError, CircuitBreakerRegistry()
    )


class TestResiliencyConfig:
    def test_defaults(self):
        config = ResiliencyConfig()

        assert config.max_retries == 3
        assert config.overall_timeout == timedelta(seconds=30)
        assert config.circuit_breaker_threshold == 10
        assert config.circuit_breaker_break_duration == timedelta(seconds=60)
        assert config.throw_on_failure is False

    def test_clamping(self):
        config = ResiliencyConfig(
            max_retries=50,
            overall_timeout=timedelta(minutes=10),
            circuit_breaker_threshold=0,
        )

        assert config.max_retries == 10
        assert config.overall_timeout == timedelta(seconds=180)
        assert config.circuit_breaker_threshold == 1
        assert ResiliencyConfig(max_retries=-1).max_retries == 0


class TestTransientClassification:
    def test_timeout_and_unknown_are_transient(self):
        assert is_transient(Result.fail(SpressoError.TIMEOUT), SpressoError)
        assert is_transient(Result.fail(SpressoError.UNKNOWN), SpressoError)

    def test_other_errors_are_not(self):
        assert not is_transient(Result.fail(SpressoError.AUTH_ERROR), SpressoError)
        assert not is_transient(Result.fail(SpressoError.BAD_REQUEST), SpressoError)
        assert not is_transient(Result.fail(AuthError.INVALID_SCOPES), AuthError)
        assert not is_transient(Result.ok(1), SpressoError)

    def test_terminal_failures_are_not(self):
        result = Result.fail(AuthError.UNKNOWN, terminal=True)
        assert not is_transient(result, AuthError)


class TestRetry:
    @pytest.mark.asyncio
    async def test_retries_transient_until_success(self):
        operation = CountingOperation(
            Result.fail(SpressoError.TIMEOUT),
            Result.fail(SpressoError.UNKNOWN),
            Result.ok("price"),
        )

        result = await make_executor().execute(operation)

        assert result.is_success
        assert result.value == "price"
        assert operation.calls == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        operation = CountingOperation(Result.fail(SpressoError.UNKNOWN))

        result = await make_executor(max_retries=2).execute(operation)

        assert result.error == SpressoError.UNKNOWN
        assert operation.calls == 3

    @pytest.mark.asyncio
    async def test_does_not_retry_non_transient(self):
        operation = CountingOperation(Result.fail(SpressoError.AUTH_ERROR))

        result = await make_executor().execute(operation)

        assert result.error == SpressoError.AUTH_ERROR
        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_exceptions_become_unknown_and_are_retried(self):
        operation = CountingOperation(ValueError("boom"), Result.ok(1))

        result = await make_executor().execute(operation)

        assert result.is_success
        assert operation.calls == 2


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_attempt_timeout_is_reported_as_timeout(self):
        operation = CountingOperation(Result.ok(1), delay=0.5)
        executor = make_executor(
            max_retries=1, per_call_timeout=timedelta(milliseconds=20)
        )

        result = await executor.execute(operation)

        assert result.error == SpressoError.TIMEOUT
        assert operation.calls == 2

    @pytest.mark.asyncio
    async def test_overall_timeout_bounds_all_attempts(self):
        operation = CountingOperation(Result.ok(1), delay=1)
        executor = make_executor(
            max_retries=10, overall_timeout=timedelta(milliseconds=50)
        )

        result = await executor.execute(operation)

        assert result.error == SpressoError.TIMEOUT
        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_cancellation_propagates_without_retry(self):
        operation = CountingOperation(Result.ok(1), delay=5)
        task = asyncio.create_task(make_executor().execute(operation))
        await asyncio.sleep(0.05)

        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert operation.calls == 1


class TestCircuitBreakerPolicy:
    @pytest.mark.asyncio
    async def test_one_logical_call_counts_one_failure(self):
        registry = CircuitBreakerRegistry()
        executor = ResilientExecutor.create(
            "test",
            ResiliencyConfig(max_retries=3, circuit_breaker_threshold=2),
            SpressoError,
            registry,
        )
        operation = CountingOperation(Result.fail(SpressoError.UNKNOWN))

        await executor.execute(operation)

        assert operation.calls == 4
        assert registry.get("test").failure_count == 1
        assert registry.get("test").state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_open_circuit_fails_fast_with_last_error(self):
        registry = CircuitBreakerRegistry()
        executor = ResilientExecutor.create(
            "test",
            ResiliencyConfig(max_retries=0, circuit_breaker_threshold=1),
            SpressoError,
            registry,
        )
        failing = CountingOperation(Result.fail(SpressoError.TIMEOUT))
        await executor.execute(failing)

        healthy = CountingOperation(Result.ok(1))
        result = await executor.execute(healthy)

        assert healthy.calls == 0
        assert result.error == SpressoError.TIMEOUT
        assert isinstance(result.exception, CircuitOpenError)

    @pytest.mark.asyncio
    async def test_non_transient_failures_do_not_trip(self):
        registry = CircuitBreakerRegistry()
        executor = ResilientExecutor.create(
            "test",
            ResiliencyConfig(max_retries=0, circuit_breaker_threshold=1),
            SpressoError,
            registry,
        )

        await executor.execute(CountingOperation(Result.fail(SpressoError.BAD_REQUEST)))

        assert registry.get("test").state == CircuitState.CLOSED


class TestFallback:
    @pytest.mark.asyncio
    async def test_substitutes_fallback_value(self):
        operation = CountingOperation(Result.fail(SpressoError.AUTH_ERROR))

        result = await make_executor().execute(
            operation, fallback_value=lambda error: f"default for {error.value}"
        )

        assert not result.is_success
        assert result.value == "default for AuthError"

    @pytest.mark.asyncio
    async def test_success_bypasses_fallback(self):
        result = await make_executor().execute(
            CountingOperation(Result.ok("optimized")),
            fallback_value=lambda error: "default",
        )

        assert result.value == "optimized"

    @pytest.mark.asyncio
    async def test_throw_on_failure_raises_original_exception(self):
        error = ServiceError("HTTP 500")
        operation = CountingOperation(Result.fail(SpressoError.UNKNOWN, exception=error))

        with pytest.raises(ServiceError) as exc_info:
            await make_executor(max_retries=0, throw_on_failure=True).execute(operation)

        assert exc_info.value is error

    @pytest.mark.asyncio
    async def test_throw_on_failure_without_exception(self):
        operation = CountingOperation(Result.fail(SpressoError.BAD_REQUEST))

        with pytest.raises(ResiliencyError) as exc_info:
            await make_executor(throw_on_failure=True).execute(operation)

        assert exc_info.value.error == SpressoError.BAD_REQUEST


class TestPolicyBuilder:
    @pytest.mark.asyncio
    async def test_order_is_fixed_regardless_of_registration(self):
        registry = CircuitBreakerRegistry()
        executor = (
            ResiliencyPolicyBuilder("test", SpressoError)
            .with_retry(3)
            .with_timeout(timedelta(seconds=5))
            .with_circuit_breaker(registry.get("test"))
            .with_fallback()
            .build()
        )
        operation = CountingOperation(Result.fail(SpressoError.UNKNOWN))

        await executor.execute(operation)

        # Breaker wraps retry, so four attempts count as one failure
        assert operation.calls == 4
        assert registry.get("test").failure_count == 1
