"""
CircuitBreaker - Stops calling a failing remote operation for a cooldown period.

States:
- CLOSED: Normal operation, calls pass through
- OPEN: Operation is failing, calls fail immediately with the last error
- HALF_OPEN: Exactly one probe call is let through

Transitions:
- CLOSED → OPEN: When consecutive failures reach failure_threshold
- OPEN → HALF_OPEN: After break_duration expires
- HALF_OPEN → CLOSED: Probe succeeded
- HALF_OPEN → OPEN: Probe failed (break timer restarts)
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from loguru import logger


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 10
    break_duration: timedelta = timedelta(seconds=60)

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            self.failure_threshold = 1


class CircuitBreaker:
    """
    Circuit breaker for a single remote operation kind.

    State is shared by every concurrent caller of the operation; transitions
    happen under an asyncio lock. Every transition starts a new generation,
    and outcomes reported for an earlier generation are ignored, so a slow
    call admitted before the breaker opened cannot close or reopen it.

    Usage:
        cb = CircuitBreaker("token")

        generation = await cb.try_acquire()
        if generation is None:
            return Result.fail(cb.last_error, exception=CircuitOpenError(...))

        result = await make_request()
        if result_is_transient_failure:
            await cb.record_failure(result.error, generation)
        else:
            await cb.record_success(generation)
    """

    def __init__(
        self,
        service_id: str,
        config: CircuitBreakerConfig | None = None,
    ):
        self.service_id = service_id
        self.config = config or CircuitBreakerConfig()

        self._state = CircuitState.CLOSED
        self._generation = 0
        self._failure_count = 0
        self._last_error: Enum | None = None
        self._last_failure_time: datetime | None = None
        self._opened_at: datetime | None = None
        self._probe_in_flight = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        """Get current state, checking for the timed OPEN → HALF_OPEN move."""
        self._refresh()
        return self._state

    @property
    def last_error(self) -> Enum | None:
        return self._last_error

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def generation(self) -> int:
        return self._generation

    def _refresh(self) -> None:
        if (
            self._state == CircuitState.OPEN
            and self._opened_at
            and datetime.now() >= self._opened_at + self.config.break_duration
        ):
            self._state = CircuitState.HALF_OPEN
            self._generation += 1
            self._probe_in_flight = False
            logger.info(
                f"Circuit breaker '{self.service_id}' transitioned to HALF_OPEN"
            )

    def _is_stale(self, generation: int | None) -> bool:
        if generation is None or generation == self._generation:
            return False
        logger.debug(
            f"Circuit breaker '{self.service_id}' ignoring outcome from "
            f"generation {generation} (current {self._generation})"
        )
        return True

    async def try_acquire(self) -> int | None:
        """
        Admit a call, claiming the probe slot if half-open.

        Returns the generation the call was admitted under, or None when the
        call must fail fast.
        """
        async with self._lock:
            self._refresh()

            if self._state == CircuitState.CLOSED:
                return self._generation

            if self._state == CircuitState.HALF_OPEN and not self._probe_in_flight:
                self._probe_in_flight = True
                return self._generation

            return None

    async def record_success(self, generation: int | None = None) -> None:
        """Record a call that did not fail transiently."""
        async with self._lock:
            if self._is_stale(generation):
                return
            if self._state == CircuitState.HALF_OPEN:
                self._close()
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    async def record_failure(self, error: Enum, generation: int | None = None) -> None:
        """Record a transient failure."""
        async with self._lock:
            if self._is_stale(generation):
                return
            self._failure_count += 1
            self._last_error = error
            self._last_failure_time = datetime.now()

            if self._state == CircuitState.HALF_OPEN:
                self._open()
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.config.failure_threshold
            ):
                self._open()

    def release_probe(self, generation: int | None = None) -> None:
        """
        Give back the half-open probe slot of a call that never completed.

        Synchronous so it can run while a cancellation is unwinding.
        """
        if self._state == CircuitState.HALF_OPEN and not self._is_stale(generation):
            self._probe_in_flight = False

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._generation += 1
        self._opened_at = datetime.now()
        self._probe_in_flight = False
        logger.warning(
            f"Circuit breaker '{self.service_id}' OPENED after {self._failure_count} "
            f"failures for {self.config.break_duration.total_seconds()}s "
            f"(last error: {self._last_error.value if self._last_error else None})"
        )

    def _close(self) -> None:
        self._state = CircuitState.CLOSED
        self._generation += 1
        self._failure_count = 0
        self._opened_at = None
        self._probe_in_flight = False
        logger.info(f"Circuit breaker '{self.service_id}' CLOSED (recovered)")

    def reset(self) -> None:
        """Manually reset the circuit breaker."""
        self._state = CircuitState.CLOSED
        self._generation += 1
        self._failure_count = 0
        self._opened_at = None
        self._probe_in_flight = False
        self._last_error = None
        self._last_failure_time = None
        logger.info(f"Circuit breaker '{self.service_id}' manually reset")

    def get_time_until_reset(self) -> float | None:
        """Get seconds until circuit transitions to half-open."""
        if self._state != CircuitState.OPEN or not self._opened_at:
            return None

        reset_at = self._opened_at + self.config.break_duration
        remaining = (reset_at - datetime.now()).total_seconds()
        return max(0, remaining)

    def get_status(self) -> dict[str, Any]:
        """Get current status as dictionary."""
        return {
            "service_id": self.service_id,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "generation": self._generation,
            "last_error": self._last_error.value if self._last_error else None,
            "last_failure": (
                self._last_failure_time.isoformat() if self._last_failure_time else None
            ),
            "opened_at": (self._opened_at.isoformat() if self._opened_at else None),
            "time_until_reset": self.get_time_until_reset(),
        }


class CircuitBreakerRegistry:
    """
    Registry holding one circuit breaker per remote operation kind.

    Usage:
        registry = CircuitBreakerRegistry()
        cb = registry.get("token", CircuitBreakerConfig(failure_threshold=4))
    """

    def __init__(self, default_config: CircuitBreakerConfig | None = None):
        self._breakers: dict[str, CircuitBreaker] = {}
        self._default_config = default_config or CircuitBreakerConfig()

    def get(
        self,
        service_id: str,
        config: CircuitBreakerConfig | None = None,
    ) -> CircuitBreaker:
        """Get or create a circuit breaker for an operation kind."""
        if service_id not in self._breakers:
            self._breakers[service_id] = CircuitBreaker(
                service_id,
                config or self._default_config,
            )
        return self._breakers[service_id]

    def get_all_status(self) -> dict[str, dict[str, Any]]:
        """Get status of all circuit breakers."""
        return {
            service_id: cb.get_status() for service_id, cb in self._breakers.items()
        }

    def reset_all(self) -> None:
        """Reset all circuit breakers."""
        for cb in self._breakers.values():
            cb.reset()
        logger.info(f"Reset {len(self._breakers)} circuit breakers")

    def reset(self, service_id: str) -> bool:
        """Reset a specific circuit breaker."""
        if service_id in self._breakers:
            self._breakers[service_id].reset()
            return True
        return False

    def get_open_circuits(self) -> list[str]:
        """Get list of operations with open circuits."""
        return [
            service_id
            for service_id, cb in self._breakers.items()
            if cb.state == CircuitState.OPEN
        ]
