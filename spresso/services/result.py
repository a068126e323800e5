"""
Result - typed success/error value returned by every resilient operation.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")
E = TypeVar("E", bound=Enum)


@dataclass(frozen=True)
class Result(Generic[T, E]):
    """
    Outcome of an operation.

    A result with ``error is None`` is a success. A failed result may still
    carry a usable ``value`` (e.g. default prices substituted by a fallback).
    ``terminal`` marks a failure that must not be retried even when its error
    kind is normally transient.
    """

    value: T | None = None
    error: E | None = None
    exception: BaseException | None = None
    terminal: bool = False

    @property
    def is_success(self) -> bool:
        return self.error is None

    @classmethod
    def ok(cls, value: Any) -> "Result[Any, Any]":
        return cls(value=value)

    @classmethod
    def fail(
        cls,
        error: Any,
        value: Any = None,
        exception: BaseException | None = None,
        terminal: bool = False,
    ) -> "Result[Any, Any]":
        return cls(value=value, error=error, exception=exception, terminal=terminal)

    def with_value(self, value: T) -> "Result[T, E]":
        """Copy of this result carrying a different value."""
        return replace(self, value=value)
