"""
Result envelope for callers that prefer values over exceptions.

``RequestPipeline.execute()`` raises a classified ``BulwarkError``;
``RequestPipeline.execute_result()`` returns the same outcome as ``Ok`` or
``Err`` so adapters can branch with ``match`` instead of ``try``.

Examples:
    >>> result = await pipeline.execute_result(descriptor, payload)
    >>> match result:
    ...     case Ok(response):
    ...         handle(response.body)
    ...     case Err(error):
    ...         report(error.to_dict())

Tags:
    result-pattern, error-handling, functional-programming, bulwark

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeAlias, TypeVar, Union

from bulwark.core.errors import BulwarkError, classify_exception

T = TypeVar("T")
U = TypeVar("U")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Successful result containing a value."""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        """Get the value. Safe for Ok."""
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value

    def map(self, f: Callable[[T], U]) -> Result[U]:
        """Transform the value if Ok."""
        return Ok(f(self.value))

    def to_dict(self) -> dict[str, Any]:
        return {"ok": True, "value": self.value}

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True, slots=True)
class Err(Generic[T]):
    """Failed result containing a classified error."""

    error: BulwarkError

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> T:
        """Raise the contained error."""
        raise self.error

    def unwrap_or(self, default: T) -> T:
        return default

    def map(self, f: Callable[[T], U]) -> Result[U]:
        """Errors propagate through map unchanged."""
        return Err(self.error)

    def to_dict(self) -> dict[str, Any]:
        return {"ok": False, "error": self.error.to_dict()}

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


Result: TypeAlias = Union[Ok[T], Err[T]]


async def try_result_async(f: Callable[[], Awaitable[T]]) -> Result[T]:
    """Await ``f()`` and wrap its outcome.

    Only exceptions are captured; ``asyncio.CancelledError`` propagates.
    """
    try:
        return Ok(await f())
    except Exception as e:
        return Err(classify_exception(e))


def partition_results(results: list[Result[T]]) -> tuple[list[T], list[BulwarkError]]:
    """Split results into (values, errors), preserving order within each."""
    values: list[T] = []
    errors: list[BulwarkError] = []
    for result in results:
        if isinstance(result, Ok):
            values.append(result.value)
        else:
            errors.append(result.error)
    return values, errors


__all__ = ["Ok", "Err", "Result", "try_result_async", "partition_results"]
