"""Scoped acquisition guard with a guaranteed finalizer.

A resource acquired for the duration of one step (a pooled connection, a bulk
job handle) must be handed back on every exit path. ``ScopedGuard`` pairs the
acquisition with two finalizers: ``on_complete`` when the holder marked the
work done, ``on_abort`` otherwise. Exceptions and ``asyncio.CancelledError``
both take the abort path.

Example::

    async with ScopedGuard(pool.acquire, on_complete=pool.release, on_abort=discard) as guard:
        response = await transport.send(guard.resource.handle, request)
        guard.complete()
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, Generic, TypeVar

from bulwark.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class GuardState(str, Enum):
    """Lifecycle of one guarded acquisition."""

    IDLE = "idle"
    PENDING = "pending"
    COMPLETED = "completed"
    RELEASED = "released"
    ABORTED = "aborted"


class ScopedGuard(Generic[T]):
    """Async context manager around one acquire / finalize pair.

    Args:
        acquire: Coroutine function returning the resource
        on_complete: Finalizer run when ``complete()`` was called
        on_abort: Finalizer run on any other exit, including cancellation
        name: Label for logs
    """

    def __init__(
        self,
        acquire: Callable[[], Awaitable[T]],
        *,
        on_complete: Callable[[T], Awaitable[Any]],
        on_abort: Callable[[T], Awaitable[Any]],
        name: str = "guard",
    ):
        self._acquire = acquire
        self._on_complete = on_complete
        self._on_abort = on_abort
        self.name = name
        self.state = GuardState.IDLE
        self._resource: T | None = None

    @property
    def resource(self) -> T:
        if self._resource is None:
            raise RuntimeError(f"Guard '{self.name}' holds no resource")
        return self._resource

    @property
    def completed(self) -> bool:
        return self.state == GuardState.COMPLETED

    def complete(self) -> None:
        """Mark the guarded work as done; the exit will release normally."""
        if self.state != GuardState.PENDING:
            raise RuntimeError(f"Guard '{self.name}' cannot complete from {self.state.value}")
        self.state = GuardState.COMPLETED

    async def __aenter__(self) -> ScopedGuard[T]:
        if self.state != GuardState.IDLE:
            raise RuntimeError(f"Guard '{self.name}' is not reusable")
        self._resource = await self._acquire()
        self.state = GuardState.PENDING
        return self

    async def __aexit__(self, exc_type: Any, exc: BaseException | None, tb: Any) -> None:
        resource = self._resource
        if self.state == GuardState.COMPLETED:
            self.state = GuardState.RELEASED
            await self._on_complete(resource)
            return

        self.state = GuardState.ABORTED
        logger.debug(
            "guard.abort",
            guard=self.name,
            reason=exc_type.__name__ if exc_type is not None else "not_completed",
        )
        if exc is None:
            await self._on_abort(resource)
            return

        # The original exception wins over a failing finalizer
        try:
            await self._on_abort(resource)
        except Exception as abort_error:
            logger.warning(
                "guard.abort_failed",
                guard=self.name,
                error=str(abort_error),
                original_error=exc_type.__name__,
            )


__all__ = ["GuardState", "ScopedGuard"]
