"""Retry orchestration with classified decisions, backoff and auth refresh.

One logical operation may take several physical attempts. After each failed
attempt the orchestrator classifies the error and picks one action:

    auth expired        → refresh the credential, retry immediately
                          (at most ``max_auth_refreshes`` times)
    wait hint present   → sleep exactly ``retry_after`` seconds, retry
    server / timeout /  → sleep ``min(base * 2**n, max_delay)`` plus up to
    connection / 429      ``jitter_ratio`` of that, retry
    anything else       → surface the error

The loop never makes more than ``max_attempts`` physical attempts, auth
refreshes included. Non-idempotent operations only retry failures where the
request provably did not execute (auth expired, rate limited).

Example:
    >>> orchestrator = RetryOrchestrator(RetryConfig(max_attempts=5))
    >>> response = await orchestrator.execute_with_retry(
    ...     lambda attempt: send_once(),
    ...     refresh=credentials.refresh,
    ... )
"""

from __future__ import annotations

import asyncio
import functools
import random
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, TypeVar

from bulwark.core.errors import AuthDeniedError, BulwarkError, ErrorKind, classify_exception
from bulwark.core.logging import get_logger
from bulwark.core.settings import RetryConfig

logger = get_logger(__name__)

T = TypeVar("T")

# Kinds that prove the remote did not execute the request
_SAFE_FOR_NON_IDEMPOTENT = frozenset({ErrorKind.AUTH_EXPIRED, ErrorKind.RATE_LIMITED})


class RetryStrategy(ABC):
    """Abstract base for backoff strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Calculate delay before the next retry.

        Args:
            attempt: Zero-based retry number (0 = first retry)

        Returns:
            Delay in seconds
        """
        ...

    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        """Whether the strategy permits another retry at all."""
        return True


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with additive jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay)
            + uniform(0, jitter_ratio * that)

    Attributes:
        base_delay: Initial delay in seconds
        max_delay: Cap applied before jitter
        multiplier: Exponential multiplier (default: 2)
        jitter_ratio: Upper bound of the jitter as a fraction of the delay
        rng: Random source, injectable for tests
    """

    base_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter_ratio: float = 0.1
    rng: random.Random | None = None

    @classmethod
    def from_config(cls, config: RetryConfig) -> ExponentialBackoff:
        return cls(
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            jitter_ratio=config.jitter_ratio,
        )

    def next_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.multiplier**attempt), self.max_delay)
        if self.jitter_ratio > 0 and delay > 0:
            uniform = (self.rng or random).uniform
            delay += uniform(0, delay * self.jitter_ratio)
        return delay


@dataclass
class ConstantBackoff(RetryStrategy):
    """Constant delay between retries."""

    delay: float = 1.0

    def next_delay(self, attempt: int) -> float:
        return self.delay


@dataclass
class NoRetry(RetryStrategy):
    """Never retry on backoff-class errors. Auth refresh still applies."""

    def next_delay(self, attempt: int) -> float:
        return 0.0

    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        return False


class RetryAction(str, Enum):
    """What the orchestrator does after a failed attempt."""

    REFRESH = "refresh"
    BACKOFF = "backoff"
    SURFACE = "surface"


@dataclass(frozen=True)
class RetryDecision:
    action: RetryAction
    delay: float = 0.0
    reason: str = ""


@dataclass(frozen=True)
class RetryAttempt:
    """One failed attempt of a logical operation.

    Attributes:
        attempt_number: 1-based physical attempt that failed
        last_error: Its classified error
        next_delay: Seconds before the next attempt, None when surfacing
    """

    attempt_number: int
    last_error: BulwarkError
    next_delay: float | None = None


@dataclass
class RetryHooks:
    """Callbacks for monitoring; exceptions raised here propagate."""

    on_retry: Callable[[RetryAttempt], None] | None = None
    on_exhausted: Callable[[RetryAttempt], None] | None = None
    on_success: Callable[[int], None] | None = None


class RetryOrchestrator:
    """Drives the attempts of one logical operation.

    Args:
        config: Attempt budget and backoff parameters
        strategy: Backoff strategy; defaults to ``ExponentialBackoff`` from config
        hooks: Retry / exhausted / success callbacks
        sleep: Awaitable sleep, injectable for tests
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        strategy: RetryStrategy | None = None,
        hooks: RetryHooks | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or RetryConfig()
        self.strategy = strategy or ExponentialBackoff.from_config(self.config)
        self.hooks = hooks or RetryHooks()
        self._sleep = sleep

    def decide(
        self,
        error: BulwarkError,
        attempt_number: int,
        *,
        auth_refreshes: int = 0,
        auth_expired: bool | None = None,
        can_refresh: bool = False,
        idempotent: bool = True,
    ) -> RetryDecision:
        """Classify one failed attempt into an action."""
        if auth_expired is None:
            auth_expired = error.kind == ErrorKind.AUTH_EXPIRED

        if attempt_number >= self.config.max_attempts:
            return RetryDecision(RetryAction.SURFACE, reason="exhausted")

        if auth_expired:
            if not can_refresh:
                return RetryDecision(RetryAction.SURFACE, reason="no_credentials")
            if auth_refreshes >= self.config.max_auth_refreshes:
                return RetryDecision(RetryAction.SURFACE, reason="auth_refresh_limit")
            return RetryDecision(RetryAction.REFRESH, reason="auth_expired")

        if not error.retryable:
            return RetryDecision(RetryAction.SURFACE, reason="not_retryable")

        if not idempotent and error.kind not in _SAFE_FOR_NON_IDEMPOTENT:
            return RetryDecision(RetryAction.SURFACE, reason="not_idempotent")

        if error.retry_after is not None:
            return RetryDecision(RetryAction.BACKOFF, delay=error.retry_after, reason="retry_after")

        retry_index = attempt_number - 1
        if not self.strategy.should_retry(retry_index, error):
            return RetryDecision(RetryAction.SURFACE, reason="strategy")
        return RetryDecision(
            RetryAction.BACKOFF,
            delay=self.strategy.next_delay(retry_index),
            reason="backoff",
        )

    async def execute_with_retry(
        self,
        operation: Callable[[int], Awaitable[T]],
        *,
        refresh: Callable[[], Awaitable[Any]] | None = None,
        is_auth_expired: Callable[[BulwarkError], bool] | None = None,
        idempotent: bool = True,
        name: str = "operation",
    ) -> T:
        """Run ``operation(attempt_number)`` until it succeeds or must surface.

        ``operation`` should raise ``BulwarkError``; anything else is run
        through ``classify_exception``. ``asyncio.CancelledError`` is never
        caught, so cancellation ends the loop with no further attempt.
        """
        auth_refreshes = 0

        for attempt_number in range(1, self.config.max_attempts + 1):
            try:
                result = await operation(attempt_number)
            except Exception as exc:
                error = classify_exception(exc)
                decision = self.decide(
                    error,
                    attempt_number,
                    auth_refreshes=auth_refreshes,
                    auth_expired=is_auth_expired(error) if is_auth_expired else None,
                    can_refresh=refresh is not None,
                    idempotent=idempotent,
                )

                if decision.action == RetryAction.SURFACE:
                    if decision.reason == "exhausted" and error.retryable:
                        logger.warning(
                            "retry.exhausted",
                            operation=name,
                            attempts=attempt_number,
                            error=error.kind.value,
                        )
                        if self.hooks.on_exhausted:
                            self.hooks.on_exhausted(RetryAttempt(attempt_number, error))
                    if error is exc:
                        raise
                    raise error from exc

                attempt = RetryAttempt(attempt_number, error, decision.delay)
                logger.info(
                    "retry.scheduled",
                    operation=name,
                    attempt=attempt_number,
                    action=decision.action.value,
                    delay=round(decision.delay, 3),
                    error=error.kind.value,
                )
                if self.hooks.on_retry:
                    self.hooks.on_retry(attempt)

                if decision.action == RetryAction.REFRESH:
                    auth_refreshes += 1
                    await self._refresh(refresh, error, name)
                elif decision.delay > 0:
                    await self._sleep(decision.delay)
                continue

            if self.hooks.on_success:
                self.hooks.on_success(attempt_number)
            return result

        # range() is exhausted only through a surfaced error
        raise RuntimeError("retry loop exited without a result")

    async def _refresh(
        self,
        refresh: Callable[[], Awaitable[Any]],
        expired: BulwarkError,
        name: str,
    ) -> None:
        """Refresh credentials; a failed refresh surfaces as a classified error.

        Classified errors from ``refresh`` pass through. Anything else becomes
        ``AuthDeniedError``, which is never retried.
        """
        try:
            await refresh()
        except BulwarkError as e:
            logger.warning("retry.refresh_failed", operation=name, error=e.kind.value)
            raise
        except Exception as e:
            logger.warning("retry.refresh_failed", operation=name, error=str(e))
            raise AuthDeniedError(
                f"Credential refresh failed: {e.__class__.__name__}: {e}",
                context=replace(
                    expired.context,
                    metadata={**expired.context.metadata, "expired_error": expired.message},
                ),
                cause=e,
            ) from e


def with_retry(
    orchestrator: RetryOrchestrator | None = None,
    *,
    idempotent: bool = True,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator adding retry orchestration to an async function.

    Example:
        >>> @with_retry(RetryOrchestrator(RetryConfig(max_attempts=4)))
        ... async def fetch_issue(key):
        ...     return await client.get(key)
    """
    if orchestrator is None:
        orchestrator = RetryOrchestrator()

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await orchestrator.execute_with_retry(
                lambda _attempt: func(*args, **kwargs),
                idempotent=idempotent,
                name=func.__qualname__,
            )

        return wrapper

    return decorator


__all__ = [
    "RetryStrategy",
    "ExponentialBackoff",
    "ConstantBackoff",
    "NoRetry",
    "RetryAction",
    "RetryDecision",
    "RetryAttempt",
    "RetryHooks",
    "RetryOrchestrator",
    "with_retry",
]
