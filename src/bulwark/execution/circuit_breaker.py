"""Circuit breaker pattern for fault tolerance.

Prevents cascading failures by failing fast when a remote endpoint is
experiencing issues. One breaker guards one endpoint key.

States:
    CLOSED: Normal operation, attempts pass through
    OPEN: Failing fast, attempts rejected with CircuitOpenError(retry_after)
    HALF_OPEN: One probe at a time tests whether the remote recovered

Transitions (the only legal ones):
    CLOSED    → OPEN       failure_threshold consecutive remote failures
    OPEN      → HALF_OPEN  reset_timeout elapsed since opened_at
    HALF_OPEN → CLOSED     success_threshold consecutive probe successes
    HALF_OPEN → OPEN       any probe failure (reset_timeout restarts)

Outcomes:
    Only remote-attributable failures (5xx, timeout, connection) count as
    failures. 4xx answers, 429s, auth expiry and cancellations are *neutral*:
    they prove nothing about the remote's health, so they move no counters,
    but they do release a held half-open probe slot.

Example:
    >>> breaker = CircuitBreaker(name="jira", failure_threshold=5, reset_timeout=30.0)
    >>>
    >>> if not breaker.allow_request():
    ...     raise CircuitOpenError(retry_after=breaker.retry_after())
    >>> try:
    ...     response = await send()
    ... except ServerError as e:
    ...     breaker.record_failure(e)
    ...     raise
    >>> breaker.record_success()
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from bulwark.core.errors import CircuitOpenError
from bulwark.core.logging import get_logger
from bulwark.core.settings import CircuitBreakerConfig

logger = get_logger(__name__)


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Rejecting requests
    HALF_OPEN = "half_open"  # Testing recovery


_ALLOWED_TRANSITIONS = {
    (CircuitState.CLOSED, CircuitState.OPEN),
    (CircuitState.OPEN, CircuitState.HALF_OPEN),
    (CircuitState.HALF_OPEN, CircuitState.CLOSED),
    (CircuitState.HALF_OPEN, CircuitState.OPEN),
}


@dataclass
class CircuitStats:
    """Statistics for circuit breaker monitoring."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    neutral_requests: int = 0
    rejected_requests: int = 0
    state_changes: int = 0
    last_failure_time: datetime | None = None
    last_success_time: datetime | None = None
    last_state_change: datetime | None = None

    @property
    def failure_rate(self) -> float:
        """Calculate failure rate as percentage."""
        total = self.successful_requests + self.failed_requests
        if total == 0:
            return 0.0
        return (self.failed_requests / total) * 100


@dataclass(frozen=True)
class CircuitSnapshot:
    """Read-only copy of the breaker's state."""

    name: str
    state: CircuitState
    consecutive_failures: int
    consecutive_successes: int
    opened_at: float | None


@dataclass
class CircuitBreaker:
    """Circuit breaker for one remote endpoint.

    Attributes:
        name: Endpoint key
        failure_threshold: Consecutive remote failures before opening
        reset_timeout: Seconds to stay open before admitting a probe
        success_threshold: Consecutive probe successes needed to close
        failure_decay: How a closed-state success treats the failure count;
            ``"decrement"`` subtracts one, ``"reset"`` zeroes it
        clock: Monotonic time source (seconds)
    """

    name: str = "default"
    failure_threshold: int = 5
    reset_timeout: float = 30.0
    success_threshold: int = 2
    failure_decay: Literal["decrement", "reset"] = "decrement"
    clock: Callable[[], float] = time.monotonic

    # Internal state
    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _success_count: int = field(default=0, init=False)
    _opened_at: float | None = field(default=None, init=False)
    _probe_in_flight: bool = field(default=False, init=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False)
    _stats: CircuitStats = field(default_factory=CircuitStats, init=False)

    @classmethod
    def from_config(cls, config: CircuitBreakerConfig, name: str = "default", **kwargs: Any) -> CircuitBreaker:
        return cls(
            name=name,
            failure_threshold=config.failure_threshold,
            reset_timeout=config.reset_timeout,
            success_threshold=config.success_threshold,
            failure_decay=config.failure_decay,
            **kwargs,
        )

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        with self._lock:
            self._check_state_transition()
            return self._state

    @property
    def stats(self) -> CircuitStats:
        """Get circuit statistics."""
        return self._stats

    def snapshot(self) -> CircuitSnapshot:
        with self._lock:
            self._check_state_transition()
            return CircuitSnapshot(
                name=self.name,
                state=self._state,
                consecutive_failures=self._failure_count,
                consecutive_successes=self._success_count,
                opened_at=self._opened_at,
            )

    def _check_state_transition(self) -> None:
        """Move OPEN → HALF_OPEN once the reset timeout has elapsed."""
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if self.clock() - self._opened_at >= self.reset_timeout:
                self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        if (old_state, new_state) not in _ALLOWED_TRANSITIONS:
            raise RuntimeError(f"Illegal circuit transition {old_state.value} -> {new_state.value}")

        self._state = new_state
        self._stats.state_changes += 1
        self._stats.last_state_change = utcnow()

        if new_state == CircuitState.OPEN:
            self._opened_at = self.clock()
            self._success_count = 0
        elif new_state == CircuitState.HALF_OPEN:
            self._success_count = 0
            self._probe_in_flight = False
        elif new_state == CircuitState.CLOSED:
            self._failure_count = 0
            self._success_count = 0
            self._opened_at = None

        logger.info(
            "circuit_breaker.transition",
            endpoint=self.name,
            from_state=old_state.value,
            to_state=new_state.value,
        )

    def _admit(self) -> tuple[bool, bool]:
        """Return (admitted, is_probe) for one physical attempt."""
        with self._lock:
            self._check_state_transition()
            self._stats.total_requests += 1

            if self._state == CircuitState.CLOSED:
                return True, False

            if self._state == CircuitState.HALF_OPEN and not self._probe_in_flight:
                self._probe_in_flight = True
                return True, True

            self._stats.rejected_requests += 1
            return False, False

    def allow_request(self) -> bool:
        """Admit or reject one physical attempt.

        In HALF_OPEN only one probe may be in flight; the slot is released by
        the matching ``record_*`` call.
        """
        admitted, _ = self._admit()
        return admitted

    def retry_after(self) -> float:
        """Seconds until the breaker will admit a probe (0 if it would now)."""
        with self._lock:
            if self._state == CircuitState.OPEN and self._opened_at is not None:
                return max(0.0, self.reset_timeout - (self.clock() - self._opened_at))
            return 0.0

    def check(self) -> bool:
        """Admit one attempt or raise ``CircuitOpenError``.

        Returns True when the attempt was admitted as the half-open probe;
        pass that flag back as ``probe=`` when recording its outcome.
        """
        admitted, is_probe = self._admit()
        if not admitted:
            retry_after = self.retry_after()
            raise CircuitOpenError(
                f"Circuit '{self.name}' is open, retry after {retry_after:.2f}s",
                retry_after=retry_after,
            )
        return is_probe

    def _is_probe(self, probe: bool | None) -> bool:
        # Callers using allow_request() directly do not track probes
        if probe is None:
            return self._state == CircuitState.HALF_OPEN
        return probe and self._state == CircuitState.HALF_OPEN

    def record_success(self, probe: bool | None = None) -> None:
        """Record a successful attempt.

        In HALF_OPEN, a success from an attempt admitted before the circuit
        opened (``probe=False``) does not count toward closing.
        """
        with self._lock:
            self._stats.successful_requests += 1
            self._stats.last_success_time = utcnow()

            if self._state == CircuitState.HALF_OPEN:
                if not self._is_probe(probe):
                    return
                self._probe_in_flight = False
                self._success_count += 1
                if self._success_count >= self.success_threshold:
                    self._transition_to(CircuitState.CLOSED)
            elif self._state == CircuitState.CLOSED:
                if self.failure_decay == "reset":
                    self._failure_count = 0
                else:
                    self._failure_count = max(0, self._failure_count - 1)

    def record_failure(self, error: BaseException | None = None, probe: bool | None = None) -> None:
        """Record a remote-attributable failure."""
        with self._lock:
            self._stats.failed_requests += 1
            self._stats.last_failure_time = utcnow()

            if self._state == CircuitState.CLOSED:
                self._failure_count += 1
                if self._failure_count >= self.failure_threshold:
                    logger.warning(
                        "circuit_breaker.opening",
                        endpoint=self.name,
                        failures=self._failure_count,
                        error=str(error) if error is not None else None,
                    )
                    self._transition_to(CircuitState.OPEN)

            elif self._state == CircuitState.HALF_OPEN and self._is_probe(probe):
                # Any probe failure reopens the circuit
                self._probe_in_flight = False
                self._failure_count += 1
                self._transition_to(CircuitState.OPEN)

    def record_neutral(self, probe: bool | None = None) -> None:
        """Record an outcome that says nothing about the remote's health."""
        with self._lock:
            self._stats.neutral_requests += 1
            if self._is_probe(probe):
                self._probe_in_flight = False

    def record_outcome(self, error: BaseException | None, probe: bool | None = None) -> None:
        """Dispatch one attempt's outcome to success / failure / neutral."""
        if error is None:
            self.record_success(probe)
        elif getattr(error, "trips_breaker", False):
            self.record_failure(error, probe)
        else:
            self.record_neutral(probe)

    def reset(self) -> None:
        """Reset circuit to closed state (for maintenance)."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._success_count = 0
            self._opened_at = None
            self._probe_in_flight = False
            self._stats.state_changes += 1
            self._stats.last_state_change = utcnow()

    def force_open(self) -> None:
        """Force circuit to open state (for testing/maintenance)."""
        with self._lock:
            self._state = CircuitState.OPEN
            self._opened_at = self.clock()
            self._probe_in_flight = False
            self._stats.state_changes += 1
            self._stats.last_state_change = utcnow()
