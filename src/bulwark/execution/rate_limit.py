"""Rate Limiting - client-side admission throttle per remote endpoint.

Manifesto:
Remote APIs (Jira, Salesforce, Qdrant, ...) enforce rate limits and answer
with 429 once exceeded. The limiter throttles outgoing attempts *before* they
hit the limit. It never rejects: a caller that finds the bucket empty is
suspended until a token accrues.

ARCHITECTURE
────────────
::

    RateLimiter (ABC)
      ├── TokenBucketLimiter     ─ steady refill_rate + burst capacity
      └── SlidingWindowLimiter   ─ exact count in rolling window

    acquire()      ─ async, suspends the calling task until admitted
    try_acquire()  ─ non-blocking, returns bool
    get_wait_time()─ seconds until one token is available

    Refill-and-take happens under a threading.Lock with no await inside,
    so concurrent acquirers resolve to exactly one winner per token.

ADAPTIVE MODE
─────────────
With ``adaptive=True`` the bucket reacts to the remote's own throttling:
each consecutive 429 (``on_rate_limited``) halves the effective refill rate,
each success (``on_success``) recovers it by 10% up to the configured rate.

Related modules:
    circuit_breaker.py - fail-fast on sustained failures
    retry.py           - backoff on transient failures
    pipeline.py        - acquires one token per physical attempt

Example::

    limiter = TokenBucketLimiter(refill_rate=10, max_tokens=10)
    await limiter.acquire()
    await send()

Tags:
    bulwark, execution, rate-limit, throttle, token-bucket

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from bulwark.core.logging import get_logger
from bulwark.core.settings import RateLimitConfig

logger = get_logger(__name__)

# Floor for the adaptive rate, in tokens per second
MIN_ADAPTIVE_RATE = 1.0


class RateLimiter(ABC):
    """Abstract base for rate limiters."""

    @abstractmethod
    def try_acquire(self) -> bool:
        """Take one token if available, without waiting."""
        ...

    @abstractmethod
    def get_wait_time(self) -> float:
        """Seconds until one token is available (0 if available now)."""
        ...

    async def acquire(self) -> None:
        """Suspend the calling task until one token has been taken."""
        while True:
            if self.try_acquire():
                return
            await asyncio.sleep(self.get_wait_time())

    def on_rate_limited(self) -> None:
        """Remote answered 429. No-op unless the limiter adapts."""

    def on_success(self) -> None:
        """Remote answered successfully. No-op unless the limiter adapts."""


@dataclass
class TokenBucketLimiter(RateLimiter):
    """Token bucket rate limiter.

    Tokens accrue continuously at ``refill_rate`` per second up to
    ``max_tokens`` (the burst). The bucket starts full.

    Attributes:
        refill_rate: Tokens added per second
        max_tokens: Maximum tokens (burst size)
        adaptive: Halve the rate on 429s, recover on successes
        name: Endpoint key, for logs
        clock: Monotonic time source (seconds)
    """

    refill_rate: float
    max_tokens: float
    adaptive: bool = False
    name: str = "default"
    clock: Callable[[], float] = time.monotonic

    _tokens: float = field(default=0.0, init=False)
    _last_refill: float = field(default=0.0, init=False)
    _current_rate: float = field(default=0.0, init=False)
    _consecutive_limited: int = field(default=0, init=False)
    _granted: int = field(default=0, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False)

    def __post_init__(self):
        if self.refill_rate <= 0:
            raise ValueError(f"refill_rate must be positive, got {self.refill_rate}")
        if self.max_tokens < 1:
            raise ValueError(f"max_tokens must be at least 1, got {self.max_tokens}")
        self._tokens = float(self.max_tokens)
        self._last_refill = self.clock()
        self._current_rate = self.refill_rate

    @classmethod
    def from_config(cls, config: RateLimitConfig, name: str = "default", **kwargs: Any) -> TokenBucketLimiter:
        return cls(
            refill_rate=config.refill_rate,
            max_tokens=config.burst,
            adaptive=config.adaptive,
            name=name,
            **kwargs,
        )

    def _refill(self) -> None:
        """Add tokens based on elapsed time."""
        now = self.clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(float(self.max_tokens), self._tokens + elapsed * self._current_rate)
        self._last_refill = now

    def try_acquire(self) -> bool:
        with self._lock:
            self._refill()
            if self._tokens >= 1:
                self._tokens -= 1
                self._granted += 1
                return True
            return False

    def get_wait_time(self) -> float:
        with self._lock:
            self._refill()
            if self._tokens >= 1:
                return 0.0
            return (1 - self._tokens) / self._current_rate

    def on_rate_limited(self) -> None:
        if not self.adaptive:
            return
        with self._lock:
            self._refill()
            self._consecutive_limited += 1
            floor = min(MIN_ADAPTIVE_RATE, self.refill_rate)
            self._current_rate = max(floor, self.refill_rate * (0.5 ** self._consecutive_limited))
            rate = self._current_rate
        logger.warning(
            "rate_limit.adapted_down",
            endpoint=self.name,
            rate=rate,
            consecutive=self._consecutive_limited,
        )

    def on_success(self) -> None:
        if not self.adaptive:
            return
        with self._lock:
            if self._consecutive_limited == 0 and self._current_rate >= self.refill_rate:
                return
            self._refill()
            self._consecutive_limited = max(0, self._consecutive_limited - 1)
            self._current_rate = min(self.refill_rate, self._current_rate * 1.1)

    @property
    def available_tokens(self) -> float:
        """Get current available tokens."""
        with self._lock:
            self._refill()
            return self._tokens

    @property
    def current_rate(self) -> float:
        return self._current_rate

    def stats(self) -> dict[str, Any]:
        with self._lock:
            self._refill()
            return {
                "endpoint": self.name,
                "available_tokens": self._tokens,
                "max_tokens": self.max_tokens,
                "refill_rate": self.refill_rate,
                "current_rate": self._current_rate,
                "granted": self._granted,
                "consecutive_rate_limited": self._consecutive_limited,
            }

    def reset(self) -> None:
        """Refill the bucket and restore the configured rate."""
        with self._lock:
            self._tokens = float(self.max_tokens)
            self._last_refill = self.clock()
            self._current_rate = self.refill_rate
            self._consecutive_limited = 0


@dataclass
class SlidingWindowLimiter(RateLimiter):
    """Sliding window rate limiter.

    Admits at most ``max_requests`` in any ``window_seconds`` window.

    Attributes:
        max_requests: Maximum requests per window
        window_seconds: Window size in seconds
    """

    max_requests: int
    window_seconds: float
    clock: Callable[[], float] = time.monotonic

    _timestamps: list[float] = field(default_factory=list, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False)

    def _cleanup(self, now: float) -> None:
        """Remove timestamps outside the window."""
        cutoff = now - self.window_seconds
        self._timestamps = [ts for ts in self._timestamps if ts > cutoff]

    def try_acquire(self) -> bool:
        with self._lock:
            now = self.clock()
            self._cleanup(now)
            if len(self._timestamps) < self.max_requests:
                self._timestamps.append(now)
                return True
            return False

    def get_wait_time(self) -> float:
        with self._lock:
            now = self.clock()
            self._cleanup(now)
            if len(self._timestamps) < self.max_requests:
                return 0.0
            oldest = self._timestamps[0]
            return max(0.0, (oldest + self.window_seconds) - now)

    @property
    def current_count(self) -> int:
        """Get current request count in window."""
        with self._lock:
            self._cleanup(self.clock())
            return len(self._timestamps)
