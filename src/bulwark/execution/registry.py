"""Endpoint Registry - injectable endpoint key → breaker / limiter lookup.

Manifesto:
Breaker and limiter state belongs to a remote endpoint, not to a pipeline
instance: two pipelines talking to the same Jira site must see the same
open circuit and draw from the same token bucket. The registry owns that
state per endpoint key. It is an ordinary object passed to each pipeline,
so tests get isolated state by constructing a fresh one.

ARCHITECTURE
────────────
::

    EndpointRegistry(settings)
      ├── .breaker(key)    ─ get-or-create CircuitBreaker
      ├── .limiter(key)    ─ get-or-create TokenBucketLimiter
      ├── .endpoints()     ─ keys with any state
      ├── .snapshot()      ─ breaker snapshots + limiter stats
      └── .reset()         ─ drop all state

    Per-endpoint overrides: ``configure(key, circuit_breaker=..., rate_limit=...)``
    before first use.

Related modules:
    circuit_breaker.py - CircuitBreaker
    rate_limit.py      - TokenBucketLimiter
    pipeline.py        - looks up its endpoint's pair at construction

Tags:
    bulwark, execution, registry, endpoint, circuit-breaker, rate-limit

Doc-Types:
    api-reference
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any

from bulwark.core.settings import BulwarkSettings, CircuitBreakerConfig, RateLimitConfig, get_settings
from bulwark.execution.circuit_breaker import CircuitBreaker
from bulwark.execution.rate_limit import TokenBucketLimiter


class EndpointRegistry:
    """Per-endpoint breaker and limiter store.

    Example:
        >>> registry = EndpointRegistry(BulwarkSettings())
        >>> registry.configure("salesforce", rate_limit=RateLimitConfig(refill_rate=5, burst=5))
        >>> registry.limiter("salesforce").refill_rate
        5.0
    """

    def __init__(
        self,
        settings: BulwarkSettings | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings()
        self.clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._limiters: dict[str, TokenBucketLimiter] = {}
        self._breaker_overrides: dict[str, CircuitBreakerConfig] = {}
        self._limiter_overrides: dict[str, RateLimitConfig] = {}
        self._lock = threading.Lock()

    def configure(
        self,
        key: str,
        *,
        circuit_breaker: CircuitBreakerConfig | None = None,
        rate_limit: RateLimitConfig | None = None,
    ) -> None:
        """Override the settings for one endpoint before its first use."""
        with self._lock:
            if circuit_breaker is not None:
                if key in self._breakers:
                    raise ValueError(f"Circuit breaker for '{key}' already created")
                self._breaker_overrides[key] = circuit_breaker
            if rate_limit is not None:
                if key in self._limiters:
                    raise ValueError(f"Rate limiter for '{key}' already created")
                self._limiter_overrides[key] = rate_limit

    def breaker(self, key: str) -> CircuitBreaker:
        with self._lock:
            if key not in self._breakers:
                config = self._breaker_overrides.get(key, self.settings.circuit_breaker)
                self._breakers[key] = CircuitBreaker.from_config(config, name=key, clock=self.clock)
            return self._breakers[key]

    def limiter(self, key: str) -> TokenBucketLimiter:
        with self._lock:
            if key not in self._limiters:
                config = self._limiter_overrides.get(key, self.settings.rate_limit)
                self._limiters[key] = TokenBucketLimiter.from_config(config, name=key, clock=self.clock)
            return self._limiters[key]

    def endpoints(self) -> list[str]:
        with self._lock:
            return sorted(set(self._breakers) | set(self._limiters))

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Breaker state and limiter stats for every known endpoint."""
        with self._lock:
            breakers = dict(self._breakers)
            limiters = dict(self._limiters)
        result: dict[str, dict[str, Any]] = {}
        for key in sorted(set(breakers) | set(limiters)):
            entry: dict[str, Any] = {}
            if key in breakers:
                snap = breakers[key].snapshot()
                entry["circuit_state"] = snap.state.value
                entry["consecutive_failures"] = snap.consecutive_failures
            if key in limiters:
                entry["rate_limit"] = limiters[key].stats()
            result[key] = entry
        return result

    def reset(self) -> None:
        """Drop all endpoint state (tests, reconfiguration)."""
        with self._lock:
            self._breakers.clear()
            self._limiters.clear()


__all__ = ["EndpointRegistry"]
