"""Bulwark Execution - resilience stages for calls to remote endpoints.

WHY
───
Every provider adapter (Jira, Salesforce, Qdrant, ...) needs the same
machinery in front of its transport: throttling, fail-fast, connection reuse,
retries, bounded fan-out. ``bulwark.execution`` provides it once, as a
``RequestPipeline`` assembled from independent, separately testable stages.

ARCHITECTURE
────────────
::

    RequestPipeline (one logical operation)
      ├── SimulationLayer   ─ record / replay short-circuit
      ├── RetryOrchestrator ─ bounded attempt loop, auth refresh, backoff
      ├── CircuitBreaker    ─ fail-fast per endpoint
      ├── RateLimiter       ─ token bucket per endpoint
      ├── ConnectionPool    ─ leased transport handles
      └── ScopedGuard       ─ guaranteed release / discard

    EndpointRegistry ─ shares breaker + limiter across pipelines
    BatchExecutor    ─ semaphore-bounded fan-out of pipeline calls

MODULE MAP
──────────
  1. rate_limit.py       ─ TokenBucketLimiter, SlidingWindowLimiter
  2. circuit_breaker.py  ─ CircuitBreaker, CircuitState
  3. pool.py             ─ ConnectionPool, PooledConnection
  4. guard.py            ─ ScopedGuard
  5. retry.py            ─ RetryOrchestrator, backoff strategies
  6. registry.py         ─ EndpointRegistry
  7. pipeline.py         ─ RequestPipeline
  8. async_batch.py      ─ BatchExecutor, BatchResult
"""

from bulwark.execution.async_batch import BatchExecutor, BatchItem, BatchResult, chunked
from bulwark.execution.circuit_breaker import (
    CircuitBreaker,
    CircuitSnapshot,
    CircuitState,
    CircuitStats,
)
from bulwark.execution.guard import GuardState, ScopedGuard
from bulwark.execution.pipeline import RequestPipeline
from bulwark.execution.pool import ConnectionPool, ConnectionState, PooledConnection, PoolStats
from bulwark.execution.rate_limit import RateLimiter, SlidingWindowLimiter, TokenBucketLimiter
from bulwark.execution.registry import EndpointRegistry
from bulwark.execution.retry import (
    ConstantBackoff,
    ExponentialBackoff,
    NoRetry,
    RetryAction,
    RetryAttempt,
    RetryDecision,
    RetryHooks,
    RetryOrchestrator,
    RetryStrategy,
    with_retry,
)

__all__ = [
    # Rate limiting
    "RateLimiter",
    "TokenBucketLimiter",
    "SlidingWindowLimiter",
    # Circuit breaker
    "CircuitBreaker",
    "CircuitState",
    "CircuitStats",
    "CircuitSnapshot",
    # Pool
    "ConnectionPool",
    "ConnectionState",
    "PooledConnection",
    "PoolStats",
    # Guard
    "ScopedGuard",
    "GuardState",
    # Retry
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
    # Registry
    "EndpointRegistry",
    # Pipeline
    "RequestPipeline",
    # Batch
    "BatchExecutor",
    "BatchItem",
    "BatchResult",
    "chunked",
]
