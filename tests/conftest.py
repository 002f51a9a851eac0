"""
Shared pytest fixtures for bulwark tests.

This module provides:
- A manual clock for breaker / limiter / pool timing
- A scripted fake transport and credential handle
- A pipeline factory wired with fast, isolated components

Usage:
    async def test_something(make_pipeline, transport):
        transport.script = [Response(503), Response(200, {"ok": True})]
        pipeline = make_pipeline()
        ...
"""

import asyncio
from collections.abc import Callable
from typing import Any

import pytest
import structlog

from bulwark.core.errors import AuthDeniedError, BulwarkError, ErrorKind
from bulwark.core.models import Request, Response
from bulwark.core.settings import (
    BulwarkSettings,
    CircuitBreakerConfig,
    PoolConfig,
    RateLimitConfig,
    RetryConfig,
)
from bulwark.execution.pipeline import RequestPipeline
from bulwark.execution.registry import EndpointRegistry
from bulwark.execution.retry import RetryOrchestrator
from bulwark.observability.metrics import MetricsRegistry, PipelineMetrics


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: fast isolated tests")
    config.addinivalue_line("markers", "integration: tests that compose several components")
    config.addinivalue_line("markers", "slow: tests that rely on wall-clock sleeps")


@pytest.fixture(autouse=True)
def clean_log_context():
    """Keep structlog contextvars from leaking between tests."""
    structlog.contextvars.clear_contextvars()
    yield
    structlog.contextvars.clear_contextvars()


# =============================================================================
# Fakes
# =============================================================================


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    """Transport whose ``send`` answers from a script.

    Each script entry is a ``Response``, an exception instance (raised), or a
    callable ``(handle, request) -> Response`` (may be async). When the script
    runs out, ``default`` is returned.
    """

    def __init__(self, default: Response | None = None):
        self.script: list[Any] = []
        self.default = default or Response(200, {"ok": True})
        self.delay = 0.0
        self.opened: list[str] = []
        self.closed: list[str] = []
        self.sent: list[tuple[str, Request]] = []
        self.fail_open: BaseException | None = None
        self._counter = 0

    async def open(self) -> str:
        if self.fail_open is not None:
            raise self.fail_open
        self._counter += 1
        handle = f"conn-{self._counter}"
        self.opened.append(handle)
        return handle

    async def send(self, handle: str, request: Request) -> Response:
        self.sent.append((handle, request))
        if self.delay:
            await asyncio.sleep(self.delay)
        entry = self.script.pop(0) if self.script else self.default
        if isinstance(entry, BaseException):
            raise entry
        if callable(entry):
            entry = entry(handle, request)
            if asyncio.iscoroutine(entry):
                entry = await entry
        return entry

    async def close(self, handle: str) -> None:
        self.closed.append(handle)

    @property
    def calls(self) -> int:
        return len(self.sent)


class FakeCredentials:
    """Credential handle that rotates a bearer token on refresh."""

    def __init__(self, fail_refresh: bool = False):
        self.refreshes = 0
        self.token = "token-1"
        self.fail_refresh = fail_refresh

    def attach(self, request: Request) -> None:
        request.headers["Authorization"] = f"Bearer {self.token}"

    def is_auth_expired(self, error: BulwarkError) -> bool:
        return error.kind == ErrorKind.AUTH_EXPIRED

    async def refresh(self) -> None:
        if self.fail_refresh:
            raise AuthDeniedError("refresh rejected")
        self.refreshes += 1
        self.token = f"token-{self.refreshes + 1}"


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def credentials() -> FakeCredentials:
    return FakeCredentials()


@pytest.fixture
def sleeps() -> list[float]:
    """Delays requested by the retry orchestrator (recorded, not slept)."""
    return []


@pytest.fixture
def fast_settings() -> BulwarkSettings:
    return BulwarkSettings(
        pool=PoolConfig(min_connections=0, max_connections=4, acquire_timeout=1.0),
        rate_limit=RateLimitConfig(refill_rate=1000, burst=1000),
        retry=RetryConfig(max_attempts=3, base_delay=0.5, max_delay=8.0),
        circuit_breaker=CircuitBreakerConfig(failure_threshold=3, success_threshold=2, reset_timeout=30.0),
        request_timeout=2.0,
    )


@pytest.fixture
def metrics() -> PipelineMetrics:
    return PipelineMetrics(MetricsRegistry())


@pytest.fixture
def make_pipeline(
    transport: FakeTransport,
    fast_settings: BulwarkSettings,
    sleeps: list[float],
    metrics: PipelineMetrics,
    clock: FakeClock,
) -> Callable[..., RequestPipeline]:
    """Factory building a pipeline around the fake transport.

    Retry sleeps are recorded into ``sleeps`` instead of awaited, and the
    breaker/limiter run on the manual ``clock``.
    """

    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    def factory(**overrides: Any) -> RequestPipeline:
        settings = overrides.pop("settings", fast_settings)
        kwargs: dict[str, Any] = {
            "settings": settings,
            "registry": EndpointRegistry(settings, clock=clock),
            "retry": RetryOrchestrator(settings.retry, sleep=record_sleep),
            "metrics": metrics,
        }
        kwargs.update(overrides)
        endpoint = kwargs.pop("endpoint", "test-endpoint")
        return RequestPipeline(endpoint, kwargs.pop("transport", transport), **kwargs)

    return factory
