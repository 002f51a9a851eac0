"""Request Pipeline - one logical operation through every resilience stage.

Manifesto:
An adapter should describe *what* to call (an ``OperationDescriptor`` and a
payload) and get back a response or one classified error. Everything in
between (replay, fail-fast, throttling, connection reuse, credentials,
retries) is the pipeline's job and happens in the same order every time.

ARCHITECTURE
────────────
::

    execute(descriptor, payload)
      │
      ├─ SimulationLayer.lookup ──── recorded? ──▶ return replayed response
      │
      └─ RetryOrchestrator.execute_with_retry
           │   (one pass per physical attempt)
           ├─ CircuitBreaker.check        ─ CircuitOpenError fails fast
           ├─ RateLimiter.acquire         ─ waits, never rejects
           ├─ ScopedGuard(pool.acquire)   ─ lease; discard on error/cancel
           ├─ CredentialHandle.attach
           ├─ Transport.send              ─ bounded by request_timeout
           ├─ classify_response           ─ non-2xx → BulwarkError
           ├─ pool.release                ─ exactly once
           └─ CircuitBreaker.record_outcome ─ exactly once
      │
      └─ SimulationLayer.record ─ RECORD / PASSTHROUGH only

    Spans: ``pipeline.operation`` around the whole call,
           ``pipeline.attempt`` around each physical attempt.

Related modules:
    registry.py    - shared breaker / limiter per endpoint
    async_batch.py - many pipeline calls under one semaphore

Example::

    pipeline = RequestPipeline("jira", transport, credentials=creds, registry=registry)
    async with pipeline:
        response = await pipeline.execute(OperationDescriptor("issue.get"), {"key": "ABC-1"})

Tags:
    bulwark, execution, pipeline, resilience

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
from typing import Any

from bulwark.core.errors import (
    AuthDeniedError,
    BulwarkError,
    ErrorKind,
    classify_exception,
    classify_response,
)
from bulwark.core.logging import LogContext, get_logger
from bulwark.core.models import OperationDescriptor, Request, Response
from bulwark.core.protocols import CredentialHandle, Transport
from bulwark.core.result import Result, try_result_async
from bulwark.core.settings import BulwarkSettings, get_settings
from bulwark.execution.circuit_breaker import CircuitBreaker
from bulwark.execution.guard import ScopedGuard
from bulwark.execution.pool import ConnectionPool, PooledConnection
from bulwark.execution.rate_limit import RateLimiter
from bulwark.execution.registry import EndpointRegistry
from bulwark.execution.retry import RetryOrchestrator
from bulwark.observability.metrics import PipelineMetrics, span
from bulwark.simulation.layer import SimulationLayer

logger = get_logger(__name__)


def _outcome(exc: BaseException) -> str:
    if isinstance(exc, asyncio.CancelledError):
        return "cancelled"
    if isinstance(exc, BulwarkError):
        return exc.kind.value
    return "error"


class RequestPipeline:
    """Executes operations against one endpoint.

    Components not passed in are built from ``settings``; the breaker and
    limiter come from ``registry`` so pipelines sharing a registry and an
    endpoint key share that state.

    Args:
        endpoint: Endpoint key (breaker / limiter / pool name)
        transport: Opens handles and sends requests
        credentials: Optional credential collaborator
        settings: Defaults for every component
        registry: Breaker / limiter owner; a private one if omitted
        breaker, limiter, pool, retry, simulation, metrics: Overrides
        request_timeout: Per-attempt deadline; ``settings.request_timeout``
            if omitted
    """

    def __init__(
        self,
        endpoint: str,
        transport: Transport,
        *,
        credentials: CredentialHandle | None = None,
        settings: BulwarkSettings | None = None,
        registry: EndpointRegistry | None = None,
        breaker: CircuitBreaker | None = None,
        limiter: RateLimiter | None = None,
        pool: ConnectionPool | None = None,
        retry: RetryOrchestrator | None = None,
        simulation: SimulationLayer | None = None,
        metrics: PipelineMetrics | None = None,
        request_timeout: float | None = None,
    ):
        self.settings = settings or get_settings()
        registry = registry or EndpointRegistry(self.settings)

        self.endpoint = endpoint
        self.transport = transport
        self.credentials = credentials
        self.breaker = breaker or registry.breaker(endpoint)
        self.limiter = limiter or registry.limiter(endpoint)
        self.pool = pool or ConnectionPool(transport, self.settings.pool, name=endpoint)
        self.retry = retry or RetryOrchestrator(self.settings.retry)
        self.simulation = simulation or SimulationLayer.from_config(self.settings.simulation)
        self.metrics = metrics or PipelineMetrics()
        self.request_timeout = (
            request_timeout if request_timeout is not None else self.settings.request_timeout
        )

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        await self.pool.start()

    async def close(self) -> None:
        await self.pool.close()

    async def __aenter__(self) -> RequestPipeline:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # ── Public API ───────────────────────────────────────────────────

    async def execute(self, descriptor: OperationDescriptor, payload: Any = None) -> Response:
        """Run one logical operation.

        Returns:
            The 2xx response (live or replayed)

        Raises:
            BulwarkError: The classified error that ended the operation
        """
        op = descriptor.name
        in_flight = self.metrics.in_flight.labels(operation=op)

        async with LogContext(operation=op, endpoint=self.endpoint):
            in_flight.inc()
            try:
                with span(
                    "pipeline.operation",
                    self.metrics.operation_duration.labels(operation=op),
                    target=descriptor.target,
                ):
                    response = await self._execute(descriptor, payload)
            except BaseException as exc:
                self.metrics.operations.labels(operation=op, outcome=_outcome(exc)).inc()
                raise
            finally:
                in_flight.dec()

        self.metrics.operations.labels(operation=op, outcome="ok").inc()
        return response

    async def execute_result(self, descriptor: OperationDescriptor, payload: Any = None) -> Result[Response]:
        """Like ``execute`` but returns ``Ok(response)`` or ``Err(error)``."""
        return await try_result_async(lambda: self.execute(descriptor, payload))

    # ── Stages ───────────────────────────────────────────────────────

    async def _execute(self, descriptor: OperationDescriptor, payload: Any) -> Response:
        replayed = self.simulation.lookup(descriptor, payload)
        if replayed is not None:
            if not replayed.ok:
                raise classify_response(replayed.status, replayed.body, replayed.headers).with_context(
                    operation=descriptor.name,
                    target=descriptor.target,
                    simulated=True,
                )
            return replayed

        refresh = self.credentials.refresh if self.credentials is not None else None
        response = await self.retry.execute_with_retry(
            lambda attempt: self._attempt(descriptor, payload, attempt),
            refresh=refresh,
            is_auth_expired=self._is_auth_expired if self.credentials is not None else None,
            idempotent=descriptor.idempotent,
            name=descriptor.name,
        )
        self.simulation.record(descriptor, payload, response)
        return response

    def _is_auth_expired(self, error: BulwarkError) -> bool:
        if error.kind == ErrorKind.AUTH_EXPIRED:
            return True
        return self.credentials.is_auth_expired(error)

    async def _attempt(self, descriptor: OperationDescriptor, payload: Any, attempt: int) -> Response:
        op = descriptor.name
        try:
            with span(
                "pipeline.attempt",
                self.metrics.attempt_duration.labels(operation=op),
                attempt=attempt,
            ):
                response = await self._send_once(descriptor, payload)
        except BulwarkError as e:
            self.metrics.attempts.labels(operation=op, outcome=e.kind.value).inc()
            e.with_context(operation=op, target=descriptor.target or self.endpoint, attempt=attempt)
            raise
        except BaseException as exc:
            self.metrics.attempts.labels(operation=op, outcome=_outcome(exc)).inc()
            raise

        self.metrics.attempts.labels(operation=op, outcome="ok").inc()
        return response

    async def _discard(self, conn: PooledConnection) -> None:
        await self.pool.release(conn, discard=True)

    async def _send_once(self, descriptor: OperationDescriptor, payload: Any) -> Response:
        probe = self.breaker.check()
        error: BaseException | None = None
        try:
            await self.limiter.acquire()

            async with ScopedGuard(
                self.pool.acquire,
                on_complete=self.pool.release,
                on_abort=self._discard,
                name=f"{self.endpoint}.lease",
            ) as lease:
                request = Request(descriptor=descriptor, payload=payload)
                if self.credentials is not None:
                    try:
                        self.credentials.attach(request)
                    except Exception as exc:
                        # Nothing was sent; the connection goes back as is
                        lease.complete()
                        if isinstance(exc, BulwarkError):
                            raise
                        raise AuthDeniedError(
                            f"Credential attach failed: {exc.__class__.__name__}: {exc}",
                            cause=exc,
                        ) from exc
                try:
                    async with asyncio.timeout(self.request_timeout):
                        response = await self.transport.send(lease.resource.handle, request)
                except Exception as exc:
                    classified = classify_exception(exc)
                    if classified is exc:
                        raise
                    raise classified from exc
                lease.complete()

            if not response.ok:
                raise classify_response(response.status, response.body, response.headers)
            return response
        except BaseException as exc:
            error = exc
            raise
        finally:
            self.breaker.record_outcome(error, probe)
            if error is None:
                self.limiter.on_success()
            elif getattr(error, "kind", None) == ErrorKind.RATE_LIMITED:
                self.limiter.on_rate_limited()


__all__ = ["RequestPipeline"]
