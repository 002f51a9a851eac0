"""
Classified error types for the bulwark execution core.

Every failure that leaves the request pipeline is a ``BulwarkError`` subclass
carrying the metadata the retry orchestrator and the circuit breaker need to
make their decisions, and that adapters need to report the failure upstream.

Manifesto:
    - **Typed taxonomy:** One class per failure kind the core reasons about
    - **Explicit retry semantics:** Each error knows if it's retryable
    - **Breaker attribution:** Each error knows if it blames the remote
    - **Error chaining:** Preserve the transport exception as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                         BulwarkError                             │
        │   (kind, category, retryable, retry_after, trips_breaker, ...)   │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  Remote / transient        Caller side         Admission control │
        │  ──────────────────        ───────────         ───────────────── │
        │  AuthExpiredError          AuthDeniedError     CircuitOpenError  │
        │  RateLimitedError          ClientValidation    PoolExhausted     │
        │  ServerError                 Error                               │
        │  ConnectionFailureError                                          │
        │  TimeoutError_             Simulation                            │
        │                            ──────────                            │
        │                            SimulationRecordMissingError          │
        │                            SimulationModeMismatchError           │
        └─────────────────────────────────────────────────────────────────┘

Classification:
    ``classify_response()`` maps a non-2xx response onto the taxonomy and
    ``classify_exception()`` does the same for exceptions raised by a
    transport. Both always return a ``BulwarkError``; an already-classified
    error passes through unchanged.

Examples:
    >>> err = classify_response(429, None, {"Retry-After": "2"})
    >>> err.kind, err.retry_after
    (<ErrorKind.RATE_LIMITED: 'rate_limited'>, 2.0)

    >>> classify_response(503, None, {}).trips_breaker
    True

Tags:
    error-handling, exception-hierarchy, retry-logic, circuit-breaker,
    bulwark, classification

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Failure kinds the execution core distinguishes."""

    AUTH_EXPIRED = "auth_expired"
    AUTH_DENIED = "auth_denied"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    CONNECTION_FAILURE = "connection_failure"
    TIMEOUT = "timeout"
    CLIENT_VALIDATION = "client_validation"
    CIRCUIT_OPEN = "circuit_open"
    POOL_EXHAUSTED = "pool_exhausted"
    POOL = "pool"
    SIMULATION_RECORD_MISSING = "simulation_record_missing"
    SIMULATION_MODE_MISMATCH = "simulation_mode_mismatch"
    INTERNAL = "internal"


class ErrorCategory(str, Enum):
    """Coarse grouping used for routing alerts and dashboards."""

    NETWORK = "NETWORK"           # Connection, timeout, 5xx
    AUTH = "AUTH"                 # Expired or rejected credentials
    THROTTLE = "THROTTLE"         # Server-side rate limiting
    VALIDATION = "VALIDATION"     # Caller sent a bad request
    ADMISSION = "ADMISSION"       # Breaker / pool refused the attempt
    SIMULATION = "SIMULATION"     # Record/replay fixtures
    INTERNAL = "INTERNAL"         # Bugs, unexpected state


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Attributes:
        operation: Operation name from the descriptor
        target: Remote target (endpoint key, URL, resource path)
        attempt: Physical attempt number that produced the error
        http_status: HTTP status code if the transport reported one
        metadata: Additional key-value pairs
    """

    operation: str | None = None
    target: str | None = None
    attempt: int | None = None
    http_status: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["operation", "target", "attempt", "http_status"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class BulwarkError(Exception):
    """
    Base exception for every classified failure.

    Subclasses set ``kind``, ``default_category``, ``default_retryable`` and
    ``trips_breaker`` as class attributes; instances may override
    ``retryable`` and carry ``retry_after`` (seconds).

    Attributes:
        message: Human-readable description
        kind: ErrorKind of this failure
        category: ErrorCategory for routing
        retryable: Whether the retry orchestrator may try again
        retry_after: Seconds the caller should wait, when known
        trips_breaker: Whether the failure counts against the remote
        context: ErrorContext with operation/target metadata
        cause: Underlying exception, if any
    """

    kind: ErrorKind = ErrorKind.INTERNAL
    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False
    trips_breaker: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: float | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> BulwarkError:
        """
        Add context to this error (fluent API).

        Usage:
            raise ServerError("boom", status=502).with_context(
                operation="issue.get", target="jira"
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "kind": self.kind.value,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, kind={self.kind.value})"


# =============================================================================
# AUTHENTICATION
# =============================================================================


class AuthExpiredError(BulwarkError):
    """Credentials expired; a refresh followed by an immediate retry may succeed."""

    kind = ErrorKind.AUTH_EXPIRED
    default_category = ErrorCategory.AUTH
    default_retryable = True


class AuthDeniedError(BulwarkError):
    """Credentials rejected outright. Never retried."""

    kind = ErrorKind.AUTH_DENIED
    default_category = ErrorCategory.AUTH
    default_retryable = False


# =============================================================================
# REMOTE / TRANSIENT
# =============================================================================


class RateLimitedError(BulwarkError):
    """Remote throttled the request, optionally with a wait hint."""

    kind = ErrorKind.RATE_LIMITED
    default_category = ErrorCategory.THROTTLE
    default_retryable = True

    def __init__(
        self,
        message: str = "Rate limited by remote",
        *,
        retry_after: float | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, retry_after=retry_after, **kwargs)


class ServerError(BulwarkError):
    """Remote answered with a 5xx status."""

    kind = ErrorKind.SERVER_ERROR
    default_category = ErrorCategory.NETWORK
    default_retryable = True
    trips_breaker = True

    def __init__(self, message: str, *, status: int = 500, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.status = status
        self.context.http_status = status

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["status"] = self.status
        return result


class ConnectionFailureError(BulwarkError):
    """Could not reach the remote, or the connection dropped mid-request."""

    kind = ErrorKind.CONNECTION_FAILURE
    default_category = ErrorCategory.NETWORK
    default_retryable = True
    trips_breaker = True


class TimeoutError_(BulwarkError):
    """The physical attempt exceeded its deadline."""

    kind = ErrorKind.TIMEOUT
    default_category = ErrorCategory.NETWORK
    default_retryable = True
    trips_breaker = True


# =============================================================================
# CALLER SIDE
# =============================================================================


class ClientValidationError(BulwarkError):
    """Remote rejected the request as invalid (4xx). Never retried."""

    kind = ErrorKind.CLIENT_VALIDATION
    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(self, message: str, *, status: int = 400, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.status = status
        self.context.http_status = status

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["status"] = self.status
        return result


# =============================================================================
# ADMISSION CONTROL
# =============================================================================


class CircuitOpenError(BulwarkError):
    """Circuit breaker rejected the attempt without touching the network."""

    kind = ErrorKind.CIRCUIT_OPEN
    default_category = ErrorCategory.ADMISSION
    default_retryable = False

    def __init__(
        self,
        message: str = "Circuit breaker is open",
        *,
        retry_after: float | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, retry_after=retry_after, **kwargs)


class PoolError(BulwarkError):
    """Connection pool misuse or lifecycle error."""

    kind = ErrorKind.POOL
    default_category = ErrorCategory.ADMISSION
    default_retryable = False


class PoolExhaustedError(PoolError):
    """No connection became available within ``acquire_timeout``."""

    kind = ErrorKind.POOL_EXHAUSTED


# =============================================================================
# SIMULATION
# =============================================================================


class SimulationError(BulwarkError):
    """Base for record/replay errors."""

    default_category = ErrorCategory.SIMULATION
    default_retryable = False


class SimulationRecordMissingError(SimulationError):
    """Replay found no record for the request fingerprint."""

    kind = ErrorKind.SIMULATION_RECORD_MISSING

    def __init__(self, fingerprint: str, operation: str, message: str | None = None):
        self.fingerprint = fingerprint
        super().__init__(
            message or f"No simulation record found for {operation} ({fingerprint})",
            context=ErrorContext(operation=operation, metadata={"fingerprint": fingerprint}),
        )


class SimulationModeMismatchError(SimulationError):
    """Simulation mode, store or fixture contents disagree with the request."""

    kind = ErrorKind.SIMULATION_MODE_MISMATCH


# =============================================================================
# CLASSIFICATION
# =============================================================================


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Parse a ``Retry-After`` header into seconds to wait.

    Accepts delta-seconds (``"120"``) or an HTTP-date
    (``"Wed, 21 Oct 2015 07:28:00 GMT"``), measured against ``now``
    (default: current UTC time). Dates in the past give ``0.0``; values that
    are neither give ``None`` so the retry orchestrator uses backoff.
    """
    if value is None:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    now = now or datetime.now(UTC)
    return max(0.0, (when - now).total_seconds())


def _header(headers: Mapping[str, str] | None, name: str) -> str | None:
    if not headers:
        return None
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def _message_from_body(status: int, body: Any) -> str:
    if isinstance(body, Mapping):
        for key in ("message", "error", "detail", "errorMessages"):
            value = body.get(key)
            if isinstance(value, list) and value:
                return "; ".join(str(v) for v in value)
            if value:
                return str(value)
    if isinstance(body, str) and body:
        return body[:200]
    return f"HTTP {status}"


def classify_response(
    status: int,
    body: Any = None,
    headers: Mapping[str, str] | None = None,
) -> BulwarkError:
    """Map a non-2xx status onto the error taxonomy."""
    message = _message_from_body(status, body)
    retry_after = parse_retry_after(_header(headers, "Retry-After"))
    context = ErrorContext(http_status=status)

    if status == 401:
        return AuthExpiredError(message, context=context)
    if status == 403:
        return AuthDeniedError(message, context=context)
    if status == 429:
        return RateLimitedError(message, retry_after=retry_after, context=context)
    if status >= 500:
        return ServerError(message, status=status, retry_after=retry_after, context=context)
    return ClientValidationError(message, status=status, context=context)


def classify_exception(exc: BaseException) -> BulwarkError:
    """Map an exception raised by a transport onto the error taxonomy."""
    if isinstance(exc, BulwarkError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return TimeoutError_(str(exc) or "Request timed out", cause=exc)
    if isinstance(exc, (ConnectionError, OSError)):
        return ConnectionFailureError(str(exc) or "Connection failed", cause=exc)
    return ConnectionFailureError(
        f"Transport failed: {exc.__class__.__name__}: {exc}",
        cause=exc,
    )


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, BulwarkError):
        return error.retryable
    return False


__all__ = [
    "ErrorKind",
    "ErrorCategory",
    "ErrorContext",
    "BulwarkError",
    "AuthExpiredError",
    "AuthDeniedError",
    "RateLimitedError",
    "ServerError",
    "ConnectionFailureError",
    "TimeoutError_",
    "ClientValidationError",
    "CircuitOpenError",
    "PoolError",
    "PoolExhaustedError",
    "SimulationError",
    "SimulationRecordMissingError",
    "SimulationModeMismatchError",
    "parse_retry_after",
    "classify_response",
    "classify_exception",
    "is_retryable",
]
