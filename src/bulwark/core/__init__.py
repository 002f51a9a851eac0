"""
Core primitives shared by every bulwark component.

Modules:
    errors     Classified error taxonomy and response/exception classification
    result     Ok / Err envelope
    models     OperationDescriptor, Request, Response, SimulationMode
    protocols  Transport, CredentialHandle, RecordStore
    hashing    Canonicalization and request fingerprints
    logging    structlog configuration and scoped context
    settings   pydantic configuration models
"""

from bulwark.core.errors import (
    AuthDeniedError,
    AuthExpiredError,
    BulwarkError,
    CircuitOpenError,
    ClientValidationError,
    ConnectionFailureError,
    ErrorCategory,
    ErrorContext,
    ErrorKind,
    PoolError,
    PoolExhaustedError,
    RateLimitedError,
    ServerError,
    SimulationError,
    SimulationModeMismatchError,
    SimulationRecordMissingError,
    TimeoutError_,
    classify_exception,
    classify_response,
    is_retryable,
)
from bulwark.core.hashing import canonical_json, canonicalize, compute_hash, fingerprint
from bulwark.core.logging import LogContext, configure_logging, configure_logging_from_settings, get_logger
from bulwark.core.models import OperationDescriptor, Request, Response, SimulationMode
from bulwark.core.protocols import CredentialHandle, RecordStore, Transport
from bulwark.core.result import Err, Ok, Result, partition_results, try_result_async
from bulwark.core.settings import (
    BulwarkSettings,
    CircuitBreakerConfig,
    PoolConfig,
    RateLimitConfig,
    RetryConfig,
    SimulationConfig,
    get_settings,
)

__all__ = [
    # Errors
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
    "classify_response",
    "classify_exception",
    "is_retryable",
    # Result
    "Ok",
    "Err",
    "Result",
    "try_result_async",
    "partition_results",
    # Models
    "OperationDescriptor",
    "Request",
    "Response",
    "SimulationMode",
    # Protocols
    "Transport",
    "CredentialHandle",
    "RecordStore",
    # Hashing
    "compute_hash",
    "canonicalize",
    "canonical_json",
    "fingerprint",
    # Logging
    "configure_logging",
    "configure_logging_from_settings",
    "get_logger",
    "LogContext",
    # Settings
    "BulwarkSettings",
    "PoolConfig",
    "RateLimitConfig",
    "RetryConfig",
    "CircuitBreakerConfig",
    "SimulationConfig",
    "get_settings",
]
