"""
Bulwark - shared resilience and execution core for service adapters.

Quick start::

    from bulwark import OperationDescriptor, RequestPipeline

    async with RequestPipeline("jira", transport, credentials=creds) as pipeline:
        response = await pipeline.execute(OperationDescriptor("issue.get"), {"key": "ABC-1"})
"""

__version__ = "0.1.0"

from bulwark.core import *  # noqa: F401,F403
from bulwark.core import __all__ as _core_all
from bulwark.execution import (
    BatchExecutor,
    BatchItem,
    BatchResult,
    CircuitBreaker,
    ConnectionPool,
    EndpointRegistry,
    RequestPipeline,
    RetryOrchestrator,
    TokenBucketLimiter,
)
from bulwark.simulation import InMemoryRecordStore, JsonFileRecordStore, SimulationLayer

__all__ = [
    *_core_all,
    "BatchExecutor",
    "BatchItem",
    "BatchResult",
    "CircuitBreaker",
    "ConnectionPool",
    "EndpointRegistry",
    "RequestPipeline",
    "RetryOrchestrator",
    "TokenBucketLimiter",
    "SimulationLayer",
    "InMemoryRecordStore",
    "JsonFileRecordStore",
]
