"""
Structured logging for the bulwark execution core.

Every component logs through structlog with dotted event names and keyword
fields, so a pipeline run reads as a sequence of machine-parseable events::

    {"@timestamp": "...", "log.level": "warning", "event": "pipeline.attempt_failed",
     "operation": "issue.get", "endpoint": "jira", "attempt": 2, "kind": "server_error"}

Architecture:
    ::

        configure_logging(level="INFO", json_format=None, service="bulwark")
        configure_logging_from_settings()   ← BULWARK_LOG_LEVEL, BULWARK_LOG_JSON
            │
            ▼
        structlog processor chain:
          1. TimeStamper(iso)
          2. merge_contextvars        ← LogContext / bind_context
          3. add_log_level / add_logger_name
          4. service metadata
          5. ECS renames (JSON only)
          6. JSONRenderer | ConsoleRenderer

    ``LogContext`` binds fields (operation, endpoint, batch_id) for the span of
    a logical operation; they appear on every event emitted inside it,
    including events from the breaker, limiter and pool.

Examples:
    >>> from bulwark.core.logging import configure_logging, get_logger
    >>> configure_logging(level="DEBUG", json_format=False)
    >>> logger = get_logger(__name__)
    >>> logger.info("pool.connection_created", endpoint="qdrant", total=3)

Tags:
    logging, structlog, observability, ecs, json-logging, bulwark

Doc-Types:
    - API Reference
    - Observability Guide
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from bulwark.core.settings import BulwarkSettings, get_settings

# Store service name for metadata
_SERVICE_NAME = "bulwark"


def _add_service_metadata(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add service-level metadata to all logs."""
    event_dict.setdefault("service.name", _SERVICE_NAME)
    return event_dict


def _elasticsearch_compatible(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Make field names Elasticsearch/ECS compatible."""
    if "timestamp" in event_dict:
        event_dict["@timestamp"] = event_dict.pop("timestamp")

    if "level" in event_dict:
        event_dict["log.level"] = event_dict.pop("level")

    return event_dict


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "bulwark",
    add_timestamp: bool = True,
) -> None:
    """Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: True for JSON, False for console, None for auto (JSON if not tty)
        service: Service name to include in logs
        add_timestamp: Include ISO timestamp in logs
    """
    global _SERVICE_NAME
    _SERVICE_NAME = service

    if json_format is None:
        json_format = not sys.stdout.isatty()

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _add_service_metadata,
    ]

    if add_timestamp:
        shared_processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))

    if json_format:
        shared_processors.append(_elasticsearch_compatible)
        shared_processors.append(structlog.processors.format_exc_info)
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper()),
    )


def configure_logging_from_settings(
    settings: BulwarkSettings | None = None,
    service: str = "bulwark",
) -> None:
    """Configure logging from ``log_level`` / ``log_json`` (``BULWARK_LOG_LEVEL``, ``BULWARK_LOG_JSON``)."""
    settings = settings or get_settings()
    configure_logging(level=settings.log_level, json_format=settings.log_json, service=service)


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger (usually ``get_logger(__name__)``)."""
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind context to include in all subsequent logs of this task."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Remove specific keys from logging context."""
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Clear all bound context."""
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Context manager for scoped logging context.

    Restores whatever the keys were bound to before entry, so nested
    contexts (a batch binding ``batch_id`` around pipelines binding
    ``operation``) unwind correctly.

    Example:
        async with LogContext(operation="issue.get", endpoint="jira"):
            logger.info("pipeline.start")
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs
        self._tokens: dict[str, Any] = {}

    def _enter(self) -> LogContext:
        self._tokens = structlog.contextvars.bind_contextvars(**self._context)
        return self

    def _exit(self) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)

    def __enter__(self) -> LogContext:
        return self._enter()

    def __exit__(self, *args: Any) -> None:
        self._exit()

    async def __aenter__(self) -> LogContext:
        return self._enter()

    async def __aexit__(self, *args: Any) -> None:
        self._exit()


__all__ = [
    "configure_logging",
    "configure_logging_from_settings",
    "get_logger",
    "bind_context",
    "unbind_context",
    "clear_context",
    "LogContext",
]
