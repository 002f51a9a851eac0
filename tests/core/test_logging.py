"""Tests for structlog configuration and scoped context."""

import asyncio

import pytest
import structlog
from structlog.testing import capture_logs

import bulwark.core.logging as bulwark_logging
from bulwark.core.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_logging,
    configure_logging_from_settings,
    get_logger,
    unbind_context,
)
from bulwark.core.settings import BulwarkSettings, get_settings


@pytest.fixture
def reset_structlog():
    yield
    structlog.reset_defaults()


class TestConfigureLogging:
    def test_json_configuration(self, reset_structlog):
        configure_logging(level="DEBUG", json_format=True, service="jira-adapter")
        config = structlog.get_config()
        assert isinstance(config["processors"][-1], structlog.processors.JSONRenderer)

    def test_console_configuration(self, reset_structlog):
        configure_logging(level="INFO", json_format=False)
        config = structlog.get_config()
        assert isinstance(config["processors"][-1], structlog.dev.ConsoleRenderer)


class TestConfigureFromSettings:
    def test_uses_settings_fields(self, reset_structlog):
        configure_logging_from_settings(BulwarkSettings(log_level="WARNING", log_json=True), service="qdrant")
        config = structlog.get_config()
        assert isinstance(config["processors"][-1], structlog.processors.JSONRenderer)

    def test_reads_environment_when_no_settings_given(self, monkeypatch):
        calls = []
        monkeypatch.setattr(
            bulwark_logging, "configure_logging", lambda **kwargs: calls.append(kwargs)
        )
        monkeypatch.setenv("BULWARK_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("BULWARK_LOG_JSON", "false")
        get_settings.cache_clear()
        try:
            configure_logging_from_settings()
        finally:
            get_settings.cache_clear()

        assert calls == [{"level": "DEBUG", "json_format": False, "service": "bulwark"}]


class TestContext:
    def test_bind_and_unbind(self):
        bind_context(endpoint="jira", operation="issue.get")
        assert structlog.contextvars.get_contextvars() == {"endpoint": "jira", "operation": "issue.get"}
        unbind_context("operation")
        assert structlog.contextvars.get_contextvars() == {"endpoint": "jira"}
        clear_context()
        assert structlog.contextvars.get_contextvars() == {}

    def test_log_context_restores_previous_values(self):
        bind_context(operation="outer")
        with LogContext(operation="inner", attempt=1):
            assert structlog.contextvars.get_contextvars()["operation"] == "inner"
        assert structlog.contextvars.get_contextvars() == {"operation": "outer"}

    @pytest.mark.asyncio
    async def test_async_log_context_is_task_local(self):
        seen: dict[str, str] = {}

        async def worker(name: str):
            async with LogContext(operation=name):
                await asyncio.sleep(0)
                seen[name] = structlog.contextvars.get_contextvars()["operation"]

        await asyncio.gather(worker("a"), worker("b"))
        assert seen == {"a": "a", "b": "b"}
        assert "operation" not in structlog.contextvars.get_contextvars()


def test_get_logger_emits_dotted_events():
    logger = get_logger("bulwark.test")
    with capture_logs() as logs:
        logger.info("pool.connection_created", endpoint="qdrant", total=3)
    assert logs == [
        {"event": "pool.connection_created", "endpoint": "qdrant", "total": 3, "log_level": "info"}
    ]
