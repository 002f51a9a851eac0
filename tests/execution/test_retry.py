"""Tests for retry strategies and the retry orchestrator."""

import asyncio
import random

import pytest

from bulwark.core.errors import (
    AuthDeniedError,
    AuthExpiredError,
    ClientValidationError,
    ConnectionFailureError,
    ErrorContext,
    RateLimitedError,
    ServerError,
    TimeoutError_,
)
from bulwark.core.settings import RetryConfig
from bulwark.execution.retry import (
    ConstantBackoff,
    ExponentialBackoff,
    NoRetry,
    RetryAction,
    RetryHooks,
    RetryOrchestrator,
    with_retry,
)


class Scripted:
    """Async operation failing with queued errors, then returning ``result``."""

    def __init__(self, *errors: BaseException, result: str = "done"):
        self.errors = list(errors)
        self.result = result
        self.attempts: list[int] = []

    async def __call__(self, attempt: int) -> str:
        self.attempts.append(attempt)
        if self.errors:
            raise self.errors.pop(0)
        return self.result


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def orchestrator(sleeps):
    async def record(delay):
        sleeps.append(delay)

    return RetryOrchestrator(
        RetryConfig(max_attempts=3, base_delay=0.5, max_delay=8.0, jitter_ratio=0.1),
        sleep=record,
    )


class TestExponentialBackoff:
    def test_delay_within_jitter_band(self):
        strategy = ExponentialBackoff(base_delay=1.0, max_delay=60.0, rng=random.Random(7))
        for attempt in range(5):
            expected = 2.0**attempt
            for _ in range(20):
                delay = strategy.next_delay(attempt)
                assert expected <= delay <= expected * 1.1

    def test_capped_before_jitter(self):
        strategy = ExponentialBackoff(base_delay=1.0, max_delay=10.0, jitter_ratio=0.0)
        assert strategy.next_delay(10) == 10.0

    def test_no_jitter_is_deterministic(self):
        strategy = ExponentialBackoff(base_delay=0.5, jitter_ratio=0.0)
        assert [strategy.next_delay(n) for n in range(4)] == [0.5, 1.0, 2.0, 4.0]

    def test_from_config(self):
        strategy = ExponentialBackoff.from_config(RetryConfig(base_delay=2.0, max_delay=5.0, jitter_ratio=0.2))
        assert (strategy.base_delay, strategy.max_delay, strategy.jitter_ratio) == (2.0, 5.0, 0.2)


class TestOtherStrategies:
    def test_constant(self):
        assert ConstantBackoff(delay=3.0).next_delay(7) == 3.0

    def test_no_retry(self):
        assert NoRetry().should_retry(0) is False


class TestDecide:
    def test_exhausted(self, orchestrator):
        decision = orchestrator.decide(ServerError("down"), attempt_number=3)
        assert decision.action == RetryAction.SURFACE
        assert decision.reason == "exhausted"

    @pytest.mark.parametrize(
        "error",
        [
            ClientValidationError("bad", status=404),
            AuthDeniedError("forbidden"),
        ],
    )
    def test_client_errors_surface(self, orchestrator, error):
        decision = orchestrator.decide(error, attempt_number=1)
        assert decision.action == RetryAction.SURFACE
        assert decision.reason == "not_retryable"

    def test_auth_expired_refreshes(self, orchestrator):
        decision = orchestrator.decide(AuthExpiredError("expired"), 1, can_refresh=True)
        assert decision.action == RetryAction.REFRESH
        assert decision.delay == 0.0

    def test_auth_expired_without_credentials(self, orchestrator):
        decision = orchestrator.decide(AuthExpiredError("expired"), 1, can_refresh=False)
        assert decision.reason == "no_credentials"

    def test_auth_refresh_limit(self, orchestrator):
        decision = orchestrator.decide(
            AuthExpiredError("expired"), 2, auth_refreshes=1, can_refresh=True
        )
        assert decision.action == RetryAction.SURFACE
        assert decision.reason == "auth_refresh_limit"

    def test_retry_after_is_honoured_exactly(self, orchestrator):
        decision = orchestrator.decide(RateLimitedError(retry_after=42.0), 1)
        assert decision.action == RetryAction.BACKOFF
        assert decision.delay == 42.0

    def test_non_idempotent_skips_ambiguous_failures(self, orchestrator):
        for error in (ServerError("down"), TimeoutError_("slow"), ConnectionFailureError("reset")):
            decision = orchestrator.decide(error, 1, idempotent=False)
            assert decision.reason == "not_idempotent"

    def test_non_idempotent_retries_rate_limit(self, orchestrator):
        decision = orchestrator.decide(RateLimitedError(retry_after=1.0), 1, idempotent=False)
        assert decision.action == RetryAction.BACKOFF


class TestExecuteWithRetry:
    @pytest.mark.asyncio
    async def test_success_first_try(self, orchestrator, sleeps):
        op = Scripted()
        assert await orchestrator.execute_with_retry(op) == "done"
        assert op.attempts == [1]
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_backoff_between_server_errors(self, orchestrator, sleeps):
        op = Scripted(ServerError("a", status=503), ServerError("b", status=502))

        assert await orchestrator.execute_with_retry(op) == "done"

        assert op.attempts == [1, 2, 3]
        assert 0.5 <= sleeps[0] <= 0.55
        assert 1.0 <= sleeps[1] <= 1.1

    @pytest.mark.asyncio
    async def test_max_attempts_bound(self, orchestrator, sleeps):
        op = Scripted(*(ServerError(f"e{i}") for i in range(10)))

        with pytest.raises(ServerError):
            await orchestrator.execute_with_retry(op)

        assert op.attempts == [1, 2, 3]
        assert len(sleeps) == 2

    @pytest.mark.asyncio
    async def test_client_error_single_attempt(self, orchestrator, sleeps):
        op = Scripted(ClientValidationError("not found", status=404))
        with pytest.raises(ClientValidationError):
            await orchestrator.execute_with_retry(op)
        assert op.attempts == [1]
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_rate_limited_waits_hint(self, orchestrator, sleeps):
        op = Scripted(RateLimitedError(retry_after=2.0))
        await orchestrator.execute_with_retry(op)
        assert sleeps == [2.0]

    @pytest.mark.asyncio
    async def test_auth_refresh_is_immediate_and_capped(self, orchestrator, sleeps):
        refreshes = []

        async def refresh():
            refreshes.append(1)

        op = Scripted(AuthExpiredError("e1"), AuthExpiredError("e2"))

        with pytest.raises(AuthExpiredError):
            await orchestrator.execute_with_retry(op, refresh=refresh)

        assert len(refreshes) == 1
        assert op.attempts == [1, 2]
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_auth_refresh_then_success(self, orchestrator):
        refreshes = []

        async def refresh():
            refreshes.append(1)

        op = Scripted(AuthExpiredError("expired"))
        assert await orchestrator.execute_with_retry(op, refresh=refresh) == "done"
        assert refreshes == [1]

    @pytest.mark.asyncio
    async def test_failed_refresh_is_classified(self, orchestrator, sleeps):
        async def refresh():
            raise RuntimeError("token endpoint unreachable")

        op = Scripted(AuthExpiredError("expired", context=ErrorContext(operation="issue.get")))
        with pytest.raises(AuthDeniedError) as exc_info:
            await orchestrator.execute_with_retry(op, refresh=refresh)

        error = exc_info.value
        assert isinstance(error.__cause__, RuntimeError)
        assert isinstance(error.__cause__.__context__, AuthExpiredError)
        assert error.retryable is False
        assert error.context.operation == "issue.get"
        assert error.context.metadata["expired_error"] == "expired"
        assert op.attempts == [1]
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_refresh_raising_bulwark_error_surfaces_as_is(self, orchestrator):
        async def refresh():
            raise AuthDeniedError("refresh rejected")

        op = Scripted(AuthExpiredError("expired"))
        with pytest.raises(AuthDeniedError, match="refresh rejected"):
            await orchestrator.execute_with_retry(op, refresh=refresh)
        assert op.attempts == [1]

    @pytest.mark.asyncio
    async def test_custom_auth_classifier(self, orchestrator):
        refreshes = []

        async def refresh():
            refreshes.append(1)

        op = Scripted(AuthDeniedError("session gone"))
        await orchestrator.execute_with_retry(
            op, refresh=refresh, is_auth_expired=lambda e: "session" in e.message
        )
        assert refreshes == [1]

    @pytest.mark.asyncio
    async def test_plain_exceptions_are_classified(self, orchestrator):
        op = Scripted(ConnectionResetError("reset"))
        assert await orchestrator.execute_with_retry(op) == "done"
        assert op.attempts == [1, 2]

    @pytest.mark.asyncio
    async def test_surfaced_plain_exception_is_wrapped(self, sleeps):
        orchestrator = RetryOrchestrator(RetryConfig(max_attempts=1))
        op = Scripted(ConnectionResetError("reset"))
        with pytest.raises(ConnectionFailureError) as exc_info:
            await orchestrator.execute_with_retry(op)
        assert isinstance(exc_info.value.__cause__, ConnectionResetError)

    @pytest.mark.asyncio
    async def test_non_idempotent_single_attempt_on_5xx(self, orchestrator):
        op = Scripted(ServerError("down"))
        with pytest.raises(ServerError):
            await orchestrator.execute_with_retry(op, idempotent=False)
        assert op.attempts == [1]

    @pytest.mark.asyncio
    async def test_cancellation_is_not_retried(self, orchestrator):
        op = Scripted(asyncio.CancelledError())
        with pytest.raises(asyncio.CancelledError):
            await orchestrator.execute_with_retry(op)
        assert op.attempts == [1]

    @pytest.mark.asyncio
    async def test_no_retry_strategy(self, sleeps):
        orchestrator = RetryOrchestrator(RetryConfig(max_attempts=5), strategy=NoRetry())
        op = Scripted(ServerError("down"))
        with pytest.raises(ServerError):
            await orchestrator.execute_with_retry(op)
        assert op.attempts == [1]


class TestHooks:
    @pytest.mark.asyncio
    async def test_hooks_fire(self, sleeps):
        retries, exhausted, successes = [], [], []

        async def record(delay):
            sleeps.append(delay)

        orchestrator = RetryOrchestrator(
            RetryConfig(max_attempts=2, base_delay=0.1),
            hooks=RetryHooks(
                on_retry=retries.append,
                on_exhausted=exhausted.append,
                on_success=successes.append,
            ),
            sleep=record,
        )

        await orchestrator.execute_with_retry(Scripted(ServerError("once")))
        assert [r.attempt_number for r in retries] == [1]
        assert successes == [2]

        with pytest.raises(ServerError):
            await orchestrator.execute_with_retry(Scripted(ServerError("a"), ServerError("b")))
        assert len(exhausted) == 1
        assert exhausted[0].attempt_number == 2
        assert exhausted[0].next_delay is None


class TestWithRetryDecorator:
    @pytest.mark.asyncio
    async def test_decorated_function_is_retried(self, orchestrator, sleeps):
        calls = []

        @with_retry(orchestrator)
        async def fetch(key):
            calls.append(key)
            if len(calls) < 2:
                raise TimeoutError_("slow")
            return f"issue:{key}"

        assert await fetch("PROJ-1") == "issue:PROJ-1"
        assert calls == ["PROJ-1", "PROJ-1"]
        assert fetch.__name__ == "fetch"
