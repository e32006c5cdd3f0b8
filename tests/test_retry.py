"""Testes de retry com backoff e de timeout."""
import asyncio

import pytest

from enviacodigo.core.errors import (
    AuthorizationError, OperationTimeoutError, RetryExhaustedError, TransientTransportError,
)
from enviacodigo.resilience.retry import (
    RetryConfig, is_retryable, retry_with_backoff, retry_with_timeout, with_timeout,
)


class Flaky:
    """Operação que falha ``failures`` vezes antes de devolver ``result``."""

    def __init__(self, failures: int, error: Exception, result="ok"):
        self.failures = failures
        self.error = error
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


class TestRetryConfig:
    def test_delay_grows_exponentially(self):
        cfg = RetryConfig(max_attempts=5, initial_delay=1000, max_delay=10000, exponential_base=2)
        assert [cfg.delay_for(a) for a in (1, 2, 3, 4)] == [1000, 2000, 4000, 8000]

    def test_delay_is_capped(self):
        cfg = RetryConfig(initial_delay=2000, max_delay=5000)
        assert cfg.delay_for(3) == 5000

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryConfig(max_attempts=0)


class TestIsRetryable:
    @pytest.mark.parametrize("message", ["Unauthorized", "403 Forbidden", "Invalid token", "Bad Request"])
    def test_non_retryable_messages(self, message):
        assert is_retryable(Exception(message)) is False

    @pytest.mark.parametrize("message", ["ECONNRESET", "connection refused", "Gateway Timeout", "socket hang up"])
    def test_retryable_messages(self, message):
        assert is_retryable(Exception(message)) is True

    def test_unknown_message_defaults_to_retryable(self):
        assert is_retryable(Exception("algo estranho")) is True

    def test_explicit_flag_wins_over_message(self):
        # a mensagem contém "connection", mas a classe diz que não repete
        assert is_retryable(AuthorizationError("connection not authorized")) is False
        assert is_retryable(TransientTransportError("Non-retryable error: 503")) is True


class TestRetryWithBackoff:
    async def test_waits_between_attempts(self, sleep):
        op = Flaky(2, TransientTransportError("HTTP 503"))
        cfg = RetryConfig(max_attempts=3, initial_delay=1000, max_delay=5000)

        assert await retry_with_backoff(op, cfg, "send", sleep=sleep) == "ok"
        assert op.calls == 3
        assert sleep.calls == [1.0, 2.0]

    async def test_non_retryable_fails_on_first_attempt(self, sleep):
        op = Flaky(5, Exception("Unauthorized"))

        with pytest.raises(Exception, match="Unauthorized") as exc:
            await retry_with_backoff(op, RetryConfig(max_attempts=3), "send", sleep=sleep)
        assert not isinstance(exc.value, RetryExhaustedError)
        assert op.calls == 1
        assert sleep.calls == []

    async def test_exhaustion_wraps_last_error(self, sleep):
        op = Flaky(10, TransientTransportError("boom"))

        with pytest.raises(RetryExhaustedError, match="send failed after 3 attempts. Last error: boom") as exc:
            await retry_with_backoff(op, RetryConfig(max_attempts=3), "send", sleep=sleep)
        assert exc.value.attempts == 3
        assert isinstance(exc.value.last_error, TransientTransportError)
        assert len(sleep.calls) == 2

    async def test_single_attempt_never_sleeps(self, sleep):
        op = Flaky(1, TransientTransportError("boom"))

        with pytest.raises(RetryExhaustedError):
            await retry_with_backoff(op, RetryConfig(max_attempts=1), "send", sleep=sleep)
        assert sleep.calls == []


class TestTimeout:
    async def test_slow_operation_times_out(self):
        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(OperationTimeoutError, match="slow timed out after 10ms"):
            await with_timeout(slow, 10, "slow")

    async def test_fast_operation_returns_value(self):
        async def fast():
            return 42

        assert await with_timeout(fast, 1000, "fast") == 42

    async def test_each_attempt_gets_its_own_timer(self, sleep):
        calls = 0

        async def slow_then_fast():
            nonlocal calls
            calls += 1
            if calls == 1:
                await asyncio.sleep(1)
            return "ok"

        result = await retry_with_timeout(slow_then_fast, RetryConfig(max_attempts=2), 20, "slow-call", sleep=sleep)
        assert result == "ok"
        assert calls == 2
