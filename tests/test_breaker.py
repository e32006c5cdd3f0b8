"""Testes do circuit breaker e do registro por serviço."""
import pytest

from enviacodigo.core.errors import AuthorizationError, CircuitOpenError, TransientTransportError
from enviacodigo.resilience.breaker import BreakerRegistry, CircuitBreaker, execute_resilient
from enviacodigo.resilience.retry import RetryConfig


class Counter:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.error:
            raise self.error
        return "ok"


async def trip(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(TransientTransportError):
            await breaker.execute(Counter(TransientTransportError("HTTP 503")), "send")


class TestCircuitBreaker:
    async def test_opens_at_threshold(self, clock):
        breaker = CircuitBreaker(failure_threshold=2, recovery_time_ms=1000, name="whatsapp", clock=clock)
        await trip(breaker, 2)

        state = breaker.get_state()
        assert state.is_open is True
        assert state.failure_count == 2
        assert state.last_failure_time is not None

    async def test_open_breaker_does_not_invoke_operation(self, clock):
        breaker = CircuitBreaker(failure_threshold=2, recovery_time_ms=1000, name="whatsapp", clock=clock)
        await trip(breaker, 2)
        op = Counter()

        with pytest.raises(CircuitOpenError, match="Circuit breaker is open for send. Try again later."):
            await breaker.execute(op, "send")
        assert op.calls == 0

    async def test_recovery_requires_strictly_more_than_window(self, clock):
        breaker = CircuitBreaker(failure_threshold=2, recovery_time_ms=1000, name="whatsapp", clock=clock)
        await trip(breaker, 2)

        clock.advance(1.0)
        with pytest.raises(CircuitOpenError):
            await breaker.execute(Counter(), "send")

        clock.advance(0.001)
        op = Counter()
        assert await breaker.execute(op, "send") == "ok"
        assert op.calls == 1
        assert breaker.get_state().is_open is False
        assert breaker.get_state().failure_count == 0

    async def test_success_resets_failure_count(self, clock):
        breaker = CircuitBreaker(failure_threshold=3, name="email", clock=clock)
        await trip(breaker, 2)

        await breaker.execute(Counter(), "send")
        assert breaker.get_state().failure_count == 0

    async def test_reset(self, clock):
        breaker = CircuitBreaker(failure_threshold=1, name="email", clock=clock)
        await trip(breaker, 1)

        breaker.reset()
        state = breaker.get_state()
        assert (state.is_open, state.failure_count, state.last_failure_time) == (False, 0, None)

    def test_threshold_must_be_positive(self):
        with pytest.raises(ValueError):
            CircuitBreaker(failure_threshold=0)


class TestBreakerRegistry:
    def test_one_breaker_per_service(self, breakers):
        assert breakers.get("whatsapp") is breakers.get("whatsapp")
        assert breakers.get("whatsapp") is not breakers.get("email")
        assert set(breakers.states()) == {"whatsapp", "email"}

    async def test_services_are_isolated(self, clock):
        registry = BreakerRegistry(failure_threshold=1, clock=clock)
        await trip(registry.get("whatsapp"), 1)

        assert registry.states()["whatsapp"].is_open is True
        assert await registry.get("email").execute(Counter(), "send") == "ok"

    async def test_reset_all(self, clock):
        registry = BreakerRegistry(failure_threshold=1, clock=clock)
        await trip(registry.get("whatsapp"), 1)

        registry.reset_all()
        assert registry.states()["whatsapp"].is_open is False


class TestExecuteResilient:
    async def test_exhausted_retry_counts_as_one_breaker_failure(self, breakers, sleep):
        op = Counter(TransientTransportError("HTTP 503"))
        breaker = breakers.get("whatsapp")

        with pytest.raises(Exception):
            await execute_resilient(breaker, op, RetryConfig(max_attempts=3), 1000, "send", sleep=sleep)
        assert op.calls == 3
        assert breaker.get_state().failure_count == 1

    async def test_open_breaker_skips_retry_entirely(self, clock, sleep):
        breaker = CircuitBreaker(failure_threshold=1, name="whatsapp", clock=clock)
        await trip(breaker, 1)
        op = Counter()

        with pytest.raises(CircuitOpenError):
            await execute_resilient(breaker, op, RetryConfig(max_attempts=3), 1000, "send", sleep=sleep)
        assert op.calls == 0
        assert sleep.calls == []

    async def test_non_retryable_error_passes_through(self, breakers, sleep):
        op = Counter(AuthorizationError("Non-retryable error: Invalid OAuth access token", status_code=401))

        with pytest.raises(AuthorizationError):
            await execute_resilient(breakers.get("whatsapp"), op, RetryConfig(max_attempts=3), 1000, "send",
                                    sleep=sleep)
        assert op.calls == 1
