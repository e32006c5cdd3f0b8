"""Circuit breaker por serviço e registro de breakers injetável.

Reset otimista: na primeira chamada depois de ``recovery_time_ms`` desde a
última falha, o breaker zera as falhas e fecha ANTES de tentar a chamada.
Não existe estado half-open com chamada de prova.
"""
from __future__ import annotations
import asyncio
import threading
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypeVar

from pydantic import BaseModel

from ..core.errors import CircuitOpenError
from ..core.logging import get_logger
from .retry import RetryConfig, Sleep, retry_with_timeout

T = TypeVar("T")
Clock = Callable[[], float]

log = get_logger(component="circuit_breaker")


class BreakerState(BaseModel):
    """Snapshot do estado de um breaker."""
    name: str
    failure_count: int
    last_failure_time: datetime | None
    is_open: bool


class CircuitBreaker:
    """Breaker closed/open com auto-reset por tempo.

    O lock protege leituras/escritas de estado e nunca é mantido durante o await.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_time_ms: int = 60000,
        name: str = "default",
        clock: Clock = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold deve ser >= 1")
        self.failure_threshold = failure_threshold
        self.recovery_time_ms = recovery_time_ms
        self.name = name
        self._clock = clock
        self._lock = threading.Lock()
        self.failure_count = 0
        self.last_failure_time: float | None = None
        self._last_failure_wall: datetime | None = None
        self.is_open = False

    def _admit(self, operation_name: str) -> None:
        with self._lock:
            if self.is_open and self.last_failure_time is not None:
                elapsed_ms = (self._clock() - self.last_failure_time) * 1000
                if elapsed_ms > self.recovery_time_ms:
                    self.is_open = False
                    self.failure_count = 0
                    log.info("breaker_reset", breaker=self.name, operation=operation_name)
            if self.is_open:
                raise CircuitOpenError(operation_name)

    def _on_success(self, operation_name: str) -> None:
        with self._lock:
            if self.failure_count > 0:
                log.info("breaker_recovered", breaker=self.name, operation=operation_name,
                         previous_failures=self.failure_count)
                self.failure_count = 0

    def _on_failure(self, operation_name: str, started_at: float) -> None:
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = started_at
            self._last_failure_wall = datetime.now(timezone.utc)
            log.warning("breaker_failure", breaker=self.name, operation=operation_name,
                        failures=self.failure_count, threshold=self.failure_threshold)
            if self.failure_count >= self.failure_threshold and not self.is_open:
                self.is_open = True
                log.error("breaker_opened", breaker=self.name, operation=operation_name)

    async def execute(self, operation: Callable[[], Awaitable[T]], operation_name: str = "operation") -> T:
        """Executa pelo breaker; aberto => ``CircuitOpenError`` sem invocar ``operation``."""
        self._admit(operation_name)
        started_at = self._clock()
        try:
            result = await operation()
        except Exception:
            self._on_failure(operation_name, started_at)
            raise
        self._on_success(operation_name)
        return result

    def get_state(self) -> BreakerState:
        with self._lock:
            return BreakerState(
                name=self.name,
                failure_count=self.failure_count,
                last_failure_time=self._last_failure_wall,
                is_open=self.is_open,
            )

    def reset(self) -> None:
        with self._lock:
            self.failure_count = 0
            self.last_failure_time = None
            self._last_failure_wall = None
            self.is_open = False


class BreakerRegistry:
    """Um breaker por serviço (``whatsapp``, ``email``), vivo só no processo."""

    def __init__(self, failure_threshold: int = 3, recovery_time_ms: int = 30000, clock: Clock = time.monotonic):
        self.failure_threshold = failure_threshold
        self.recovery_time_ms = recovery_time_ms
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(self.failure_threshold, self.recovery_time_ms, name=name, clock=self._clock)
                self._breakers[name] = breaker
            return breaker

    def states(self) -> dict[str, BreakerState]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.name: b.get_state() for b in breakers}

    def reset_all(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
        for b in breakers:
            b.reset()


async def execute_resilient(
    breaker: CircuitBreaker,
    operation: Callable[[], Awaitable[T]],
    retry_config: RetryConfig,
    timeout_ms: int,
    operation_name: str,
    *,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """``breaker.execute(retry_with_timeout(...))``: breaker aberto falha sem custo de retry."""
    return await breaker.execute(
        lambda: retry_with_timeout(operation, retry_config, timeout_ms, operation_name, sleep=sleep),
        operation_name,
    )
