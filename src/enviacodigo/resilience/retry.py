"""Retry com backoff exponencial e corrida contra timeout (asyncio)."""
from __future__ import annotations
import asyncio
from typing import Awaitable, Callable, TypeVar

from pydantic import BaseModel, Field

from ..core.errors import DeliveryError, OperationTimeoutError, RetryExhaustedError
from ..core.logging import get_logger

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]

log = get_logger(component="retry")

NON_RETRYABLE_PATTERNS = (
    "unauthorized",
    "forbidden",
    "invalid token",
    "authentication",
    "permission denied",
    "access denied",
    "bad request",
)

RETRYABLE_PATTERNS = (
    "timeout",
    "connection",
    "network",
    "reset",
    "refused",
    "socket hang up",
    "5xx",
    "rate limit",
    "throttled",
    "unavailable",
    "gateway",
)


class RetryConfig(BaseModel):
    """Política de retry. Tempos em milissegundos."""
    max_attempts: int = Field(default=3, ge=1)
    initial_delay: int = Field(default=1000, ge=0)
    max_delay: int = Field(default=10000, ge=0)
    exponential_base: float = Field(default=2, gt=0)

    def delay_for(self, attempt: int) -> int:
        """Espera (ms) antes da tentativa ``attempt + 1``."""
        delay = self.initial_delay * self.exponential_base ** (attempt - 1)
        return int(min(delay, self.max_delay))


def is_retryable(error: BaseException) -> bool:
    """Classifica o erro: flag explícita, depois padrões de mensagem, padrão = retryable."""
    flag = getattr(error, "retryable", None) if isinstance(error, DeliveryError) else None
    if flag is not None:
        return flag
    message = str(error).lower()
    if any(p in message for p in NON_RETRYABLE_PATTERNS):
        return False
    if any(p in message for p in RETRYABLE_PATTERNS):
        return True
    return True


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    operation_name: str = "operation",
    *,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Executa ``operation`` até ``max_attempts`` vezes.

    Erros não-retryable são relançados na hora. Esgotadas as tentativas,
    levanta ``RetryExhaustedError`` com o último erro.
    """
    cfg = config or RetryConfig()
    last_error: Exception | None = None
    for attempt in range(1, cfg.max_attempts + 1):
        try:
            log.debug("retry_attempt", operation=operation_name, attempt=attempt, max_attempts=cfg.max_attempts)
            result = await operation()
            if attempt > 1:
                log.info("retry_succeeded", operation=operation_name, attempt=attempt)
            return result
        except Exception as e:
            last_error = e
            log.warning("retry_attempt_failed", operation=operation_name, attempt=attempt,
                        max_attempts=cfg.max_attempts, error=str(e))
            if not is_retryable(e):
                log.info("retry_aborted_non_retryable", operation=operation_name, attempt=attempt)
                raise
            if attempt == cfg.max_attempts:
                break
            delay = cfg.delay_for(attempt)
            log.info("retry_backoff", operation=operation_name, delay_ms=delay)
            await sleep(delay / 1000.0)
    raise RetryExhaustedError(operation_name, cfg.max_attempts, last_error) from last_error


async def with_timeout(
    operation: Callable[[], Awaitable[T]],
    timeout_ms: int,
    operation_name: str = "operation",
) -> T:
    """Corre a operação contra um timer.

    No estouro a corrotina interna recebe cancelamento cooperativo
    (``CancelledError`` no próximo await); trabalho síncrono em andamento não é interrompido.
    """
    try:
        return await asyncio.wait_for(operation(), timeout=timeout_ms / 1000.0)
    except asyncio.TimeoutError as e:
        raise OperationTimeoutError(operation_name, timeout_ms) from e


async def retry_with_timeout(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    timeout_ms: int = 30000,
    operation_name: str = "operation",
    *,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Retry em que cada tentativa tem seu próprio timeout."""
    return await retry_with_backoff(
        lambda: with_timeout(operation, timeout_ms, operation_name),
        config,
        operation_name,
        sleep=sleep,
    )
