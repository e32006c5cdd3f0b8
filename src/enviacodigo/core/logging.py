"""Infra de logging JSON usando structlog, com trace_id contextual."""
from __future__ import annotations
import structlog
import sys
from uuid import uuid4
from contextvars import ContextVar

trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="-")

def set_trace_id(value: str | None = None) -> str:
    """Define trace_id no contexto atual e retorna o valor definido."""
    tid = value or uuid4().hex
    trace_id_ctx.set(tid)
    return tid

def configure_logging(level: int = 20) -> None:
    """Configura structlog (JSON em stdout) com trace_id injetado automaticamente."""
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            lambda _, __, ev: {**ev, "trace_id": trace_id_ctx.get()},
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=False,
    )

def get_logger(**initial) -> structlog.stdlib.BoundLogger:
    """Retorna logger estruturado, opcionalmente com campos fixos (ex.: component)."""
    return structlog.get_logger(**initial)

def mask_destination(value: str | None) -> str:
    """Mascara telefone/e-mail para log: mantém só o final."""
    if not value:
        return "-"
    if "@" in value:
        user, _, domain = value.partition("@")
        return f"{user[:1]}***@{domain}"
    return f"***{value[-4:]}" if len(value) > 4 else "***"
