"""Máquina de estados do código: available -> sent -> archived -> available."""
from __future__ import annotations
from enum import Enum
from ..core.errors import InvalidTransitionError


class CodeStatus(str, Enum):
    AVAILABLE = "available"
    SENT = "sent"
    ARCHIVED = "archived"


ALLOWED_TRANSITIONS: dict[CodeStatus, frozenset[CodeStatus]] = {
    CodeStatus.AVAILABLE: frozenset({CodeStatus.SENT, CodeStatus.ARCHIVED}),
    CodeStatus.SENT: frozenset({CodeStatus.ARCHIVED}),
    CodeStatus.ARCHIVED: frozenset({CodeStatus.AVAILABLE}),
}

# campo carimbado ao entrar no estado; restore não carimba
TIMESTAMP_FIELDS: dict[CodeStatus, str | None] = {
    CodeStatus.SENT: "sent_at",
    CodeStatus.ARCHIVED: "archived_at",
    CodeStatus.AVAILABLE: None,
}


def can_transition(current: str | CodeStatus, target: str | CodeStatus) -> bool:
    try:
        return CodeStatus(target) in ALLOWED_TRANSITIONS[CodeStatus(current)]
    except ValueError:
        return False


def assert_transition(current: str | CodeStatus, target: str | CodeStatus) -> None:
    """Levanta ``InvalidTransitionError`` para arestas fora do grafo."""
    if not can_transition(current, target):
        raise InvalidTransitionError(str(getattr(current, "value", current)), str(getattr(target, "value", target)))


def sources_for(target: str | CodeStatus) -> frozenset[CodeStatus]:
    """Estados de onde ``target`` é alcançável."""
    t = CodeStatus(target)
    return frozenset(src for src, dsts in ALLOWED_TRANSITIONS.items() if t in dsts)


def timestamp_field_for(target: str | CodeStatus) -> str | None:
    return TIMESTAMP_FIELDS[CodeStatus(target)]
