"""Histórico de auditoria append-only (history_items)."""
from __future__ import annotations
from typing import Any
from sqlalchemy import select, func
from sqlalchemy.orm import Session as OrmSession
from kink import di
from ..core.logging import get_logger
from .models import HistoryItem

log = get_logger(component="history")

ACTION_TYPES = ("send_whatsapp", "send_email", "archive", "unarchive")
STATUSES = ("success", "failed", "pending")


def add(s: OrmSession, user_id: str, action_type: str, status: str, *, code_id: str | None = None,
        destination: str | None = None, details: dict[str, Any] | None = None) -> HistoryItem:
    """Acrescenta um item na sessão corrente (mesma transação da transição)."""
    if action_type not in ACTION_TYPES:
        raise ValueError(f"action_type inválido: {action_type}")
    if status not in STATUSES:
        raise ValueError(f"status inválido: {status}")
    item = HistoryItem(user_id=user_id, code_id=code_id, action_type=action_type,
                       destination=destination, status=status, details=details)
    s.add(item)
    return item


def append(user_id: str, action_type: str, status: str, *, code_id: str | None = None,
           destination: str | None = None, details: dict[str, Any] | None = None) -> str:
    """Registra um item em transação própria e retorna o id."""
    Session = di["session_factory"]
    with Session() as s, s.begin():
        item = add(s, user_id, action_type, status, code_id=code_id, destination=destination, details=details)
        s.flush()
        item_id = item.id
    log.info("history_appended", user_id=user_id, action_type=action_type, status=status)
    return item_id


def _as_dict(h: HistoryItem) -> dict:
    return {
        "id": h.id, "user_id": h.user_id, "code_id": h.code_id, "action_type": h.action_type,
        "destination": h.destination, "status": h.status, "details": h.details, "created_at": h.created_at,
    }


def list_by_user(user_id: str, limit: int = 50, offset: int = 0, action_type: str | None = None) -> list[dict]:
    Session = di["session_factory"]
    with Session() as s:
        q = select(HistoryItem).where(HistoryItem.user_id == user_id)
        if action_type:
            q = q.where(HistoryItem.action_type == action_type)
        rows = s.execute(q.order_by(HistoryItem.created_at.desc()).limit(limit).offset(offset)).scalars().all()
        return [_as_dict(h) for h in rows]


def count_by_user(user_id: str, action_type: str | None = None) -> int:
    Session = di["session_factory"]
    with Session() as s:
        q = select(func.count()).select_from(HistoryItem).where(HistoryItem.user_id == user_id)
        if action_type:
            q = q.where(HistoryItem.action_type == action_type)
        return s.execute(q).scalar_one()


def list_by_code(code_id: str) -> list[dict]:
    Session = di["session_factory"]
    with Session() as s:
        rows = s.execute(
            select(HistoryItem).where(HistoryItem.code_id == code_id).order_by(HistoryItem.created_at.desc())
        ).scalars().all()
        return [_as_dict(h) for h in rows]


def statistics(user_id: str) -> dict:
    """Totais por tipo de ação bem-sucedida e os 10 eventos mais recentes."""
    Session = di["session_factory"]
    with Session() as s:
        total = s.execute(
            select(func.count()).select_from(HistoryItem).where(HistoryItem.user_id == user_id)
        ).scalar_one()
        by_action = dict(s.execute(
            select(HistoryItem.action_type, func.count())
            .where(HistoryItem.user_id == user_id, HistoryItem.status == "success")
            .group_by(HistoryItem.action_type)
        ).all())
    return {
        "total_actions": total,
        "whatsapp_sent": by_action.get("send_whatsapp", 0),
        "email_sent": by_action.get("send_email", 0),
        "archived_codes": by_action.get("archive", 0),
        "recent_activity": list_by_user(user_id, limit=10),
    }
