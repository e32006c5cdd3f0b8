"""Serviço de ciclo de vida dos códigos: envio, arquivamento e restauração.

Toda transição verifica a cadeia de posse (código -> sessão -> usuário), usa
UPDATE condicional no status esperado e grava um HistoryItem na mesma transação.
"""
from __future__ import annotations
import math
from datetime import timedelta
from typing import Sequence
from kink import di
from sqlalchemy import select, func
from ...core.errors import (
    CodeNotFoundError, ConcurrentUpdateError, EmptySelectionError, InvalidTransitionError, OwnershipError,
)
from ...core.logging import get_logger, mask_destination
from ...core.settings import Settings
from ...ports.interfaces import ArchiveResult, CodeRecord, ServiceType, TransitionResult
from ...repo import codes as code_repo
from ...repo import history
from ...repo.models import Code, UploadSession, utcnow
from ..lifecycle import CodeStatus, assert_transition

log = get_logger(component="code_service")

SEND_ACTIONS: dict[str, str] = {"whatsapp": "send_whatsapp", "email": "send_email"}


def _owned_code(s, user_id: str, code_id: str) -> Code:
    code = code_repo.find_code(s, code_id)
    if code is None:
        raise CodeNotFoundError(f"Código {code_id} não encontrado")
    if code_repo.owner_of(s, code) != user_id:
        raise OwnershipError(f"Acesso negado ao código {code_id}")
    return code


def load_sendable_codes(user_id: str, code_ids: Sequence[str]) -> list[CodeRecord]:
    """Carrega os códigos pedidos, exigindo posse e status ``available``.

    Levanta o primeiro erro encontrado (não existe envio parcial).
    """
    if not code_ids:
        raise EmptySelectionError("IDs dos códigos são obrigatórios")
    Session = di["session_factory"]
    out: list[CodeRecord] = []
    with Session() as s:
        for code_id in dict.fromkeys(code_ids):
            code = _owned_code(s, user_id, code_id)
            if code.status != CodeStatus.AVAILABLE.value:
                raise InvalidTransitionError(
                    code.status, CodeStatus.SENT.value,
                    f"Código {code.combined_code} não está disponível (status: {code.status})",
                )
            out.append(CodeRecord.model_validate(code))
    return out


def mark_sent(user_id: str, code_ids: Sequence[str], channel: ServiceType, destination: str,
              provider_message_id: str | None = None) -> int:
    """available -> sent para todo o lote, ou nada (``ConcurrentUpdateError``)."""
    ids = list(dict.fromkeys(code_ids))
    Session = di["session_factory"]
    with Session() as s, s.begin():
        for code_id in ids:
            _owned_code(s, user_id, code_id)
        changed = code_repo.transition_codes(s, ids, [CodeStatus.AVAILABLE], CodeStatus.SENT)
        if changed != len(ids):
            raise ConcurrentUpdateError(
                f"{len(ids) - changed} código(s) mudaram de status durante o envio; nada foi marcado"
            )
        for code_id in ids:
            history.add(s, user_id, SEND_ACTIONS[channel], "success", code_id=code_id, destination=destination,
                        details={"provider_message_id": provider_message_id, "batch_size": len(ids)})
    log.info("codes_marked_sent", user_id=user_id, count=len(ids), channel=channel,
             destination=mask_destination(destination))
    return changed


def record_failed_send(user_id: str, code_ids: Sequence[str], channel: ServiceType, destination: str,
                       errors: Sequence[str], error_code: str | None = None) -> None:
    """Registra a tentativa falha; o status dos códigos não muda."""
    Session = di["session_factory"]
    with Session() as s, s.begin():
        for code_id in dict.fromkeys(code_ids):
            history.add(s, user_id, SEND_ACTIONS[channel], "failed", code_id=code_id, destination=destination,
                        details={"errors": list(errors), "error_code": error_code})
    log.info("send_failure_recorded", user_id=user_id, count=len(code_ids), channel=channel, error_code=error_code)


def archive_codes(user_id: str, code_ids: Sequence[str], reason: str = "Arquivado manualmente",
                  require_sent: bool = True) -> ArchiveResult:
    """Arquiva código a código, acumulando erros.

    ``require_sent=True`` só aceita ``sent``; caso contrário ``available`` também vale.
    """
    settings: Settings = di[Settings]
    if not code_ids:
        return ArchiveResult(success=False, message="Lista de códigos é obrigatória")
    code_ids = list(dict.fromkeys(code_ids))
    if len(code_ids) > settings.archive_max_batch:
        return ArchiveResult(success=False, message=f"Máximo de {settings.archive_max_batch} códigos por operação")

    expected = [CodeStatus.SENT] if require_sent else [CodeStatus.AVAILABLE, CodeStatus.SENT]
    errors: list[str] = []
    archived = 0
    Session = di["session_factory"]
    for code_id in code_ids:
        try:
            with Session() as s, s.begin():
                code = _owned_code(s, user_id, code_id)
                if code.status not in {e.value for e in expected}:
                    if code.status == CodeStatus.ARCHIVED.value:
                        raise InvalidTransitionError(code.status, CodeStatus.ARCHIVED.value,
                                                     f"Código {code.combined_code} já está arquivado")
                    raise InvalidTransitionError(code.status, CodeStatus.ARCHIVED.value,
                                                 f"Código {code.combined_code} não foi enviado (status: {code.status})")
                previous = code.status
                if code_repo.transition_codes(s, [code.id], [previous], CodeStatus.ARCHIVED) != 1:
                    raise ConcurrentUpdateError(f"Código {code.combined_code} mudou de status durante o arquivamento")
                history.add(s, user_id, "archive", "success", code_id=code.id, destination=None,
                            details={"reason": reason, "code": code.combined_code, "previous_status": previous})
            archived += 1
        except (CodeNotFoundError, OwnershipError, InvalidTransitionError, ConcurrentUpdateError) as e:
            errors.append(str(e))

    log.info("codes_archived", user_id=user_id, archived=archived, errors=len(errors))
    if errors:
        return ArchiveResult(success=False, message="Alguns códigos não puderam ser arquivados",
                             archived_count=archived, errors=errors)
    return ArchiveResult(success=True, message=f"{archived} código(s) arquivado(s) com sucesso",
                         archived_count=archived)


def archive_session(user_id: str, session_id: str, reason: str = "Sessão arquivada manualmente") -> ArchiveResult:
    """Arquiva todos os códigos ``sent`` de uma sessão do usuário."""
    Session = di["session_factory"]
    with Session() as s:
        sess = code_repo.find_session(s, session_id)
        if sess is None or sess.user_id != user_id:
            return ArchiveResult(success=False, message="Sessão não encontrada ou acesso negado",
                                 errors=["Sessão não encontrada ou acesso negado"])
        ids = [c.id for c in code_repo.find_codes_by_session(s, session_id, CodeStatus.SENT.value)]
    if not ids:
        return ArchiveResult(success=True, message="Nenhum código enviado encontrado para arquivar")
    return _archive_in_chunks(user_id, ids, reason)


def _archive_in_chunks(user_id: str, ids: list[str], reason: str) -> ArchiveResult:
    size = di[Settings].archive_max_batch
    total, errors = 0, []
    for i in range(0, len(ids), size):
        res = archive_codes(user_id, ids[i:i + size], reason)
        total += res.archived_count
        errors.extend(res.errors)
    if errors:
        return ArchiveResult(success=False, message="Erro ao arquivar sessão", archived_count=total, errors=errors)
    return ArchiveResult(success=True, message=f"Sessão arquivada: {total} código(s) arquivado(s)",
                         archived_count=total)


def restore_code(user_id: str, code_id: str) -> TransitionResult:
    """archived -> available. ``archived_at`` é limpo; ``sent_at`` é mantido."""
    Session = di["session_factory"]
    try:
        with Session() as s, s.begin():
            code = _owned_code(s, user_id, code_id)
            if code.status != CodeStatus.ARCHIVED.value:
                return TransitionResult(success=False, message=f"Código não está arquivado (status: {code.status})")
            assert_transition(code.status, CodeStatus.AVAILABLE)
            if code_repo.transition_codes(s, [code.id], [CodeStatus.ARCHIVED], CodeStatus.AVAILABLE) != 1:
                raise ConcurrentUpdateError("Código mudou de status durante a restauração")
            history.add(s, user_id, "unarchive", "success", code_id=code.id,
                        details={"reason": "Código restaurado do arquivo", "code": code.combined_code})
    except CodeNotFoundError:
        return TransitionResult(success=False, message="Código não encontrado")
    except OwnershipError:
        return TransitionResult(success=False, message="Acesso negado")
    except ConcurrentUpdateError as e:
        return TransitionResult(success=False, message=str(e))
    log.info("code_restored", user_id=user_id, code_id=code_id)
    return TransitionResult(success=True, message="Código restaurado com sucesso")


def get_archived_codes(user_id: str, page: int = 1, limit: int = 50) -> dict:
    """Página de códigos arquivados do usuário, mais recentes primeiro."""
    page, limit = max(page, 1), max(limit, 1)
    Session = di["session_factory"]
    base = (
        select(Code)
        .join(UploadSession, Code.session_id == UploadSession.id)
        .where(UploadSession.user_id == user_id, Code.status == CodeStatus.ARCHIVED.value)
    )
    with Session() as s:
        total = s.execute(select(func.count()).select_from(base.subquery())).scalar_one()
        rows = s.execute(
            base.order_by(Code.archived_at.desc()).limit(limit).offset((page - 1) * limit)
        ).scalars().all()
        codes = [CodeRecord.model_validate(c) for c in rows]
    return {"codes": codes, "total": total, "page": page, "total_pages": math.ceil(total / limit)}


def get_archive_stats(user_id: str, now=None) -> dict:
    """Arquivados: total, hoje, últimos 7 e 30 dias (por ``archived_at``)."""
    now = now or utcnow()
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    Session = di["session_factory"]
    base = (
        select(Code.archived_at)
        .join(UploadSession, Code.session_id == UploadSession.id)
        .where(UploadSession.user_id == user_id, Code.status == CodeStatus.ARCHIVED.value)
    )
    with Session() as s:
        stamps = list(s.execute(base).scalars().all())

    def _since(limit) -> int:
        return sum(1 for ts in stamps if ts is not None and _aware(ts, now) >= limit)

    return {
        "total_archived": len(stamps),
        "archived_today": _since(start_of_day),
        "archived_this_week": _since(start_of_day - timedelta(days=7)),
        "archived_this_month": _since(start_of_day - timedelta(days=30)),
    }


def _aware(ts, ref):
    # sqlite devolve datetime ingênuo
    if ts.tzinfo is None and ref.tzinfo is not None:
        return ts.replace(tzinfo=ref.tzinfo)
    return ts
