"""Repositório de códigos e sessões de upload, com UPDATE condicional (CAS) de status."""
from __future__ import annotations
from datetime import datetime
from typing import Iterable, Sequence
from sqlalchemy import select, update, func
from sqlalchemy.orm import Session as OrmSession
from kink import di
from ..core.logging import get_logger
from ..domain.lifecycle import CodeStatus, assert_transition, timestamp_field_for
from .models import Code, UploadSession, utcnow

log = get_logger(component="codes")


def add_session_with_codes(user_id: str, filename: str, rows: Iterable[dict]) -> str:
    """Ponto de entrada do produtor externo (parser de planilha).

    Cada linha: ``{column_a_value, column_d_value, combined_code, row_number}``.
    """
    Session = di["session_factory"]
    rows = list(rows)
    with Session() as s, s.begin():
        sess = UploadSession(user_id=user_id, filename=filename, total_codes=len(rows), valid_codes=len(rows))
        s.add(sess)
        s.flush()
        for r in rows:
            s.add(Code(
                session_id=sess.id,
                column_a_value=r.get("column_a_value"),
                column_d_value=r.get("column_d_value"),
                combined_code=r["combined_code"],
                row_number=r.get("row_number", 0),
                status=CodeStatus.AVAILABLE.value,
            ))
        session_id = sess.id
    log.info("upload_session_stored", user_id=user_id, session_id=session_id, codes=len(rows))
    return session_id


def find_code(s: OrmSession, code_id: str) -> Code | None:
    return s.get(Code, code_id)


def find_session(s: OrmSession, session_id: str) -> UploadSession | None:
    return s.get(UploadSession, session_id)


def owner_of(s: OrmSession, code: Code) -> str | None:
    """user_id dono do código via sessão de upload."""
    return s.execute(select(UploadSession.user_id).where(UploadSession.id == code.session_id)).scalar()


def find_codes_by_session(s: OrmSession, session_id: str, status: str | None = None) -> list[Code]:
    q = select(Code).where(Code.session_id == session_id)
    if status:
        q = q.where(Code.status == status)
    return list(s.execute(q.order_by(Code.row_number)).scalars().all())


def transition_codes(
    s: OrmSession,
    code_ids: Sequence[str],
    expected: Iterable[str | CodeStatus],
    target: str | CodeStatus,
    now: datetime | None = None,
) -> int:
    """Aplica ``status=target`` só onde o status atual está em ``expected``.

    Um único ``UPDATE ... WHERE id IN (...) AND status IN (...)``; retorna rowcount.
    O chamador compara com ``len(code_ids)`` para detectar corrida.
    """
    target = CodeStatus(target)
    expected = [CodeStatus(e) for e in expected]
    for src in expected:
        assert_transition(src, target)
    if not code_ids:
        return 0
    now = now or utcnow()
    values: dict = {"status": target.value, "updated_at": now}
    field = timestamp_field_for(target)
    if field:
        values[field] = now
    if target is CodeStatus.AVAILABLE:
        values["archived_at"] = None
    res = s.execute(
        update(Code)
        .where(Code.id.in_(list(code_ids)), Code.status.in_([e.value for e in expected]))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount


def count_by_status(session_id: str) -> dict[str, int]:
    Session = di["session_factory"]
    counts = {st.value: 0 for st in CodeStatus}
    with Session() as s:
        for status, n in s.execute(
            select(Code.status, func.count()).where(Code.session_id == session_id).group_by(Code.status)
        ).all():
            counts[status] = n
    return counts
