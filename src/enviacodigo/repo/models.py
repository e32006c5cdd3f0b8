"""Modelos SQLAlchemy: sessões de upload, códigos, credenciais e histórico."""
from __future__ import annotations
from datetime import datetime, timezone
from uuid import uuid4
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, validates
from sqlalchemy import String, Integer, JSON, Boolean, ForeignKey, UniqueConstraint, Index, TIMESTAMP, event


def _uuid() -> str:
    return str(uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base declarativa."""
    pass


class UploadSession(Base):
    __tablename__ = "upload_sessions"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    filename: Mapped[str] = mapped_column(String(255))
    total_codes: Mapped[int] = mapped_column(Integer, default=0)
    valid_codes: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utcnow)


class Code(Base):
    __tablename__ = "codes"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    session_id: Mapped[str] = mapped_column(ForeignKey("upload_sessions.id"))
    column_a_value: Mapped[str | None] = mapped_column(String(255))
    column_d_value: Mapped[str | None] = mapped_column(String(255))
    combined_code: Mapped[str] = mapped_column(String(255))
    row_number: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(16), default="available")  # available|sent|archived
    sent_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True))
    archived_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True))
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), onupdate=utcnow)
    __table_args__ = (
        Index("ix_codes_session_status", "session_id", "status"),
    )

    @validates("combined_code")
    def _freeze_combined_code(self, key, value):
        # derivado na ingestão, imutável depois
        current = self.__dict__.get("combined_code")
        if current is not None and current != value:
            raise ValueError("combined_code é imutável")
        return value


class ServiceCredential(Base):
    __tablename__ = "api_settings"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36))
    service_type: Mapped[str] = mapped_column(String(16))  # whatsapp|email
    encrypted_config: Mapped[str] = mapped_column(String)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_tested: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True))
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow)
    __table_args__ = (
        UniqueConstraint("user_id", "service_type", name="uq_api_settings_user_service"),
    )


class HistoryItem(Base):
    """Registro de auditoria append-only."""
    __tablename__ = "history_items"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    code_id: Mapped[str | None] = mapped_column(String(36), index=True)
    action_type: Mapped[str] = mapped_column(String(32))  # send_whatsapp|send_email|archive|unarchive
    destination: Mapped[str | None] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(16))  # success|failed|pending
    details: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utcnow)


@event.listens_for(HistoryItem, "before_update")
def _history_is_immutable(mapper, connection, target):
    raise ValueError("HistoryItem é imutável")


@event.listens_for(HistoryItem, "before_delete")
def _history_is_append_only(mapper, connection, target):
    raise ValueError("HistoryItem é append-only")
