"""Portas hexagonais (interfaces) e DTOs do núcleo de entrega."""
from __future__ import annotations
from datetime import datetime, timezone
from typing import Literal, Protocol, Sequence
from pydantic import BaseModel, ConfigDict, Field

ServiceType = Literal["whatsapp", "email"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CodeRecord(BaseModel):
    """Código vindo do produtor externo (planilha) ou do ORM."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    session_id: str
    column_a_value: str | None = None
    column_d_value: str | None = None
    combined_code: str
    row_number: int = 0
    status: Literal["available", "sent", "archived"] = "available"
    sent_at: datetime | None = None
    archived_at: datetime | None = None
    created_at: datetime | None = None


class WhatsAppConfig(BaseModel):
    """Blob de credenciais do WhatsApp Business API."""
    access_token: str
    phone_number_id: str
    webhook_url: str | None = None


class EmailConfig(BaseModel):
    """Blob de credenciais SMTP. Campos vazios são aceitos aqui e barrados no teste de configuração."""
    smtp_host: str = ""
    smtp_port: int = 0
    smtp_user: str = ""
    smtp_password: str = ""
    from_email: str = ""
    from_name: str | None = None


class DeliveryResult(BaseModel):
    """Resultado de envio de um lote: tudo ou nada."""
    success: bool
    sent_count: int = 0
    failed_count: int = 0
    errors: list[str] = Field(default_factory=list)
    error_code: str | None = None
    provider_message_id: str | None = None

    @classmethod
    def ok(cls, count: int, provider_message_id: str | None = None) -> "DeliveryResult":
        return cls(success=True, sent_count=count, failed_count=0, provider_message_id=provider_message_id)

    @classmethod
    def failed(cls, count: int, error: str, error_code: str | None = None) -> "DeliveryResult":
        return cls(success=False, sent_count=0, failed_count=count, errors=[error], error_code=error_code)


class ConnectivityDetails(BaseModel):
    service_type: ServiceType
    endpoint: str | None = None
    response_time: int | None = None  # ms
    status_code: int | None = None
    error_code: str | None = None
    suggestions: list[str] = Field(default_factory=list)


class ConnectivityTestResult(BaseModel):
    """Diagnóstico de conectividade exibido ao usuário."""
    success: bool
    message: str
    details: ConnectivityDetails
    timestamp: datetime = Field(default_factory=_now)


class TransitionResult(BaseModel):
    success: bool
    message: str


class ArchiveResult(BaseModel):
    success: bool
    message: str
    archived_count: int = 0
    errors: list[str] = Field(default_factory=list)


class PhoneNumberInfo(BaseModel):
    success: bool
    phone_number: str | None = None
    display_name: str | None = None
    error: str | None = None


class ConnectivitySummary(BaseModel):
    whatsapp_status: Literal["connected", "failed"]
    email_status: Literal["connected", "failed"]
    overall_status: Literal["all_connected", "partial_or_failed"]


class FullConnectivityReport(BaseModel):
    success: bool = True
    message: str
    total_time: int  # ms
    timestamp: datetime = Field(default_factory=_now)
    results: dict[str, ConnectivityTestResult]
    summary: ConnectivitySummary


class DeliveryPort(Protocol):
    async def send_codes(self, user_id: str, codes: Sequence[CodeRecord], destination: str, *args, **kwargs) -> DeliveryResult: ...

    async def test_configuration(self, user_id: str) -> ConnectivityTestResult: ...
