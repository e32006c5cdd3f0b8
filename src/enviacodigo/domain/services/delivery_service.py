"""Orquestra o envio: carrega códigos enviáveis, chama o adapter e aplica o resultado ao ciclo de vida."""
from __future__ import annotations
from typing import Sequence
from kink import di
from ...connectors.email.smtp_adapter import SmtpEmailAdapter
from ...connectors.whatsapp.cloud_api_adapter import WhatsAppCloudAdapter
from ...core.errors import (
    CodeNotFoundError, ConcurrentUpdateError, EmptySelectionError, InvalidTransitionError, LifecycleError,
    OwnershipError,
)
from ...core.logging import get_logger, mask_destination
from ...ports.interfaces import DeliveryResult, ServiceType
from . import code_service

log = get_logger(component="delivery_service")

LIFECYCLE_ERROR_CODES: dict[type, str] = {
    CodeNotFoundError: "CODE_NOT_FOUND",
    OwnershipError: "ACCESS_DENIED",
    EmptySelectionError: "EMPTY_BATCH",
    InvalidTransitionError: "CODE_NOT_AVAILABLE",
    ConcurrentUpdateError: "CONCURRENT_UPDATE",
}


async def send_via_whatsapp(user_id: str, code_ids: Sequence[str], phone_number: str,
                            custom_message: str | None = None) -> DeliveryResult:
    adapter: WhatsAppCloudAdapter = di[WhatsAppCloudAdapter]
    return await _deliver(
        user_id, code_ids, "whatsapp", phone_number,
        lambda codes: adapter.send_codes(user_id, codes, phone_number, custom_message),
    )


async def send_via_email(user_id: str, code_ids: Sequence[str], email: str, subject: str | None = None,
                         custom_message: str | None = None) -> DeliveryResult:
    adapter: SmtpEmailAdapter = di[SmtpEmailAdapter]
    return await _deliver(
        user_id, code_ids, "email", email,
        lambda codes: adapter.send_codes(user_id, codes, email, subject, custom_message),
    )


async def _deliver(user_id: str, code_ids: Sequence[str], channel: ServiceType, destination: str,
                   send) -> DeliveryResult:
    """Fluxo comum: pré-condição -> envio -> transição (sucesso) ou histórico de falha.

    Só marca ``sent`` depois do provedor aceitar o lote inteiro.
    """
    total = len(code_ids)
    try:
        codes = code_service.load_sendable_codes(user_id, code_ids)
    except LifecycleError as e:
        log.info("delivery_precondition_failed", user_id=user_id, channel=channel, error=str(e))
        return DeliveryResult.failed(total, str(e), LIFECYCLE_ERROR_CODES.get(type(e), "LIFECYCLE_ERROR"))

    result = await send(codes)
    ids = [c.id for c in codes]
    if not result.success:
        code_service.record_failed_send(user_id, ids, channel, destination, result.errors, result.error_code)
        return result

    try:
        code_service.mark_sent(user_id, ids, channel, destination, result.provider_message_id)
    except ConcurrentUpdateError as e:
        # mensagem já saiu; o lote foi alterado por outra requisição no meio
        log.error("delivery_sent_but_not_marked", user_id=user_id, channel=channel,
                  destination=mask_destination(destination), error=str(e))
        return result.model_copy(update={"errors": [str(e)], "error_code": "CONCURRENT_UPDATE"})
    return result
