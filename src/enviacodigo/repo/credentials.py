"""Repositório de credenciais por (usuário, serviço), cifradas pelo cofre."""
from __future__ import annotations
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from kink import di
from ..core.logging import get_logger
from ..core.vault import CredentialVault
from ..ports.interfaces import EmailConfig, ServiceType, WhatsAppConfig
from .models import ServiceCredential, utcnow

log = get_logger(component="credentials")

CONFIG_MODELS: dict[str, type[WhatsAppConfig] | type[EmailConfig]] = {
    "whatsapp": WhatsAppConfig,
    "email": EmailConfig,
}


def _model_for(service_type: str):
    try:
        return CONFIG_MODELS[service_type]
    except KeyError:
        raise ValueError(f"service_type desconhecido: {service_type}") from None


def save_config(user_id: str, service_type: ServiceType, config: dict | WhatsAppConfig | EmailConfig) -> str:
    """Valida, cifra e grava (upsert) a credencial ativa do par (usuário, serviço).

    :return: id da linha.
    """
    model = _model_for(service_type)
    validated = config if isinstance(config, model) else model.model_validate(config)
    vault: CredentialVault = di[CredentialVault]
    blob = vault.encrypt_config(validated.model_dump(mode="json"))
    Session = di["session_factory"]
    try:
        with Session() as s, s.begin():
            row_id = _upsert(s, user_id, service_type, blob)
    except IntegrityError:
        # outra requisição inseriu o par ao mesmo tempo: vira update
        with Session() as s, s.begin():
            row_id = _upsert(s, user_id, service_type, blob)
    log.info("credential_saved", user_id=user_id, service_type=service_type)
    return row_id


def _upsert(s, user_id: str, service_type: str, blob: str) -> str:
    row = s.execute(
        select(ServiceCredential).where(ServiceCredential.user_id == user_id, ServiceCredential.service_type == service_type)
    ).scalars().first()
    if row:
        row.encrypted_config = blob
        row.is_active = True
        row.updated_at = utcnow()
    else:
        row = ServiceCredential(user_id=user_id, service_type=service_type, encrypted_config=blob, is_active=True)
        s.add(row)
        s.flush()
    return row.id


def get_decrypted_config(user_id: str, service_type: str):
    """Carrega e abre a credencial ativa. ``None`` se não houver; ``DecryptionError`` se corrompida."""
    model = _model_for(service_type)
    Session = di["session_factory"]
    with Session() as s:
        blob = s.execute(
            select(ServiceCredential.encrypted_config).where(
                ServiceCredential.user_id == user_id,
                ServiceCredential.service_type == service_type,
                ServiceCredential.is_active.is_(True),
            )
        ).scalar()
    if blob is None:
        return None
    vault: CredentialVault = di[CredentialVault]
    return model.model_validate(vault.decrypt_config(blob))


def get_whatsapp_config(user_id: str) -> WhatsAppConfig | None:
    return get_decrypted_config(user_id, "whatsapp")


def get_email_config(user_id: str) -> EmailConfig | None:
    return get_decrypted_config(user_id, "email")


def update_last_tested(user_id: str, service_type: ServiceType) -> None:
    Session = di["session_factory"]
    with Session() as s, s.begin():
        s.execute(
            update(ServiceCredential)
            .where(ServiceCredential.user_id == user_id, ServiceCredential.service_type == service_type)
            .values(last_tested=utcnow())
        )


def deactivate(user_id: str, service_type: ServiceType) -> bool:
    """Soft delete: a linha fica, só deixa de ser usada."""
    Session = di["session_factory"]
    with Session() as s, s.begin():
        res = s.execute(
            update(ServiceCredential)
            .where(ServiceCredential.user_id == user_id, ServiceCredential.service_type == service_type,
                   ServiceCredential.is_active.is_(True))
            .values(is_active=False, updated_at=utcnow())
        )
    log.info("credential_deactivated", user_id=user_id, service_type=service_type, changed=res.rowcount)
    return res.rowcount > 0


def list_active(user_id: str) -> list[dict]:
    """Lista credenciais ativas sem expor segredos."""
    Session = di["session_factory"]
    with Session() as s:
        rows = s.execute(
            select(ServiceCredential)
            .where(ServiceCredential.user_id == user_id, ServiceCredential.is_active.is_(True))
            .order_by(ServiceCredential.service_type)
        ).scalars().all()
        return [
            {"service_type": r.service_type, "is_active": r.is_active, "last_tested": r.last_tested,
             "updated_at": r.updated_at}
            for r in rows
        ]
