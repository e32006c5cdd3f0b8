"""Bootstrap do container de DI (kink) para o núcleo de entrega."""
from kink import di
from .settings import Settings
from .logging import configure_logging, get_logger
from .db import create_session_factory
from .vault import CredentialVault
from ..resilience.breaker import BreakerRegistry
from ..connectors.whatsapp.cloud_api_adapter import WhatsAppCloudAdapter
from ..connectors.email.smtp_adapter import SmtpEmailAdapter

def bootstrap_di() -> None:
    settings = Settings()
    di[Settings] = settings
    configure_logging(settings.log_level)
    di["logger"] = get_logger()
    # valores chamáveis são serviços preguiçosos no kink: a factory vai embrulhada
    di["session_factory"] = lambda _di: create_session_factory(settings.database_url)
    di[CredentialVault] = CredentialVault(settings.encryption_key, settings.encryption_key_id)
    # breakers vivem só no processo, um por serviço
    di[BreakerRegistry] = BreakerRegistry(settings.breaker_failure_threshold, settings.breaker_recovery_ms)
    di[WhatsAppCloudAdapter] = WhatsAppCloudAdapter()
    di[SmtpEmailAdapter] = SmtpEmailAdapter()
