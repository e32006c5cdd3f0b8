"""Configurações Pydantic Settings para o núcleo de entrega."""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
    """Configurações da aplicação. Carrega de env e .env.

    Todas as credenciais devem vir via env. Nunca hardcode.
    """
    model_config = SettingsConfigDict(env_file=".env", env_prefix="EC_", case_sensitive=False)

    # DB
    database_url: str = Field(..., description="URL do Postgres, ex: postgresql+psycopg://user:pass@db:5432/app")

    # Cofre de credenciais
    encryption_key: str = Field(..., description="Segredo de onde a chave AES é derivada (ENCRYPTION_KEY)")
    encryption_key_id: str | None = Field(default=None, description="Prefixo opcional de versão da chave")

    # WhatsApp Cloud API
    whatsapp_api_base_url: str = Field(default="https://graph.facebook.com")
    whatsapp_api_version: str = Field(default="v18.0")
    default_country_code: str = Field(default="55")

    # Circuit breakers (um por serviço)
    breaker_failure_threshold: int = Field(default=3)
    breaker_recovery_ms: int = Field(default=30000)

    # Arquivamento
    archive_max_batch: int = Field(default=100)

    # Logging
    log_level: int = Field(default=20)
