"""Adapter oficial do WhatsApp Cloud API para envio de lotes de códigos."""
from __future__ import annotations
import re
import time
from typing import Callable, Sequence
import httpx
from kink import di
from ...core.errors import (
    AuthorizationError, ConfigurationError, DecryptionError, DeliveryError,
    ProviderRejectedError, TransientTransportError, ValidationError,
)
from ...core.logging import get_logger, mask_destination
from ...core.settings import Settings
from ...ports.interfaces import (
    CodeRecord, ConnectivityDetails, ConnectivityTestResult, DeliveryResult, PhoneNumberInfo, WhatsAppConfig,
)
from ...resilience.breaker import BreakerRegistry, execute_resilient
from ...resilience.retry import RetryConfig, retry_with_timeout

log = get_logger(component="whatsapp")

SERVICE = "whatsapp"
SEND_RETRY = RetryConfig(max_attempts=3, initial_delay=1000, max_delay=5000, exponential_base=2)
SEND_TIMEOUT_MS = 15000
TEST_RETRY = RetryConfig(max_attempts=2, initial_delay=1000, max_delay=3000)
TEST_TIMEOUT_MS = 10000

KNOWN_TOKEN_PREFIXES = ("EAAG", "EAAB", "EAAJ", "EAAI")
DEFAULT_HEADER = "🎯 *Códigos de Recarga*\n\n"
FOOTER = "\n📱 *EnviaCódigo* - Sistema de Distribuição de Códigos"

_NON_PHONE_CHARS = re.compile(r"[^+\d]")
_PHONE_RE = re.compile(r"^\+\d{10,15}$")

# status HTTP do teste -> (error_code, sugestões)
STATUS_DIAGNOSTICS: dict[int, tuple[str, list[str]]] = {
    401: ("INVALID_TOKEN", [
        "Access Token inválido ou expirado",
        "Gere um novo token no Meta for Developers",
        "Verifique se o token tem as permissões necessárias",
    ]),
    403: ("INSUFFICIENT_PERMISSIONS", [
        "Token sem permissões suficientes",
        "Verifique as permissões do app no Meta for Developers",
        "Adicione a permissão whatsapp_business_messaging",
    ]),
    404: ("PHONE_NUMBER_NOT_FOUND", [
        "Phone Number ID não encontrado",
        "Verifique se o ID está correto no Meta for Developers",
        "Confirme se o número está associado ao seu app",
    ]),
    429: ("RATE_LIMITED", [
        "Muitas tentativas de teste",
        "Aguarde alguns minutos antes de testar novamente",
    ]),
}
GENERIC_SUGGESTIONS = [
    "Erro na API do WhatsApp",
    "Verifique suas credenciais",
    "Tente novamente em alguns minutos",
]


def normalize_phone_number(raw: str, country_code: str = "55") -> str:
    """Remove tudo que não é dígito ou '+'; sem '+', prefixa o DDI (se ainda não houver)."""
    cleaned = _NON_PHONE_CHARS.sub("", raw or "")
    if not cleaned.startswith("+"):
        cleaned = "+" + cleaned if cleaned.startswith(country_code) else f"+{country_code}{cleaned}"
    return cleaned


def is_valid_phone_number(phone: str) -> bool:
    return bool(_PHONE_RE.match(phone))


def format_message(codes: Sequence[CodeRecord], custom_message: str | None = None) -> str:
    """Uma única mensagem de texto com todos os códigos (1-indexados, em negrito)."""
    lines = [custom_message or DEFAULT_HEADER]
    for i, code in enumerate(codes, start=1):
        line = f"{i}. *{code.combined_code}*"
        if code.column_a_value and code.column_a_value != code.combined_code:
            line += f" - {code.column_a_value}"
        lines.append(line + "\n")
    lines.append(FOOTER)
    return "".join(lines)


def classify_http_failure(status_code: int, message: str) -> DeliveryError:
    """5xx/429/408 viram retryable; 401/403 autorização; resto recusa definitiva."""
    if status_code >= 500 or status_code in (408, 429):
        return TransientTransportError(f"Retryable error: {message}", status_code=status_code)
    if status_code in (401, 403):
        return AuthorizationError(f"Non-retryable error: {message}", status_code=status_code)
    return ProviderRejectedError(f"Non-retryable error: {message}", status_code=status_code)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = {}
    err = body.get("error") if isinstance(body, dict) else None
    # gateways às vezes devolvem {"error": "texto"} em vez do objeto da Graph API
    if isinstance(err, dict):
        err = err.get("message")
    if isinstance(err, str) and err:
        return err
    return f"HTTP {response.status_code}: {response.reason_phrase}"


class WhatsAppCloudAdapter:
    """Adapter para WhatsApp Cloud API (Graph API).

    ``config_loader`` devolve a credencial decifrada do usuário; ``transport``
    permite injetar um transporte httpx (testes).
    """

    def __init__(
        self,
        settings: Settings | None = None,
        breakers: BreakerRegistry | None = None,
        config_loader: Callable[[str], WhatsAppConfig | None] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep=None,
    ):
        self.s = settings or di[Settings]
        self.breakers = breakers or di[BreakerRegistry]
        if config_loader is None:
            from ...repo.credentials import get_whatsapp_config
            config_loader = get_whatsapp_config
        self.config_loader = config_loader
        self.transport = transport
        self._sleep_kw = {"sleep": sleep} if sleep else {}

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self.transport)

    def _url(self, phone_number_id: str, suffix: str = "") -> str:
        return f"{self.s.whatsapp_api_base_url}/{self.s.whatsapp_api_version}/{phone_number_id}{suffix}"

    def _load_config(self, user_id: str) -> WhatsAppConfig:
        try:
            config = self.config_loader(user_id)
        except DecryptionError as e:
            raise ConfigurationError("Não foi possível ler as credenciais do WhatsApp. Salve-as novamente.",
                                     code="CONFIG_UNREADABLE") from e
        if not config:
            raise ConfigurationError(
                "Configurações do WhatsApp não encontradas. Configure primeiro nas configurações."
            )
        return config

    # --- Egress ---
    async def send_codes(
        self,
        user_id: str,
        codes: Sequence[CodeRecord],
        destination: str,
        custom_message: str | None = None,
    ) -> DeliveryResult:
        """Envia o lote como UMA mensagem. Nunca levanta: falhas viram DeliveryResult."""
        total = len(codes)
        try:
            if not codes:
                raise ValidationError("Nenhum código selecionado para envio", code="EMPTY_BATCH")
            config = self._load_config(user_id)
            to = normalize_phone_number(destination, self.s.default_country_code)
            if not is_valid_phone_number(to):
                raise ValidationError("Número de telefone inválido. Use o formato: +5511999999999")
            body = format_message(codes, custom_message)
            message_id = await self._send_message(config, to, body)
        except DeliveryError as e:
            log.warning("whatsapp_send_failed", user_id=user_id, error_code=e.code, error=e.message,
                        to=mask_destination(destination))
            return DeliveryResult.failed(total, e.message, e.code)
        except Exception as e:
            log.exception("whatsapp_send_crashed", user_id=user_id)
            return DeliveryResult.failed(total, str(e) or "Erro interno do servidor", "INTERNAL_ERROR")
        log.info("whatsapp_send_ok", user_id=user_id, count=total, provider_message_id=message_id)
        return DeliveryResult.ok(total, message_id)

    async def _send_message(self, config: WhatsAppConfig, to: str, text: str) -> str | None:
        url = self._url(config.phone_number_id, "/messages")
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"body": text},
        }
        headers = {"Authorization": f"Bearer {config.access_token}"}

        async def attempt() -> str | None:
            started = time.perf_counter()
            async with self._client(SEND_TIMEOUT_MS / 1000) as cli:
                try:
                    r = await cli.post(url, json=payload, headers=headers)
                except httpx.TransportError as e:
                    raise TransientTransportError(f"Network connection error: {e}") from e
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            if r.is_success:
                try:
                    data = r.json()
                except ValueError:
                    data = {}
                messages = data.get("messages") if isinstance(data, dict) else None
                if messages:
                    log.info("whatsapp_api_ok", response_time_ms=elapsed_ms, to=mask_destination(to))
                    return messages[0].get("id")
            log.warning("whatsapp_api_error", status=r.status_code, response_time_ms=elapsed_ms)
            raise classify_http_failure(r.status_code, _error_message(r))

        return await execute_resilient(
            self.breakers.get(SERVICE),
            attempt,
            SEND_RETRY,
            SEND_TIMEOUT_MS,
            f"WhatsApp message to {mask_destination(to)}",
            **self._sleep_kw,
        )

    # --- Diagnóstico ---
    async def test_configuration(self, user_id: str) -> ConnectivityTestResult:
        """Valida formato do token e faz GET leve nos metadados do número. Nunca levanta."""
        started = time.perf_counter()

        def elapsed() -> int:
            return int((time.perf_counter() - started) * 1000)

        try:
            config = self._load_config(user_id)
        except ConfigurationError as e:
            unreadable = e.code == "CONFIG_UNREADABLE"
            return ConnectivityTestResult(
                success=False,
                message=e.message if unreadable else "Configurações do WhatsApp não encontradas",
                details=ConnectivityDetails(service_type=SERVICE, error_code=e.code, suggestions=[
                    "Configure suas credenciais do WhatsApp Business API",
                    "Verifique se o Access Token e Phone Number ID foram fornecidos",
                ]),
            )

        if not config.access_token.startswith(KNOWN_TOKEN_PREFIXES):
            return ConnectivityTestResult(
                success=False,
                message="Formato do Access Token inválido",
                details=ConnectivityDetails(service_type=SERVICE, error_code="INVALID_TOKEN_FORMAT", suggestions=[
                    f"O Access Token deve começar com um destes prefixos: {', '.join(KNOWN_TOKEN_PREFIXES)}",
                    "Verifique se copiou o token completo do Meta for Developers",
                ]),
            )

        url = self._url(config.phone_number_id)
        headers = {"Authorization": f"Bearer {config.access_token}"}

        async def probe() -> ConnectivityTestResult:
            async with self._client(TEST_TIMEOUT_MS / 1000) as cli:
                r = await cli.get(url, headers=headers)
            try:
                data = r.json()
            except ValueError:
                data = {}
            if r.is_success:
                return ConnectivityTestResult(
                    success=True,
                    message=f"Conectado com sucesso! Número: {data.get('display_phone_number') or 'N/A'}",
                    details=ConnectivityDetails(
                        service_type=SERVICE, endpoint=url, response_time=elapsed(), status_code=r.status_code,
                        suggestions=["Configuração válida e funcionando", "Você pode enviar códigos via WhatsApp"],
                    ),
                )
            error_code, suggestions = STATUS_DIAGNOSTICS.get(r.status_code, ("UNKNOWN_ERROR", GENERIC_SUGGESTIONS))
            return ConnectivityTestResult(
                success=False,
                message=f"Erro {r.status_code}: {_error_message(r).removeprefix(f'HTTP {r.status_code}: ')}",
                details=ConnectivityDetails(
                    service_type=SERVICE, endpoint=url, response_time=elapsed(), status_code=r.status_code,
                    error_code=error_code, suggestions=list(suggestions),
                ),
            )

        try:
            result = await retry_with_timeout(probe, TEST_RETRY, TEST_TIMEOUT_MS, "WhatsApp Configuration Test",
                                              **self._sleep_kw)
        except Exception as e:
            log.warning("whatsapp_test_connection_error", user_id=user_id, error=str(e))
            return ConnectivityTestResult(
                success=False,
                message="Erro de conexão com a API do WhatsApp",
                details=ConnectivityDetails(service_type=SERVICE, response_time=elapsed(),
                                            error_code="CONNECTION_ERROR", suggestions=[
                    "Verifique sua conexão com a internet",
                    "Confirme se os serviços do Meta estão funcionando",
                    "Tente novamente em alguns minutos",
                ]),
            )
        log.info("whatsapp_test_done", user_id=user_id, success=result.success, error_code=result.details.error_code)
        return result

    async def get_phone_number_info(self, user_id: str) -> PhoneNumberInfo:
        """Número exibido e nome verificado do Phone Number ID configurado."""
        try:
            config = self._load_config(user_id)
        except ConfigurationError:
            return PhoneNumberInfo(success=False, error="Configurações não encontradas")
        try:
            async with self._client(TEST_TIMEOUT_MS / 1000) as cli:
                r = await cli.get(self._url(config.phone_number_id),
                                  headers={"Authorization": f"Bearer {config.access_token}"})
        except httpx.HTTPError:
            return PhoneNumberInfo(success=False, error="Erro de conexão")
        if not r.is_success:
            return PhoneNumberInfo(success=False, error="Erro ao buscar informações do número")
        try:
            data = r.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            return PhoneNumberInfo(success=False, error="Resposta inválida da API do WhatsApp")
        return PhoneNumberInfo(success=True, phone_number=data.get("display_phone_number"),
                               display_name=data.get("verified_name"))
