"""Adapter SMTP (aiosmtplib) para envio de lotes de códigos por e-mail."""
from __future__ import annotations
import html
import re
import ssl
import time
from datetime import datetime
from email.message import EmailMessage
from email.utils import formataddr, formatdate, make_msgid
from typing import Callable, Sequence
import aiosmtplib
from kink import di
from ...core.errors import (
    AuthorizationError, ConfigurationError, DecryptionError, DeliveryError, OperationTimeoutError,
    ProviderRejectedError, RetryExhaustedError, TransientTransportError, ValidationError,
)
from ...core.logging import get_logger, mask_destination
from ...ports.interfaces import (
    CodeRecord, ConnectivityDetails, ConnectivityTestResult, DeliveryResult, EmailConfig, TransitionResult,
)
from ...resilience.breaker import BreakerRegistry, execute_resilient
from ...resilience.retry import RetryConfig, retry_with_timeout

log = get_logger(component="email")

SERVICE = "email"
SEND_RETRY = RetryConfig(max_attempts=3, initial_delay=2000, max_delay=8000, exponential_base=2)
SEND_TIMEOUT_MS = 20000
TEST_RETRY = RetryConfig(max_attempts=2, initial_delay=2000, max_delay=5000)
TEST_TIMEOUT_MS = 15000
CONNECT_TIMEOUT_S = 10

DEFAULT_HEADER = "Códigos de Recarga"
FOOTER = "📱 EnviaCódigo - Sistema de Distribuição de Códigos"

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# atalhos de provedores conhecidos (casados por substring do host)
PROVIDER_PRESETS: dict[str, dict] = {
    "gmail": {"hostname": "smtp.gmail.com", "port": 465, "use_tls": True, "start_tls": False},
    "hotmail": {"hostname": "smtp-mail.outlook.com", "port": 587, "use_tls": False, "start_tls": True},
    "yahoo": {"hostname": "smtp.mail.yahoo.com", "port": 465, "use_tls": True, "start_tls": False},
}
_HOST_MATCHERS = (
    (("gmail.com",), "gmail"),
    (("outlook.com", "hotmail.com"), "hotmail"),
    (("yahoo.com",), "yahoo"),
)

DIAGNOSTIC_SUGGESTIONS: dict[str, list[str]] = {
    "AUTHENTICATION_ERROR": [
        "Verifique se o usuário SMTP está correto",
        "Confirme se a senha está correta",
        "Para Gmail, use App Password em vez da senha normal",
        "Verifique se a autenticação em 2 fatores está configurada",
    ],
    "CONNECTION_ERROR": [
        "Verifique se o servidor SMTP está correto",
        "Confirme se a porta está correta (587 para TLS, 465 para SSL)",
        "Verifique sua conexão com a internet",
        "Confirme se não há firewall bloqueando a conexão",
    ],
    "SSL_ERROR": [
        "Problema com certificado SSL/TLS",
        "Tente usar uma porta diferente (587 ou 465)",
        "Verifique as configurações de segurança do provedor",
    ],
    "SMTP_ERROR": [
        "Erro desconhecido na configuração SMTP",
        "Verifique todos os campos novamente",
        "Consulte a documentação do seu provedor de email",
    ],
}


def is_valid_email(value: str) -> bool:
    return bool(_EMAIL_RE.match(value or ""))


def detect_provider(host: str) -> str | None:
    host = (host or "").lower()
    for needles, name in _HOST_MATCHERS:
        if any(n in host for n in needles):
            return name
    return None


def resolve_transport_options(config: EmailConfig) -> dict:
    """Parâmetros de conexão: TLS implícito na 465, STARTTLS na 587, auto nas demais."""
    secure = config.smtp_port == 465
    options = {
        "hostname": config.smtp_host,
        "port": config.smtp_port,
        "use_tls": secure,
        "start_tls": False if secure else (True if config.smtp_port == 587 else None),
        "timeout": CONNECT_TIMEOUT_S,
    }
    provider = detect_provider(config.smtp_host)
    if provider:
        options.update(PROVIDER_PRESETS[provider])
    return options


def build_email_content(codes: Sequence[CodeRecord], custom_message: str | None = None,
                        now: datetime | None = None) -> tuple[str, str]:
    """Renderiza (html, texto) do mesmo lote: lista ordenada com código e descrição opcional."""
    header = custom_message or DEFAULT_HEADER
    stamp = (now or datetime.now()).strftime("%d/%m/%Y %H:%M:%S")
    count = len(codes)
    items_html, items_text = [], []
    for i, code in enumerate(codes, start=1):
        desc = code.column_a_value if code.column_a_value and code.column_a_value != code.combined_code else None
        items_html.append(
            f'<li class="code-item"><div class="code-number">{i}. {html.escape(code.combined_code)}</div>'
            + (f'<div class="code-description">{html.escape(desc)}</div>' if desc else "")
            + "</li>"
        )
        items_text.append(f"{i}. {code.combined_code}" + (f" - {desc}" if desc else ""))

    body_html = f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{html.escape(header)}</title>
  <style>
    body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px; }}
    .header {{ background: #667eea; color: white; padding: 20px; border-radius: 8px; text-align: center; }}
    .code-item {{ background: #f8f9fa; border: 1px solid #e9ecef; border-radius: 6px; padding: 15px; margin-bottom: 10px; }}
    .code-number {{ font-weight: bold; color: #495057; font-size: 18px; }}
    .code-description {{ color: #6c757d; margin-top: 5px; }}
    .footer {{ text-align: center; margin-top: 30px; color: #6c757d; }}
  </style>
</head>
<body>
  <div class="header">
    <h1>🎯 {html.escape(header)}</h1>
    <span class="count">{count} código{"s" if count != 1 else ""}</span>
  </div>
  <ol class="content">
    {"".join(items_html)}
  </ol>
  <div class="footer">
    <p>{html.escape(FOOTER)}</p>
    <p>Enviado em {stamp}</p>
  </div>
</body>
</html>
"""
    body_text = f"{header}\n\n" + "\n".join(items_text) + f"\n\n{FOOTER}\nEnviado em {stamp}"
    return body_html, body_text


def wrap_smtp_error(e: BaseException) -> DeliveryError:
    """Traduz exceções do aiosmtplib/rede para a taxonomia (decide o que é retryable)."""
    if isinstance(e, DeliveryError):
        return e
    msg = str(e)
    if isinstance(e, aiosmtplib.SMTPAuthenticationError):
        return AuthorizationError(f"Authentication failed: {msg}", code="AUTHENTICATION_ERROR")
    if isinstance(e, ssl.SSLError) or any(p in msg.lower() for p in ("certificate", "ssl")):
        return ProviderRejectedError(f"SSL/TLS error: {msg}", code="SSL_ERROR")
    if isinstance(e, aiosmtplib.SMTPRecipientsRefused):
        return ProviderRejectedError(f"Recipient rejected: {msg}", code="RECIPIENT_REFUSED")
    if isinstance(e, aiosmtplib.SMTPResponseException):
        # SMTP: 4xx é temporário, 5xx é definitivo
        if 400 <= e.code < 500:
            return TransientTransportError(f"SMTP temporary failure: {msg}", status_code=e.code)
        return ProviderRejectedError(f"SMTP rejected: {msg}", status_code=e.code)
    if isinstance(e, (aiosmtplib.SMTPConnectError, aiosmtplib.SMTPServerDisconnected,
                      aiosmtplib.SMTPTimeoutError, OSError)):
        return TransientTransportError(f"SMTP connection error: {msg}")
    return TransientTransportError(msg or type(e).__name__)


def classify_test_failure(e: BaseException) -> str:
    """error_code do diagnóstico: AUTHENTICATION_ERROR, CONNECTION_ERROR, SSL_ERROR ou SMTP_ERROR."""
    if isinstance(e, RetryExhaustedError) and e.last_error is not None:
        e = e.last_error
    if isinstance(e, DeliveryError) and e.code in ("AUTHENTICATION_ERROR", "SSL_ERROR"):
        return e.code
    if isinstance(e, OperationTimeoutError):
        return "CONNECTION_ERROR"
    msg = str(e).lower()
    if "authentication" in msg or "auth" in msg:
        return "AUTHENTICATION_ERROR"
    if any(p in msg for p in ("connection", "timeout", "timed out", "refused")):
        return "CONNECTION_ERROR"
    if any(p in msg for p in ("cert", "ssl", "tls")):
        return "SSL_ERROR"
    return "SMTP_ERROR"


class AioSmtpTransport:
    """Transporte real via aiosmtplib."""

    async def send(self, message: EmailMessage, options: dict, username: str, password: str) -> None:
        async with aiosmtplib.SMTP(**options) as smtp:
            if username:
                await smtp.login(username, password)
            await smtp.send_message(message)

    async def verify(self, options: dict, username: str, password: str) -> None:
        async with aiosmtplib.SMTP(**options) as smtp:
            if username:
                await smtp.login(username, password)


class SmtpEmailAdapter:
    """Adapter de e-mail: monta o conteúdo e envia pelo breaker/retry/timeout."""

    def __init__(
        self,
        breakers: BreakerRegistry | None = None,
        config_loader: Callable[[str], EmailConfig | None] | None = None,
        transport: AioSmtpTransport | None = None,
        sleep=None,
    ):
        self.breakers = breakers or di[BreakerRegistry]
        if config_loader is None:
            from ...repo.credentials import get_email_config
            config_loader = get_email_config
        self.config_loader = config_loader
        self.transport = transport or AioSmtpTransport()
        self._sleep_kw = {"sleep": sleep} if sleep else {}

    def _load_config(self, user_id: str) -> EmailConfig:
        try:
            config = self.config_loader(user_id)
        except DecryptionError as e:
            raise ConfigurationError("Não foi possível ler as credenciais de email. Salve-as novamente.",
                                     code="CONFIG_UNREADABLE") from e
        if not config:
            raise ConfigurationError("Configurações de email não encontradas. Configure primeiro nas configurações.")
        return config

    def _build_message(self, config: EmailConfig, to: str, subject: str, content: tuple[str, str]) -> EmailMessage:
        body_html, body_text = content
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = formataddr((config.from_name, config.from_email)) if config.from_name else config.from_email
        msg["To"] = to
        msg["Date"] = formatdate(localtime=True)
        msg["Message-ID"] = make_msgid(domain=config.from_email.rpartition("@")[2] or None)
        msg.set_content(body_text)
        msg.add_alternative(body_html, subtype="html")
        return msg

    async def send_codes(
        self,
        user_id: str,
        codes: Sequence[CodeRecord],
        destination: str,
        subject: str | None = None,
        custom_message: str | None = None,
    ) -> DeliveryResult:
        """Envia o lote em um único e-mail. Nunca levanta: falhas viram DeliveryResult."""
        total = len(codes)
        try:
            if not codes:
                raise ValidationError("Nenhum código selecionado para envio", code="EMPTY_BATCH")
            config = self._load_config(user_id)
            problems = validate_config(config)
            if problems:
                # configuração incompleta não chega ao breaker nem ao retry
                raise ConfigurationError(f"Configuração de email inválida: {'; '.join(problems)}",
                                         code="INVALID_CONFIG")
            if not is_valid_email(destination):
                raise ValidationError("Endereço de email inválido.")
            subject = subject or f"Códigos de Recarga - {datetime.now().strftime('%d/%m/%Y')}"
            message = self._build_message(config, destination, subject, build_email_content(codes, custom_message))
            options = resolve_transport_options(config)

            async def attempt() -> str:
                started = time.perf_counter()
                try:
                    await self.transport.send(message, options, config.smtp_user, config.smtp_password)
                except Exception as e:
                    raise wrap_smtp_error(e) from e
                log.info("smtp_send_ok", response_time_ms=int((time.perf_counter() - started) * 1000),
                         to=mask_destination(destination))
                return message["Message-ID"]

            message_id = await execute_resilient(
                self.breakers.get(SERVICE), attempt, SEND_RETRY, SEND_TIMEOUT_MS,
                f"Email to {mask_destination(destination)}", **self._sleep_kw,
            )
        except DeliveryError as e:
            log.warning("email_send_failed", user_id=user_id, error_code=e.code, error=e.message,
                        to=mask_destination(destination))
            return DeliveryResult.failed(total, e.message, e.code)
        except Exception as e:
            log.exception("email_send_crashed", user_id=user_id)
            return DeliveryResult.failed(total, str(e) or "Erro interno do servidor", "INTERNAL_ERROR")
        log.info("email_send_ok", user_id=user_id, count=total)
        return DeliveryResult.ok(total, message_id)

    async def test_configuration(self, user_id: str) -> ConnectivityTestResult:
        """Valida campos e porta, depois conecta/autentica no servidor. Nunca levanta."""
        started = time.perf_counter()

        def elapsed() -> int:
            return int((time.perf_counter() - started) * 1000)

        try:
            config = self._load_config(user_id)
        except ConfigurationError as e:
            unreadable = e.code == "CONFIG_UNREADABLE"
            return ConnectivityTestResult(
                success=False,
                message=e.message if unreadable else "Configurações de email não encontradas",
                details=ConnectivityDetails(service_type=SERVICE, error_code=e.code, suggestions=[
                    "Configure suas credenciais SMTP",
                    "Verifique se todos os campos obrigatórios foram preenchidos",
                ]),
            )

        problems = validate_config(config)
        if problems:
            return ConnectivityTestResult(
                success=False,
                message="Configuração inválida",
                details=ConnectivityDetails(service_type=SERVICE, error_code="INVALID_CONFIG", suggestions=problems),
            )

        options = resolve_transport_options(config)
        endpoint = f"{config.smtp_host}:{config.smtp_port}"

        async def verify() -> None:
            try:
                await self.transport.verify(options, config.smtp_user, config.smtp_password)
            except Exception as e:
                raise wrap_smtp_error(e) from e

        try:
            await retry_with_timeout(verify, TEST_RETRY, TEST_TIMEOUT_MS, "Email Configuration Test", **self._sleep_kw)
        except Exception as e:
            error_code = classify_test_failure(e)
            log.warning("email_test_failed", user_id=user_id, error_code=error_code, error=str(e))
            return ConnectivityTestResult(
                success=False,
                message=str(e) or "Erro de conexão com o servidor SMTP",
                details=ConnectivityDetails(service_type=SERVICE, endpoint=endpoint, response_time=elapsed(),
                                            error_code=error_code, suggestions=list(DIAGNOSTIC_SUGGESTIONS[error_code])),
            )
        log.info("email_test_ok", user_id=user_id, endpoint=endpoint)
        return ConnectivityTestResult(
            success=True,
            message=f"Conexão SMTP estabelecida com sucesso! Servidor: {endpoint}",
            details=ConnectivityDetails(service_type=SERVICE, endpoint=endpoint, response_time=elapsed(), suggestions=[
                "Configuração SMTP válida e funcionando",
                "Você pode enviar códigos via email",
                "Recomendamos fazer um teste de envio",
            ]),
        )

    async def send_test_email(self, user_id: str, test_email: str) -> TransitionResult:
        """Envia um e-mail com um código fictício para validar a configuração ponta a ponta."""
        if not is_valid_email(test_email):
            return TransitionResult(success=False, message="Endereço de email inválido")
        test_code = CodeRecord(id="test-1", session_id="test-session", combined_code="TEST123",
                               column_a_value="Código de teste", row_number=1)
        result = await self.send_codes(
            user_id, [test_code], test_email,
            subject="Teste de Configuração - EnviaCódigo",
            custom_message="Este é um email de teste para verificar suas configurações.",
        )
        if result.success:
            return TransitionResult(success=True, message=f"Email de teste enviado com sucesso para {test_email}")
        return TransitionResult(success=False, message=", ".join(result.errors))


def validate_config(config: EmailConfig) -> list[str]:
    """Lista de problemas da configuração SMTP (vazia se ok)."""
    problems = []
    if not config.smtp_host:
        problems.append("Servidor SMTP é obrigatório")
    if not config.smtp_port or not 1 <= config.smtp_port <= 65535:
        problems.append("Porta SMTP inválida (deve ser entre 1 e 65535)")
    if not config.smtp_user:
        problems.append("Usuário SMTP é obrigatório")
    if not config.smtp_password:
        problems.append("Senha SMTP é obrigatória")
    if not config.from_email:
        problems.append("Email remetente é obrigatório")
    return problems
