"""Diagnóstico de conectividade dos serviços de entrega."""
from __future__ import annotations
import asyncio
import time
from kink import di
from ...connectors.email.smtp_adapter import SmtpEmailAdapter
from ...connectors.whatsapp.cloud_api_adapter import WhatsAppCloudAdapter
from ...core.logging import get_logger
from ...ports.interfaces import (
    ConnectivityDetails, ConnectivitySummary, ConnectivityTestResult, DeliveryPort, FullConnectivityReport,
    ServiceType,
)
from ...repo import credentials
from ...resilience.breaker import BreakerRegistry, BreakerState

log = get_logger(component="diagnostics")


def _adapter_for(service_type: ServiceType) -> DeliveryPort:
    if service_type == "whatsapp":
        return di[WhatsAppCloudAdapter]
    if service_type == "email":
        return di[SmtpEmailAdapter]
    raise ValueError(f"Tipo de serviço inválido: {service_type}")


async def test_service(user_id: str, service_type: ServiceType) -> ConnectivityTestResult:
    """Roda o teste do adapter; em caso de sucesso grava ``last_tested``."""
    result = await _adapter_for(service_type).test_configuration(user_id)
    if result.success:
        credentials.update_last_tested(user_id, service_type)
    log.info("connectivity_tested", user_id=user_id, service_type=service_type, success=result.success)
    return result


def _crashed(service_type: ServiceType, error: BaseException) -> ConnectivityTestResult:
    return ConnectivityTestResult(
        success=False,
        message=f"Erro no teste: {error}",
        details=ConnectivityDetails(service_type=service_type, error_code="TEST_FAILED",
                                    suggestions=["Tente novamente em alguns minutos"]),
    )


async def run_full_connectivity_test(user_id: str) -> FullConnectivityReport:
    """Testa WhatsApp e e-mail em paralelo; um teste que quebra não derruba o outro."""
    started = time.perf_counter()
    services: tuple[ServiceType, ...] = ("whatsapp", "email")
    outcomes = await asyncio.gather(*(test_service(user_id, st) for st in services), return_exceptions=True)

    results: dict[str, ConnectivityTestResult] = {}
    for service_type, outcome in zip(services, outcomes):
        if isinstance(outcome, BaseException):
            log.error("connectivity_test_crashed", user_id=user_id, service_type=service_type, error=str(outcome))
            outcome = _crashed(service_type, outcome)
        results[service_type] = outcome

    wa_ok, email_ok = results["whatsapp"].success, results["email"].success
    total_time = int((time.perf_counter() - started) * 1000)
    return FullConnectivityReport(
        message="Teste de conectividade completo executado",
        total_time=total_time,
        results=results,
        summary=ConnectivitySummary(
            whatsapp_status="connected" if wa_ok else "failed",
            email_status="connected" if email_ok else "failed",
            overall_status="all_connected" if wa_ok and email_ok else "partial_or_failed",
        ),
    )


def breaker_snapshot() -> dict[str, BreakerState]:
    return di[BreakerRegistry].states()
