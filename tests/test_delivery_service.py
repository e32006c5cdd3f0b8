"""Fluxo completo de envio: credencial cifrada -> adapter -> transição de status."""
import httpx
import pytest
from kink import di

from conftest import FakeSmtp, OTHER_USER_ID, USER_ID, load_code
from enviacodigo.connectors.email.smtp_adapter import SmtpEmailAdapter
from enviacodigo.connectors.whatsapp.cloud_api_adapter import WhatsAppCloudAdapter
from enviacodigo.domain.services import delivery_service
from enviacodigo.repo import credentials, history


class Graph:
    def __init__(self, status: int = 200, body: dict | None = None):
        self.status = status
        self.body = body if body is not None else {"messages": [{"id": "wamid.ok"}]}
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        return httpx.Response(self.status, json=self.body)


@pytest.fixture
def wire(container, settings, breakers, sleep):
    """Registra adapters reais (lendo credenciais do banco) com transportes falsos."""
    def _wire(graph: Graph | None = None, smtp: FakeSmtp | None = None):
        di[WhatsAppCloudAdapter] = WhatsAppCloudAdapter(
            settings=settings, breakers=breakers, transport=httpx.MockTransport(graph or Graph()), sleep=sleep,
        )
        di[SmtpEmailAdapter] = SmtpEmailAdapter(breakers=breakers, transport=smtp or FakeSmtp(), sleep=sleep)
    return _wire


@pytest.fixture
def whatsapp_ready(container):
    credentials.save_config(USER_ID, "whatsapp", {"access_token": "EAAGtoken", "phone_number_id": "42"})


@pytest.fixture
def email_ready(container):
    credentials.save_config(USER_ID, "email", {
        "smtp_host": "mail.example.com", "smtp_port": 587, "smtp_user": "loja@example.com",
        "smtp_password": "x", "from_email": "loja@example.com",
    })


class TestWhatsAppDelivery:
    async def test_success_marks_codes_sent(self, wire, whatsapp_ready, seeded):
        graph = Graph()
        wire(graph=graph)

        result = await delivery_service.send_via_whatsapp(USER_ID, seeded, "11999999999")

        assert result.success is True
        assert result.sent_count == 3
        assert graph.calls == 1
        assert {load_code(i).status for i in seeded} == {"sent"}
        assert history.count_by_user(USER_ID, "send_whatsapp") == 3

    async def test_provider_failure_keeps_codes_available(self, wire, whatsapp_ready, seeded):
        wire(graph=Graph(400, {"error": {"message": "Invalid parameter"}}))

        result = await delivery_service.send_via_whatsapp(USER_ID, seeded, "+5511999999999")

        assert result.success is False
        assert result.failed_count == 3
        assert {load_code(i).status for i in seeded} == {"available"}
        items = history.list_by_user(USER_ID)
        assert len(items) == 3
        assert {i["status"] for i in items} == {"failed"}

    async def test_resend_is_refused_before_calling_provider(self, wire, whatsapp_ready, seeded):
        graph = Graph()
        wire(graph=graph)
        await delivery_service.send_via_whatsapp(USER_ID, seeded[:1], "+5511999999999")

        result = await delivery_service.send_via_whatsapp(USER_ID, seeded, "+5511999999999")

        assert result.success is False
        assert result.error_code == "CODE_NOT_AVAILABLE"
        assert graph.calls == 1

    async def test_foreign_codes(self, wire, whatsapp_ready, seeded):
        wire()
        result = await delivery_service.send_via_whatsapp(OTHER_USER_ID, seeded, "+5511999999999")
        assert result.error_code == "ACCESS_DENIED"

    async def test_without_credentials(self, wire, seeded):
        wire()
        result = await delivery_service.send_via_whatsapp(USER_ID, seeded, "+5511999999999")

        assert result.error_code == "CONFIG_NOT_FOUND"
        assert load_code(seeded[0]).status == "available"


class TestEmailDelivery:
    async def test_success(self, wire, email_ready, seeded):
        smtp = FakeSmtp()
        wire(smtp=smtp)

        result = await delivery_service.send_via_email(USER_ID, seeded[:2], "cliente@example.com",
                                                       subject="Seus códigos")

        assert result.success is True
        assert smtp.sent[0][0]["Subject"] == "Seus códigos"
        assert load_code(seeded[0]).status == "sent"
        assert load_code(seeded[2]).status == "available"
        assert history.list_by_code(seeded[0])[0]["destination"] == "cliente@example.com"

    async def test_empty_selection(self, wire, email_ready):
        wire()
        result = await delivery_service.send_via_email(USER_ID, [], "cliente@example.com")
        assert result.success is False
        assert result.error_code == "EMPTY_BATCH"
