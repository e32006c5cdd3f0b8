"""Fixtures compartilhadas: Settings explícitas, SQLite em memória e container kink."""
from __future__ import annotations

import pytest
from kink import di
from sqlalchemy.pool import StaticPool

from enviacodigo.core.db import create_session_factory
from enviacodigo.core.logging import configure_logging
from enviacodigo.core.settings import Settings
from enviacodigo.core.vault import CredentialVault
from enviacodigo.repo import codes as code_repo
from enviacodigo.repo.models import Base, Code
from enviacodigo.resilience.breaker import BreakerRegistry

USER_ID = "user-1"
OTHER_USER_ID = "user-2"


def pytest_configure(config):
    configure_logging(level=30)


class FakeClock:
    """Relógio monotônico controlado pelo teste (segundos)."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Substitui asyncio.sleep e guarda as esperas pedidas (segundos)."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        encryption_key="chave-de-teste-nao-usar-em-producao",
        breaker_failure_threshold=3,
        breaker_recovery_ms=30000,
        archive_max_batch=100,
    )


@pytest.fixture(scope="session")
def vault() -> CredentialVault:
    # derivação scrypt é cara: uma instância para a sessão inteira
    return CredentialVault("chave-de-teste-nao-usar-em-producao")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def breakers(clock) -> BreakerRegistry:
    return BreakerRegistry(failure_threshold=3, recovery_time_ms=30000, clock=clock)


@pytest.fixture
def session_factory():
    factory = create_session_factory(
        "sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(factory.kw["bind"])
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture
def container(settings, vault, session_factory, breakers):
    """Registra as dependências no container global do kink."""
    di[Settings] = settings
    di[CredentialVault] = vault
    # factory: não memoiza entre testes
    di.factories["session_factory"] = lambda _di: session_factory
    di[BreakerRegistry] = breakers
    return di


def seed_codes(user_id: str = USER_ID, n: int = 3) -> list[str]:
    """Cria uma sessão de upload com ``n`` códigos e devolve os ids em ordem de linha."""
    session_id = code_repo.add_session_with_codes(
        user_id,
        "planilha.xlsx",
        [
            {"column_a_value": f"Recarga {10 * i}", "column_d_value": f"PIN{i:04d}",
             "combined_code": f"RC{i:04d}", "row_number": i}
            for i in range(1, n + 1)
        ],
    )
    Session = di["session_factory"]
    with Session() as s:
        return [c.id for c in code_repo.find_codes_by_session(s, session_id)]


def load_code(code_id: str) -> Code:
    Session = di["session_factory"]
    with Session() as s:
        return s.get(Code, code_id)


@pytest.fixture
def seeded(container) -> list[str]:
    return seed_codes()


class FakeSmtp:
    """Transporte SMTP falso: levanta os erros enfileirados, depois aceita."""

    def __init__(self, *errors: Exception):
        self.errors = list(errors)
        self.sent = []
        self.verified = []

    def _maybe_fail(self):
        if self.errors:
            raise self.errors.pop(0)

    async def send(self, message, options, username, password):
        self._maybe_fail()
        self.sent.append((message, options, username))

    async def verify(self, options, username, password):
        self._maybe_fail()
        self.verified.append((options, username))
