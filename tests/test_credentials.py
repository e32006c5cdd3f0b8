"""Testes do repositório de credenciais cifradas."""
import pytest
from kink import di
from sqlalchemy import func, select, update

from conftest import USER_ID
from enviacodigo.core.errors import DecryptionError
from enviacodigo.repo import credentials
from enviacodigo.repo.models import ServiceCredential

WHATSAPP = {"access_token": "EAAGsegredo", "phone_number_id": "1234567890"}


def _rows(user_id: str = USER_ID) -> list[ServiceCredential]:
    Session = di["session_factory"]
    with Session() as s:
        return list(s.execute(select(ServiceCredential).where(ServiceCredential.user_id == user_id)).scalars())


class TestSaveAndLoad:
    def test_round_trip(self, container):
        credentials.save_config(USER_ID, "whatsapp", WHATSAPP)

        config = credentials.get_whatsapp_config(USER_ID)
        assert config.access_token == "EAAGsegredo"
        assert config.phone_number_id == "1234567890"

    def test_secret_is_not_stored_in_clear(self, container):
        credentials.save_config(USER_ID, "whatsapp", WHATSAPP)

        blob = _rows()[0].encrypted_config
        assert "EAAGsegredo" not in blob
        assert len(blob.split(":")) == 2

    def test_save_is_an_upsert(self, container):
        first = credentials.save_config(USER_ID, "whatsapp", WHATSAPP)
        second = credentials.save_config(USER_ID, "whatsapp", {**WHATSAPP, "access_token": "EAAGnovo"})

        assert first == second
        assert len(_rows()) == 1
        assert credentials.get_whatsapp_config(USER_ID).access_token == "EAAGnovo"

    def test_services_are_independent(self, container):
        credentials.save_config(USER_ID, "whatsapp", WHATSAPP)
        credentials.save_config(USER_ID, "email", {"smtp_host": "smtp.gmail.com", "smtp_port": 465})

        assert credentials.get_email_config(USER_ID).smtp_host == "smtp.gmail.com"
        assert len(_rows()) == 2

    def test_missing_config(self, container):
        assert credentials.get_whatsapp_config(USER_ID) is None

    def test_invalid_blob_is_rejected_before_storage(self, container):
        with pytest.raises(ValueError):
            credentials.save_config(USER_ID, "whatsapp", {"phone_number_id": "1"})
        assert _rows() == []

    def test_unknown_service(self, container):
        with pytest.raises(ValueError, match="desconhecido"):
            credentials.save_config(USER_ID, "sms", {})

    def test_tampered_blob_raises(self, container):
        credentials.save_config(USER_ID, "whatsapp", WHATSAPP)
        Session = di["session_factory"]
        with Session() as s, s.begin():
            s.execute(update(ServiceCredential).values(encrypted_config="00" * 16 + ":" + "ab" * 64))

        with pytest.raises(DecryptionError):
            credentials.get_whatsapp_config(USER_ID)


class TestLifecycle:
    def test_deactivate_hides_config(self, container):
        credentials.save_config(USER_ID, "whatsapp", WHATSAPP)

        assert credentials.deactivate(USER_ID, "whatsapp") is True
        assert credentials.get_whatsapp_config(USER_ID) is None
        assert credentials.list_active(USER_ID) == []
        assert credentials.deactivate(USER_ID, "whatsapp") is False

    def test_save_reactivates(self, container):
        credentials.save_config(USER_ID, "whatsapp", WHATSAPP)
        credentials.deactivate(USER_ID, "whatsapp")
        credentials.save_config(USER_ID, "whatsapp", WHATSAPP)

        assert credentials.get_whatsapp_config(USER_ID) is not None
        assert len(_rows()) == 1

    def test_list_active_has_no_secrets(self, container):
        credentials.save_config(USER_ID, "whatsapp", WHATSAPP)

        listed = credentials.list_active(USER_ID)
        assert [item["service_type"] for item in listed] == ["whatsapp"]
        assert "encrypted_config" not in listed[0]

    def test_update_last_tested(self, container):
        credentials.save_config(USER_ID, "whatsapp", WHATSAPP)
        assert credentials.list_active(USER_ID)[0]["last_tested"] is None

        credentials.update_last_tested(USER_ID, "whatsapp")
        assert credentials.list_active(USER_ID)[0]["last_tested"] is not None

    def test_unique_pair(self, container):
        credentials.save_config(USER_ID, "email", {"smtp_host": "a"})
        credentials.save_config(USER_ID, "email", {"smtp_host": "b"})
        Session = di["session_factory"]
        with Session() as s:
            total = s.execute(select(func.count()).select_from(ServiceCredential)).scalar_one()
        assert total == 1
