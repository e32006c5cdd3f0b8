"""Cofre de credenciais: AES-256-CBC com IV aleatório por chamada.

Formato: ``iv:ciphertext`` (hex), opcionalmente ``kid:iv:ciphertext``.
O campo ciphertext carrega a saída CBC seguida de um HMAC-SHA256 sobre
``iv || ct`` (encrypt-then-MAC), então qualquer byte adulterado falha.

A chave é derivada uma vez por instância via scrypt com salt fixo,
logo o mesmo segredo gera a mesma chave entre reinícios.
"""
from __future__ import annotations
import binascii
import json
import os

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .errors import DecryptionError
from .logging import get_logger

log = get_logger(component="vault")

_SALT = b"enviacodigo:credential-vault"
_IV_LENGTH = 16
_KEY_LENGTH = 32
_TAG_LENGTH = 32


def derive_key_material(secret: str) -> tuple[bytes, bytes]:
    """Deriva (chave AES, chave HMAC) do segredo configurado."""
    if not secret:
        raise ValueError("ENCRYPTION_KEY não configurada")
    kdf = Scrypt(salt=_SALT, length=_KEY_LENGTH * 2, n=2**14, r=8, p=1)
    material = kdf.derive(secret.encode("utf-8"))
    return material[:_KEY_LENGTH], material[_KEY_LENGTH:]


class CredentialVault:
    """Criptografa/descriptografa blobs de configuração por usuário e serviço."""

    def __init__(self, secret: str, key_id: str | None = None):
        if key_id is not None and (not key_id or ":" in key_id):
            raise ValueError("key_id não pode ser vazio nem conter ':'")
        self.key_id = key_id
        self._enc_key, self._mac_key = derive_key_material(secret)

    def _tag(self, iv: bytes, ct: bytes) -> hmac.HMAC:
        h = hmac.HMAC(self._mac_key, hashes.SHA256())
        h.update(iv + ct)
        return h

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(_IV_LENGTH)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        data = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._enc_key), modes.CBC(iv)).encryptor()
        ct = encryptor.update(data) + encryptor.finalize()
        tag = self._tag(iv, ct).finalize()
        token = f"{iv.hex()}:{(ct + tag).hex()}"
        return f"{self.key_id}:{token}" if self.key_id else token

    def decrypt(self, token: str) -> str:
        try:
            iv, body = self._split(token)
            if len(iv) != _IV_LENGTH or len(body) <= _TAG_LENGTH:
                raise DecryptionError("Falha na descriptografia")
            ct, tag = body[:-_TAG_LENGTH], body[-_TAG_LENGTH:]
            self._tag(iv, ct).verify(tag)
            decryptor = Cipher(algorithms.AES(self._enc_key), modes.CBC(iv)).decryptor()
            data = decryptor.update(ct) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plain = unpadder.update(data) + unpadder.finalize()
            return plain.decode("utf-8")
        except DecryptionError:
            log.warning("vault_decrypt_failed")
            raise
        except (InvalidSignature, ValueError, binascii.Error, UnicodeDecodeError, AttributeError) as e:
            # nunca inclui o conteúdo no log
            log.warning("vault_decrypt_failed", reason=type(e).__name__)
            raise DecryptionError("Falha na descriptografia") from e

    def _split(self, token: str) -> tuple[bytes, bytes]:
        parts = token.split(":")
        if len(parts) == 3:
            kid, iv_hex, body_hex = parts
            if kid != self.key_id:
                raise DecryptionError("Chave de criptografia desconhecida")
        elif len(parts) == 2 and self.key_id is None:
            iv_hex, body_hex = parts
        else:
            raise DecryptionError("Formato de credencial inválido")
        return bytes.fromhex(iv_hex), bytes.fromhex(body_hex)

    def encrypt_config(self, config: dict) -> str:
        return self.encrypt(json.dumps(config, sort_keys=True))

    def decrypt_config(self, token: str) -> dict:
        raw = self.decrypt(token)
        try:
            result = json.loads(raw)
        except json.JSONDecodeError as e:
            raise DecryptionError("Falha na descriptografia") from e
        if not isinstance(result, dict):
            raise DecryptionError("Falha na descriptografia")
        return result

    @staticmethod
    def generate_key() -> str:
        """Gera um segredo aleatório (hex, 32 bytes) para EC_ENCRYPTION_KEY."""
        return os.urandom(32).hex()
