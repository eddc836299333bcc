"""Decryption of stored datasource credentials."""

from __future__ import annotations

from typing import Protocol

from cryptography.fernet import Fernet, InvalidToken

from analytics_engine.errors import EngineError


class SecretsVault(Protocol):
    def encrypt(self, plaintext: str) -> str: ...

    def decrypt(self, ciphertext: str) -> str: ...


class FernetSecretsVault:
    """Vault backed by a single Fernet key from the environment."""

    def __init__(self, key: str | bytes | None) -> None:
        if not key:
            raise ValueError("ENCRYPTION_KEY not set in environment")
        self._cipher = Fernet(key.encode() if isinstance(key, str) else key)

    def encrypt(self, plaintext: str) -> str:
        return self._cipher.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._cipher.decrypt(ciphertext.encode()).decode()
        except InvalidToken as exc:
            raise EngineError(
                code="AUTH_FAILED",
                message="Datasource credentials are invalid for current encryption key. Recreate the connection.",
            ) from exc


class PlaintextVault:
    """Pass-through vault for catalogs that hold no encrypted secrets (tests, demos)."""

    def encrypt(self, plaintext: str) -> str:
        return plaintext

    def decrypt(self, ciphertext: str) -> str:
        return ciphertext
