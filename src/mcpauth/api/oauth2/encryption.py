# Encryption at rest for identity-provider tokens.
# Created: 2026-10-18

from __future__ import annotations

from typing import Protocol, runtime_checkable

from cryptography.fernet import Fernet, InvalidToken


@runtime_checkable
class EncryptionServiceProtocol(Protocol):
    """Symmetric encryption used by stores for secrets they persist."""

    def encrypt_to_string(self, plain: bytes | str) -> str:
        """Encrypt *plain* and return printable ciphertext."""
        ...

    def decrypt_from_string(self, cipher: str) -> bytes:
        """Decrypt ciphertext produced by ``encrypt_to_string``."""
        ...


class FernetEncryptionService:
    """Fernet (AES-128-CBC + HMAC-SHA256) encryption service."""

    def __init__(self, key: str | bytes):
        if isinstance(key, str):
            key = key.encode()
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as e:
            raise ValueError(
                f"Invalid encryption key: {e}. Must be a Fernet key (urlsafe base64, 32 bytes)."
            ) from e

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt_to_string(self, plain: bytes | str) -> str:
        if isinstance(plain, str):
            plain = plain.encode()
        return self._fernet.encrypt(plain).decode()

    def decrypt_from_string(self, cipher: str) -> bytes:
        try:
            return self._fernet.decrypt(cipher.encode())
        except InvalidToken as e:
            raise ValueError("Ciphertext could not be decrypted with the configured key") from e
