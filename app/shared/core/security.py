"""
Credential Vault

Authenticated encryption for long-lived secrets (cloud access keys, chat
webhook URLs) before they are stored or passed through the job queue.

Sealed format: ``b64(nonce):b64(tag):b64(ciphertext)`` using AES-256-GCM.
"""

import base64
import binascii
import os
from typing import Any

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.shared.core.exceptions import ConfigurationError, DecryptionError

logger = structlog.get_logger()

KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16
SEPARATOR = ":"


def _b64encode(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _b64decode_canonical(segment: str) -> bytes:
    """Strict base64 decode; rejects any non-canonical encoding of the bytes."""
    try:
        raw = base64.b64decode(segment.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError, ValueError) as exc:
        raise DecryptionError("Sealed value is not valid base64") from exc
    if _b64encode(raw) != segment:
        raise DecryptionError("Sealed value is not canonically encoded")
    return raw


class CredentialVault:
    """
    Seals and opens secrets with a single 32-byte master key.

    Built once at process start; construction fails fast on a bad key so a
    misconfigured worker never claims a task.
    """

    def __init__(self, master_key: bytes):
        if not isinstance(master_key, (bytes, bytearray)) or len(master_key) != KEY_BYTES:
            raise ConfigurationError(
                f"Vault master key must be exactly {KEY_BYTES} bytes"
            )
        self._aead = AESGCM(bytes(master_key))

    @classmethod
    def from_hex(cls, hex_key: str | None) -> "CredentialVault":
        if not hex_key or not hex_key.strip():
            raise ConfigurationError("ENCRYPTION_KEY is not configured")
        try:
            key = bytes.fromhex(hex_key.strip())
        except ValueError as exc:
            raise ConfigurationError("ENCRYPTION_KEY must be hex encoded") from exc
        return cls(key)

    @classmethod
    def from_settings(cls, settings: Any | None = None) -> "CredentialVault":
        if settings is None:
            from app.shared.core.config import get_settings

            settings = get_settings()
        return cls.from_hex(getattr(settings, "ENCRYPTION_KEY", None))

    def seal(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag to the ciphertext.
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return SEPARATOR.join(
            (_b64encode(nonce), _b64encode(tag), _b64encode(ciphertext))
        )

    def open(self, sealed: str) -> str:
        if not isinstance(sealed, str):
            raise DecryptionError("Sealed value must be a string")
        parts = sealed.split(SEPARATOR)
        if len(parts) != 3 or not parts[0] or not parts[1]:
            raise DecryptionError("Invalid sealed value format")

        nonce = _b64decode_canonical(parts[0])
        tag = _b64decode_canonical(parts[1])
        ciphertext = _b64decode_canonical(parts[2])
        if len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
            raise DecryptionError("Invalid sealed value format")

        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            logger.warning("vault_open_failed", reason="integrity_check_failed")
            raise DecryptionError() from exc
        return plaintext.decode("utf-8")

    @staticmethod
    def is_sealed(data: Any) -> bool:
        """Format check only: exactly three non-empty segments."""
        if not isinstance(data, str):
            return False
        parts = data.split(SEPARATOR)
        return len(parts) == 3 and all(parts)


def generate_new_key() -> str:
    """Generate a new vault master key as 64 hex characters."""
    return os.urandom(KEY_BYTES).hex()
