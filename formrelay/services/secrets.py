"""
Secrets Service
================

In-memory store for short-lived credentials (the enrichment API key).

Design:
- Values are held AES-256-GCM encrypted; plaintext exists only in ``get``
- Each entry carries an expiry; an expired entry is evicted on read
- The clock is injectable so expiry is testable without sleeping
"""

from __future__ import annotations

import base64
import binascii
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from formrelay.core.exceptions import ConfigurationError
from formrelay.infra.telemetry import get_logger

logger = get_logger(__name__)

KEY_LENGTH = 32
NONCE_LENGTH = 12
DEFAULT_TTL_S = 3600.0
API_KEY_SECRET = "OPENAI_API_KEY"


@dataclass(frozen=True)
class _SealedSecret:
    nonce: bytes
    ciphertext: bytes
    expires_at: float


def load_encryption_key(encoded: str | bytes | None) -> bytes:
    """Decode a base64 AES-256 key, or generate a random one when none is configured."""
    if encoded is None:
        return AESGCM.generate_key(bit_length=KEY_LENGTH * 8)
    if isinstance(encoded, bytes) and len(encoded) == KEY_LENGTH:
        return encoded
    try:
        key = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ConfigurationError(f"ENCRYPTION_KEY is not valid base64: {e}") from e
    if len(key) != KEY_LENGTH:
        raise ConfigurationError(f"ENCRYPTION_KEY must decode to {KEY_LENGTH} bytes, got {len(key)}")
    return key


def validate_api_key(api_key: str) -> bool:
    return api_key.startswith("sk-") and len(api_key) > 30


class SecretsService:
    """Encrypted key/value store with per-entry TTL."""

    def __init__(
        self,
        encryption_key: str | bytes | None = None,
        default_ttl_s: float = DEFAULT_TTL_S,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._aead = AESGCM(load_encryption_key(encryption_key))
        self._default_ttl_s = default_ttl_s
        self._clock = clock
        self._secrets: dict[str, _SealedSecret] = {}
        self._lock = threading.Lock()

    def set(self, key: str, value: str, ttl_s: float | None = None) -> None:
        ttl = self._default_ttl_s if ttl_s is None else ttl_s
        nonce = os.urandom(NONCE_LENGTH)
        sealed = _SealedSecret(
            nonce=nonce,
            ciphertext=self._aead.encrypt(nonce, value.encode("utf-8"), key.encode("utf-8")),
            expires_at=self._clock() + ttl,
        )
        with self._lock:
            self._secrets[key] = sealed

    def get(self, key: str) -> str | None:
        with self._lock:
            sealed = self._secrets.get(key)
            if sealed is None:
                return None
            if self._clock() > sealed.expires_at:
                del self._secrets[key]
                logger.debug("secret_expired", key=key)
                return None
        try:
            plaintext = self._aead.decrypt(sealed.nonce, sealed.ciphertext, key.encode("utf-8"))
        except InvalidTag as e:
            raise ConfigurationError(f"Secret {key} failed integrity check") from e
        return plaintext.decode("utf-8")

    def rotate(self, key: str, value: str) -> None:
        self.set(key, value)
        logger.info("secret_rotated", key=key)

    def delete(self, key: str) -> None:
        with self._lock:
            self._secrets.pop(key, None)

    def validate_api_key(self, api_key: str) -> bool:
        return validate_api_key(api_key)

    def rotate_api_key(self, new_key: str) -> None:
        if not validate_api_key(new_key):
            raise ConfigurationError("Invalid API key format")
        self.rotate(API_KEY_SECRET, new_key)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None
