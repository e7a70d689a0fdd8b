"""AES-256-GCM encryption for secrets at rest.

Every secret the service holds on a tenant's behalf (GitHub App private
key, webhook secret, the deployment's Anthropic key) passes through
``CryptoBox`` before it touches the database.

Blob layout (base64, standard alphabet):

    nonce (12 bytes) || ciphertext || tag (16 bytes)

A fresh nonce is drawn from ``os.urandom`` for every call, so encrypting
the same plaintext twice yields different blobs. GCM's tag authenticates
the ciphertext; any tampering, truncation or wrong key surfaces as
``DecryptionError``.

Key rotation: the primary key encrypts; retired keys are tried in order
when the primary cannot open a blob. ``needs_rotation`` reports blobs
still sealed with a retired key so the vault can re-encrypt them.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from issuebridge.core.errors import ConfigurationError, DecryptionError

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32


def generate_key() -> str:
    """Return a new base64-encoded 256-bit key suitable for ENCRYPTION_KEY."""
    return base64.b64encode(os.urandom(KEY_SIZE)).decode("ascii")


def _load_key(encoded: str) -> AESGCM:
    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ConfigurationError("Encryption key is not valid base64") from exc
    if len(raw) != KEY_SIZE:
        raise ConfigurationError(
            f"Encryption key must decode to {KEY_SIZE} bytes, got {len(raw)}"
        )
    return AESGCM(raw)


class CryptoBox:
    """Symmetric authenticated encryption with a primary and retired keys."""

    def __init__(self, key: str, retired_keys: list[str] | None = None) -> None:
        self._primary = _load_key(key)
        self._retired = [_load_key(k) for k in retired_keys or []]

    @classmethod
    def from_settings(cls, settings) -> "CryptoBox":
        """Build the box from ``Settings``.

        With no ENCRYPTION_KEY configured, debug mode falls back to an
        ephemeral key (secrets become unreadable after restart); any
        other mode refuses to start.
        """
        if not settings.encryption_key:
            if not settings.debug:
                raise ConfigurationError("ENCRYPTION_KEY must be set outside debug mode")
            logger.warning(
                "No ENCRYPTION_KEY configured; using an ephemeral key. "
                "Stored secrets will be unreadable after restart."
            )
            return cls(generate_key())
        return cls(settings.encryption_key, settings.retired_encryption_keys)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._primary.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, blob: str) -> str:
        """Open *blob* and return the plaintext.

        Raises:
            DecryptionError: malformed base64, truncated input, or no
                configured key authenticates the ciphertext.
        """
        nonce, sealed = self._split(blob)
        for aead in [self._primary, *self._retired]:
            try:
                return aead.decrypt(nonce, sealed, None).decode("utf-8")
            except InvalidTag:
                continue
            except UnicodeDecodeError as exc:
                raise DecryptionError("Decrypted secret is not valid UTF-8") from exc
        raise DecryptionError("Ciphertext failed authentication")

    def needs_rotation(self, blob: str) -> bool:
        """True when *blob* opens only with a retired key."""
        nonce, sealed = self._split(blob)
        try:
            self._primary.decrypt(nonce, sealed, None)
            return False
        except InvalidTag:
            pass
        for aead in self._retired:
            try:
                aead.decrypt(nonce, sealed, None)
                return True
            except InvalidTag:
                continue
        raise DecryptionError("Ciphertext failed authentication")

    @staticmethod
    def _split(blob: str) -> tuple[bytes, bytes]:
        try:
            raw = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError, TypeError) as exc:
            raise DecryptionError("Ciphertext is not valid base64") from exc
        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionError("Ciphertext is truncated")
        return raw[:NONCE_SIZE], raw[NONCE_SIZE:]
