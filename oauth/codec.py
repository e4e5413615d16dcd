"""Authenticated encryption for bearer-token payloads.

Tokens are AES-256-GCM encrypted JSON, laid out as
``base64url(nonce || tag || ciphertext)`` without padding. Validation is
done by decryption, so tokens survive server restarts as long as the key
does.
"""

import base64
import binascii
import json
import logging
import os
import secrets
from pathlib import Path
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16


class TokenDecodeError(Exception):
    """Raised for any token that cannot be decrypted.

    The message never says which check failed.
    """

    def __init__(self):
        super().__init__("Invalid token")


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def parse_key(encoded: str) -> bytes:
    """Decode a base64url key and check its length."""
    try:
        key = _b64decode(encoded.strip())
    except (binascii.Error, ValueError, UnicodeEncodeError):
        raise ValueError("Token encryption key must be base64url encoded")
    if len(key) != KEY_BYTES:
        raise ValueError(f"Token encryption key must be {KEY_BYTES} bytes, got {len(key)}")
    return key


def generate_key() -> str:
    """Return a fresh base64url-encoded 256-bit key."""
    return _b64encode(secrets.token_bytes(KEY_BYTES))


def load_or_create_key(env_key: Optional[str], key_file: Path) -> bytes:
    """Get the encryption key from config, or from file, or create one.

    The key is stored in ``key_file`` so tokens remain valid across
    server restarts.
    """
    # Environment first (for production deployments)
    if env_key:
        logger.info("[CODEC] Using TOKEN_ENCRYPTION_KEY from environment")
        return parse_key(env_key)

    if key_file.exists():
        try:
            stored = key_file.read_text().strip()
        except IOError as e:
            logger.warning(f"[CODEC] Could not read key file {key_file}: {e}")
            stored = ""
        if stored:
            logger.info("[CODEC] Loaded token encryption key from file")
            return parse_key(stored)

    encoded = generate_key()
    try:
        key_file.parent.mkdir(parents=True, exist_ok=True)
        key_file.write_text(encoded)
        os.chmod(key_file, 0o600)  # Owner read/write only
        logger.info("[CODEC] Generated and saved new token encryption key")
    except IOError as e:
        logger.warning(f"[CODEC] Could not save key file, tokens will not survive a restart: {e}")

    return parse_key(encoded)


class TokenCodec:
    """Encrypts and decrypts payload dicts with one process-wide key."""

    def __init__(self, key: bytes):
        if len(key) != KEY_BYTES:
            raise ValueError(f"Token encryption key must be {KEY_BYTES} bytes")
        self._aead = AESGCM(key)

    def encrypt(self, payload: dict) -> str:
        plaintext = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
        nonce = secrets.token_bytes(NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext, None)
        # AESGCM appends the tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return _b64encode(nonce + tag + ciphertext)

    def decrypt(self, token: str) -> dict:
        try:
            raw = _b64decode(token)
        except (binascii.Error, ValueError, UnicodeEncodeError, TypeError, AttributeError):
            raise TokenDecodeError()

        if len(raw) <= NONCE_BYTES + TAG_BYTES:
            raise TokenDecodeError()

        nonce = raw[:NONCE_BYTES]
        tag = raw[NONCE_BYTES:NONCE_BYTES + TAG_BYTES]
        ciphertext = raw[NONCE_BYTES + TAG_BYTES:]

        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
            payload = json.loads(plaintext.decode("utf-8"))
        except (InvalidTag, ValueError):
            raise TokenDecodeError()

        if not isinstance(payload, dict):
            raise TokenDecodeError()
        return payload
