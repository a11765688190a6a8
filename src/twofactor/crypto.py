"""AES-256-GCM encryption for 2FA secrets and backup codes at rest."""

from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from twofactor.config import settings

_NONCE_SIZE = 12  # 96-bit nonce for AES-GCM
_TAG_SIZE = 16


class DecryptionError(Exception):
    """Stored ciphertext is malformed, tampered with, or under a different key."""


def _get_key() -> bytes:
    raw = settings.twofactor_master_key
    if not raw:
        raise RuntimeError("TWOFACTOR_MASTER_KEY not set")
    key = base64.b64decode(raw)
    if len(key) != 32:
        raise ValueError("TWOFACTOR_MASTER_KEY must be 32 bytes (base64-encoded)")
    return key


def generate_key() -> str:
    """Return a fresh base64-encoded 256-bit key suitable for TWOFACTOR_MASTER_KEY."""
    return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode()


def encrypt(plaintext: str) -> str:
    """Encrypt a string. Returns base64(nonce + ciphertext)."""
    key = _get_key()
    nonce = os.urandom(_NONCE_SIZE)
    ct = AESGCM(key).encrypt(nonce, plaintext.encode(), None)
    return base64.b64encode(nonce + ct).decode()


def decrypt(token: str) -> str:
    """Decrypt a base64(nonce + ciphertext) token back to plaintext.

    Raises DecryptionError if the token cannot be decoded or fails
    authentication.
    """
    key = _get_key()
    try:
        raw = base64.b64decode(token, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptionError("ciphertext is not valid base64") from e
    if len(raw) < _NONCE_SIZE + _TAG_SIZE:
        raise DecryptionError("ciphertext is truncated")
    nonce, ct = raw[:_NONCE_SIZE], raw[_NONCE_SIZE:]
    try:
        return AESGCM(key).decrypt(nonce, ct, None).decode()
    except InvalidTag as e:
        raise DecryptionError("authentication tag did not verify") from e
    except UnicodeDecodeError as e:
        raise DecryptionError("plaintext is not valid UTF-8") from e
