"""Single-use backup codes for when the authenticator device is unavailable.

Codes are shown to the user as ``XXXX-XXXX`` and stored encrypted in a
normalized form (no separator, uppercase). Submission is case-insensitive
and ignores spaces and hyphens.
"""

from __future__ import annotations

import hmac
import secrets

from twofactor import crypto

ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # no 0/O, 1/I
CODE_LENGTH = 8
GROUP_SIZE = 4
DEFAULT_COUNT = 8


def normalize(code: str) -> str:
    return "".join(code.split()).replace("-", "").upper()


def format_code(code: str) -> str:
    """Group a normalized code for display, e.g. ``ABCD-EFGH``."""
    code = normalize(code)
    return "-".join(code[i:i + GROUP_SIZE] for i in range(0, len(code), GROUP_SIZE))


def generate(count: int = DEFAULT_COUNT) -> list[str]:
    """Generate ``count`` distinct display-formatted backup codes."""
    seen: set[str] = set()
    codes: list[str] = []
    while len(codes) < count:
        raw = "".join(secrets.choice(ALPHABET) for _ in range(CODE_LENGTH))
        if raw in seen:
            continue
        seen.add(raw)
        codes.append(format_code(raw))
    return codes


def encrypt_all(codes: list[str]) -> list[str]:
    """Encrypt the normalized form of each code for storage."""
    return [crypto.encrypt(normalize(c)) for c in codes]


def find_match(submitted: str, stored: list[str]) -> int | None:
    """Index of the stored ciphertext matching ``submitted``, or None.

    Raises crypto.DecryptionError if a stored entry cannot be decrypted.
    """
    candidate = normalize(submitted).encode()
    if not candidate:
        return None
    for i, token in enumerate(stored):
        if hmac.compare_digest(candidate, crypto.decrypt(token).encode()):
            return i
    return None


def verify(submitted: str, stored: list[str]) -> bool:
    return find_match(submitted, stored) is not None


def consume(used: str, stored: list[str]) -> list[str]:
    """Return ``stored`` without the entry matching ``used``.

    The remaining ciphertexts are returned as-is, so the caller can
    persist them with a conditional update keyed on ``stored``.
    """
    idx = find_match(used, stored)
    if idx is None:
        raise ValueError("backup code not found")
    return stored[:idx] + stored[idx + 1:]
