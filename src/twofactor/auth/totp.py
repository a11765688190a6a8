"""TOTP (Time-based One-Time Password) management for 2FA.

Uses pyotp to generate secrets, provisioning URIs and codes. Codes are
six digits over a 30-second step; verification tolerates one step of
clock skew either side.
"""

from __future__ import annotations

import base64
import binascii
import io
import re
from datetime import datetime

import pyotp
import qrcode

from twofactor.models import SetupData

_CODE_RE = re.compile(r"[0-9]{6}")

VALID_WINDOW = 1
MIN_SECRET_BYTES = 20  # 160 bits


def generate_secret() -> str:
    """Generate a new TOTP secret (base32-encoded, 32 chars / 160 bits)."""
    return pyotp.random_base32(length=32)


def is_valid_secret(secret: str) -> bool:
    """True if ``secret`` is base32 carrying at least 160 bits of key."""
    padded = secret + "=" * (-len(secret) % 8)
    try:
        return len(base64.b32decode(padded, casefold=True)) >= MIN_SECRET_BYTES
    except (binascii.Error, ValueError):
        return False


def get_code(secret: str) -> str:
    """Get the current TOTP code for a secret."""
    return pyotp.TOTP(secret).now()


def verify_code(secret: str, code: str, for_time: datetime | int | None = None) -> bool:
    """Verify a TOTP code against a secret (allows +-1 window).

    Anything other than exactly six digits is rejected without touching
    the secret. A secret that is not valid base32 never verifies.
    """
    code = code.strip()
    if not _CODE_RE.fullmatch(code):
        return False
    try:
        return pyotp.TOTP(secret).verify(code, for_time=for_time, valid_window=VALID_WINDOW)
    except (binascii.Error, ValueError):
        return False


def get_provisioning_uri(secret: str, label: str, issuer: str) -> str:
    """Get the otpauth:// URI for QR code enrollment."""
    return pyotp.TOTP(secret).provisioning_uri(name=label, issuer_name=issuer)


def qr_code_data_url(uri: str) -> str:
    """Render a provisioning URI as a base64 PNG data URL."""
    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(uri)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return f"data:image/png;base64,{base64.b64encode(buf.getvalue()).decode()}"


def generate_setup(label: str, issuer: str) -> SetupData:
    """Generate everything an authenticator app needs to pair with a new secret."""
    secret = generate_secret()
    uri = get_provisioning_uri(secret, label, issuer)
    return SetupData(
        secret=secret,
        provisioning_uri=uri,
        qr_code_data_url=qr_code_data_url(uri),
        manual_entry_key=secret,
    )
