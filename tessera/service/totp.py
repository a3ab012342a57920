"""RFC 6238 time-based one-time passwords (SHA-1, 30 s, 6 digits)."""

from __future__ import annotations

import base64
import hashlib
import hmac
import os
import time
from io import BytesIO
from typing import Optional
from urllib.parse import quote, urlencode

import qrcode
from qrcode.image.svg import SvgPathImage

from tessera.logging import get_logger

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6


def generate_secret(num_bytes: int = 20) -> str:
    return base64.b32encode(os.urandom(num_bytes)).decode("utf-8").rstrip("=")


def generate_totp(
    secret: str,
    timestamp: float,
    *,
    interval: int = TOTP_INTERVAL,
    digits: int = TOTP_DIGITS,
) -> str:
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: Optional[str],
    code: str,
    *,
    now: Optional[float] = None,
    window: int = 1,
    interval: int = TOTP_INTERVAL,
) -> bool:
    """Accept the current step and ``window`` adjacent steps for clock skew."""
    if not secret or not code:
        return False
    now = time.time() if now is None else now
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, now + offset * interval, interval=interval)
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


def provisioning_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}")
    query = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": TOTP_DIGITS,
            "period": TOTP_INTERVAL,
        }
    )
    return f"otpauth://totp/{label}?{query}"


def qr_code_data_url(data: str) -> str:
    """Render ``data`` as an SVG QR code wrapped in a ``data:`` URL."""
    qr = qrcode.QRCode(box_size=10, border=2)
    qr.add_data(data)
    qr.make(fit=True)
    image = qr.make_image(image_factory=SvgPathImage)
    bio = BytesIO()
    image.save(bio)
    encoded = base64.b64encode(bio.getvalue()).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"
