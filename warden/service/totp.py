from __future__ import annotations

import base64
import hashlib
import hmac
import io
import os
import time
from typing import Optional
from urllib.parse import quote, urlencode

import qrcode
import qrcode.image.svg

from warden.logging import get_logger

logger = get_logger(__name__)

SECRET_BYTES = 20
STEP_SECONDS = 30
DIGITS = 6


class ProvisioningError(Exception):
    """Raised when an otpauth URI or its QR rendering cannot be produced."""


def generate_secret() -> str:
    return base64.b32encode(os.urandom(SECRET_BYTES)).decode("utf-8").rstrip("=")


def generate_totp(
    secret: str, timestamp: float, *, interval: int = STEP_SECONDS, digits: int = DIGITS
) -> str:
    """RFC 6238 code (HMAC-SHA1) for ``timestamp``; empty string on a bad secret."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except Exception:
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
    secret: str,
    code: str,
    *,
    now: Optional[float] = None,
    window: int = 1,
    interval: int = STEP_SECONDS,
) -> bool:
    """Accept the current step and ``window`` steps either side for clock skew."""
    if not code or not code.isdigit() or len(code) != DIGITS:
        return False
    current = time.time() if now is None else now
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, current + offset * interval, interval=interval)
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


def provisioning_uri(secret: str, account_name: str, issuer: str) -> str:
    if not secret or not account_name:
        raise ProvisioningError("secret and account name are required")
    label = quote(f"{issuer}:{account_name}", safe=":@")
    query = urlencode({"secret": secret, "issuer": issuer}, quote_via=quote)
    return f"otpauth://totp/{label}?{query}"


def qr_data_url(uri: str) -> str:
    """Render ``uri`` as an SVG QR code packed into a data URL."""
    try:
        image = qrcode.make(uri, image_factory=qrcode.image.svg.SvgPathImage)
        buffer = io.BytesIO()
        image.save(buffer)
    except Exception as exc:
        logger.error("mfa_qr_render_failed", error=str(exc), error_type=type(exc).__name__)
        raise ProvisioningError("unable to render QR code") from exc
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"
