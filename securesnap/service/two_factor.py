"""TOTP and backup-code primitives.

Codes follow RFC 6238 with HMAC-SHA1, 30 second steps and six digits, which
is what mainstream authenticator apps expect from a plain otpauth URI.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import io
import os
import secrets
from datetime import datetime
from typing import List, Optional, Set
from urllib.parse import quote, urlencode

import qrcode
import qrcode.image.svg

from securesnap.logging import get_logger
from securesnap.storage.common import digest_token

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
SECRET_BYTES = 32


def generate_secret() -> str:
    return base64.b32encode(os.urandom(SECRET_BYTES)).decode("utf-8").rstrip("=")


def _decode_secret(secret: str) -> Optional[bytes]:
    cleaned = secret.replace(" ", "").upper()
    padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
    try:
        return base64.b32decode(padded, True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return None


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    key = _decode_secret(secret)
    if key is None:
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
    code: Optional[str],
    *,
    at: datetime,
    window: int = 1,
    interval: int = TOTP_INTERVAL,
) -> bool:
    """Accept ``code`` if it matches any step within ``window`` of ``at``."""
    if not secret or not code:
        return False
    candidate = code.strip().replace(" ", "")
    if len(candidate) != TOTP_DIGITS or not candidate.isdigit():
        return False
    timestamp = at.timestamp()
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, timestamp + offset * interval, interval=interval)
        if generated and hmac.compare_digest(generated, candidate):
            return True
    return False


def provisioning_uri(secret: str, account: str, *, issuer: str) -> str:
    label = quote(f"{issuer}:{account}", safe=":@")
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


def render_qr_svg_data_url(data: str) -> str:
    """Encode ``data`` as a QR code and return it as an SVG data URL."""
    qr = qrcode.QRCode(version=None, box_size=10, border=4)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(image_factory=qrcode.image.svg.SvgPathImage)
    buf = io.BytesIO()
    img.save(buf)
    encoded = base64.b64encode(buf.getvalue()).decode()
    return f"data:image/svg+xml;base64,{encoded}"


def generate_backup_codes(count: int = 10) -> List[str]:
    codes = []
    for _ in range(count):
        raw = secrets.token_hex(4).upper()
        codes.append(f"{raw[:4]}-{raw[4:]}")
    return codes


def normalize_backup_code(code: str) -> str:
    cleaned = code.strip().upper().replace(" ", "")
    if len(cleaned) == 8 and "-" not in cleaned:
        cleaned = f"{cleaned[:4]}-{cleaned[4:]}"
    return cleaned


def hash_backup_code(code: str) -> str:
    return digest_token(normalize_backup_code(code))


def hash_backup_codes(codes: List[str]) -> Set[str]:
    return {hash_backup_code(code) for code in codes}
