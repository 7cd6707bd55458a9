"""Helpers shared by the memory and postgres stores.

Both backends persist secrets the same way: bearer tokens are kept as
SHA-256 digests and TOTP secrets are Fernet-encrypted, so a leaked snapshot
or table dump does not hand out working credentials.
"""

from __future__ import annotations

import base64
import hashlib
import os
from datetime import datetime, timezone
from ipaddress import ip_address
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from securesnap.logging import get_logger

logger = get_logger(__name__)


def digest_token(raw: str) -> str:
    """Return the at-rest form of a bearer secret."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def serialize_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    return ensure_utc(datetime.fromisoformat(raw))


class SecretCipher:
    """Symmetric wrapper used for two-factor secrets."""

    def __init__(self, key_material: Optional[str] = None) -> None:
        material = (
            key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        )
        if not material:
            raise RuntimeError(
                "no key material for two-factor secret encryption; set MFA_SECRET_KEY"
            )
        self._fernet = Fernet(self._derive_key(material))

    @staticmethod
    def _derive_key(material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(material.encode()).digest())

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken:
            # Rows written before encryption was enabled hold the plaintext.
            logger.warning("two_factor_secret_decrypt_failed")
            return secret


def normalize_ip(raw: Optional[str]) -> Optional[str]:
    """Return a canonical address string, or None for anything unparseable."""
    if not raw:
        return None
    try:
        return str(ip_address(raw))
    except ValueError:
        return None
