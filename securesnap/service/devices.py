from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from securesnap.logging import get_logger
from securesnap.storage.common import digest_token
from securesnap.storage.models import TrustedDevice, utcnow

logger = get_logger(__name__)

MAX_DEVICE_NAME_LENGTH = 120


class DeviceTrustRegistry:
    """Remembered devices that may skip the second factor."""

    def __init__(
        self, store, *, ttl_days: int = 30, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.store = store
        self.ttl = timedelta(days=ttl_days)
        self._clock = clock

    def save(
        self, user_id: str, device_token: str, device_name: Optional[str] = None
    ) -> TrustedDevice:
        name = (device_name or "").strip()[:MAX_DEVICE_NAME_LENGTH] or None
        return self.store.save_trusted_device(
            user_id,
            digest_token(device_token),
            self._clock() + self.ttl,
            device_name=name,
        )

    def issue(self, user_id: str, device_name: Optional[str] = None) -> str:
        token = secrets.token_hex(32)
        self.save(user_id, token, device_name)
        logger.info("trusted_device_saved", user_id=user_id)
        return token

    def verify(self, user_id: str, device_token: Optional[str]) -> bool:
        """True for an unexpired record of exactly this user and token.

        A hit refreshes ``last_used_at``; the expiry is left untouched.
        """
        if not user_id or not device_token:
            return False
        trusted = self.store.touch_trusted_device(
            user_id, digest_token(device_token), self._clock()
        )
        if not trusted:
            logger.info("trusted_device_rejected", user_id=user_id)
        return trusted

    def list_devices(self, user_id: str) -> List[TrustedDevice]:
        return self.store.list_trusted_devices(user_id)

    def revoke_all(self, user_id: str) -> int:
        return self.store.delete_user_trusted_devices(user_id)
