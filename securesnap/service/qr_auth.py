from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional

from securesnap.logging import get_logger
from securesnap.service.errors import SessionExpiredError, SessionNotFoundError
from securesnap.storage.common import digest_token
from securesnap.storage.models import QRSession, QRStatus, utcnow
from securesnap.storage.redis_cache import RedisCache

logger = get_logger(__name__)

SESSION_ID_RE = re.compile(r"^[a-f0-9]{32}$")
TOKEN_RE = re.compile(r"^[a-f0-9]{64}$")
QR_MESSAGE = "invalid or expired QR session"

# Statuses that never change again and carry nothing the store must hand out.
_CACHEABLE = frozenset({QRStatus.EXPIRED, QRStatus.CANCELLED})


@dataclass
class QRTicket:
    session_id: str
    token: str
    expires_at: datetime


@dataclass
class QRStatusView:
    status: QRStatus
    session: Optional[QRSession] = None


def validate_qr_data(data: Any) -> bool:
    """Check a scanned payload carries a well-formed session id and token."""
    if not isinstance(data, Mapping):
        return False
    session_id = data.get("sessionId") or data.get("session_id")
    token = data.get("token")
    if not isinstance(session_id, str) or not isinstance(token, str):
        return False
    return bool(SESSION_ID_RE.match(session_id) and TOKEN_RE.match(token))


class QRAuthService:
    """Cross-device login sessions.

    A desktop creates a session and shows its token as a QR code; a signed-in
    phone presents the token to bind its user; the desktop polls the status.
    Every status change is a compare-and-set against the store so racing
    callers cannot both win.
    """

    def __init__(
        self,
        store,
        cache: Optional[RedisCache] = None,
        *,
        ttl_minutes: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.ttl = timedelta(minutes=ttl_minutes)
        self._clock = clock

    def create_session(self, device_info: Optional[dict] = None) -> QRTicket:
        session_id = secrets.token_hex(16)
        token = secrets.token_hex(32)
        now = self._clock()
        session = QRSession(
            id=session_id,
            token_hash=digest_token(token),
            expires_at=now + self.ttl,
            device_info=dict(device_info) if device_info else None,
            created_at=now,
        )
        self.store.create_qr_session(session)
        logger.info("qr_session_created", session_id=session_id)
        return QRTicket(session_id=session_id, token=token, expires_at=session.expires_at)

    async def _cached_status(self, session_id: str) -> Optional[QRStatus]:
        if not self.cache:
            return None
        try:
            raw = await self.cache.get_qr_status(session_id)
        except Exception as exc:
            logger.warning("qr_status_cache_read_failed", error=str(exc))
            return None
        return QRStatus(raw) if raw in {s.value for s in _CACHEABLE} else None

    async def _remember_status(self, session_id: str, status: QRStatus) -> None:
        if not self.cache or status not in _CACHEABLE:
            return
        try:
            await self.cache.cache_qr_status(session_id, status.value)
        except Exception as exc:
            logger.warning("qr_status_cache_write_failed", error=str(exc))

    def _expire_if_due(self, session: QRSession, now: datetime) -> QRSession:
        if session.status != QRStatus.PENDING or not session.is_expired(now):
            return session
        updated = self.store.transition_qr_session(
            session.id, expected=QRStatus.PENDING, target=QRStatus.EXPIRED, now=now
        )
        if updated is not None:
            logger.info("qr_session_expired", session_id=session.id)
            return updated
        # Someone else moved it first; report what they left behind.
        return self.store.get_qr_session(session.id) or session

    async def get_status(self, session_id: str) -> QRStatusView:
        """Read-only apart from the lazy ``PENDING -> EXPIRED`` step."""
        if not session_id or not SESSION_ID_RE.match(session_id):
            return QRStatusView(QRStatus.NOT_FOUND)
        cached = await self._cached_status(session_id)
        if cached is not None:
            return QRStatusView(cached)
        session = self.store.get_qr_session(session_id)
        if session is None:
            return QRStatusView(QRStatus.NOT_FOUND)
        session = self._expire_if_due(session, self._clock())
        await self._remember_status(session_id, session.status)
        return QRStatusView(session.status, session)

    async def authenticate_session(self, token: str, user_id: str) -> QRSession:
        if not token or not TOKEN_RE.match(token):
            raise SessionNotFoundError(QR_MESSAGE)
        session = self.store.get_qr_session_by_token(digest_token(token))
        if session is None:
            raise SessionNotFoundError(QR_MESSAGE)
        now = self._clock()
        session = self._expire_if_due(session, now)
        if session.status == QRStatus.EXPIRED:
            await self._remember_status(session.id, session.status)
            raise SessionExpiredError(QR_MESSAGE)
        if session.status != QRStatus.PENDING:
            raise SessionNotFoundError(QR_MESSAGE)
        updated = self.store.transition_qr_session(
            session.id,
            expected=QRStatus.PENDING,
            target=QRStatus.AUTHENTICATED,
            now=now,
            user_id=user_id,
        )
        if updated is None:
            raise SessionNotFoundError(QR_MESSAGE)
        logger.info("qr_session_authenticated", session_id=session.id, user_id=user_id)
        return updated

    async def cancel_session(self, session_id: str) -> bool:
        if not session_id or not SESSION_ID_RE.match(session_id):
            return False
        updated = self.store.transition_qr_session(
            session_id,
            expected=QRStatus.PENDING,
            target=QRStatus.CANCELLED,
            now=self._clock(),
        )
        if updated is None:
            return False
        await self._remember_status(session_id, QRStatus.CANCELLED)
        logger.info("qr_session_cancelled", session_id=session_id)
        return True

    def claim_tokens(self, session_id: str) -> Optional[QRSession]:
        """Mark the one-time token hand-off; ``None`` if already claimed."""
        return self.store.claim_qr_tokens(session_id, self._clock())

    def cleanup_expired_sessions(self) -> int:
        removed = self.store.delete_expired_qr_sessions(self._clock())
        if removed:
            logger.info("qr_sessions_cleaned", count=removed)
        return removed
