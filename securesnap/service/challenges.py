from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from securesnap.logging import get_logger
from securesnap.service.errors import SessionExpiredError, SessionNotFoundError
from securesnap.storage.common import digest_token
from securesnap.storage.models import utcnow

logger = get_logger(__name__)

SESSION_MESSAGE = "invalid or expired session"
LINK_MESSAGE = "invalid or expired link"


@dataclass
class IssuedChallenge:
    """Raw bearer token handed to the client; only its digest is stored."""

    token: str
    user_id: str
    expires_at: datetime


def _new_token() -> str:
    return secrets.token_hex(32)


class TwoFactorSessionRegistry:
    """Short-lived proof that a user passed the password step."""

    def __init__(
        self, store, *, ttl_minutes: int = 10, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.store = store
        self.ttl = timedelta(minutes=ttl_minutes)
        self._clock = clock

    def create(self, user_id: str) -> IssuedChallenge:
        token = _new_token()
        expires_at = self._clock() + self.ttl
        self.store.create_two_factor_session(user_id, digest_token(token), expires_at)
        return IssuedChallenge(token=token, user_id=user_id, expires_at=expires_at)

    def resolve(self, token: str) -> str:
        """Return the user id bound to ``token``.

        Expired sessions raise ``SessionExpiredError`` and are treated as
        gone from then on; unknown tokens raise ``SessionNotFoundError``.
        Both carry the same client-facing message.
        """
        if not token:
            raise SessionNotFoundError(SESSION_MESSAGE)
        token_hash = digest_token(token)
        session = self.store.get_two_factor_session(token_hash)
        if session is None:
            raise SessionNotFoundError(SESSION_MESSAGE)
        if not session.is_valid(self._clock()):
            self.store.delete_two_factor_session(token_hash)
            raise SessionExpiredError(SESSION_MESSAGE)
        return session.user_id

    def consume(self, token: str) -> bool:
        """Delete the session; only the caller that actually deleted it wins."""
        return self.store.delete_two_factor_session(digest_token(token))

    def sweep(self) -> int:
        return self.store.delete_expired_two_factor_sessions(self._clock())


class MagicLinkRegistry:
    """Single-use login links."""

    def __init__(
        self, store, *, ttl_minutes: int = 15, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.store = store
        self.ttl = timedelta(minutes=ttl_minutes)
        self._clock = clock

    def create(self, user_id: str) -> IssuedChallenge:
        token = _new_token()
        expires_at = self._clock() + self.ttl
        self.store.create_magic_link(user_id, digest_token(token), expires_at)
        return IssuedChallenge(token=token, user_id=user_id, expires_at=expires_at)

    def expires_at(self) -> datetime:
        return self._clock() + self.ttl

    def consume(self, token: str) -> str:
        """Mark the link used and return its owner in one conditional write."""
        if not token:
            raise SessionNotFoundError(LINK_MESSAGE)
        token_hash = digest_token(token)
        now = self._clock()
        link = self.store.consume_magic_link(token_hash, now)
        if link is not None:
            return link.user_id
        # The write lost; work out why for the logs only.
        existing = self.store.get_magic_link(token_hash)
        if existing is not None and existing.used_at is None and existing.expires_at <= now:
            raise SessionExpiredError(LINK_MESSAGE)
        raise SessionNotFoundError(LINK_MESSAGE)

    def sweep(self) -> int:
        return self.store.delete_stale_magic_links(self._clock())
