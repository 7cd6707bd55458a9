from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from securesnap.logging import get_logger
from securesnap.service.errors import AccountLockedError
from securesnap.storage.models import User, utcnow

logger = get_logger(__name__)


class LockoutStore(Protocol):
    def record_login_failure(
        self, user_id: str, *, max_attempts: int, lock_until: datetime
    ) -> Optional[User]: ...

    def record_login_success(self, user_id: str, now: datetime) -> Optional[User]: ...


class LockoutPolicy:
    """Consecutive failed-password counter with a fixed lock window.

    The counter lives on the user record and is incremented by the store in
    one conditional write, so concurrent failures are all counted.
    """

    def __init__(
        self,
        store: LockoutStore,
        *,
        max_attempts: int = 5,
        lockout_minutes: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.lockout = timedelta(minutes=lockout_minutes)
        self._clock = clock

    def ensure_not_locked(self, user: User) -> None:
        now = self._clock()
        if user.is_locked(now):
            logger.warning(
                "login_locked",
                user_id=user.id,
                locked_until=user.locked_until.isoformat(),
            )
            raise AccountLockedError(
                detail={"lockedUntil": user.locked_until.isoformat()}
            )

    def register_failure(self, user: User) -> Optional[User]:
        now = self._clock()
        updated = self.store.record_login_failure(
            user.id, max_attempts=self.max_attempts, lock_until=now + self.lockout
        )
        if updated and updated.is_locked(now):
            logger.warning(
                "account_locked",
                user_id=user.id,
                failed_attempts=updated.failed_attempts,
                locked_until=updated.locked_until.isoformat(),
            )
        return updated

    def register_success(self, user: User) -> Optional[User]:
        return self.store.record_login_success(user.id, self._clock())
