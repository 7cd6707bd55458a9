from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Optional, Set


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    name: Optional[str] = None
    two_factor_enabled: bool = False
    # Encrypted at rest by the store; services only ever see plaintext.
    two_factor_secret: Optional[str] = None
    backup_codes: Set[str] = field(default_factory=set)
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class RefreshToken:
    user_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def is_valid(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass
class TwoFactorSession:
    """Short-lived proof that the password step succeeded."""

    token_hash: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def is_valid(self, now: datetime) -> bool:
        return self.expires_at > now


class QRStatus(str, Enum):
    PENDING = "pending"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    # Reported for unknown session ids; never persisted.
    NOT_FOUND = "not_found"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_QR_STATUSES


TERMINAL_QR_STATUSES: FrozenSet[QRStatus] = frozenset(
    {QRStatus.AUTHENTICATED, QRStatus.EXPIRED, QRStatus.CANCELLED}
)

QR_TRANSITIONS: Dict[QRStatus, FrozenSet[QRStatus]] = {
    QRStatus.PENDING: frozenset(
        {QRStatus.AUTHENTICATED, QRStatus.EXPIRED, QRStatus.CANCELLED}
    ),
    QRStatus.AUTHENTICATED: frozenset(),
    QRStatus.EXPIRED: frozenset(),
    QRStatus.CANCELLED: frozenset(),
}


class InvalidTransitionError(Exception):
    """Raised when a QR session is asked to move along an undeclared edge."""

    def __init__(self, current: QRStatus, target: QRStatus) -> None:
        super().__init__(f"cannot move QR session from {current.value} to {target.value}")
        self.current = current
        self.target = target


def check_qr_transition(current: QRStatus, target: QRStatus) -> None:
    if target not in QR_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current, target)


@dataclass
class QRSession:
    id: str
    token_hash: str
    expires_at: datetime
    status: QRStatus = QRStatus.PENDING
    device_info: Dict | None = None
    user_id: Optional[str] = None
    authenticated_at: Optional[datetime] = None
    tokens_issued_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class MagicLink:
    token_hash: str
    user_id: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_usable(self, now: datetime) -> bool:
        return self.used_at is None and self.expires_at > now


@dataclass
class TrustedDevice:
    user_id: str
    token_hash: str
    expires_at: datetime
    device_name: Optional[str] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_valid(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass
class AuditEvent:
    id: str
    action: str
    user_id: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    ip_address: Optional[str] = None
    meta: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Notification:
    id: str
    user_id: str
    type: str
    title: str
    message: str
    read: bool = False
    created_at: datetime = field(default_factory=utcnow)
