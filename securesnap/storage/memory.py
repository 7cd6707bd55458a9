from __future__ import annotations

import dataclasses
import json
import threading
import uuid
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Type, TypeVar

from securesnap.logging import get_logger
from securesnap.storage.common import (
    SecretCipher,
    deserialize_datetime,
    normalize_ip,
    serialize_datetime,
)
from securesnap.storage.errors import ConstraintViolation
from securesnap.storage.models import (
    AuditEvent,
    MagicLink,
    Notification,
    QRSession,
    QRStatus,
    RefreshToken,
    TrustedDevice,
    TwoFactorSession,
    User,
    check_qr_transition,
    utcnow,
)

T = TypeVar("T")

_DATETIME_FIELDS = frozenset(
    {
        "created_at",
        "updated_at",
        "expires_at",
        "locked_until",
        "last_login_at",
        "authenticated_at",
        "tokens_issued_at",
        "used_at",
        "last_used_at",
    }
)

_UPDATABLE_USER_FIELDS = frozenset({"name", "password_hash", "email"})

_SWEEPABLE_QR_STATUSES = frozenset(
    {QRStatus.PENDING, QRStatus.EXPIRED, QRStatus.CANCELLED}
)


def _serialize(record: Any) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for f in dataclasses.fields(record):
        value = getattr(record, f.name)
        if isinstance(value, datetime):
            value = serialize_datetime(value)
        elif isinstance(value, Enum):
            value = value.value
        elif isinstance(value, set):
            value = sorted(value)
        out[f.name] = value
    return out


def _deserialize(cls: Type[T], data: Dict[str, Any]) -> T:
    kwargs: Dict[str, Any] = {}
    known = {f.name for f in dataclasses.fields(cls)}
    for key, value in data.items():
        if key not in known:
            continue
        if key in _DATETIME_FIELDS:
            value = deserialize_datetime(value)
        elif key == "backup_codes":
            value = set(value or [])
        elif key == "status":
            value = QRStatus(value)
        kwargs[key] = value
    return cls(**kwargs)


class MemoryStore:
    """Thread-safe in-process store with a JSON snapshot on disk.

    Every check-then-write sequence (consuming a magic link or backup code,
    moving a QR session between states, bumping the failed-login counter)
    runs under ``_data_lock`` so concurrent requests observe exactly one
    winner.
    """

    def __init__(
        self, fs_root: str = "/tmp/securesnap", *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.two_factor_sessions: Dict[str, TwoFactorSession] = {}
        self.qr_sessions: Dict[str, QRSession] = {}
        self.magic_links: Dict[str, MagicLink] = {}
        self.trusted_devices: Dict[str, TrustedDevice] = {}
        self.audit_events: List[AuditEvent] = []
        self.notifications: List[Notification] = []
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = SecretCipher(mfa_encryption_key)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    def close(self) -> None:
        return None

    # -- users -----------------------------------------------------------

    def _public_user(self, user: User) -> User:
        return dataclasses.replace(
            user,
            two_factor_secret=self._cipher.decrypt(user.two_factor_secret),
            backup_codes=set(user.backup_codes),
        )

    def create_user(
        self, email: str, password_hash: str, *, name: Optional[str] = None
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                password_hash=password_hash,
                name=name,
            )
            self.users[user.id] = user
            self._persist_state()
            return self._public_user(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._public_user(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return self._public_user(user) if user else None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"cannot update user fields: {', '.join(sorted(unknown))}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            new_email = fields.get("email")
            if new_email and any(
                u.email == new_email and u.id != user_id for u in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            for key, value in fields.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            self._persist_state()
            return self._public_user(user)

    def set_two_factor(
        self,
        user_id: str,
        *,
        enabled: bool,
        secret: Optional[str],
        backup_code_hashes: Optional[Set[str]] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.two_factor_enabled = enabled
            user.two_factor_secret = self._cipher.encrypt(secret)
            user.backup_codes = set(backup_code_hashes or ())
            user.updated_at = utcnow()
            self._persist_state()
            return self._public_user(user)

    def set_backup_codes(self, user_id: str, code_hashes: Set[str]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.backup_codes = set(code_hashes)
            user.updated_at = utcnow()
            self._persist_state()
            return self._public_user(user)

    def consume_backup_code(self, user_id: str, code_hash: str) -> Optional[int]:
        """Remove ``code_hash`` and return how many codes remain.

        Returns ``None`` when the code is not (or no longer) present.
        """
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or code_hash not in user.backup_codes:
                return None
            user.backup_codes.discard(code_hash)
            user.updated_at = utcnow()
            self._persist_state()
            return len(user.backup_codes)

    def restore_backup_code(self, user_id: str, code_hash: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.two_factor_enabled or code_hash in user.backup_codes:
                return False
            user.backup_codes.add(code_hash)
            user.updated_at = utcnow()
            self._persist_state()
            return True

    def record_login_failure(
        self, user_id: str, *, max_attempts: int, lock_until: datetime
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_attempts += 1
            if user.failed_attempts >= max_attempts:
                user.locked_until = lock_until
            user.updated_at = utcnow()
            self._persist_state()
            return self._public_user(user)

    def record_login_success(self, user_id: str, now: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_attempts = 0
            user.locked_until = None
            user.last_login_at = now
            user.updated_at = utcnow()
            self._persist_state()
            return self._public_user(user)

    # -- refresh tokens --------------------------------------------------

    def save_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            record = RefreshToken(user_id=user_id, token_hash=token_hash, expires_at=expires_at)
            self.refresh_tokens[token_hash] = record
            self._persist_state()
            return record

    def get_refresh_token(
        self, user_id: str, token_hash: str, now: datetime
    ) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            if not record or record.user_id != user_id or not record.is_valid(now):
                return None
            return record

    def delete_refresh_token(self, user_id: str, token_hash: str) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            if not record or record.user_id != user_id:
                return False
            del self.refresh_tokens[token_hash]
            self._persist_state()
            return True

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            stale = [h for h, r in self.refresh_tokens.items() if r.user_id == user_id]
            for token_hash in stale:
                del self.refresh_tokens[token_hash]
            if stale:
                self._persist_state()
            return len(stale)

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [h for h, r in self.refresh_tokens.items() if not r.is_valid(now)]
            for token_hash in stale:
                del self.refresh_tokens[token_hash]
            if stale:
                self._persist_state()
            return len(stale)

    # -- two-factor sessions ---------------------------------------------

    def create_two_factor_session(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> TwoFactorSession:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            record = TwoFactorSession(
                token_hash=token_hash, user_id=user_id, expires_at=expires_at
            )
            self.two_factor_sessions[token_hash] = record
            self._persist_state()
            return dataclasses.replace(record)

    def get_two_factor_session(self, token_hash: str) -> Optional[TwoFactorSession]:
        with self._data_lock:
            session = self.two_factor_sessions.get(token_hash)
            return dataclasses.replace(session) if session else None

    def delete_two_factor_session(self, token_hash: str) -> bool:
        with self._data_lock:
            if self.two_factor_sessions.pop(token_hash, None) is None:
                return False
            self._persist_state()
            return True

    def delete_expired_two_factor_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                h for h, s in self.two_factor_sessions.items() if not s.is_valid(now)
            ]
            for token_hash in stale:
                del self.two_factor_sessions[token_hash]
            if stale:
                self._persist_state()
            return len(stale)

    # -- QR sessions -----------------------------------------------------

    def create_qr_session(self, session: QRSession) -> QRSession:
        with self._data_lock:
            if session.id in self.qr_sessions:
                raise ConstraintViolation("qr session already exists", {"id": session.id})
            self.qr_sessions[session.id] = session
            self._persist_state()
            return dataclasses.replace(session)

    def get_qr_session(self, session_id: str) -> Optional[QRSession]:
        with self._data_lock:
            session = self.qr_sessions.get(session_id)
            return dataclasses.replace(session) if session else None

    def get_qr_session_by_token(self, token_hash: str) -> Optional[QRSession]:
        with self._data_lock:
            session = next(
                (s for s in self.qr_sessions.values() if s.token_hash == token_hash),
                None,
            )
            return dataclasses.replace(session) if session else None

    def transition_qr_session(
        self,
        session_id: str,
        *,
        expected: QRStatus,
        target: QRStatus,
        now: datetime,
        user_id: Optional[str] = None,
    ) -> Optional[QRSession]:
        """Compare-and-set the status of a QR session.

        Moving to ``EXPIRED`` only succeeds once the TTL has elapsed; every
        other target only succeeds while the session is still live. Returns
        the updated session, or ``None`` when another writer got there first.
        """
        check_qr_transition(expected, target)
        with self._data_lock:
            session = self.qr_sessions.get(session_id)
            if not session or session.status != expected:
                return None
            if (target == QRStatus.EXPIRED) != session.is_expired(now):
                return None
            session.status = target
            if target == QRStatus.AUTHENTICATED:
                session.user_id = user_id
                session.authenticated_at = now
            self._persist_state()
            return dataclasses.replace(session)

    def claim_qr_tokens(self, session_id: str, now: datetime) -> Optional[QRSession]:
        with self._data_lock:
            session = self.qr_sessions.get(session_id)
            if (
                not session
                or session.status != QRStatus.AUTHENTICATED
                or session.tokens_issued_at is not None
                or session.is_expired(now)
            ):
                return None
            session.tokens_issued_at = now
            self._persist_state()
            return dataclasses.replace(session)

    def delete_expired_qr_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, s in self.qr_sessions.items()
                if s.is_expired(now) and s.status in _SWEEPABLE_QR_STATUSES
            ]
            for sid in stale:
                del self.qr_sessions[sid]
            if stale:
                self._persist_state()
            return len(stale)

    # -- magic links -----------------------------------------------------

    def create_magic_link(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> MagicLink:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            link = MagicLink(token_hash=token_hash, user_id=user_id, expires_at=expires_at)
            self.magic_links[token_hash] = link
            self._persist_state()
            return dataclasses.replace(link)

    def get_magic_link(self, token_hash: str) -> Optional[MagicLink]:
        with self._data_lock:
            link = self.magic_links.get(token_hash)
            return dataclasses.replace(link) if link else None

    def consume_magic_link(self, token_hash: str, now: datetime) -> Optional[MagicLink]:
        with self._data_lock:
            link = self.magic_links.get(token_hash)
            if not link or not link.is_usable(now):
                return None
            link.used_at = now
            self._persist_state()
            return dataclasses.replace(link)

    def delete_stale_magic_links(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                h for h, link in self.magic_links.items() if not link.is_usable(now)
            ]
            for token_hash in stale:
                del self.magic_links[token_hash]
            if stale:
                self._persist_state()
            return len(stale)

    # -- trusted devices -------------------------------------------------

    def save_trusted_device(
        self,
        user_id: str,
        token_hash: str,
        expires_at: datetime,
        *,
        device_name: Optional[str] = None,
    ) -> TrustedDevice:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            device = TrustedDevice(
                user_id=user_id,
                token_hash=token_hash,
                expires_at=expires_at,
                device_name=device_name,
            )
            self.trusted_devices[token_hash] = device
            self._persist_state()
            return dataclasses.replace(device)

    def touch_trusted_device(self, user_id: str, token_hash: str, now: datetime) -> bool:
        with self._data_lock:
            device = self.trusted_devices.get(token_hash)
            if not device or device.user_id != user_id or not device.is_valid(now):
                return False
            device.last_used_at = now
            self._persist_state()
            return True

    def list_trusted_devices(self, user_id: str) -> List[TrustedDevice]:
        with self._data_lock:
            return [
                dataclasses.replace(d)
                for d in self.trusted_devices.values()
                if d.user_id == user_id
            ]

    def delete_user_trusted_devices(self, user_id: str) -> int:
        with self._data_lock:
            stale = [h for h, d in self.trusted_devices.items() if d.user_id == user_id]
            for token_hash in stale:
                del self.trusted_devices[token_hash]
            if stale:
                self._persist_state()
            return len(stale)

    # -- audit and notifications -----------------------------------------

    def record_audit_event(
        self,
        action: str,
        *,
        user_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            id=str(uuid.uuid4()),
            action=action,
            user_id=user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            ip_address=normalize_ip(ip_address),
            meta=dict(meta) if meta else None,
        )
        with self._data_lock:
            self.audit_events.append(event)
            self._persist_state()
        return event

    def list_audit_events(
        self,
        user_id: Optional[str] = None,
        *,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        with self._data_lock:
            events = [
                e
                for e in self.audit_events
                if (user_id is None or e.user_id == user_id)
                and (action is None or e.action == action)
            ]
        return sorted(events, key=lambda e: e.created_at, reverse=True)[:limit]

    def create_notification(
        self, user_id: str, type: str, title: str, message: str
    ) -> Notification:
        note = Notification(
            id=str(uuid.uuid4()), user_id=user_id, type=type, title=title, message=message
        )
        with self._data_lock:
            self.notifications.append(note)
            self._persist_state()
        return note

    def list_notifications(self, user_id: str) -> List[Notification]:
        with self._data_lock:
            return [n for n in self.notifications if n.user_id == user_id]

    # -- snapshot --------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "users": [_serialize(u) for u in self.users.values()],
            "refresh_tokens": [_serialize(r) for r in self.refresh_tokens.values()],
            "two_factor_sessions": [
                _serialize(s) for s in self.two_factor_sessions.values()
            ],
            "qr_sessions": [_serialize(s) for s in self.qr_sessions.values()],
            "magic_links": [_serialize(m) for m in self.magic_links.values()],
            "trusted_devices": [_serialize(d) for d in self.trusted_devices.values()],
            "audit_events": [_serialize(e) for e in self.audit_events],
            "notifications": [_serialize(n) for n in self.notifications],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            u["id"]: _deserialize(User, u) for u in data.get("users", [])
        }
        self.refresh_tokens = {
            r["token_hash"]: _deserialize(RefreshToken, r)
            for r in data.get("refresh_tokens", [])
        }
        self.two_factor_sessions = {
            s["token_hash"]: _deserialize(TwoFactorSession, s)
            for s in data.get("two_factor_sessions", [])
        }
        self.qr_sessions = {
            s["id"]: _deserialize(QRSession, s) for s in data.get("qr_sessions", [])
        }
        self.magic_links = {
            m["token_hash"]: _deserialize(MagicLink, m)
            for m in data.get("magic_links", [])
        }
        self.trusted_devices = {
            d["token_hash"]: _deserialize(TrustedDevice, d)
            for d in data.get("trusted_devices", [])
        }
        self.audit_events = [
            _deserialize(AuditEvent, e) for e in data.get("audit_events", [])
        ]
        self.notifications = [
            _deserialize(Notification, n) for n in data.get("notifications", [])
        ]
        self.logger.info("memory_store_loaded", users=len(self.users), path=str(path))
        return True
