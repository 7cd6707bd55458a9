from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from securesnap.logging import get_logger
from securesnap.storage.common import SecretCipher, ensure_utc, normalize_ip
from securesnap.storage.errors import ConstraintViolation, SchemaMissingError
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
)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

_REQUIRED_TABLES = (
    "app_user",
    "refresh_token",
    "two_factor_session",
    "qr_session",
    "magic_link",
    "trusted_device",
    "audit_log",
    "notification",
)

_UPDATABLE_USER_FIELDS = ("name", "password_hash", "email")


def _ts(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_utc(value) if value else None


class PostgresStore:
    """Postgres-backed store.

    Conditional writes are single ``UPDATE ... WHERE ... RETURNING`` or
    ``DELETE ... RETURNING`` statements, so racing requests resolve inside
    the database rather than in application code.
    """

    def __init__(
        self,
        dsn: str,
        *,
        mfa_encryption_key: str | None = None,
        min_size: int = 1,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = SecretCipher(mfa_encryption_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def install_schema(self) -> None:
        """Apply ``schema.sql``; every statement is idempotent."""
        with self._connect() as conn:
            conn.execute(SCHEMA_PATH.read_text())

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise SchemaMissingError(missing)

    # -- row mapping -----------------------------------------------------

    def _row_to_user(self, row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            name=row.get("name"),
            two_factor_enabled=bool(row.get("two_factor_enabled", False)),
            two_factor_secret=self._cipher.decrypt(row.get("two_factor_secret")),
            backup_codes=set(row.get("backup_codes") or []),
            failed_attempts=int(row.get("failed_attempts") or 0),
            locked_until=_ts(row.get("locked_until")),
            last_login_at=_ts(row.get("last_login_at")),
            created_at=_ts(row["created_at"]),
            updated_at=_ts(row["updated_at"]),
        )

    @staticmethod
    def _row_to_qr_session(row: Dict[str, Any]) -> QRSession:
        device_info = row.get("device_info")
        if isinstance(device_info, str):
            device_info = json.loads(device_info)
        return QRSession(
            id=row["id"],
            token_hash=row["token_hash"],
            expires_at=_ts(row["expires_at"]),
            status=QRStatus(row["status"]),
            device_info=device_info,
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            authenticated_at=_ts(row.get("authenticated_at")),
            tokens_issued_at=_ts(row.get("tokens_issued_at")),
            created_at=_ts(row["created_at"]),
        )

    @staticmethod
    def _row_to_magic_link(row: Dict[str, Any]) -> MagicLink:
        return MagicLink(
            token_hash=row["token_hash"],
            user_id=str(row["user_id"]),
            expires_at=_ts(row["expires_at"]),
            used_at=_ts(row.get("used_at")),
            created_at=_ts(row["created_at"]),
        )

    @staticmethod
    def _row_to_device(row: Dict[str, Any]) -> TrustedDevice:
        return TrustedDevice(
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=_ts(row["expires_at"]),
            device_name=row.get("device_name"),
            last_used_at=_ts(row.get("last_used_at")),
            created_at=_ts(row["created_at"]),
        )

    # -- users -----------------------------------------------------------

    def create_user(
        self, email: str, password_hash: str, *, name: Optional[str] = None
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, password_hash)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), email, name, password_hash),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - set(_UPDATABLE_USER_FIELDS)
        if unknown:
            raise ValueError(f"cannot update user fields: {', '.join(sorted(unknown))}")
        if not fields:
            return self.get_user(user_id)
        # Column names come from the fixed allow-list above.
        assignments = ", ".join(f"{name} = %s" for name in fields)
        params = [*fields.values(), user_id]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row) if row else None

    def set_two_factor(
        self,
        user_id: str,
        *,
        enabled: bool,
        secret: Optional[str],
        backup_code_hashes: Optional[Set[str]] = None,
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET two_factor_enabled = %s, two_factor_secret = %s,
                    backup_codes = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (
                    enabled,
                    self._cipher.encrypt(secret),
                    sorted(backup_code_hashes or ()),
                    user_id,
                ),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_backup_codes(self, user_id: str, code_hashes: Set[str]) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET backup_codes = %s, updated_at = now() WHERE id = %s RETURNING *",
                (sorted(code_hashes), user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def consume_backup_code(self, user_id: str, code_hash: str) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET backup_codes = array_remove(backup_codes, %s), updated_at = now()
                WHERE id = %s AND %s = ANY(backup_codes)
                RETURNING cardinality(backup_codes) AS remaining
                """,
                (code_hash, user_id, code_hash),
            ).fetchone()
        return int(row["remaining"]) if row else None

    def restore_backup_code(self, user_id: str, code_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user
                SET backup_codes = array_append(backup_codes, %s), updated_at = now()
                WHERE id = %s AND two_factor_enabled AND NOT (%s = ANY(backup_codes))
                """,
                (code_hash, user_id, code_hash),
            )
        return cur.rowcount > 0

    def record_login_failure(
        self, user_id: str, *, max_attempts: int, lock_until: datetime
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_attempts = failed_attempts + 1,
                    locked_until = CASE
                        WHEN failed_attempts + 1 >= %s THEN %s
                        ELSE locked_until
                    END,
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (max_attempts, lock_until, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def record_login_success(self, user_id: str, now: datetime) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_attempts = 0, locked_until = NULL,
                    last_login_at = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (now, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    # -- refresh tokens --------------------------------------------------

    def save_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO refresh_token (token_hash, user_id, expires_at) VALUES (%s, %s, %s)",
                    (token_hash, user_id, expires_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return RefreshToken(user_id=user_id, token_hash=token_hash, expires_at=expires_at)

    def get_refresh_token(
        self, user_id: str, token_hash: str, now: datetime
    ) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM refresh_token
                WHERE token_hash = %s AND user_id = %s AND expires_at > %s
                """,
                (token_hash, user_id, now),
            ).fetchone()
        if not row:
            return None
        return RefreshToken(
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=_ts(row["expires_at"]),
            created_at=_ts(row["created_at"]),
        )

    def delete_refresh_token(self, user_id: str, token_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM refresh_token WHERE token_hash = %s AND user_id = %s RETURNING token_hash",
                (token_hash, user_id),
            ).fetchone()
        return row is not None

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (user_id,))
            return cur.rowcount

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE expires_at <= %s", (now,))
            return cur.rowcount

    # -- two-factor sessions ---------------------------------------------

    def create_two_factor_session(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> TwoFactorSession:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO two_factor_session (token_hash, user_id, expires_at) VALUES (%s, %s, %s)",
                    (token_hash, user_id, expires_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return TwoFactorSession(token_hash=token_hash, user_id=user_id, expires_at=expires_at)

    def get_two_factor_session(self, token_hash: str) -> Optional[TwoFactorSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM two_factor_session WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        if not row:
            return None
        return TwoFactorSession(
            token_hash=row["token_hash"],
            user_id=str(row["user_id"]),
            expires_at=_ts(row["expires_at"]),
            created_at=_ts(row["created_at"]),
        )

    def delete_two_factor_session(self, token_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM two_factor_session WHERE token_hash = %s RETURNING token_hash",
                (token_hash,),
            ).fetchone()
        return row is not None

    def delete_expired_two_factor_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM two_factor_session WHERE expires_at <= %s", (now,)
            )
            return cur.rowcount

    # -- QR sessions -----------------------------------------------------

    def create_qr_session(self, session: QRSession) -> QRSession:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO qr_session (id, token_hash, status, device_info, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        session.id,
                        session.token_hash,
                        session.status.value,
                        json.dumps(session.device_info) if session.device_info else None,
                        session.expires_at,
                        session.created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("qr session already exists", {"id": session.id})
        return self._row_to_qr_session(row)

    def get_qr_session(self, session_id: str) -> Optional[QRSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM qr_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_qr_session(row) if row else None

    def get_qr_session_by_token(self, token_hash: str) -> Optional[QRSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM qr_session WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_qr_session(row) if row else None

    def transition_qr_session(
        self,
        session_id: str,
        *,
        expected: QRStatus,
        target: QRStatus,
        now: datetime,
        user_id: Optional[str] = None,
    ) -> Optional[QRSession]:
        check_qr_transition(expected, target)
        expiry_clause = "expires_at <= %s" if target == QRStatus.EXPIRED else "expires_at > %s"
        if target == QRStatus.AUTHENTICATED:
            assignments = "status = %s, user_id = %s, authenticated_at = %s"
            set_params: List[Any] = [target.value, user_id, now]
        else:
            assignments = "status = %s"
            set_params = [target.value]
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE qr_session SET {assignments}
                WHERE id = %s AND status = %s AND {expiry_clause}
                RETURNING *
                """,
                (*set_params, session_id, expected.value, now),
            ).fetchone()
        return self._row_to_qr_session(row) if row else None

    def claim_qr_tokens(self, session_id: str, now: datetime) -> Optional[QRSession]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE qr_session SET tokens_issued_at = %s
                WHERE id = %s AND status = 'authenticated' AND tokens_issued_at IS NULL
                  AND expires_at > %s
                RETURNING *
                """,
                (now, session_id, now),
            ).fetchone()
        return self._row_to_qr_session(row) if row else None

    def delete_expired_qr_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM qr_session
                WHERE expires_at <= %s AND status IN ('pending', 'expired', 'cancelled')
                """,
                (now,),
            )
            return cur.rowcount

    # -- magic links -----------------------------------------------------

    def create_magic_link(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> MagicLink:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO magic_link (token_hash, user_id, expires_at)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (token_hash, user_id, expires_at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return self._row_to_magic_link(row)

    def get_magic_link(self, token_hash: str) -> Optional[MagicLink]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM magic_link WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_magic_link(row) if row else None

    def consume_magic_link(self, token_hash: str, now: datetime) -> Optional[MagicLink]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE magic_link SET used_at = %s
                WHERE token_hash = %s AND used_at IS NULL AND expires_at > %s
                RETURNING *
                """,
                (now, token_hash, now),
            ).fetchone()
        return self._row_to_magic_link(row) if row else None

    def delete_stale_magic_links(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM magic_link WHERE used_at IS NOT NULL OR expires_at <= %s",
                (now,),
            )
            return cur.rowcount

    # -- trusted devices -------------------------------------------------

    def save_trusted_device(
        self,
        user_id: str,
        token_hash: str,
        expires_at: datetime,
        *,
        device_name: Optional[str] = None,
    ) -> TrustedDevice:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO trusted_device (token_hash, user_id, device_name, expires_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (token_hash, user_id, device_name, expires_at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return self._row_to_device(row)

    def touch_trusted_device(self, user_id: str, token_hash: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE trusted_device SET last_used_at = %s
                WHERE token_hash = %s AND user_id = %s AND expires_at > %s
                RETURNING token_hash
                """,
                (now, token_hash, user_id, now),
            ).fetchone()
        return row is not None

    def list_trusted_devices(self, user_id: str) -> List[TrustedDevice]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM trusted_device WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_device(row) for row in rows]

    def delete_user_trusted_devices(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM trusted_device WHERE user_id = %s", (user_id,))
            return cur.rowcount

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
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (id, user_id, action, entity_type, entity_id, ip_address, meta, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    user_id,
                    action,
                    entity_type,
                    entity_id,
                    event.ip_address,
                    json.dumps(event.meta) if event.meta else None,
                    event.created_at,
                ),
            )
        return event

    def list_audit_events(
        self,
        user_id: Optional[str] = None,
        *,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        clauses = []
        params: List[Any] = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if action is not None:
            clauses.append("action = %s")
            params.append(action)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_log {where} ORDER BY created_at DESC LIMIT %s",
                params,
            ).fetchall()
        return [
            AuditEvent(
                id=str(row["id"]),
                action=row["action"],
                user_id=str(row["user_id"]) if row.get("user_id") else None,
                entity_type=row.get("entity_type"),
                entity_id=row.get("entity_id"),
                ip_address=str(row["ip_address"]) if row.get("ip_address") else None,
                meta=row.get("meta"),
                created_at=_ts(row["created_at"]),
            )
            for row in rows
        ]

    def create_notification(
        self, user_id: str, type: str, title: str, message: str
    ) -> Notification:
        note = Notification(
            id=str(uuid.uuid4()), user_id=user_id, type=type, title=title, message=message
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO notification (id, user_id, type, title, message, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (note.id, user_id, type, title, message, note.created_at),
            )
        return note

    def list_notifications(self, user_id: str) -> List[Notification]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM notification WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [
            Notification(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                type=row["type"],
                title=row["title"],
                message=row["message"],
                read=bool(row.get("read", False)),
                created_at=_ts(row["created_at"]),
            )
            for row in rows
        ]
