from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, Union
from urllib.parse import urlencode, urlparse

from securesnap.config import Settings
from securesnap.logging import get_logger
from securesnap.service.challenges import (
    LINK_MESSAGE,
    SESSION_MESSAGE,
    MagicLinkRegistry,
    TwoFactorSessionRegistry,
)
from securesnap.service.credentials import CredentialService
from securesnap.service.devices import DeviceTrustRegistry
from securesnap.service.email import EmailService
from securesnap.service.errors import (
    AccountLockedError,
    ConflictError,
    InvalidCredentialsError,
    InvalidTokenError,
    InvalidTwoFactorCodeError,
    NotFoundError,
    SessionNotFoundError,
    TwoFactorRequiredError,
    ValidationError,
)
from securesnap.service.lockout import LockoutPolicy
from securesnap.service.qr_auth import QRAuthService
from securesnap.service.tokens import ACCESS, REFRESH, TokenIssuer
from securesnap.service.two_factor import (
    generate_backup_codes,
    generate_secret,
    hash_backup_code,
    hash_backup_codes,
    provisioning_uri,
    render_qr_svg_data_url,
    verify_totp,
)
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
    utcnow,
)
from securesnap.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(
        self, email: str, password_hash: str, *, name: Optional[str] = None
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def set_two_factor(
        self,
        user_id: str,
        *,
        enabled: bool,
        secret: Optional[str],
        backup_code_hashes: Optional[Set[str]] = None,
    ) -> Optional[User]: ...

    def set_backup_codes(self, user_id: str, code_hashes: Set[str]) -> Optional[User]: ...

    def consume_backup_code(self, user_id: str, code_hash: str) -> Optional[int]: ...

    def restore_backup_code(self, user_id: str, code_hash: str) -> bool: ...

    def record_login_failure(
        self, user_id: str, *, max_attempts: int, lock_until: datetime
    ) -> Optional[User]: ...

    def record_login_success(self, user_id: str, now: datetime) -> Optional[User]: ...

    def save_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshToken: ...

    def get_refresh_token(
        self, user_id: str, token_hash: str, now: datetime
    ) -> Optional[RefreshToken]: ...

    def delete_refresh_token(self, user_id: str, token_hash: str) -> bool: ...

    def delete_user_refresh_tokens(self, user_id: str) -> int: ...

    def delete_expired_refresh_tokens(self, now: datetime) -> int: ...

    def create_two_factor_session(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> TwoFactorSession: ...

    def get_two_factor_session(self, token_hash: str) -> Optional[TwoFactorSession]: ...

    def delete_two_factor_session(self, token_hash: str) -> bool: ...

    def delete_expired_two_factor_sessions(self, now: datetime) -> int: ...

    def create_qr_session(self, session: QRSession) -> QRSession: ...

    def get_qr_session(self, session_id: str) -> Optional[QRSession]: ...

    def get_qr_session_by_token(self, token_hash: str) -> Optional[QRSession]: ...

    def transition_qr_session(
        self,
        session_id: str,
        *,
        expected: QRStatus,
        target: QRStatus,
        now: datetime,
        user_id: Optional[str] = None,
    ) -> Optional[QRSession]: ...

    def claim_qr_tokens(self, session_id: str, now: datetime) -> Optional[QRSession]: ...

    def delete_expired_qr_sessions(self, now: datetime) -> int: ...

    def create_magic_link(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> MagicLink: ...

    def get_magic_link(self, token_hash: str) -> Optional[MagicLink]: ...

    def consume_magic_link(self, token_hash: str, now: datetime) -> Optional[MagicLink]: ...

    def delete_stale_magic_links(self, now: datetime) -> int: ...

    def save_trusted_device(
        self,
        user_id: str,
        token_hash: str,
        expires_at: datetime,
        *,
        device_name: Optional[str] = None,
    ) -> TrustedDevice: ...

    def touch_trusted_device(self, user_id: str, token_hash: str, now: datetime) -> bool: ...

    def list_trusted_devices(self, user_id: str) -> List[TrustedDevice]: ...

    def delete_user_trusted_devices(self, user_id: str) -> int: ...

    def record_audit_event(
        self,
        action: str,
        *,
        user_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent: ...

    def create_notification(
        self, user_id: str, type: str, title: str, message: str
    ) -> Notification: ...


class LoginState(str, Enum):
    CREDENTIALS_SUBMITTED = "credentials_submitted"
    LOCKED = "locked"
    INVALID = "invalid"
    PASSWORD_OK = "password_ok"
    TWO_FA_REQUIRED = "two_fa_required"
    TOKENS_ISSUED = "tokens_issued"
    REJECTED = "rejected"


class AuditAction:
    USER_CREATED = "USER_CREATED"
    USER_UPDATED = "USER_UPDATED"
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGIN_LOCKED = "LOGIN_LOCKED"
    LOGIN_TRUSTED_DEVICE = "LOGIN_TRUSTED_DEVICE"
    TWO_FACTOR_ENABLED = "2FA_ENABLED"
    TWO_FACTOR_DISABLED = "2FA_DISABLED"
    BACKUP_CODE_USED = "2FA_BACKUP_CODE_USED"
    BACKUP_CODES_REGENERATED = "2FA_BACKUP_CODES_REGENERATED"
    QR_LOGIN = "QR_LOGIN"
    MAGIC_LINK_LOGIN = "MAGIC_LINK_LOGIN"
    LOGOUT = "LOGOUT"


TWO_FACTOR_METHODS = ("totp", "backup")
MAGIC_LINK_ACK = "If an account exists for that email, a sign-in link is on its way."


@dataclass
class AuthResult:
    user: User
    access_token: str
    access_expires_at: datetime
    refresh_token: Optional[str] = None
    device_token: Optional[str] = None


@dataclass
class TwoFactorChallenge:
    session_token: str
    expires_at: datetime


@dataclass
class TwoFactorSetup:
    secret: str
    otpauth_url: str
    qr_code: str


@dataclass
class QRLoginStart:
    session_id: str
    token: str
    expires_at: datetime
    qr_url: str


@dataclass
class QRPollResult:
    status: QRStatus
    auth: Optional[AuthResult] = None


@dataclass
class MagicLinkAck:
    message: str
    expires_at: datetime


class AuthService:
    """Login flows over the credential, challenge and device registries.

    Every password login walks ``LoginState``: the lock check happens before
    the password is compared, a correct password resets the lockout counter,
    and only then is the second factor considered (enablement first, trusted
    device second). Emails go out on worker threads and never delay or fail
    the request that triggered them.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        cache: Optional[RedisCache] = None,
        email: Optional[EmailService] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.cache = cache
        self.email = email
        self._clock = clock
        self.logger = logger
        self.credentials = CredentialService(store, clock=clock)
        self.tokens = TokenIssuer(settings, clock=clock)
        self.lockout = LockoutPolicy(
            store,
            max_attempts=settings.max_failed_attempts,
            lockout_minutes=settings.lockout_minutes,
            clock=clock,
        )
        self.two_factor_sessions = TwoFactorSessionRegistry(
            store, ttl_minutes=settings.two_factor_session_ttl_minutes, clock=clock
        )
        self.magic_links = MagicLinkRegistry(
            store, ttl_minutes=settings.magic_link_ttl_minutes, clock=clock
        )
        self.devices = DeviceTrustRegistry(
            store, ttl_days=settings.device_trust_ttl_days, clock=clock
        )
        self.qr = QRAuthService(
            store, cache, ttl_minutes=settings.qr_session_ttl_minutes, clock=clock
        )
        self._pending_notifications: set[asyncio.Task] = set()

    # -- helpers -----------------------------------------------------------

    def _log_state(self, state: LoginState, **context: Any) -> None:
        self.logger.info("login_state", state=state.value, **context)

    def _audit(
        self,
        action: str,
        user_id: Optional[str],
        *,
        ip_address: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        **meta: Any,
    ) -> None:
        self.store.record_audit_event(
            action,
            user_id=user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            ip_address=ip_address,
            meta={k: v for k, v in meta.items() if v is not None} or None,
        )

    def _notify(self, send: Callable[..., bool], *args: Any) -> None:
        if self.email is None:
            return
        task = asyncio.get_running_loop().create_task(asyncio.to_thread(send, *args))
        self._pending_notifications.add(task)
        task.add_done_callback(self._notification_done)

    def _notification_done(self, task: asyncio.Task) -> None:
        self._pending_notifications.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error(
                "notification_failed", error_type=type(exc).__name__, error=str(exc)
            )

    async def drain_notifications(self) -> None:
        """Wait for queued emails; used on shutdown and in tests."""
        if self._pending_notifications:
            await asyncio.gather(*list(self._pending_notifications), return_exceptions=True)

    def _require_user(self, user_id: str) -> User:
        user = self.credentials.find_by_id(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    def _verify_totp(self, user: User, code: Optional[str]) -> bool:
        return verify_totp(
            user.two_factor_secret,
            code,
            at=self._clock(),
            window=self.settings.two_factor_window,
        )

    def _issue_session(self, user: User, *, with_refresh: bool = True) -> AuthResult:
        access = self.tokens.issue(user, ACCESS)
        result = AuthResult(
            user=user, access_token=access.token, access_expires_at=access.expires_at
        )
        if with_refresh:
            refresh = self.tokens.issue(user, REFRESH)
            self.credentials.save_refresh_token(user.id, refresh.token, refresh.expires_at)
            result.refresh_token = refresh.token
        return result

    def _safe_redirect(self, redirect_url: Optional[str]) -> Optional[str]:
        if not redirect_url:
            return None
        parsed = urlparse(redirect_url)
        if not parsed.scheme and not parsed.netloc:
            if redirect_url.startswith("/") and not redirect_url.startswith("//"):
                return redirect_url
        else:
            client = urlparse(self.settings.client_url)
            if (parsed.scheme, parsed.netloc) == (client.scheme, client.netloc):
                return redirect_url
        raise ValidationError(
            "redirect url must be a relative path on the client application",
            detail={"field": "redirectUrl"},
        )

    # -- registration and password login -----------------------------------

    async def register(
        self,
        email: str,
        password: str,
        name: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
    ) -> AuthResult:
        user = self.credentials.create(email, password, name=name)
        self._audit(AuditAction.USER_CREATED, user.id, ip_address=ip_address)
        result = self._issue_session(user)
        if self.email:
            self._notify(self.email.send_welcome, user.email, user.name)
        return result

    async def login(
        self,
        email: str,
        password: str,
        *,
        device_token: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Union[AuthResult, TwoFactorChallenge]:
        self._log_state(LoginState.CREDENTIALS_SUBMITTED)
        user = self.credentials.find_by_email(email)
        if user is not None:
            try:
                self.lockout.ensure_not_locked(user)
            except AccountLockedError:
                self._log_state(LoginState.LOCKED, user_id=user.id)
                self._audit(AuditAction.LOGIN_LOCKED, user.id, ip_address=ip_address)
                raise

        if not self.credentials.verify_password(user, password):
            if user is not None:
                self.lockout.register_failure(user)
                self._audit(
                    AuditAction.LOGIN_FAILED,
                    user.id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            self._log_state(LoginState.INVALID, user_id=user.id if user else None)
            raise InvalidCredentialsError()

        user = self.lockout.register_success(user) or user
        self._log_state(LoginState.PASSWORD_OK, user_id=user.id)

        method = "password"
        if user.two_factor_enabled:
            if device_token and self.devices.verify(user.id, device_token):
                method = "trusted_device"
                self._audit(
                    AuditAction.LOGIN_TRUSTED_DEVICE, user.id, ip_address=ip_address
                )
            else:
                challenge = self.two_factor_sessions.create(user.id)
                self._log_state(LoginState.TWO_FA_REQUIRED, user_id=user.id)
                return TwoFactorChallenge(
                    session_token=challenge.token, expires_at=challenge.expires_at
                )

        result = self._issue_session(user)
        self._audit(
            AuditAction.LOGIN_SUCCESS,
            user.id,
            ip_address=ip_address,
            method=method,
            user_agent=user_agent,
        )
        self._log_state(LoginState.TOKENS_ISSUED, user_id=user.id, method=method)
        return result

    async def verify_two_factor(
        self,
        session_token: str,
        code: str,
        *,
        method: str = "totp",
        remember_device: bool = False,
        device_name: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuthResult:
        if method not in TWO_FACTOR_METHODS:
            raise ValidationError(
                "method must be 'totp' or 'backup'", detail={"field": "method"}
            )
        user_id = self.two_factor_sessions.resolve(session_token)
        user = self.credentials.find_by_id(user_id)
        if not user or not user.two_factor_enabled:
            self.two_factor_sessions.consume(session_token)
            raise SessionNotFoundError(SESSION_MESSAGE)

        remaining: Optional[int] = None
        code_hash = hash_backup_code(code or "")
        if method == "totp":
            verified = self._verify_totp(user, code)
        else:
            remaining = self.store.consume_backup_code(user.id, code_hash)
            verified = remaining is not None
        if not verified:
            self._log_state(LoginState.REJECTED, user_id=user.id, method=method)
            raise InvalidTwoFactorCodeError()

        # A concurrent verifier with the same session may already have won.
        if not self.two_factor_sessions.consume(session_token):
            if remaining is not None:
                self.store.restore_backup_code(user.id, code_hash)
            self._log_state(LoginState.REJECTED, user_id=user.id, reason="session_consumed")
            raise SessionNotFoundError(SESSION_MESSAGE)

        if remaining is not None:
            self._audit(
                AuditAction.BACKUP_CODE_USED, user.id, ip_address=ip_address, remaining=remaining
            )
            if remaining <= self.settings.low_backup_code_threshold:
                self._warn_low_backup_codes(user, remaining)

        result = self._issue_session(user)
        if remember_device:
            result.device_token = self.devices.issue(user.id, device_name)
        self._audit(AuditAction.LOGIN_SUCCESS, user.id, ip_address=ip_address, method=method)
        self._log_state(LoginState.TOKENS_ISSUED, user_id=user.id, method=method)
        return result

    def _warn_low_backup_codes(self, user: User, remaining: int) -> None:
        message = (
            f"You have {remaining} backup code{'s' if remaining != 1 else ''} left. "
            "Generate new codes from your security settings."
        )
        self.store.create_notification(
            user.id, "security", "Running low on backup codes", message
        )
        self.logger.warning("backup_codes_low", user_id=user.id, remaining=remaining)
        if self.email:
            self._notify(
                self.email.send_security_alert, user.email, user.name, "LOW_BACKUP_CODES", message
            )

    # -- QR login ----------------------------------------------------------

    def create_qr_session(self, device_info: Optional[dict] = None) -> QRLoginStart:
        ticket = self.qr.create_session(device_info)
        return QRLoginStart(
            session_id=ticket.session_id,
            token=ticket.token,
            expires_at=ticket.expires_at,
            qr_url=f"{self.settings.client_url}/auth/qr/{ticket.token}",
        )

    async def authenticate_qr(
        self, token: str, user_id: str, *, ip_address: Optional[str] = None
    ) -> QRSession:
        session = await self.qr.authenticate_session(token, user_id)
        self._audit(
            AuditAction.QR_LOGIN,
            user_id,
            ip_address=ip_address,
            entity_type="QRSession",
            entity_id=session.id,
        )
        return session

    async def poll_qr(self, session_id: str) -> QRPollResult:
        view = await self.qr.get_status(session_id)
        if view.status != QRStatus.AUTHENTICATED or view.session is None:
            return QRPollResult(status=view.status)
        claimed = self.qr.claim_tokens(view.session.id)
        if claimed is None or not claimed.user_id:
            return QRPollResult(status=view.status)
        user = self.credentials.find_by_id(claimed.user_id)
        if not user:
            return QRPollResult(status=view.status)
        result = self._issue_session(user)
        self._audit(
            AuditAction.LOGIN_SUCCESS,
            user.id,
            entity_type="QRSession",
            entity_id=claimed.id,
            method="qr",
        )
        self._log_state(LoginState.TOKENS_ISSUED, user_id=user.id, method="qr")
        return QRPollResult(status=view.status, auth=result)

    async def cancel_qr(self, session_id: str) -> bool:
        return await self.qr.cancel_session(session_id)

    # -- magic links -------------------------------------------------------

    async def request_magic_link(
        self,
        email: str,
        redirect_url: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
    ) -> MagicLinkAck:
        redirect = self._safe_redirect(redirect_url)
        user = self.credentials.find_by_email(email)
        if user is None:
            # Same answer either way; nothing is stored or sent.
            return MagicLinkAck(message=MAGIC_LINK_ACK, expires_at=self.magic_links.expires_at())
        issued = self.magic_links.create(user.id)
        params = {"token": issued.token}
        if redirect:
            params["redirect"] = redirect
        link = f"{self.settings.client_url}/auth/magic-link?{urlencode(params)}"
        if self.email:
            self._notify(
                self.email.send_magic_link,
                user.email,
                user.name,
                link,
                self.settings.magic_link_ttl_minutes,
            )
        self.logger.info("magic_link_issued", user_id=user.id)
        return MagicLinkAck(message=MAGIC_LINK_ACK, expires_at=issued.expires_at)

    async def verify_magic_link(
        self, token: str, *, ip_address: Optional[str] = None
    ) -> AuthResult:
        user_id = self.magic_links.consume(token)
        user = self.credentials.find_by_id(user_id)
        if not user:
            raise SessionNotFoundError(LINK_MESSAGE)
        # The link alone is a complete login; the second factor is not asked for.
        result = self._issue_session(user)
        self._audit(AuditAction.MAGIC_LINK_LOGIN, user.id, ip_address=ip_address)
        self._log_state(LoginState.TOKENS_ISSUED, user_id=user.id, method="magic_link")
        return result

    # -- token lifecycle ---------------------------------------------------

    async def refresh(self, refresh_token: str) -> AuthResult:
        claims = self.tokens.verify(refresh_token, REFRESH)
        if not self.credentials.has_valid_refresh_token(claims.sub, refresh_token):
            self.logger.warning("refresh_token_unknown", user_id=claims.sub)
            raise InvalidTokenError()
        user = self.credentials.find_by_id(claims.sub)
        if not user:
            raise InvalidTokenError()
        if not self.settings.rotate_refresh_tokens:
            return self._issue_session(user, with_refresh=False)
        if not self.credentials.revoke_refresh_token(user.id, refresh_token):
            # Lost a race with another refresh of the same token.
            raise InvalidTokenError()
        return self._issue_session(user)

    async def logout(
        self,
        user_id: str,
        refresh_token: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
    ) -> bool:
        removed = False
        if refresh_token:
            removed = self.credentials.revoke_refresh_token(user_id, refresh_token)
        self._audit(AuditAction.LOGOUT, user_id, ip_address=ip_address)
        return removed

    def get_user_from_access_token(self, token: str) -> User:
        claims = self.tokens.verify(token, ACCESS)
        user = self.credentials.find_by_id(claims.sub)
        if not user:
            raise InvalidTokenError()
        return user

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, value = header.partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    # -- two-factor management ---------------------------------------------

    async def begin_two_factor_setup(self, user_id: str) -> TwoFactorSetup:
        user = self._require_user(user_id)
        if user.two_factor_enabled:
            raise ConflictError("two-factor authentication is already enabled")
        secret = generate_secret()
        self.store.set_two_factor(user.id, enabled=False, secret=secret, backup_code_hashes=set())
        uri = provisioning_uri(secret, user.email, issuer=self.settings.two_factor_app_name)
        return TwoFactorSetup(secret=secret, otpauth_url=uri, qr_code=render_qr_svg_data_url(uri))

    async def enable_two_factor(
        self, user_id: str, code: str, *, ip_address: Optional[str] = None
    ) -> List[str]:
        user = self._require_user(user_id)
        if user.two_factor_enabled:
            raise ConflictError("two-factor authentication is already enabled")
        if not user.two_factor_secret:
            raise ValidationError("two-factor setup has not been started")
        if not self._verify_totp(user, code):
            raise InvalidTwoFactorCodeError()
        codes = generate_backup_codes(self.settings.backup_code_count)
        self.store.set_two_factor(
            user.id,
            enabled=True,
            secret=user.two_factor_secret,
            backup_code_hashes=hash_backup_codes(codes),
        )
        self._audit(AuditAction.TWO_FACTOR_ENABLED, user.id, ip_address=ip_address)
        if self.email:
            self._notify(self.email.send_backup_codes, user.email, user.name, codes)
        return codes

    async def disable_two_factor(
        self, user_id: str, code: str, *, ip_address: Optional[str] = None
    ) -> None:
        user = self._require_user(user_id)
        if not user.two_factor_enabled:
            raise ValidationError("two-factor authentication is not enabled")
        verified = self._verify_totp(user, code) or (
            self.store.consume_backup_code(user.id, hash_backup_code(code or "")) is not None
        )
        if not verified:
            raise InvalidTwoFactorCodeError()
        self.store.set_two_factor(user.id, enabled=False, secret=None, backup_code_hashes=set())
        revoked = self.devices.revoke_all(user.id)
        self._audit(
            AuditAction.TWO_FACTOR_DISABLED, user.id, ip_address=ip_address, devices_revoked=revoked
        )
        if self.email:
            self._notify(
                self.email.send_security_alert, user.email, user.name, "TWO_FACTOR_DISABLED", None
            )

    async def regenerate_backup_codes(
        self, user_id: str, *, ip_address: Optional[str] = None
    ) -> List[str]:
        user = self._require_user(user_id)
        if not user.two_factor_enabled:
            raise ValidationError("two-factor authentication is not enabled")
        codes = generate_backup_codes(self.settings.backup_code_count)
        self.store.set_backup_codes(user.id, hash_backup_codes(codes))
        self._audit(AuditAction.BACKUP_CODES_REGENERATED, user.id, ip_address=ip_address)
        if self.email:
            self._notify(self.email.send_backup_codes, user.email, user.name, codes)
        return codes

    def check_second_factor(
        self,
        user_id: str,
        *,
        device_token: Optional[str] = None,
        two_factor_code: Optional[str] = None,
    ) -> None:
        """Step-up guard for sensitive actions."""
        user = self._require_user(user_id)
        if not user.two_factor_enabled:
            return
        if device_token and self.devices.verify(user.id, device_token):
            return
        if two_factor_code and self._verify_totp(user, two_factor_code):
            return
        raise TwoFactorRequiredError()

    # -- maintenance -------------------------------------------------------

    def sweep_expired(self) -> Dict[str, int]:
        counts = {
            "qr_sessions": self.qr.cleanup_expired_sessions(),
            "two_factor_sessions": self.two_factor_sessions.sweep(),
            "magic_links": self.magic_links.sweep(),
            "refresh_tokens": self.store.delete_expired_refresh_tokens(self._clock()),
        }
        if any(counts.values()):
            self.logger.info("expired_records_swept", **counts)
        return counts
