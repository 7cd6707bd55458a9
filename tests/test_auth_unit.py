"""Unit tests for the login flows in ``AuthService``.

Covers registration, password and second-factor login, device trust, QR and
magic-link login, refresh rotation, logout and 2FA management.
"""

import threading
from urllib.parse import parse_qs, urlparse

import pytest

from securesnap.service.auth import (
    MAGIC_LINK_ACK,
    AuditAction,
    AuthResult,
    AuthService,
    TwoFactorChallenge,
)
from securesnap.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    InvalidTokenError,
    InvalidTwoFactorCodeError,
    SessionExpiredError,
    SessionNotFoundError,
    TokenExpiredError,
    TwoFactorRequiredError,
    ValidationError,
    WrongTokenTypeError,
)
from securesnap.service.two_factor import generate_totp
from securesnap.storage.models import QRStatus

PASSWORD = "TestPassword123!"


class RecordingEmail:
    """Stands in for ``EmailService``; remembers every message instead of sending."""

    def __init__(self):
        self.sent = []
        self._lock = threading.Lock()

    def _record(self, kind, *args):
        with self._lock:
            self.sent.append((kind, args))
        return True

    def send_welcome(self, to_email, name):
        return self._record("welcome", to_email, name)

    def send_magic_link(self, to_email, name, link, ttl_minutes):
        return self._record("magic_link", to_email, name, link, ttl_minutes)

    def send_backup_codes(self, to_email, name, codes):
        return self._record("backup_codes", to_email, name, codes)

    def send_security_alert(self, to_email, name, alert_type, details=None):
        return self._record("security_alert", to_email, name, alert_type, details)

    def of_kind(self, kind):
        return [args for sent_kind, args in self.sent if sent_kind == kind]


@pytest.fixture
def mailer():
    return RecordingEmail()


@pytest.fixture
def mailing_auth(store, settings, clock, mailer):
    return AuthService(store, settings, email=mailer, clock=clock)


@pytest.fixture
def user(auth):
    return auth.credentials.create("alice@example.com", PASSWORD, name="Alice")


def _totp(secret, clock):
    return generate_totp(secret, clock().timestamp())


async def _enable_two_factor(auth, clock, user_id):
    setup = await auth.begin_two_factor_setup(user_id)
    codes = await auth.enable_two_factor(user_id, _totp(setup.secret, clock))
    return setup.secret, codes


class TestRegistration:
    async def test_register_issues_tokens(self, auth, store):
        result = await auth.register("Bob@Example.com", PASSWORD, "Bob")
        assert isinstance(result, AuthResult)
        assert result.user.email == "bob@example.com"
        assert result.refresh_token
        assert store.list_audit_events(result.user.id, action=AuditAction.USER_CREATED)

    async def test_duplicate_email_conflicts(self, auth, user):
        with pytest.raises(ConflictError):
            await auth.register("ALICE@example.com", PASSWORD)

    async def test_short_password_rejected(self, auth):
        with pytest.raises(ValidationError):
            await auth.register("short@example.com", "short")

    async def test_password_is_hashed_with_argon2id(self, auth, user):
        assert user.password_hash.startswith("$argon2id$")
        assert PASSWORD not in user.password_hash

    async def test_welcome_email_queued(self, mailing_auth, mailer):
        await mailing_auth.register("new@example.com", PASSWORD, "New")
        await mailing_auth.drain_notifications()
        assert mailer.of_kind("welcome") == [("new@example.com", "New")]


class TestPasswordLogin:
    async def test_login_without_two_factor(self, auth, store, user, clock):
        result = await auth.login("alice@example.com", PASSWORD, ip_address="203.0.113.9")
        assert isinstance(result, AuthResult)
        assert result.user.id == user.id
        assert result.user.last_login_at == clock()
        [event] = store.list_audit_events(user.id, action=AuditAction.LOGIN_SUCCESS)
        assert event.meta["method"] == "password"
        assert event.ip_address == "203.0.113.9"

    async def test_email_lookup_is_case_insensitive(self, auth, user):
        result = await auth.login("  ALICE@Example.COM ", PASSWORD)
        assert result.user.id == user.id

    async def test_wrong_password(self, auth, store, user):
        with pytest.raises(InvalidCredentialsError):
            await auth.login("alice@example.com", "nope-nope")
        assert store.list_audit_events(user.id, action=AuditAction.LOGIN_FAILED)

    async def test_two_factor_user_gets_challenge(self, auth, clock, user):
        await _enable_two_factor(auth, clock, user.id)
        outcome = await auth.login("alice@example.com", PASSWORD)
        assert isinstance(outcome, TwoFactorChallenge)
        assert len(outcome.session_token) == 64
        assert (outcome.expires_at - clock()).total_seconds() == 600

    async def test_trusted_device_skips_challenge(self, auth, store, clock, user):
        secret, _ = await _enable_two_factor(auth, clock, user.id)
        challenge = await auth.login("alice@example.com", PASSWORD)
        verified = await auth.verify_two_factor(
            challenge.session_token, _totp(secret, clock), remember_device=True, device_name="Laptop"
        )
        assert verified.device_token

        outcome = await auth.login(
            "alice@example.com", PASSWORD, device_token=verified.device_token
        )
        assert isinstance(outcome, AuthResult)
        assert store.list_audit_events(user.id, action=AuditAction.LOGIN_TRUSTED_DEVICE)

    async def test_unknown_device_token_still_challenged(self, auth, clock, user):
        await _enable_two_factor(auth, clock, user.id)
        outcome = await auth.login("alice@example.com", PASSWORD, device_token="0" * 64)
        assert isinstance(outcome, TwoFactorChallenge)

    async def test_device_token_ignored_without_two_factor(self, auth, user):
        outcome = await auth.login("alice@example.com", PASSWORD, device_token="0" * 64)
        assert isinstance(outcome, AuthResult)


class TestSecondFactor:
    async def test_totp_completes_login(self, auth, clock, user):
        secret, _ = await _enable_two_factor(auth, clock, user.id)
        challenge = await auth.login("alice@example.com", PASSWORD)
        result = await auth.verify_two_factor(challenge.session_token, _totp(secret, clock))
        assert result.user.id == user.id
        assert result.device_token is None

    async def test_session_is_single_use(self, auth, clock, user):
        secret, _ = await _enable_two_factor(auth, clock, user.id)
        challenge = await auth.login("alice@example.com", PASSWORD)
        await auth.verify_two_factor(challenge.session_token, _totp(secret, clock))
        with pytest.raises(SessionNotFoundError):
            await auth.verify_two_factor(challenge.session_token, _totp(secret, clock))

    async def test_wrong_code_keeps_session(self, auth, clock, user):
        secret, _ = await _enable_two_factor(auth, clock, user.id)
        challenge = await auth.login("alice@example.com", PASSWORD)
        with pytest.raises(InvalidTwoFactorCodeError):
            await auth.verify_two_factor(
                challenge.session_token, generate_totp(secret, clock().timestamp() + 3600)
            )
        result = await auth.verify_two_factor(challenge.session_token, _totp(secret, clock))
        assert result.user.id == user.id

    async def test_expired_session(self, auth, clock, user):
        secret, _ = await _enable_two_factor(auth, clock, user.id)
        challenge = await auth.login("alice@example.com", PASSWORD)
        clock.advance(minutes=10)
        with pytest.raises(SessionExpiredError) as excinfo:
            await auth.verify_two_factor(challenge.session_token, _totp(secret, clock))
        assert excinfo.value.message == "invalid or expired session"

    async def test_backup_code_is_single_use(self, auth, store, clock, user):
        _, codes = await _enable_two_factor(auth, clock, user.id)
        first = await auth.login("alice@example.com", PASSWORD)
        await auth.verify_two_factor(first.session_token, codes[0].lower(), method="backup")
        assert len(store.get_user(user.id).backup_codes) == 9
        assert store.list_audit_events(user.id, action=AuditAction.BACKUP_CODE_USED)

        second = await auth.login("alice@example.com", PASSWORD)
        with pytest.raises(InvalidTwoFactorCodeError):
            await auth.verify_two_factor(second.session_token, codes[0], method="backup")

    async def test_backup_code_kept_when_session_lost(
        self, auth, store, clock, user, monkeypatch
    ):
        _, codes = await _enable_two_factor(auth, clock, user.id)
        challenge = await auth.login("alice@example.com", PASSWORD)
        consume = store.consume_backup_code

        def consume_after_other_verifier(user_id, code_hash):
            store.two_factor_sessions.clear()
            return consume(user_id, code_hash)

        monkeypatch.setattr(store, "consume_backup_code", consume_after_other_verifier)
        with pytest.raises(SessionNotFoundError):
            await auth.verify_two_factor(challenge.session_token, codes[0], method="backup")
        assert len(store.get_user(user.id).backup_codes) == 10
        assert not store.list_audit_events(user.id, action=AuditAction.BACKUP_CODE_USED)

    async def test_unknown_method_rejected(self, auth, clock, user):
        await _enable_two_factor(auth, clock, user.id)
        challenge = await auth.login("alice@example.com", PASSWORD)
        with pytest.raises(ValidationError):
            await auth.verify_two_factor(challenge.session_token, "123456", method="sms")

    async def test_session_dies_if_two_factor_disabled(self, auth, clock, user):
        secret, _ = await _enable_two_factor(auth, clock, user.id)
        challenge = await auth.login("alice@example.com", PASSWORD)
        await auth.disable_two_factor(user.id, _totp(secret, clock))
        with pytest.raises(SessionNotFoundError):
            await auth.verify_two_factor(challenge.session_token, _totp(secret, clock))

    async def test_low_backup_codes_warn(self, store, settings, clock, mailer):
        auth = AuthService(
            store, settings.model_copy(update={"backup_code_count": 3}), email=mailer, clock=clock
        )
        user = auth.credentials.create("low@example.com", PASSWORD)
        _, codes = await _enable_two_factor(auth, clock, user.id)
        challenge = await auth.login("low@example.com", PASSWORD)
        await auth.verify_two_factor(challenge.session_token, codes[0], method="backup")
        await auth.drain_notifications()

        [note] = store.list_notifications(user.id)
        assert note.type == "security"
        assert "2 backup codes" in note.message
        [alert] = mailer.of_kind("security_alert")
        assert alert[2] == "LOW_BACKUP_CODES"


class TestTwoFactorManagement:
    async def test_setup_returns_provisioning_data(self, auth, store, user):
        setup = await auth.begin_two_factor_setup(user.id)
        assert setup.otpauth_url.startswith("otpauth://totp/SecureSnap:alice@example.com?")
        assert setup.qr_code.startswith("data:image/svg+xml;base64,")
        stored = store.get_user(user.id)
        assert stored.two_factor_secret == setup.secret
        assert not stored.two_factor_enabled

    async def test_enable_requires_valid_code(self, auth, user):
        await auth.begin_two_factor_setup(user.id)
        with pytest.raises(InvalidTwoFactorCodeError):
            await auth.enable_two_factor(user.id, "abc")

    async def test_enable_requires_setup(self, auth, user):
        with pytest.raises(ValidationError):
            await auth.enable_two_factor(user.id, "123456")

    async def test_enable_twice_conflicts(self, auth, clock, user):
        await _enable_two_factor(auth, clock, user.id)
        with pytest.raises(ConflictError):
            await auth.begin_two_factor_setup(user.id)

    async def test_enable_returns_backup_codes(self, auth, store, clock, user):
        _, codes = await _enable_two_factor(auth, clock, user.id)
        assert len(codes) == 10
        stored = store.get_user(user.id)
        assert stored.two_factor_enabled
        assert len(stored.backup_codes) == 10
        assert not set(codes) & stored.backup_codes

    async def test_disable_revokes_devices(self, auth, store, clock, user):
        secret, _ = await _enable_two_factor(auth, clock, user.id)
        auth.devices.issue(user.id, "Phone")
        await auth.disable_two_factor(user.id, _totp(secret, clock))
        stored = store.get_user(user.id)
        assert not stored.two_factor_enabled
        assert stored.two_factor_secret is None
        assert auth.devices.list_devices(user.id) == []

    async def test_disable_accepts_backup_code(self, auth, store, clock, user):
        _, codes = await _enable_two_factor(auth, clock, user.id)
        await auth.disable_two_factor(user.id, codes[3])
        assert not store.get_user(user.id).two_factor_enabled

    async def test_disable_with_wrong_code(self, auth, clock, user):
        await _enable_two_factor(auth, clock, user.id)
        with pytest.raises(InvalidTwoFactorCodeError):
            await auth.disable_two_factor(user.id, "ZZZZ-ZZZZ")

    async def test_disable_when_not_enabled(self, auth, user):
        with pytest.raises(ValidationError):
            await auth.disable_two_factor(user.id, "123456")

    async def test_regenerate_replaces_codes(self, auth, clock, user):
        _, old_codes = await _enable_two_factor(auth, clock, user.id)
        new_codes = await auth.regenerate_backup_codes(user.id)
        assert not set(old_codes) & set(new_codes)
        challenge = await auth.login("alice@example.com", PASSWORD)
        with pytest.raises(InvalidTwoFactorCodeError):
            await auth.verify_two_factor(challenge.session_token, old_codes[0], method="backup")
        result = await auth.verify_two_factor(challenge.session_token, new_codes[0], method="backup")
        assert result.user.id == user.id


class TestStepUp:
    async def test_not_required_without_two_factor(self, auth, user):
        auth.check_second_factor(user.id)

    async def test_required_when_enabled(self, auth, clock, user):
        await _enable_two_factor(auth, clock, user.id)
        with pytest.raises(TwoFactorRequiredError) as excinfo:
            auth.check_second_factor(user.id)
        assert excinfo.value.detail == {"requires2FA": True}

    async def test_trusted_device_satisfies(self, auth, clock, user):
        await _enable_two_factor(auth, clock, user.id)
        token = auth.devices.issue(user.id)
        auth.check_second_factor(user.id, device_token=token)

    async def test_fresh_totp_satisfies(self, auth, clock, user):
        secret, _ = await _enable_two_factor(auth, clock, user.id)
        auth.check_second_factor(user.id, two_factor_code=_totp(secret, clock))


class TestQrLogin:
    async def test_tokens_handed_out_once(self, auth, store, user):
        start = auth.create_qr_session({"deviceType": "desktop"})
        assert start.qr_url == f"https://app.securesnap.test/auth/qr/{start.token}"
        assert (await auth.poll_qr(start.session_id)).status == QRStatus.PENDING

        await auth.authenticate_qr(start.token, user.id, ip_address="198.51.100.4")
        first = await auth.poll_qr(start.session_id)
        assert first.status == QRStatus.AUTHENTICATED
        assert first.auth.user.id == user.id
        assert first.auth.refresh_token

        second = await auth.poll_qr(start.session_id)
        assert second.status == QRStatus.AUTHENTICATED
        assert second.auth is None
        assert store.list_audit_events(user.id, action=AuditAction.QR_LOGIN)

    async def test_late_first_poll_gets_no_tokens(self, auth, clock, user):
        start = auth.create_qr_session()
        clock.advance(minutes=1)
        await auth.authenticate_qr(start.token, user.id)
        clock.advance(hours=6)
        late = await auth.poll_qr(start.session_id)
        assert late.status == QRStatus.AUTHENTICATED
        assert late.auth is None

    async def test_cancel(self, auth):
        start = auth.create_qr_session()
        assert await auth.cancel_qr(start.session_id)
        assert (await auth.poll_qr(start.session_id)).status == QRStatus.CANCELLED


class TestMagicLinks:
    async def _request_link(self, auth, mailer, email="alice@example.com", redirect=None):
        ack = await auth.request_magic_link(email, redirect)
        await auth.drain_notifications()
        return ack, mailer.of_kind("magic_link")

    async def test_link_logs_in(self, mailing_auth, mailer, store):
        user = mailing_auth.credentials.create("alice@example.com", PASSWORD)
        ack, sent = await self._request_link(mailing_auth, mailer, redirect="/photos")
        assert ack.message == MAGIC_LINK_ACK
        [(to_email, _, link, ttl)] = sent
        assert to_email == "alice@example.com"
        assert ttl == 15
        parsed = urlparse(link)
        assert link.startswith("https://app.securesnap.test/auth/magic-link?")
        query = parse_qs(parsed.query)
        assert query["redirect"] == ["/photos"]

        result = await mailing_auth.verify_magic_link(query["token"][0])
        assert result.user.id == user.id
        assert store.list_audit_events(user.id, action=AuditAction.MAGIC_LINK_LOGIN)
        with pytest.raises(SessionNotFoundError):
            await mailing_auth.verify_magic_link(query["token"][0])

    async def test_unknown_email_gets_same_answer(self, mailing_auth, mailer, store):
        ack, sent = await self._request_link(mailing_auth, mailer, email="ghost@example.com")
        assert ack.message == MAGIC_LINK_ACK
        assert sent == []
        assert store.magic_links == {}

    async def test_link_skips_second_factor(self, mailing_auth, mailer, clock):
        user = mailing_auth.credentials.create("alice@example.com", PASSWORD)
        await _enable_two_factor(mailing_auth, clock, user.id)
        _, [(_, _, link, _)] = await self._request_link(mailing_auth, mailer)
        token = parse_qs(urlparse(link).query)["token"][0]
        result = await mailing_auth.verify_magic_link(token)
        assert isinstance(result, AuthResult)

    async def test_link_expires(self, mailing_auth, mailer, clock):
        mailing_auth.credentials.create("alice@example.com", PASSWORD)
        _, [(_, _, link, _)] = await self._request_link(mailing_auth, mailer)
        token = parse_qs(urlparse(link).query)["token"][0]
        clock.advance(minutes=15)
        with pytest.raises(SessionExpiredError):
            await mailing_auth.verify_magic_link(token)

    @pytest.mark.parametrize(
        "redirect",
        ["https://evil.example/phish", "//evil.example", "javascript:alert(1)", "photos"],
    )
    async def test_foreign_redirects_rejected(self, auth, user, redirect):
        with pytest.raises(ValidationError):
            await auth.request_magic_link("alice@example.com", redirect)

    async def test_same_origin_redirect_allowed(self, auth, user):
        ack = await auth.request_magic_link(
            "alice@example.com", "https://app.securesnap.test/albums/1"
        )
        assert ack.message == MAGIC_LINK_ACK


class TestTokenLifecycle:
    async def test_refresh_rotates(self, auth, user):
        login = await auth.login("alice@example.com", PASSWORD)
        rotated = await auth.refresh(login.refresh_token)
        assert rotated.refresh_token and rotated.refresh_token != login.refresh_token
        with pytest.raises(InvalidTokenError):
            await auth.refresh(login.refresh_token)
        again = await auth.refresh(rotated.refresh_token)
        assert again.access_token

    async def test_refresh_without_rotation(self, store, settings, clock, user):
        auth = AuthService(
            store, settings.model_copy(update={"rotate_refresh_tokens": False}), clock=clock
        )
        login = await auth.login("alice@example.com", PASSWORD)
        refreshed = await auth.refresh(login.refresh_token)
        assert refreshed.refresh_token is None
        assert (await auth.refresh(login.refresh_token)).access_token

    async def test_access_token_cannot_refresh(self, auth, user):
        login = await auth.login("alice@example.com", PASSWORD)
        with pytest.raises(WrongTokenTypeError):
            await auth.refresh(login.access_token)

    async def test_expired_refresh_token(self, auth, clock, user):
        login = await auth.login("alice@example.com", PASSWORD)
        clock.advance(days=7)
        with pytest.raises(TokenExpiredError):
            await auth.refresh(login.refresh_token)

    async def test_logout_revokes_refresh_token(self, auth, store, user):
        login = await auth.login("alice@example.com", PASSWORD)
        assert await auth.logout(user.id, login.refresh_token)
        with pytest.raises(InvalidTokenError):
            await auth.refresh(login.refresh_token)
        assert store.list_audit_events(user.id, action=AuditAction.LOGOUT)

    async def test_logout_cannot_revoke_other_users_token(self, auth, user):
        login = await auth.login("alice@example.com", PASSWORD)
        other = await auth.register("other@example.com", PASSWORD)
        assert not await auth.logout(other.user.id, login.refresh_token)
        assert (await auth.refresh(login.refresh_token)).access_token

    async def test_access_token_resolves_user(self, auth, user):
        login = await auth.login("alice@example.com", PASSWORD)
        assert auth.get_user_from_access_token(login.access_token).id == user.id
        with pytest.raises(WrongTokenTypeError):
            auth.get_user_from_access_token(login.refresh_token)

    @pytest.mark.parametrize(
        "header,expected",
        [
            ("Bearer abc", "abc"),
            ("bearer   abc  ", "abc"),
            ("Basic abc", None),
            ("Bearer", None),
            ("Bearer ", None),
            ("", None),
            (None, None),
        ],
    )
    def test_extract_bearer(self, header, expected):
        assert AuthService.extract_bearer(header) == expected


class TestSweep:
    async def test_sweep_removes_expired_records(self, auth, user, clock):
        auth._issue_session(user)
        auth.create_qr_session()
        auth.two_factor_sessions.create(user.id)
        auth.magic_links.create(user.id)
        clock.advance(days=8)
        assert auth.sweep_expired() == {
            "qr_sessions": 1,
            "two_factor_sessions": 1,
            "magic_links": 1,
            "refresh_tokens": 1,
        }
        assert auth.sweep_expired() == {
            "qr_sessions": 0,
            "two_factor_sessions": 0,
            "magic_links": 0,
            "refresh_tokens": 0,
        }
