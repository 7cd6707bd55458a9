from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from securesnap.logging import get_logger
from securesnap.service.errors import ConflictError, NotFoundError, ValidationError
from securesnap.storage.common import digest_token
from securesnap.storage.errors import ConstraintViolation
from securesnap.storage.models import User, utcnow

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 256


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class CredentialService:
    """User identity, password hashes and the refresh-token set."""

    def __init__(self, store, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self._clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against for unknown emails so both paths cost one argon2 check.
        self._dummy_hash = self._pwd_hasher.hash("securesnap-timing-equalizer")

    # -- lookup ------------------------------------------------------------

    def find_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        return self.store.get_user_by_email(normalized)

    def find_by_id(self, user_id: str) -> Optional[User]:
        return self.store.get_user(user_id)

    # -- passwords ---------------------------------------------------------

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _check_password_policy(self, password: str) -> None:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )
        if len(password) > MAX_PASSWORD_LENGTH:
            raise ValidationError("password too long", detail={"field": "password"})

    def verify_password(self, user: Optional[User], password: str) -> bool:
        if user is None:
            try:
                self._pwd_hasher.verify(self._dummy_hash, password)
            except VerificationError:
                pass
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_verification_failed", user_id=user.id)
            return False

    # -- mutation ----------------------------------------------------------

    def create(self, email: str, password: str, *, name: Optional[str] = None) -> User:
        normalized = normalize_email(email)
        if not normalized or "@" not in normalized:
            raise ValidationError("invalid email", detail={"field": "email"})
        self._check_password_policy(password)
        if self.store.get_user_by_email(normalized):
            raise ConflictError("email already registered", detail={"field": "email"})
        try:
            user = self.store.create_user(
                normalized, self.hash_password(password), name=name
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail)
        logger.info("user_created", user_id=user.id)
        return user

    def update_password(self, user_id: str, new_password: str) -> User:
        self._check_password_policy(new_password)
        user = self.store.update_user(
            user_id, password_hash=self.hash_password(new_password)
        )
        if not user:
            raise NotFoundError("user not found")
        # Existing sessions must sign in again with the new password.
        self.revoke_all_refresh_tokens(user_id)
        logger.info("password_updated", user_id=user_id)
        return user

    def update_profile(
        self, user_id: str, *, name: Optional[str] = None, email: Optional[str] = None
    ) -> User:
        fields = {}
        if name is not None:
            fields["name"] = name.strip() or None
        if email is not None:
            normalized = normalize_email(email)
            if not normalized or "@" not in normalized:
                raise ValidationError("invalid email", detail={"field": "email"})
            fields["email"] = normalized
        try:
            user = self.store.update_user(user_id, **fields)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail)
        if not user:
            raise NotFoundError("user not found")
        return user

    # -- refresh tokens ----------------------------------------------------

    def save_refresh_token(self, user_id: str, token: str, expires_at: datetime) -> None:
        self.store.save_refresh_token(user_id, digest_token(token), expires_at)

    def has_valid_refresh_token(self, user_id: str, token: str) -> bool:
        record = self.store.get_refresh_token(user_id, digest_token(token), self._clock())
        return record is not None

    def revoke_refresh_token(self, user_id: str, token: str) -> bool:
        return self.store.delete_refresh_token(user_id, digest_token(token))

    def revoke_all_refresh_tokens(self, user_id: str) -> int:
        return self.store.delete_user_refresh_tokens(user_id)
