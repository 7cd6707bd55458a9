from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from securesnap.logging import get_correlation_id

MAX_JSON_DEPTH = 8
MAX_DEVICE_INFO_KEYS = 32
MAX_TOKEN_LENGTH = 4096

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "locked",
    "server_error",
})


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi-override characters."""
    hidden = set("\u200b\u200c\u200d\ufeff")
    hidden.update(chr(c) for c in range(0x202A, 0x202F))
    hidden.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in hidden)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("invalid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    labels = domain.split(".")
    if len(labels) < 2 or not all(
        len(label) <= 63 and _EMAIL_DOMAIN_LABEL.match(label) for label in labels
    ):
        raise ValueError("invalid email address format")
    return normalized


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class ApiModel(BaseModel):
    """camelCase on the wire; snake_case names are accepted on input too."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -- requests ---------------------------------------------------------------


class RegisterRequest(ApiModel):
    email: str
    password: str = Field(..., max_length=256)
    name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _normalize_unicode(value).strip() or None


class LoginRequest(ApiModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=256)
    device_token: Optional[str] = Field(default=None, max_length=128)


class TwoFactorVerifyRequest(ApiModel):
    session_token: str = Field(..., max_length=128)
    code: str = Field(..., max_length=16)
    method: Literal["totp", "backup"] = "totp"
    remember_device: bool = False
    device_name: Optional[str] = Field(default=None, max_length=120)


class QRSessionRequest(ApiModel):
    device_info: Optional[dict] = None

    @field_validator("device_info")
    @classmethod
    def _validate_device_info(cls, value: Optional[dict]) -> Optional[dict]:
        if value is None:
            return None
        if len(value) > MAX_DEVICE_INFO_KEYS:
            raise ValueError(f"deviceInfo may hold at most {MAX_DEVICE_INFO_KEYS} keys")
        _validate_json_depth(value)
        return value


class QRAuthenticateRequest(ApiModel):
    token: str = Field(..., max_length=128)


class MagicLinkRequest(ApiModel):
    email: str
    redirect_url: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("email")
    @classmethod
    def _validate_magic_link_email(cls, value: str) -> str:
        return _validate_email(value)


class MagicLinkVerifyRequest(ApiModel):
    token: str = Field(..., max_length=128)


class RefreshRequest(ApiModel):
    refresh_token: str = Field(..., max_length=MAX_TOKEN_LENGTH)


class LogoutRequest(ApiModel):
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class TwoFactorCodeRequest(ApiModel):
    code: str = Field(..., max_length=16)


# -- responses --------------------------------------------------------------


class UserResponse(ApiModel):
    id: str
    email: str
    name: Optional[str] = None
    two_factor_enabled: bool = False
    last_login_at: Optional[datetime] = None
    created_at: datetime


class AuthTokensResponse(ApiModel):
    user: UserResponse
    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None
    device_token: Optional[str] = None


class TwoFactorRequiredResponse(ApiModel):
    requires_2fa: bool = Field(default=True, alias="requires2FA")
    session_token: str
    expires_at: datetime


class QRSessionResponse(ApiModel):
    session_id: str
    token: str
    expires_at: datetime
    qr_url: str


class QRStatusResponse(ApiModel):
    status: str
    user: Optional[UserResponse] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None


class QRAuthenticateResponse(ApiModel):
    success: bool


class QRCancelResponse(ApiModel):
    cancelled: bool


class MagicLinkResponse(ApiModel):
    message: str
    expires_at: datetime


class RefreshResponse(ApiModel):
    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None


class MessageResponse(ApiModel):
    message: str


class MeResponse(ApiModel):
    user: UserResponse


class TwoFactorSetupResponse(ApiModel):
    secret: str
    otpauth_url: str
    qr_code: str


class BackupCodesResponse(ApiModel):
    backup_codes: List[str]


class HealthResponse(ApiModel):
    status: str = "ok"
    checks: Dict[str, str] = Field(default_factory=dict)
