from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on:

    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - locked (423)
    - server_error (500)

    ``message`` is what the client sees. Authentication failures therefore
    carry deliberately generic messages; the concrete subclass is what gets
    logged.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the two are indistinguishable."""

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTwoFactorCodeError(AuthenticationError):
    """TOTP or backup code did not verify."""

    def __init__(self, message: str = "invalid code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionExpiredError(AuthenticationError):
    """A 2FA session, QR session or magic link exists but is past its TTL."""


class SessionNotFoundError(AuthenticationError):
    """The challenge never existed or was already consumed."""


class TokenExpiredError(AuthenticationError):
    """JWT signature is fine but ``exp`` has passed."""

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    """JWT is malformed or fails issuer/audience checks."""

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidSignatureError(InvalidTokenError):
    pass


class WrongTokenTypeError(InvalidTokenError):
    """A refresh token was presented where an access token is required, or vice versa."""


class TwoFactorRequiredError(AuthenticationError):
    """A sensitive action needs a trusted device or a fresh TOTP code."""

    def __init__(self, message: str = "two-factor verification required", **kwargs) -> None:
        kwargs.setdefault("detail", {"requires2FA": True})
        super().__init__(message, **kwargs)


class AccountLockedError(ServiceError):
    """Too many consecutive failed logins (423)."""
    status_code = 423
    error_code = "locked"

    def __init__(
        self,
        message: str = "account temporarily locked due to multiple failed attempts",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTwoFactorCodeError",
    "SessionExpiredError",
    "SessionNotFoundError",
    "TokenExpiredError",
    "InvalidTokenError",
    "InvalidSignatureError",
    "WrongTokenTypeError",
    "TwoFactorRequiredError",
    "AccountLockedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
