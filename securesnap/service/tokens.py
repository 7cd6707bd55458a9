from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from securesnap.config import Settings
from securesnap.logging import get_logger
from securesnap.service.errors import (
    InvalidSignatureError,
    InvalidTokenError,
    TokenExpiredError,
    WrongTokenTypeError,
)
from securesnap.storage.models import User, utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
TOKEN_TYPES = (ACCESS, REFRESH)


@dataclass
class TokenClaims:
    sub: str
    type: str
    exp: int
    iat: int
    jti: str
    email: Optional[str] = None

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)


@dataclass
class IssuedToken:
    token: str
    claims: TokenClaims

    @property
    def expires_at(self) -> datetime:
        return self.claims.expires_at


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenIssuer:
    """HS256 access and refresh tokens.

    The two token types are signed with different secrets, so a leaked
    refresh secret cannot mint access tokens and vice versa. Verification is
    pure computation; whether a refresh token is still registered for its
    user is checked by the caller against the store.
    """

    def __init__(
        self, settings: Settings, *, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.settings = settings
        self._clock = clock
        self._ttl = {
            ACCESS: timedelta(minutes=settings.access_token_ttl_minutes),
            REFRESH: timedelta(minutes=settings.refresh_token_ttl_minutes),
        }

    def _secret(self, token_type: str) -> bytes:
        if token_type == REFRESH:
            return self.settings.jwt_refresh_secret.encode()
        return self.settings.jwt_secret.encode()

    def _sign(self, signing_input: str, token_type: str) -> str:
        digest = hmac.new(
            self._secret(token_type), signing_input.encode(), hashlib.sha256
        ).digest()
        return _encode_segment(digest)

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, payload['type'])}"

    def issue(self, user: User, token_type: str) -> IssuedToken:
        if token_type not in TOKEN_TYPES:
            raise ValueError(f"unknown token type: {token_type}")
        now = self._clock()
        claims = TokenClaims(
            sub=user.id,
            type=token_type,
            iat=int(now.timestamp()),
            exp=int((now + self._ttl[token_type]).timestamp()),
            jti=uuid.uuid4().hex,
            email=user.email if token_type == ACCESS else None,
        )
        payload: dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": claims.sub,
            "type": claims.type,
            "iat": claims.iat,
            "exp": claims.exp,
            "jti": claims.jti,
        }
        if claims.email:
            payload["email"] = claims.email
        return IssuedToken(token=self._encode(payload), claims=claims)

    def issue_access(self, user: User) -> IssuedToken:
        return self.issue(user, ACCESS)

    def issue_refresh(self, user: User) -> IssuedToken:
        return self.issue(user, REFRESH)

    def verify(self, token: str, expected_type: str) -> TokenClaims:
        """Return the claims of ``token`` or raise.

        Checks run in a fixed order: structure and algorithm, signature,
        issuer and audience, token type, then expiry.
        """
        if expected_type not in TOKEN_TYPES:
            raise ValueError(f"unknown token type: {expected_type}")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidTokenError(detail={"reason": "malformed"})
        try:
            header = json.loads(_decode_segment(header_b64))
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_decode_failed")
            raise InvalidTokenError(detail={"reason": "malformed"})
        if not isinstance(header, dict) or not isinstance(payload, dict):
            raise InvalidTokenError(detail={"reason": "malformed"})
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise InvalidTokenError(detail={"reason": "algorithm"})

        # The claimed type picks the key; a forged type still has to match
        # the signature made with that key.
        claimed_type = payload.get("type")
        signing_type = claimed_type if claimed_type in TOKEN_TYPES else expected_type
        expected_sig = self._sign(f"{header_b64}.{payload_b64}", signing_type)
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidSignatureError()

        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError(detail={"reason": "issuer"})
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidTokenError(detail={"reason": "audience"})

        if claimed_type != expected_type:
            raise WrongTokenTypeError(
                detail={"expected": expected_type, "actual": claimed_type}
            )

        try:
            exp = int(payload["exp"])
            iat = int(payload.get("iat") or 0)
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError(detail={"reason": "claims"})
        sub = payload.get("sub")
        if not sub or not isinstance(sub, str):
            raise InvalidTokenError(detail={"reason": "claims"})
        now_ts = self._clock().timestamp()
        if exp <= now_ts - self.settings.jwt_leeway_seconds:
            raise TokenExpiredError()
        return TokenClaims(
            sub=sub,
            type=claimed_type,
            exp=exp,
            iat=iat,
            jti=str(payload.get("jti") or ""),
            email=payload.get("email"),
        )
