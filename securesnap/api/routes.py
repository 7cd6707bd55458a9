from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request
from pydantic import BaseModel

from securesnap.api.schemas import (
    AuthTokensResponse,
    BackupCodesResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    MagicLinkRequest,
    MagicLinkResponse,
    MagicLinkVerifyRequest,
    MeResponse,
    MessageResponse,
    QRAuthenticateRequest,
    QRAuthenticateResponse,
    QRCancelResponse,
    QRSessionRequest,
    QRSessionResponse,
    QRStatusResponse,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    TwoFactorCodeRequest,
    TwoFactorRequiredResponse,
    TwoFactorSetupResponse,
    TwoFactorVerifyRequest,
    UserResponse,
)
from securesnap.service.auth import AuthResult, AuthService, TwoFactorChallenge
from securesnap.service.runtime import Runtime
from securesnap.storage.models import User

router = APIRouter(prefix="/api")

SESSION_ID_PATH = Path(..., min_length=1, max_length=64)


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _ok(payload: BaseModel) -> Envelope:
    return Envelope(
        status="ok", data=payload.model_dump(mode="json", by_alias=True, exclude_none=True)
    )


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_auth(runtime: Runtime = Depends(get_runtime)) -> AuthService:
    return runtime.auth


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def get_current_user(
    authorization: Optional[str] = Header(None),
    auth: AuthService = Depends(get_auth),
) -> User:
    token = auth.extract_bearer(authorization)
    if not token:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    return auth.get_user_from_access_token(token)


async def require_second_factor(
    user: User = Depends(get_current_user),
    x_2fa_token: Optional[str] = Header(None, alias="X-2FA-Token"),
    x_device_token: Optional[str] = Header(None, alias="X-Device-Token"),
    auth: AuthService = Depends(get_auth),
) -> User:
    auth.check_second_factor(
        user.id, device_token=x_device_token, two_factor_code=x_2fa_token
    )
    return user


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        two_factor_enabled=user.two_factor_enabled,
        last_login_at=user.last_login_at,
        created_at=user.created_at,
    )


def _tokens_response(result: AuthResult) -> AuthTokensResponse:
    return AuthTokensResponse(
        user=_user_response(result.user),
        access_token=result.access_token,
        expires_at=result.access_expires_at,
        refresh_token=result.refresh_token,
        device_token=result.device_token,
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest, request: Request, auth: AuthService = Depends(get_auth)
):
    result = await auth.register(
        body.email, body.password, body.name, ip_address=_client_ip(request)
    )
    return _ok(_tokens_response(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    x_device_token: Optional[str] = Header(None, alias="X-Device-Token"),
    auth: AuthService = Depends(get_auth),
):
    """Password login.

    Returns tokens directly, or a ``requires2FA`` challenge whose session
    token must be passed to ``/auth/2fa/verify``. Locked accounts get 423.
    """
    outcome = await auth.login(
        body.email,
        body.password,
        device_token=body.device_token or x_device_token,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    if isinstance(outcome, TwoFactorChallenge):
        return _ok(
            TwoFactorRequiredResponse(
                session_token=outcome.session_token, expires_at=outcome.expires_at
            )
        )
    return _ok(_tokens_response(outcome))


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["auth"])
async def verify_two_factor(
    body: TwoFactorVerifyRequest, request: Request, auth: AuthService = Depends(get_auth)
):
    result = await auth.verify_two_factor(
        body.session_token,
        body.code,
        method=body.method,
        remember_device=body.remember_device,
        device_name=body.device_name or request.headers.get("user-agent"),
        ip_address=_client_ip(request),
    )
    return _ok(_tokens_response(result))


@router.post("/auth/qr/session", response_model=Envelope, tags=["auth"])
async def create_qr_session(
    body: Optional[QRSessionRequest] = None,
    auth: AuthService = Depends(get_auth),
):
    start = auth.create_qr_session(body.device_info if body else None)
    return _ok(
        QRSessionResponse(
            session_id=start.session_id,
            token=start.token,
            expires_at=start.expires_at,
            qr_url=start.qr_url,
        )
    )


@router.get("/auth/qr/status/{session_id}", response_model=Envelope, tags=["auth"])
async def qr_status(
    session_id: str = SESSION_ID_PATH, auth: AuthService = Depends(get_auth)
):
    result = await auth.poll_qr(session_id)
    payload = QRStatusResponse(status=result.status.value)
    if result.auth is not None:
        payload.user = _user_response(result.auth.user)
        payload.access_token = result.auth.access_token
        payload.refresh_token = result.auth.refresh_token
    return _ok(payload)


@router.post("/auth/qr/authenticate", response_model=Envelope, tags=["auth"])
async def qr_authenticate(
    body: QRAuthenticateRequest,
    request: Request,
    user: User = Depends(get_current_user),
    auth: AuthService = Depends(get_auth),
):
    await auth.authenticate_qr(body.token, user.id, ip_address=_client_ip(request))
    return _ok(QRAuthenticateResponse(success=True))


@router.post("/auth/qr/cancel/{session_id}", response_model=Envelope, tags=["auth"])
async def qr_cancel(
    session_id: str = SESSION_ID_PATH, auth: AuthService = Depends(get_auth)
):
    cancelled = await auth.cancel_qr(session_id)
    return _ok(QRCancelResponse(cancelled=cancelled))


@router.post("/auth/magic-link", response_model=Envelope, tags=["auth"])
async def request_magic_link(
    body: MagicLinkRequest, request: Request, auth: AuthService = Depends(get_auth)
):
    ack = await auth.request_magic_link(
        body.email, body.redirect_url, ip_address=_client_ip(request)
    )
    return _ok(MagicLinkResponse(message=ack.message, expires_at=ack.expires_at))


@router.post("/auth/magic-link/verify", response_model=Envelope, tags=["auth"])
async def verify_magic_link(
    body: MagicLinkVerifyRequest, request: Request, auth: AuthService = Depends(get_auth)
):
    result = await auth.verify_magic_link(body.token, ip_address=_client_ip(request))
    return _ok(_tokens_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest, auth: AuthService = Depends(get_auth)):
    result = await auth.refresh(body.refresh_token)
    return _ok(
        RefreshResponse(
            access_token=result.access_token,
            expires_at=result.access_expires_at,
            refresh_token=result.refresh_token,
        )
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    body: Optional[LogoutRequest] = None,
    user: User = Depends(get_current_user),
    auth: AuthService = Depends(get_auth),
):
    await auth.logout(
        user.id, body.refresh_token if body else None, ip_address=_client_ip(request)
    )
    return _ok(MessageResponse(message="logged out"))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(user: User = Depends(get_current_user)):
    return _ok(MeResponse(user=_user_response(user)))


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["2fa"])
async def two_factor_setup(
    user: User = Depends(get_current_user), auth: AuthService = Depends(get_auth)
):
    setup = await auth.begin_two_factor_setup(user.id)
    return _ok(
        TwoFactorSetupResponse(
            secret=setup.secret, otpauth_url=setup.otpauth_url, qr_code=setup.qr_code
        )
    )


@router.post("/auth/2fa/enable", response_model=Envelope, tags=["2fa"])
async def two_factor_enable(
    body: TwoFactorCodeRequest,
    request: Request,
    user: User = Depends(get_current_user),
    auth: AuthService = Depends(get_auth),
):
    codes = await auth.enable_two_factor(user.id, body.code, ip_address=_client_ip(request))
    return _ok(BackupCodesResponse(backup_codes=codes))


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["2fa"])
async def two_factor_disable(
    body: TwoFactorCodeRequest,
    request: Request,
    user: User = Depends(get_current_user),
    auth: AuthService = Depends(get_auth),
):
    await auth.disable_two_factor(user.id, body.code, ip_address=_client_ip(request))
    return _ok(MessageResponse(message="two-factor authentication disabled"))


@router.post("/auth/2fa/backup-codes", response_model=Envelope, tags=["2fa"])
async def regenerate_backup_codes(
    request: Request,
    user: User = Depends(require_second_factor),
    auth: AuthService = Depends(get_auth),
):
    codes = await auth.regenerate_backup_codes(user.id, ip_address=_client_ip(request))
    return _ok(BackupCodesResponse(backup_codes=codes))
