"""Async HTTP client for the authentication API.

Tokens live on the :class:`AuthClient` instance that obtained them; nothing is
kept in module state, so several signed-in clients can coexist in one process.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from securesnap.logging import get_logger
from securesnap.service.two_factor import render_qr_svg_data_url

logger = get_logger(__name__)

DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_MAX_POLLS = 60
TERMINAL_STATUSES = frozenset({"expired", "cancelled", "not_found"})


class AuthClientError(Exception):
    def __init__(self, status_code: int, code: str, message: str, details: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details


class AuthClient:
    def __init__(
        self,
        base_url: str,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ) -> None:
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/api",
            transport=transport,
            timeout=timeout,
            follow_redirects=False,
        )
        self.access_token: Optional[str] = None
        self.refresh_token: Optional[str] = None
        self.device_token: Optional[str] = None
        self.user: Optional[Dict[str, Any]] = None

    async def __aenter__(self) -> "AuthClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    @property
    def is_authenticated(self) -> bool:
        return self.access_token is not None

    def _headers(self, bearer: bool) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if bearer:
            if not self.access_token:
                raise AuthClientError(401, "unauthorized", "not signed in")
            headers["Authorization"] = f"Bearer {self.access_token}"
        if self.device_token:
            headers["X-Device-Token"] = self.device_token
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict] = None,
        bearer: bool = False,
    ) -> Dict[str, Any]:
        response = await self._http.request(
            method, path, json=json, headers=self._headers(bearer)
        )
        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.is_error or body.get("status") == "error":
            error = body.get("error") or {}
            raise AuthClientError(
                response.status_code,
                error.get("code", "server_error"),
                error.get("message", response.reason_phrase),
                error.get("details"),
            )
        return body.get("data") or {}

    def store_tokens(self, data: Dict[str, Any]) -> None:
        """Adopt whatever tokens a successful response handed out."""
        if data.get("accessToken"):
            self.access_token = data["accessToken"]
        if data.get("refreshToken"):
            self.refresh_token = data["refreshToken"]
        if data.get("deviceToken"):
            self.device_token = data["deviceToken"]
        if data.get("user"):
            self.user = data["user"]

    def clear_tokens(self) -> None:
        self.access_token = None
        self.refresh_token = None
        self.user = None

    async def register(self, email: str, password: str, name: Optional[str] = None) -> dict:
        data = await self._request(
            "POST", "/auth/register", json={"email": email, "password": password, "name": name}
        )
        self.store_tokens(data)
        return data

    async def login(self, email: str, password: str) -> dict:
        """Returns the response data; check ``requires2FA`` before assuming tokens."""
        payload: Dict[str, Any] = {"email": email, "password": password}
        if self.device_token:
            payload["deviceToken"] = self.device_token
        data = await self._request("POST", "/auth/login", json=payload)
        if not data.get("requires2FA"):
            self.store_tokens(data)
        return data

    async def verify_two_factor(
        self,
        session_token: str,
        code: str,
        *,
        method: str = "totp",
        remember_device: bool = False,
    ) -> dict:
        data = await self._request(
            "POST",
            "/auth/2fa/verify",
            json={
                "sessionToken": session_token,
                "code": code,
                "method": method,
                "rememberDevice": remember_device,
            },
        )
        self.store_tokens(data)
        return data

    async def create_qr_session(self, device_info: Optional[dict] = None) -> dict:
        return await self._request("POST", "/auth/qr/session", json={"deviceInfo": device_info})

    async def qr_status(self, session_id: str) -> dict:
        return await self._request("GET", f"/auth/qr/status/{session_id}")

    async def cancel_qr(self, session_id: str) -> bool:
        data = await self._request("POST", f"/auth/qr/cancel/{session_id}")
        return bool(data.get("cancelled"))

    async def authenticate_qr(self, token: str) -> bool:
        data = await self._request(
            "POST", "/auth/qr/authenticate", json={"token": token}, bearer=True
        )
        return bool(data.get("success"))

    async def request_magic_link(self, email: str, redirect_url: Optional[str] = None) -> dict:
        return await self._request(
            "POST", "/auth/magic-link", json={"email": email, "redirectUrl": redirect_url}
        )

    async def verify_magic_link(self, token: str) -> dict:
        data = await self._request("POST", "/auth/magic-link/verify", json={"token": token})
        self.store_tokens(data)
        return data

    async def refresh(self) -> dict:
        if not self.refresh_token:
            raise AuthClientError(401, "unauthorized", "no refresh token")
        data = await self._request(
            "POST", "/auth/refresh", json={"refreshToken": self.refresh_token}
        )
        self.store_tokens(data)
        return data

    async def me(self) -> dict:
        data = await self._request("GET", "/auth/me", bearer=True)
        self.user = data.get("user")
        return data

    async def logout(self) -> None:
        try:
            await self._request(
                "POST", "/auth/logout", json={"refreshToken": self.refresh_token}, bearer=True
            )
        finally:
            self.clear_tokens()


@dataclass
class QRLoginTicket:
    session_id: str
    token: str
    expires_at: str
    qr_url: str
    qr_code: str


@dataclass
class QRPollOutcome:
    status: str
    attempts: int
    data: Dict[str, Any] = field(default_factory=dict)
    timed_out: bool = False

    @property
    def authenticated(self) -> bool:
        return self.status == "authenticated"


class QRLoginPoller:
    """Drives the desktop half of a QR login.

    ``poll`` asks for the session status every ``interval`` seconds and stops
    on a terminal status, after ``max_attempts`` polls, or when ``cancel`` is
    called. Transport errors are logged and the poll is retried.
    """

    def __init__(
        self,
        client: AuthClient,
        *,
        interval: float = DEFAULT_POLL_INTERVAL,
        max_attempts: int = DEFAULT_MAX_POLLS,
    ) -> None:
        self.client = client
        self.interval = interval
        self.max_attempts = max_attempts
        self._cancelled = asyncio.Event()

    async def start_qr_login(self, device_info: Optional[dict] = None) -> QRLoginTicket:
        data = await self.client.create_qr_session(device_info)
        return QRLoginTicket(
            session_id=data["sessionId"],
            token=data["token"],
            expires_at=data["expiresAt"],
            qr_url=data["qrUrl"],
            qr_code=render_qr_svg_data_url(data["qrUrl"]),
        )

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    async def _wait_interval(self) -> bool:
        """Sleep one interval; True if ``cancel`` was called meanwhile."""
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            return self.cancelled
        return True

    async def poll(self, session_id: str) -> QRPollOutcome:
        attempts = 0
        while attempts < self.max_attempts:
            if await self._wait_interval():
                logger.info("qr_poll_cancelled", session_id=session_id, attempts=attempts)
                return QRPollOutcome(status="cancelled", attempts=attempts)
            attempts += 1
            try:
                data = await self.client.qr_status(session_id)
            except (httpx.HTTPError, AuthClientError) as exc:
                logger.warning(
                    "qr_poll_failed", session_id=session_id, attempt=attempts, error=str(exc)
                )
                continue
            status = data.get("status", "pending")
            if status == "authenticated":
                # Tokens are handed out once; a second poller sees none.
                self.client.store_tokens(data)
                return QRPollOutcome(status=status, attempts=attempts, data=data)
            if status in TERMINAL_STATUSES:
                return QRPollOutcome(status=status, attempts=attempts, data=data)
        logger.info("qr_poll_exhausted", session_id=session_id, attempts=attempts)
        return QRPollOutcome(status="expired", attempts=attempts, timed_out=True)
