import httpx
import pytest

from securesnap.app import create_app
from securesnap.client import AuthClient, AuthClientError, QRLoginPoller
from securesnap.service.runtime import Runtime

SESSION_ID = "a" * 32


def _envelope(data, status="ok"):
    return {"status": status, "data": data, "error": None, "request_id": "req"}


def _scripted_transport(statuses, calls):
    """Answer status polls from ``statuses`` in order; exceptions are raised."""

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        outcome = statuses.pop(0) if statuses else "pending"
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, httpx.Response):
            return outcome
        data = {"status": outcome}
        if outcome == "authenticated":
            data.update(accessToken="access", refreshToken="refresh", user={"id": "u1"})
        return httpx.Response(200, json=_envelope(data))

    return httpx.MockTransport(handler)


class TestPoller:
    async def test_succeeds_after_pending_polls(self):
        calls = []
        transport = _scripted_transport(["pending", "pending", "authenticated"], calls)
        async with AuthClient("http://testserver", transport=transport) as client:
            outcome = await QRLoginPoller(client, interval=0).poll(SESSION_ID)
            assert outcome.authenticated
            assert outcome.attempts == 3
            assert client.access_token == "access"
            assert client.refresh_token == "refresh"
        assert calls == [f"/api/auth/qr/status/{SESSION_ID}"] * 3

    async def test_attempt_limit_times_out(self):
        calls = []
        transport = _scripted_transport([], calls)
        async with AuthClient("http://testserver", transport=transport) as client:
            outcome = await QRLoginPoller(client, interval=0, max_attempts=4).poll(SESSION_ID)
        assert outcome.status == "expired"
        assert outcome.timed_out
        assert len(calls) == 4

    @pytest.mark.parametrize("terminal", ["expired", "cancelled", "not_found"])
    async def test_terminal_status_stops_early(self, terminal):
        calls = []
        transport = _scripted_transport(["pending", terminal, "authenticated"], calls)
        async with AuthClient("http://testserver", transport=transport) as client:
            outcome = await QRLoginPoller(client, interval=0).poll(SESSION_ID)
            assert not client.is_authenticated
        assert outcome.status == terminal
        assert not outcome.timed_out
        assert outcome.attempts == 2

    async def test_cancel_before_polling(self):
        calls = []
        transport = _scripted_transport(["authenticated"], calls)
        async with AuthClient("http://testserver", transport=transport) as client:
            poller = QRLoginPoller(client, interval=0)
            poller.cancel()
            outcome = await poller.poll(SESSION_ID)
        assert outcome.status == "cancelled"
        assert outcome.attempts == 0
        assert calls == []

    async def test_transport_errors_are_retried(self):
        calls = []
        request = httpx.Request("GET", "http://testserver")
        failure = httpx.Response(
            500,
            json={
                "status": "error",
                "data": None,
                "error": {"code": "server_error", "message": "internal server error"},
                "request_id": "req",
            },
        )
        transport = _scripted_transport(
            [httpx.ConnectError("boom", request=request), failure, "authenticated"], calls
        )
        async with AuthClient("http://testserver", transport=transport) as client:
            outcome = await QRLoginPoller(client, interval=0).poll(SESSION_ID)
        assert outcome.authenticated
        assert outcome.attempts == 3


class TestClientErrors:
    async def test_error_envelope_raises(self):
        def handler(request):
            return httpx.Response(
                401,
                json={
                    "status": "error",
                    "data": None,
                    "error": {"code": "unauthorized", "message": "invalid credentials"},
                    "request_id": "req",
                },
            )

        async with AuthClient("http://testserver", transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(AuthClientError) as excinfo:
                await client.login("a@example.com", "nope")
        assert excinfo.value.status_code == 401
        assert excinfo.value.code == "unauthorized"
        assert excinfo.value.message == "invalid credentials"

    async def test_bearer_calls_need_a_session(self):
        async with AuthClient("http://testserver", transport=_scripted_transport([], [])) as client:
            with pytest.raises(AuthClientError):
                await client.me()


class TestAgainstApp:
    async def test_start_and_complete_qr_login(self, settings, store, clock):
        runtime = Runtime(settings, store=store, clock=clock)
        transport = httpx.ASGITransport(app=create_app(runtime=runtime))

        async with AuthClient("http://testserver", transport=transport) as phone, AuthClient(
            "http://testserver", transport=transport
        ) as desktop:
            await phone.register("olivia@example.com", "TestPassword123!", "Olivia")

            poller = QRLoginPoller(desktop, interval=0, max_attempts=3)
            ticket = await poller.start_qr_login({"deviceType": "desktop"})
            assert ticket.qr_code.startswith("data:image/svg+xml;base64,")
            assert ticket.qr_url.endswith(ticket.token)

            assert await phone.authenticate_qr(ticket.token)
            outcome = await poller.poll(ticket.session_id)
            assert outcome.authenticated
            assert desktop.user["email"] == "olivia@example.com"

            me = await desktop.me()
            assert me["user"]["email"] == "olivia@example.com"

            await desktop.logout()
            assert not desktop.is_authenticated
        await runtime.auth.drain_notifications()

    async def test_magic_link_request_and_unknown_token(self, settings, store, clock):
        runtime = Runtime(settings, store=store, clock=clock)
        transport = httpx.ASGITransport(app=create_app(runtime=runtime))
        async with AuthClient("http://testserver", transport=transport) as client:
            await client.register("pat@example.com", "TestPassword123!")
            client.clear_tokens()
            ack = await client.request_magic_link("pat@example.com", "/settings")
            assert ack["message"]

            [link] = store.magic_links.values()
            assert link.used_at is None
            with pytest.raises(AuthClientError) as excinfo:
                await client.verify_magic_link("0" * 64)
            assert excinfo.value.status_code == 401
        await runtime.auth.drain_notifications()
