import json

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from securesnap.api.error_handling import _error_code_for_status, _error_response
from securesnap.api.schemas import Envelope, ErrorBody
from securesnap.app import create_app
from securesnap.service.runtime import Runtime


@pytest.fixture
def app(settings, store, clock):
    return create_app(runtime=Runtime(settings, store=store, clock=clock))


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


class TestErrorBody:
    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_envelope_status_is_constrained(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    @pytest.mark.parametrize(
        "status_code,code",
        [(400, "validation_error"), (401, "unauthorized"), (423, "locked"), (418, "server_error")],
    )
    def test_status_mapping(self, status_code, code):
        assert _error_code_for_status(status_code) == code

    def test_error_response_shape(self):
        resp = _error_response(409, "email already registered", {"field": "email"})
        body = json.loads(resp.body)
        assert resp.status_code == 409
        assert body["status"] == "error"
        assert body["data"] is None
        assert body["error"] == {
            "code": "conflict",
            "message": "email already registered",
            "details": {"field": "email"},
        }
        assert body["request_id"]


class TestHandlers:
    def test_unknown_route_is_enveloped(self, client):
        resp = client.get("/api/does-not-exist")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_wrong_method_is_enveloped(self, client):
        resp = client.get("/api/auth/login")
        assert resp.status_code == 405
        assert resp.json()["status"] == "error"

    def test_malformed_json(self, client):
        resp = client.post(
            "/api/auth/login",
            content="{not json",
            headers={"Content-Type": "application/json"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_missing_field_lists_location(self, client):
        resp = client.post("/api/auth/login", json={"email": "a@example.com"})
        assert resp.status_code == 400
        details = resp.json()["error"]["details"]
        assert any(d["loc"][-1] == "password" for d in details)

    def test_malformed_bearer_hides_reason(self, client):
        resp = client.get("/api/auth/me", headers={"Authorization": "Bearer not.a.jwt"})
        assert resp.status_code == 401
        assert resp.json()["error"]["details"] is None

    def test_non_bearer_scheme(self, client):
        resp = client.get("/api/auth/me", headers={"Authorization": "Basic abc"})
        assert resp.status_code == 401

    def test_overlong_session_id(self, client):
        resp = client.get("/api/auth/qr/status/" + "a" * 65)
        assert resp.status_code == 400

    def test_uncaught_exception_becomes_500(self, app):
        @app.get("/boom")
        async def boom():
            raise RuntimeError("kaboom")

        with TestClient(app, raise_server_exceptions=False) as client:
            resp = client.get("/boom")
        assert resp.status_code == 500
        body = resp.json()
        assert body["error"]["code"] == "server_error"
        assert body["error"]["message"] == "internal server error"
        assert "kaboom" not in resp.text
