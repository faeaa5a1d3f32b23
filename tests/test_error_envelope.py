"""Tests for the error envelope format and exception mapping.

Error responses share one shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<id>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel, ValidationError

from schoolgate.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from schoolgate.api.schemas import Envelope, ErrorBody
from schoolgate.service.errors import (
    AccountBlockedError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ServerError,
)
from schoolgate.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="invalid email or password")

        assert error.code == "unauthorized"
        assert error.details is None

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_missing_message_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_ok_envelope(self):
        envelope = Envelope(status="ok", data={"tokens_removed": 2})

        assert envelope.error is None
        assert envelope.request_id

    def test_custom_request_id(self):
        envelope = Envelope(status="ok", request_id="custom-id-123")

        assert envelope.request_id == "custom-id-123"

    @pytest.mark.parametrize("status", ["pending", "success", ""])
    def test_invalid_status(self, status):
        with pytest.raises(ValidationError):
            Envelope(status=status)


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status_code, code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "validation_error"),
            (500, "server_error"),
        ],
    )
    def test_known_statuses(self, status_code, code):
        assert _error_code_for_status(status_code) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_every_mapped_code_is_valid(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="x")

    def test_error_response_body(self):
        response = _error_response(404, "user not found", details=None)

        data = json.loads(response.body.decode())
        assert response.status_code == 404
        assert data["status"] == "error"
        assert data["error"] == {"code": "not_found", "message": "user not found", "details": None}
        assert data["request_id"]


class _Body(BaseModel):
    email: str


def _app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/blocked")
    async def blocked():
        raise AccountBlockedError()

    @app.get("/conflict")
    async def conflict():
        raise ConflictError("email already registered", detail={"field": "email"})

    @app.get("/forbidden")
    async def forbidden():
        raise ForbiddenError("access denied")

    @app.get("/missing")
    async def missing():
        raise NotFoundError("user not found")

    @app.get("/server")
    async def server():
        raise ServerError("store unavailable")

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("refresh token already exists", {"field": "token"})

    @app.get("/crash")
    async def crash():
        raise RuntimeError("password=hunter2 leaked into an error")

    @app.post("/validate")
    async def validate(body: _Body):
        return {"ok": True}

    return app


@pytest.fixture
def client():
    return TestClient(_app(), raise_server_exceptions=False)


class TestExceptionHandlers:
    def test_reasoned_auth_error(self, client):
        response = client.get("/blocked")

        assert response.status_code == 401
        assert response.json()["error"] == {
            "code": "unauthorized",
            "message": "account blocked",
            "details": {"reason": "account_blocked"},
        }

    def test_conflict_keeps_detail(self, client):
        response = client.get("/conflict")

        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "email"}

    @pytest.mark.parametrize(
        "path, status_code, code",
        [
            ("/forbidden", 403, "forbidden"),
            ("/missing", 404, "not_found"),
            ("/server", 500, "server_error"),
        ],
    )
    def test_service_errors(self, client, path, status_code, code):
        response = client.get(path)

        assert response.status_code == status_code
        error = response.json()["error"]
        assert error["code"] == code
        assert error["details"] is None

    def test_storage_constraint_maps_to_conflict(self, client):
        response = client.get("/constraint")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_request_validation_maps_to_400(self, client):
        response = client.post("/validate", json={})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"]["errors"][0]["loc"] == ["body", "email"]

    def test_unhandled_exception_hides_message(self, client):
        response = client.get("/crash")

        assert response.status_code == 500
        body = response.json()
        assert body["error"]["code"] == "server_error"
        assert body["error"]["message"] == "internal server error"
        assert "hunter2" not in response.text

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/nowhere")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
