"""Tests for the error envelope format and error handling.

Error responses always have the shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from authcore.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from authcore.api.schemas import Envelope, ErrorBody, LoginRequest
from authcore.service.errors import (
    AccountLockedError,
    ConfigError,
    MfaError,
    MfaErrorCode,
    ValidationError,
)
from authcore.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.details is None

    def test_missing_code_raises(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(message="Error occurred")


class TestEnvelope:
    def test_status_must_be_ok_or_error(self):
        with pytest.raises(PydanticValidationError):
            Envelope(status="maybe")

    def test_request_id_generated(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id
        assert first.request_id != second.request_id


class TestStatusCodes:
    @pytest.mark.parametrize("status,code", sorted(_STATUS_TO_CODE.items()))
    def test_known_statuses(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_shape(self):
        response = _error_response(423, "locked", {"locked_until": "soon"})
        body = json.loads(response.body)
        assert response.status_code == 423
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "account_locked",
            "message": "locked",
            "details": {"locked_until": "soon"},
        }


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    class Body(BaseModel):
        count: int

    @app.post("/validate")
    async def validate(body: Body):
        return {"ok": True}

    @app.get("/weak-password")
    async def weak_password():
        raise ValidationError(
            "too weak", error_code="weak_password", detail={"problems": ["too weak"]}
        )

    @app.get("/locked")
    async def locked():
        raise AccountLockedError()

    @app.get("/mfa")
    async def mfa():
        raise MfaError(MfaErrorCode.MFA_ALREADY_ENABLED)

    @app.get("/config")
    async def config():
        raise ConfigError("JWT_SECRET missing at /etc/authcore")

    @app.get("/conflict")
    async def conflict():
        raise ConstraintViolation("duplicate key value violates app_user_email_key")

    @app.get("/http")
    async def http():
        raise HTTPException(
            status_code=404,
            detail={"status": "error", "error": {"code": "not_found", "message": "nope"}},
        )

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    def test_request_validation(self, client):
        response = client.post("/validate", json={"count": "many"})
        body = response.json()
        assert response.status_code == 400
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["details"][0]["loc"] == ["body", "count"]

    def test_service_error_keeps_code_and_detail(self, client):
        response = client.get("/weak-password")
        assert response.status_code == 400
        assert response.json()["error"] == {
            "code": "weak_password",
            "message": "too weak",
            "details": {"problems": ["too weak"]},
        }

    def test_account_locked(self, client):
        response = client.get("/locked")
        assert response.status_code == 423
        assert response.json()["error"]["code"] == "account_locked"

    def test_mfa_error_status(self, client):
        response = client.get("/mfa")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "MFA_ALREADY_ENABLED"

    def test_server_side_error_hides_message(self, client):
        response = client.get("/config")
        assert response.status_code == 500
        assert "/etc/authcore" not in response.text
        assert response.json()["error"]["code"] == "config_error"

    def test_constraint_violation(self, client):
        response = client.get("/conflict")
        assert response.status_code == 409
        assert response.json()["error"]["message"] == "resource conflict"

    def test_http_exception_envelope(self, client):
        response = client.get("/http")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
        assert response.json()["request_id"]

    def test_uncaught_exception(self, client):
        response = client.get("/boom")
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"
        assert "secret internals" not in response.text


class TestRequestSchemas:
    @pytest.mark.parametrize(
        "email", ["no-at-sign", "a@b", "a@@example.com", "spaces in@example.com", "@example.com"]
    )
    def test_invalid_emails(self, email):
        with pytest.raises(PydanticValidationError):
            LoginRequest(email=email, password="x")

    def test_email_normalized(self):
        assert LoginRequest(email=" User@Example.COM ", password="x").email == "user@example.com"
