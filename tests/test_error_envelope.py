"""Error envelope format and the exception-to-response mapping.

Every error response has the shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<human_readable>", "details": ...},
    "request_id": "<id>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from tradegate.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from tradegate.api.schemas import Envelope, ErrorBody
from tradegate.service.errors import (
    ForbiddenError,
    LoginErrorCode,
    LoginFailedError,
    MfaRequiredError,
    ServerError,
)
from tradegate.storage.errors import ConstraintViolation, VersionConflict


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="no")

    def test_error_body_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")

    def test_mfa_and_version_codes_are_accepted(self):
        assert ErrorBody(code="mfa_required", message="m").code == "mfa_required"
        assert ErrorBody(code="version_conflict", message="v").code == "version_conflict"


class TestEnvelope:
    def test_envelope_ok_status(self):
        envelope = Envelope(status="ok", data={"user_id": "123"})

        assert envelope.data == {"user_id": "123"}
        assert envelope.error is None
        assert envelope.request_id

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")

    def test_envelope_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="rate_limited", message="Too many requests", details={"retry_after": 60}),
            request_id="test-req-123",
        )
        dumped = envelope.model_dump()

        assert dumped["error"]["details"]["retry_after"] == 60
        assert dumped["request_id"] == "test-req-123"
        assert dumped["data"] is None


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (500, "server_error"),
            (418, "server_error"),
        ],
    )
    def test_status_mapping(self, status, code):
        assert _error_code_for_status(status) == code

    def test_mapping_covers_generic_codes(self):
        assert set(_STATUS_TO_CODE.values()) == {
            "unauthorized",
            "forbidden",
            "not_found",
            "rate_limited",
            "validation_error",
            "conflict",
            "server_error",
        }

    def test_error_response_null_details(self):
        response = _error_response(404, "Not found", details=None)

        data = json.loads(response.body.decode())
        assert response.status_code == 404
        assert data["error"] == {"code": "not_found", "message": "Not found", "details": None}
        assert data["request_id"]


def _app_raising(exc):
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise exc

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    def test_login_failure_is_401_with_reason(self):
        client = _app_raising(LoginFailedError(LoginErrorCode.ACCOUNT_LOCKED))

        response = client.get("/boom")

        assert response.status_code == 401
        body = response.json()
        assert body["error"]["code"] == "unauthorized"
        assert body["error"]["details"] == {"login_error": "ACCOUNT_LOCKED"}

    def test_mfa_required(self):
        response = _app_raising(MfaRequiredError()).get("/boom")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "mfa_required"

    def test_forbidden_message(self):
        response = _app_raising(ForbiddenError("Missing required permission: role:read")).get("/boom")

        assert response.status_code == 403
        assert response.json()["error"]["message"] == "Missing required permission: role:read"

    def test_version_conflict(self):
        response = _app_raising(VersionConflict("role", "r1", 1, 3)).get("/boom")

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "version_conflict"
        assert error["details"]["current_version"] == 3

    def test_constraint_violation(self):
        response = _app_raising(ConstraintViolation("duplicate", {"field": "email"})).get("/boom")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_server_error(self):
        response = _app_raising(ServerError("Email delivery is not configured")).get("/boom")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"

    def test_unhandled_exception_hides_details(self):
        response = _app_raising(RuntimeError("secret stack detail")).get("/boom")

        assert response.status_code == 500
        body = response.json()
        assert body["error"]["message"] == "internal server error"
        assert "secret" not in json.dumps(body)
