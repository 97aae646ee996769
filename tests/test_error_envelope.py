"""Tests for the error envelope format and error handling.

Every error response conforms to:
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
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from hrsecurity.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    error_response,
    register_exception_handlers,
)
from hrsecurity.api.schemas import Envelope, ErrorBody
from hrsecurity.service.errors import (
    AccountLockedError,
    InvalidCredentialsError,
    MfaAlreadyEnabledError,
    PolicyViolationError,
)
from hrsecurity.storage.errors import ConstraintViolation, StoreUnavailable
from hrsecurity.storage.models import utcnow


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="session required")
        assert error.details is None

    def test_error_body_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")

    @pytest.mark.parametrize(
        "code",
        ["invalid_credentials", "invalid_mfa_code", "account_locked", "policy_violation",
         "mfa_not_enabled", "mfa_already_enabled", "service_unavailable"],
    )
    def test_security_codes_are_accepted(self, code):
        assert ErrorBody(code=code, message="x").code == code

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")


class TestEnvelope:
    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")

        assert len(envelope.request_id) == 36

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,code",
        [(401, "unauthorized"), (403, "forbidden"), (404, "not_found"), (409, "conflict"),
         (422, "policy_violation"), (423, "account_locked"), (503, "service_unavailable")],
    )
    def test_status_to_code(self, status, code):
        assert _STATUS_TO_CODE[status] == code
        assert _error_code_for_status(status) == code

    def test_unknown_status_falls_back_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_body(self):
        response = error_response(409, "email already exists", {"field": "email"})
        body = json.loads(response.body)

        assert response.status_code == 409
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "conflict",
            "message": "email already exists",
            "details": {"field": "email"},
        }


@pytest.fixture
def raising_client():
    """Tiny app whose routes raise each error type through the real handlers."""
    app = FastAPI()
    register_exception_handlers(app)
    locked_until = utcnow()

    @app.get("/credentials")
    async def credentials():
        raise InvalidCredentialsError()

    @app.get("/locked")
    async def locked():
        raise AccountLockedError(locked_until)

    @app.get("/policy")
    async def policy():
        raise PolicyViolationError(
            "session_timeout_minutes: too small",
            violations=["session_timeout_minutes: too small"],
            field="session_timeout_minutes",
        )

    @app.get("/mfa")
    async def mfa():
        raise MfaAlreadyEnabledError()

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("duplicate key", {"field": "email"})

    @app.get("/unavailable")
    async def unavailable():
        raise StoreUnavailable("postgres")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret connection string leaked")

    client = TestClient(app, raise_server_exceptions=False)
    client.locked_until = locked_until
    return client


class TestExceptionHandlers:
    def test_invalid_credentials(self, raising_client):
        response = raising_client.get("/credentials")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"
        assert response.json()["error"]["message"] == "invalid credentials"

    def test_account_locked_carries_expiry(self, raising_client):
        response = raising_client.get("/locked")

        assert response.status_code == 423
        assert response.json()["error"]["details"] == {
            "locked_until": raising_client.locked_until.isoformat()
        }

    def test_policy_violation_lists_violations(self, raising_client):
        response = raising_client.get("/policy")

        assert response.status_code == 422
        details = response.json()["error"]["details"]
        assert details["field"] == "session_timeout_minutes"
        assert details["violations"] == ["session_timeout_minutes: too small"]

    def test_mfa_state_conflict_has_specific_code(self, raising_client):
        response = raising_client.get("/mfa")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "mfa_already_enabled"

    def test_store_errors(self, raising_client):
        conflict = raising_client.get("/constraint")
        assert conflict.status_code == 409
        assert conflict.json()["error"]["code"] == "conflict"

        unavailable = raising_client.get("/unavailable")
        assert unavailable.status_code == 503
        assert unavailable.json()["error"] == {
            "code": "service_unavailable",
            "message": "service temporarily unavailable",
            "details": None,
        }

    def test_unhandled_exception_hides_message(self, raising_client):
        response = raising_client.get("/boom")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"
        assert "secret" not in response.text
