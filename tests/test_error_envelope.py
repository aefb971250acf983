"""Tests for the error envelope format and exception mapping.

Error responses look like:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<human_readable>", "details": ...},
    "request_id": "<id>"
}
"""

import json

import pytest
from pydantic import ValidationError

from sessionauth.api.error_handling import _error_code_for_status, _error_response
from sessionauth.api.schemas import Envelope, ErrorBody
from sessionauth.service import errors


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_accepts_stable_codes(self):
        for code in ["unauthorized", "conflict", "service_unavailable"]:
            assert ErrorBody(code=code, message="m").code == code

    def test_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="m")


class TestEnvelope:
    """Tests for the Envelope wrapper."""

    def test_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_request_id_follows_correlation_id(self):
        from sessionauth.logging import set_correlation_id

        set_correlation_id("req-123")
        assert Envelope(status="ok").request_id == "req-123"


class TestErrorResponse:
    """Tests for _error_response and status mapping."""

    def test_status_mapping(self):
        assert _error_code_for_status(401) == "unauthorized"
        assert _error_code_for_status(503) == "service_unavailable"
        assert _error_code_for_status(418) == "server_error"

    def test_body_shape(self):
        response = _error_response(401, "authentication failed", {"must_logout": True})
        body = json.loads(response.body)

        assert response.status_code == 401
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "unauthorized",
            "message": "authentication failed",
            "details": {"must_logout": True},
        }


class TestServiceErrors:
    """Taxonomy status codes."""

    def test_login_failures_are_unauthorized(self):
        for cls in errors.LOGIN_FAILURES:
            exc = cls("x")
            assert isinstance(exc, errors.AuthenticationError)
            assert (exc.status_code, exc.error_code) == (401, "unauthorized")

    def test_token_mismatch_is_token_invalid(self):
        assert issubclass(errors.TokenMismatchError, errors.TokenInvalidError)

    def test_store_unavailable(self):
        exc = errors.StoreUnavailableError("down")
        assert (exc.status_code, exc.error_code) == (503, "service_unavailable")

    def test_internal_error(self):
        exc = errors.InternalError("boom")
        assert (exc.status_code, exc.error_code) == (500, "server_error")

    def test_validation_error_carries_field(self):
        exc = errors.ValidationError("bad", field="email")
        assert exc.detail == {"field": "email"}
