"""Tests for the error envelope format and the error taxonomy.

Error responses share one shape:
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
from pydantic import ValidationError

from gallerycore.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from gallerycore.api.schemas import Envelope, ErrorBody
from gallerycore.service import errors as service_errors


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.message == "Invalid credentials"
        assert error.details is None

    def test_error_body_with_details_dict(self):
        error = ErrorBody(
            code="quota_exceeded",
            message="insufficient token quota",
            details={"remaining": 10, "required": 50},
        )
        assert error.details == {"remaining": 10, "required": 50}

    def test_error_body_with_details_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_error_body_missing_code_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="Error occurred")

    def test_error_body_unknown_code_raises(self):
        """Only the stable codes are accepted."""
        with pytest.raises(ValidationError):
            ErrorBody(code="rate_limited", message="Too many requests")


class TestEnvelope:
    def test_envelope_ok_status(self):
        envelope = Envelope(status="ok", data={"user_id": "123"})

        assert envelope.status == "ok"
        assert envelope.data == {"user_id": "123"}
        assert envelope.error is None

    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36  # UUID format

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")

    def test_envelope_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(
                code="account_locked",
                message="account is locked",
                details={"retry_after_seconds": 600},
            ),
            request_id="test-req-123",
        )
        dumped = envelope.model_dump()

        assert dumped["status"] == "error"
        assert dumped["error"]["code"] == "account_locked"
        assert dumped["error"]["details"]["retry_after_seconds"] == 600
        assert dumped["request_id"] == "test-req-123"
        assert dumped["data"] is None


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (402, "quota_exceeded"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "validation_error"),
            (423, "account_locked"),
            (500, "server_error"),
        ],
    )
    def test_status_maps_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_mapped_codes_are_valid_error_body_codes(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="ok")


class TestServiceErrorTaxonomy:
    @pytest.mark.parametrize(
        "cls,status,code",
        [
            (service_errors.ValidationError, 400, "validation_error"),
            (service_errors.UnauthenticatedError, 401, "unauthorized"),
            (service_errors.InvalidOrReusedTokenError, 401, "invalid_refresh_token"),
            (service_errors.QuotaExceededError, 402, "quota_exceeded"),
            (service_errors.AccountInactiveError, 403, "account_inactive"),
            (service_errors.ForbiddenError, 403, "forbidden"),
            (service_errors.NotFoundError, 404, "not_found"),
            (service_errors.ConflictError, 409, "conflict"),
            (service_errors.AccountLockedError, 423, "account_locked"),
            (service_errors.ServerError, 500, "server_error"),
        ],
    )
    def test_error_classes(self, cls, status, code):
        err = cls("boom")
        assert err.status_code == status
        assert err.error_code == code
        assert err.detail == {}
        # Every code renders through the envelope
        ErrorBody(code=err.error_code, message=err.message)

    def test_invalid_refresh_token_is_unauthenticated(self):
        err = service_errors.InvalidOrReusedTokenError()
        assert isinstance(err, service_errors.UnauthenticatedError)
        assert err.message == "invalid refresh token"


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = _error_response(401, "Invalid credentials")

        assert response.status_code == 401
        data = json.loads(response.body.decode())
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["error"]["message"] == "Invalid credentials"
        assert data["request_id"]

    def test_error_response_custom_code(self):
        response = _error_response(401, "invalid refresh token", code="invalid_refresh_token")
        data = json.loads(response.body.decode())
        assert data["error"]["code"] == "invalid_refresh_token"

    def test_retry_after_header_for_lockout(self):
        response = _error_response(
            423, "account is locked", details={"retry_after_seconds": 120}
        )
        assert response.headers["retry-after"] == "120"

    def test_no_retry_after_without_hint(self):
        response = _error_response(404, "Not found", details=None)
        assert "retry-after" not in response.headers
        data = json.loads(response.body.decode())
        assert data["error"]["details"] is None
