"""Tests for the error envelope every transport renders.

{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<human_readable>", "details": ...},
    "request_id": "<uuid>"
}
"""

import pytest
from pydantic import ValidationError as PydanticValidationError

from authcore.logging import correlation_scope
from authcore.service.errors import (
    AccountLocked,
    Envelope,
    ErrorBody,
    InvalidCredentials,
    RateLimitedError,
    SecondFactorRequired,
    ServerError,
    TokenInvalid,
    TokenReused,
    WeakPassword,
    error_envelope,
)


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="invalid_credentials", message="Invalid credentials")

        assert error.details is None

    def test_unknown_code_rejected(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_missing_message_rejected(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="server_error")

    def test_envelope_status_pattern(self):
        with pytest.raises(PydanticValidationError):
            Envelope(status="maybe")

    def test_request_ids_are_unique(self):
        assert Envelope(status="ok").request_id != Envelope(status="ok").request_id


class TestErrorEnvelope:
    def test_service_error_keeps_code_and_detail(self):
        status, envelope = error_envelope(AccountLocked(125))

        assert status == 423
        assert envelope.status == "error"
        assert envelope.error.code == "account_locked"
        assert envelope.error.details == {"remaining_seconds": 125}

    def test_invalid_credentials_has_no_detail(self):
        status, envelope = error_envelope(InvalidCredentials())

        assert status == 401
        assert envelope.error.details is None

    def test_second_factor_required_carries_handle(self):
        status, envelope = error_envelope(SecondFactorRequired("handle-123", 600))

        assert status == 401
        assert envelope.error.code == "second_factor_required"
        assert envelope.error.details == {"pending_token": "handle-123", "expires_in": 600}

    def test_token_reuse_is_indistinguishable_from_invalid(self):
        reused_status, reused = error_envelope(TokenReused("family-1"))
        invalid_status, invalid = error_envelope(TokenInvalid())

        assert reused_status == invalid_status == 401
        assert reused.error.model_dump() == invalid.error.model_dump()
        assert "family" not in str(reused.model_dump())

    def test_weak_password_lists_failures(self):
        _status, envelope = error_envelope(WeakPassword(["min_length:8"]))

        assert envelope.error.details == {"failures": ["min_length:8"]}

    def test_rate_limit_retry_after_floor(self):
        status, envelope = error_envelope(RateLimitedError(0))

        assert status == 429
        assert envelope.error.details == {"retry_after": 1}

    def test_server_error_message_is_sanitized(self):
        status, envelope = error_envelope(
            ServerError("database error at /srv/authcore/state: password=hunter2")
        )

        assert status == 500
        assert "/srv/authcore" not in envelope.error.message
        assert "hunter2" not in envelope.error.message

    def test_unexpected_exception_is_generic(self):
        status, envelope = error_envelope(RuntimeError("signing key missing at /etc/secret"))

        assert status == 500
        assert envelope.error.code == "server_error"
        assert envelope.error.message == "An internal error occurred"
        assert envelope.error.details is None

    def test_request_id_follows_correlation_scope(self):
        with correlation_scope("call-42"):
            _status, envelope = error_envelope(InvalidCredentials())

        assert envelope.request_id == "call-42"
        assert error_envelope(InvalidCredentials())[1].request_id != "call-42"
