from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from authcore.logging import get_correlation_id, get_logger, sanitize_error_message

logger = get_logger(__name__)


class ServiceError(Exception):
    """Base class for expected, recoverable outcomes reported to the caller.

    Each subclass carries a transport-neutral ``status_code`` (HTTP flavoured)
    and a stable ``error_code``. Anything that is not a ``ServiceError`` is an
    infrastructure fault and is surfaced as ``server_error``.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Input failed validation (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidCredentials(ServiceError):
    """Unknown identifier or wrong password; the two are indistinguishable."""
    status_code = 401
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid credentials", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class AccountLocked(ServiceError):
    status_code = 423
    error_code = "account_locked"

    def __init__(self, remaining_seconds: int, message: Optional[str] = None) -> None:
        self.remaining_seconds = max(0, int(remaining_seconds))
        super().__init__(
            message or "Account temporarily locked due to too many failed attempts",
            detail={"remaining_seconds": self.remaining_seconds},
        )


class AccountNotActive(ServiceError):
    status_code = 403
    error_code = "account_not_active"

    def __init__(self, status: str, message: str = "Account is not active") -> None:
        self.status = status
        super().__init__(message, detail={"status": status})


class SecondFactorRequired(ServiceError):
    """First factor accepted; complete login with the pending-session handle."""
    status_code = 401
    error_code = "second_factor_required"

    def __init__(self, pending_token: str, expires_in: int) -> None:
        self.pending_token = pending_token
        self.expires_in = expires_in
        super().__init__(
            "Second factor required",
            detail={"pending_token": pending_token, "expires_in": expires_in},
        )


class InvalidSecondFactor(ServiceError):
    status_code = 401
    error_code = "invalid_second_factor"

    def __init__(self, message: str = "Invalid verification code", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class TokenExpired(ServiceError):
    status_code = 401
    error_code = "token_expired"

    def __init__(self, message: str = "Token expired", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class TokenInvalid(ServiceError):
    status_code = 401
    error_code = "token_invalid"

    def __init__(self, message: str = "Invalid token", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class TokenReused(TokenInvalid):
    """A retired refresh token was presented again; its family is now revoked.

    Callers see a plain ``TokenInvalid``; ``family`` is kept for auditing.
    """

    def __init__(self, family: str) -> None:
        self.family = family
        super().__init__()


class PasswordReused(ServiceError):
    status_code = 400
    error_code = "password_reused"

    def __init__(
        self, message: str = "Password was used recently; choose a different one"
    ) -> None:
        super().__init__(message)


class WeakPassword(ServiceError):
    status_code = 400
    error_code = "weak_password"

    def __init__(self, failures: list[str]) -> None:
        self.failures = list(failures)
        super().__init__(
            "Password does not meet strength requirements",
            detail={"failures": self.failures},
        )


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate handle or email (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, retry_after: int, message: str = "Too many requests") -> None:
        self.retry_after = max(1, int(retry_after))
        super().__init__(message, detail={"retry_after": self.retry_after})


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


_VALID_ERROR_CODES = frozenset(
    {
        "validation_error",
        "invalid_credentials",
        "account_locked",
        "account_not_active",
        "second_factor_required",
        "invalid_second_factor",
        "token_expired",
        "token_invalid",
        "password_reused",
        "weak_password",
        "not_found",
        "conflict",
        "rate_limited",
        "server_error",
    }
)

_GENERIC_FAILURE = "An internal error occurred"


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def error_envelope(exc: BaseException) -> tuple[int, Envelope]:
    """Map an exception to ``(status_code, Envelope)`` for any transport.

    The envelope reuses the active correlation id as its ``request_id`` so
    a reported error can be matched to its log lines.
    """
    request_id = get_correlation_id() or str(uuid4())
    if isinstance(exc, TokenReused):
        # Reported exactly like any other invalid token
        logger.warning("service_error", error_code="token_invalid", reuse=True)
        body = ErrorBody(code=TokenInvalid.error_code, message="Invalid token")
        return TokenInvalid.status_code, Envelope(status="error", error=body, request_id=request_id)
    if isinstance(exc, ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn("service_error", status_code=exc.status_code, error_code=exc.error_code)
        message = sanitize_error_message(exc.message) if exc.status_code >= 500 else exc.message
        body = ErrorBody(code=exc.error_code, message=message, details=exc.detail or None)
        return exc.status_code, Envelope(status="error", error=body, request_id=request_id)
    logger.exception("unhandled_exception", exc_info=exc)
    body = ErrorBody(code=ServerError.error_code, message=_GENERIC_FAILURE)
    return ServerError.status_code, Envelope(status="error", error=body, request_id=request_id)


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentials",
    "AccountLocked",
    "AccountNotActive",
    "SecondFactorRequired",
    "InvalidSecondFactor",
    "TokenExpired",
    "TokenInvalid",
    "TokenReused",
    "PasswordReused",
    "WeakPassword",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "ErrorBody",
    "Envelope",
    "error_envelope",
]
