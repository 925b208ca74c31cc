"""
api/envelope.py -- Translation between core outcomes and HTTP responses.

Core components return typed outcomes (core/outcomes.py). This module is the
single place that decides which HTTP status and client-facing message each
outcome gets. Route handlers raise http_error(...); the exception handlers in
api/main.py render the envelope.

Messages are fixed strings. Nothing from an exception, a query or a token is
ever interpolated into them.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException
from fastapi.responses import JSONResponse

from api.models import Envelope
from core.outcomes import Allow, AuthError, Deny

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"

_ERRORS: dict[AuthError, tuple[int, str]] = {
    AuthError.INVALID_CREDENTIALS: (401, INVALID_CREDENTIALS_MESSAGE),
    AuthError.ACCOUNT_LOCKED: (401, "Account is locked due to too many failed attempts. Try again later."),
    AuthError.ACCOUNT_DISABLED: (403, "Account is disabled."),
    AuthError.EMAIL_TAKEN: (409, "An account with this email already exists."),
    AuthError.TOKEN_EXPIRED: (401, "Token has expired."),
    AuthError.TOKEN_INVALID: (401, "Invalid or missing token."),
    AuthError.TOKEN_REUSED: (401, "Refresh token was already used. All sessions were revoked; please log in again."),
    AuthError.RATE_LIMITED: (429, "Too many requests, please try again later."),
    AuthError.DEVICE_LOCKED_PENDING_REVIEW: (403, "Too many device changes. Access is locked pending admin review."),
    AuthError.DEVICE_REQUIRED: (403, "A registered device fingerprint is required for this account."),
    AuthError.FORBIDDEN: (403, "Admin access required."),
    AuthError.NOT_FOUND: (404, "Resource not found."),
    AuthError.CONFLICT: (409, "The request conflicts with the current state of the resource."),
    AuthError.SERVICE_UNAVAILABLE: (503, "Service temporarily unavailable. Please retry later."),
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def ok(data: Any = None, *, message: str = "Success", status_code: int = 200) -> Envelope:
    """Success envelope. status_code must match the route's declared status."""
    return Envelope(success=True, status_code=status_code, message=message, data=data, timestamp=_now_iso())


def error_body(status_code: int, code: str, message: str, data: Any = None) -> dict:
    return Envelope(
        success=False,
        status_code=status_code,
        message=message,
        data=data,
        code=code,
        timestamp=_now_iso(),
    ).model_dump(by_alias=True, mode="json")


def http_error(error: AuthError, *, headers: dict[str, str] | None = None, data: Any = None) -> HTTPException:
    """Build the HTTPException for an AuthError. Callers raise the result."""
    status_code, message = _ERRORS[error]
    detail: dict[str, Any] = {"code": error.value, "message": message}
    if data is not None:
        detail["data"] = data
    return HTTPException(status_code=status_code, detail=detail, headers=headers)


def error_response(error: AuthError, *, headers: dict[str, str] | None = None, data: Any = None) -> JSONResponse:
    """Rendered error for code paths outside the exception handlers (middleware)."""
    status_code, message = _ERRORS[error]
    return JSONResponse(
        status_code=status_code,
        content=error_body(status_code, error.value, message, data),
        headers=headers,
    )


# ---------------------------------------------------------------------------
# Rate limit helpers
# ---------------------------------------------------------------------------


def rate_limit_headers(decision: Allow | Deny) -> dict[str, str]:
    """RateLimit-* headers (IETF draft names) plus Retry-After on a denial."""
    if isinstance(decision, Allow):
        return {
            "RateLimit-Limit": str(decision.limit),
            "RateLimit-Remaining": str(decision.remaining),
            "RateLimit-Reset": str(decision.reset_after),
        }
    return {
        "RateLimit-Limit": str(decision.limit),
        "RateLimit-Remaining": "0",
        "RateLimit-Reset": str(decision.retry_after),
        "Retry-After": str(decision.retry_after),
    }


def deny_error(decision: Deny) -> tuple[AuthError, dict[str, str], dict[str, int]]:
    """Map a Deny to (error, headers, data). A store outage is a 503, not a 429."""
    error = AuthError.SERVICE_UNAVAILABLE if decision.reason == "unavailable" else AuthError.RATE_LIMITED
    return error, rate_limit_headers(decision), {"retry_after": decision.retry_after}
