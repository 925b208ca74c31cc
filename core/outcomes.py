"""
core/outcomes.py -- Typed results returned by the security components.

The authenticator, token issuer, rate limiter and device policy never raise
for an expected rejection. They return one of the frozen dataclasses below and
the API layer (api/envelope.py) translates them into HTTP responses. This keeps
the core logic free of HTTP concerns and testable without a web stack.

AuthError values double as the stable machine-readable error codes exposed in
the response envelope, so renaming a member is a breaking API change.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class AuthError(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_DISABLED = "account_disabled"
    EMAIL_TAKEN = "email_taken"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_INVALID = "token_invalid"
    TOKEN_REUSED = "token_reused"
    RATE_LIMITED = "rate_limited"
    DEVICE_LOCKED_PENDING_REVIEW = "device_locked_pending_review"
    DEVICE_REQUIRED = "device_required"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    SERVICE_UNAVAILABLE = "service_unavailable"


@dataclass(frozen=True)
class Rejected:
    """A refused operation. retry_after is set only for throttling outcomes."""

    error: AuthError
    retry_after: int | None = None


@dataclass(frozen=True)
class Allow:
    """Rate-limit pass. Fields feed the RateLimit-* response headers."""

    limit: int
    remaining: int
    reset_after: int


@dataclass(frozen=True)
class Deny:
    """Rate-limit refusal.

    reason is "limit" when the window is exhausted and "unavailable" when the
    counter store could not be reached (fail closed).
    """

    limit: int
    retry_after: int
    reason: str = "limit"
