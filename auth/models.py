"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data containers, one read-only helper). Mirrors the approach
in devices/models.py -- dataclasses own domain shape; stores and services do
the work.

Timestamps are aware UTC datetimes in the domain layer. auth/store.py
converts them to the fixed-width ISO strings described in core/clock.py.

Layer rule: no imports from api/, devices/, ratelimit/ or services/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    ADMIN = "admin"
    USER = "user"


class RevokedReason(str, Enum):
    LOGOUT = "logout"
    ROTATED = "rotated"
    REUSE_DETECTED = "reuse-detected"
    ADMIN = "admin"


@dataclass
class Account:
    """A login identity.

    failed_login_attempts and locked_until are owned by CredentialAuthenticator.
    No other code path writes them; generic profile updates go through
    AuthStore.update_account(), which refuses those two columns.

    id is None before the record is written to the database.
    """

    email: str
    password_hash: str
    role: str = Role.USER.value
    id: int | None = None
    name: str | None = None
    is_active: bool = True
    failed_login_attempts: int = 0
    locked_until: datetime | None = None
    last_login: datetime | None = None
    created_at: datetime | None = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class RefreshToken:
    """Server-side record of an issued refresh token.

    token_hash is HMAC-SHA256(SECRET_KEY, raw token). The raw token is handed
    to the client once and never persisted. Revoked rows are kept as an audit
    trail and never updated again.
    """

    account_id: int
    token_hash: str
    expires_at: datetime
    id: int | None = None
    is_revoked: bool = False
    revoked_reason: str | None = None
    created_at: datetime | None = None
    revoked_at: datetime | None = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime in seconds
    token_type: str = "bearer"  # noqa: S105 # nosec B105 -- token type label, not a password


@dataclass(frozen=True)
class AccessClaims:
    """Verified contents of an access token."""

    account_id: int
    role: str
    issued_at: datetime
    expires_at: datetime
