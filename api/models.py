"""
API request and response models for CampusGuard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
devices/models.py, which own the internal domain representation. Route
handlers map between the two with the from_domain() factories below.

Every response body is an Envelope. Field names inside `data` are snake_case;
the envelope itself uses the camelCase key `statusCode` that existing clients
of the platform already parse.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Account, TokenPair
from devices.models import DeviceChangeEvent, DeviceDecision, DeviceRecord

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class Envelope(BaseModel):
    """Standard wrapper for every success and error response."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    status_code: int = Field(alias="statusCode")
    message: str
    data: Any = None
    code: Optional[str] = None  # stable error code; None on success
    timestamp: str


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ReviewDecisionEnum(str, Enum):
    approve = "approve"
    reject = "reject"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=100, pattern=EMAIL_PATTERN)
    # max_length keeps input well below bcrypt's 72-byte truncation for ASCII.
    password: str = Field(min_length=8, max_length=100)
    name: Optional[str] = Field(default=None, min_length=3, max_length=100)


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=100)
    password: str = Field(min_length=1, max_length=100)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=4096)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=4096)


class DeviceRegisterRequest(BaseModel):
    """The client-derived fingerprint. Only its keyed hash is stored."""

    fingerprint: str = Field(min_length=8, max_length=512)


class UnlockRequest(BaseModel):
    decision: ReviewDecisionEnum = ReviewDecisionEnum.approve


# ---------------------------------------------------------------------------
# Response data models
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    id: int
    email: str
    name: Optional[str]
    role: str
    is_active: bool
    last_login: Optional[datetime]

    @classmethod
    def from_domain(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            email=account.email,
            name=account.name,
            role=account.role,
            is_active=account.is_active,
            last_login=account.last_login,
        )


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str
    expires_in: int
    account: Optional[AccountResponse] = None

    @classmethod
    def from_domain(cls, pair: TokenPair, account: Account | None = None) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
            account=AccountResponse.from_domain(account) if account is not None else None,
        )


class DeviceDecisionResponse(BaseModel):
    verdict: str
    changes_remaining: Optional[int]
    event_id: Optional[int]
    device_id: Optional[int]
    warning: Optional[str] = None

    @classmethod
    def from_domain(cls, decision: DeviceDecision, warning: str | None = None) -> "DeviceDecisionResponse":
        return cls(
            verdict=decision.verdict.value,
            changes_remaining=decision.changes_remaining,
            event_id=decision.event_id,
            device_id=decision.device_id,
            warning=warning,
        )


class DeviceResponse(BaseModel):
    """A device row. The fingerprint hash is never returned."""

    id: int
    is_active: bool
    first_seen_at: Optional[datetime]
    last_seen_at: Optional[datetime]

    @classmethod
    def from_domain(cls, device: DeviceRecord) -> "DeviceResponse":
        return cls(
            id=device.id,
            is_active=device.is_active,
            first_seen_at=device.first_seen_at,
            last_seen_at=device.last_seen_at,
        )


class DeviceChangeEventResponse(BaseModel):
    id: int
    account_id: int
    change_number: int
    status: str
    old_device_id: Optional[int]
    new_device_id: Optional[int]
    created_at: Optional[datetime]
    review_decision: Optional[str]
    reviewed_by: Optional[int]
    reviewed_at: Optional[datetime]

    @classmethod
    def from_domain(cls, event: DeviceChangeEvent) -> "DeviceChangeEventResponse":
        return cls(
            id=event.id,
            account_id=event.account_id,
            change_number=event.change_number,
            status=event.status,
            old_device_id=event.old_device_id,
            new_device_id=event.new_device_id,
            created_at=event.created_at,
            review_decision=event.review_decision,
            reviewed_by=event.reviewed_by,
            reviewed_at=event.reviewed_at,
        )


class DeviceHistoryResponse(BaseModel):
    account_id: int
    state: str
    change_count: int
    changes_remaining: int
    devices: list[DeviceResponse]
    events: list[DeviceChangeEventResponse]


class HealthData(BaseModel):
    status: str = "healthy"
    version: str
    components: dict[str, str]
