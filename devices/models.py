"""
devices/models.py -- Domain dataclasses and enums for device tracking.

These are pure data containers with zero logic. The thresholds and state
transitions live in devices/policy.py.

Fingerprints are only ever held as keyed hashes (auth.tokens.hash_secret).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class ChangeStatus(str, Enum):
    ALLOWED = "allowed"
    WARNED = "warned"
    LOCKED_PENDING_REVIEW = "locked-pending-review"


class PolicyState(str, Enum):
    UNRESTRICTED = "unrestricted"
    LOCKED_PENDING_REVIEW = "locked-pending-review"


class ReviewDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class DeviceVerdict(str, Enum):
    ALLOW = "allow"
    WARN = "warn"
    LOCKED_PENDING_REVIEW = "locked_pending_review"


@dataclass
class DeviceRecord:
    """A fingerprint seen for an account. At most one row per account is active."""

    account_id: int
    fingerprint_hash: str
    id: int | None = None
    is_active: bool = False
    first_seen_at: datetime | None = None
    last_seen_at: datetime | None = None


@dataclass
class DeviceChangeEvent:
    """Append-only ledger entry for a device registration or change.

    new_device_id stays None while a change is locked pending review; the
    requested fingerprint is kept in requested_fingerprint_hash so an approval
    can activate it. review_* fields are filled once by an admin decision
    (a rejected event may later be approved, never the reverse).
    """

    account_id: int
    change_number: int
    status: str  # ChangeStatus value
    requested_fingerprint_hash: str
    id: int | None = None
    old_device_id: int | None = None
    new_device_id: int | None = None
    created_at: datetime | None = None
    review_decision: str | None = None  # "approved" | "rejected"
    reviewed_by: int | None = None
    reviewed_at: datetime | None = None


@dataclass(frozen=True)
class DeviceDecision:
    """Result of validating a presented fingerprint.

    changes_remaining counts device changes still allowed before the lock;
    None when the account is not under the policy (free tier).
    """

    verdict: DeviceVerdict
    changes_remaining: int | None = None
    event_id: int | None = None
    device_id: int | None = None
