"""
services/subscriptions.py -- Subscription tier lookup consumed by the device policy.

The subscriptions module proper (plans, billing, renewals) lives outside this
service. CampusGuard only needs one question answered: is this account on a
paid tier? Anything that implements SubscriptionsService can be wired in at
startup; InMemorySubscriptions backs dev and tests.
"""

from __future__ import annotations

import threading
from typing import Protocol

PAID = "paid"
FREE = "free"


class SubscriptionsService(Protocol):
    def is_paid_tier(self, account_id: int) -> bool: ...


class InMemorySubscriptions:
    """Tier table held in process memory. Unknown accounts are free tier."""

    def __init__(self, tiers: dict[int, str] | None = None) -> None:
        self._lock = threading.Lock()
        self._tiers: dict[int, str] = dict(tiers or {})

    def set_tier(self, account_id: int, tier: str) -> None:
        if tier not in (PAID, FREE):
            raise ValueError(f"Unknown tier: {tier!r}")
        with self._lock:
            self._tiers[account_id] = tier

    def is_paid_tier(self, account_id: int) -> bool:
        with self._lock:
            return self._tiers.get(account_id, FREE) == PAID
