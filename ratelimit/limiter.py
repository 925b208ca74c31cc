"""
ratelimit/limiter.py -- Fixed-window request limiter keyed by (route class, client IP).

check() counts the request with limits' FixedWindowRateLimiter.hit(), an
atomic increment in the storage backend, so N concurrent requests against a
window with one slot left produce exactly one Allow. The RateLimit-* numbers
come from get_window_stats() on the same key.

Every request counts, whatever its outcome. The per-account lockout in
auth/credentials.py tracks failed passwords in its own counter; the two are
never shared.

Failure semantics: a storage error yields Deny(reason="unavailable") -- the
limiter fails closed and never retries.
"""

from __future__ import annotations

import logging
import math
import time

from limits.storage import Storage
from limits.strategies import FixedWindowRateLimiter

from core.outcomes import Allow, Deny
from ratelimit.policies import RatePolicy
from ratelimit.store import STORAGE_ERRORS

logger = logging.getLogger("campusguard.ratelimit")

_UNAVAILABLE_RETRY_SECONDS = 30


class RateLimiter:
    def __init__(self, storage: Storage, policies: dict[str, RatePolicy]) -> None:
        self.storage = storage
        self.strategy = FixedWindowRateLimiter(storage)
        self.policies = policies

    def check(self, client_ip: str, route_class: str) -> Allow | Deny:
        """Count one request and decide whether it may proceed.

        Raises KeyError for an unknown route class -- that is a wiring bug,
        not a client error.
        """
        policy = self.policies[route_class]
        item = policy.item
        try:
            allowed = self.strategy.hit(item, route_class, client_ip)
            stats = self.strategy.get_window_stats(item, route_class, client_ip)
        except STORAGE_ERRORS:
            logger.error("Rate limit store unavailable for class=%s; denying", route_class)
            return Deny(limit=policy.limit, retry_after=_UNAVAILABLE_RETRY_SECONDS, reason="unavailable")

        reset_seconds = max(1, math.ceil(stats.reset_time - time.time()))
        if not allowed:
            logger.warning("Rate limit exceeded: class=%s ip=%s", route_class, client_ip)
            return Deny(limit=policy.limit, retry_after=reset_seconds)
        return Allow(limit=policy.limit, remaining=stats.remaining, reset_after=reset_seconds)
