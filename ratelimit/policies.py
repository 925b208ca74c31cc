"""
ratelimit/policies.py -- Named rate policies built from Settings.

Each route class maps to one fixed-window policy. The windows and maxima come
from limits-style rate strings in core/config.py ("5/5 minutes"), parsed with
the same `limits` library slowapi uses, so operators configure every limit in
one familiar notation.
"""

from __future__ import annotations

from dataclasses import dataclass

from limits import RateLimitItem, RateLimitItemPerSecond, parse

from core.config import Settings

GLOBAL = "global"
LOGIN = "login"
REGISTER = "register"
SENSITIVE = "sensitive"


@dataclass(frozen=True)
class RatePolicy:
    name: str
    limit: int
    window_seconds: int

    @classmethod
    def from_rate_string(cls, name: str, rate: str) -> "RatePolicy":
        item = parse(rate)
        return cls(name=name, limit=item.amount, window_seconds=item.get_expiry())

    @property
    def item(self) -> RateLimitItem:
        """The window as a limits item, in whole seconds."""
        return RateLimitItemPerSecond(self.limit, self.window_seconds)


def policies_from_settings(settings: Settings) -> dict[str, RatePolicy]:
    """Return the policy table keyed by route class."""
    rates = {
        GLOBAL: settings.global_rate_limit,
        LOGIN: settings.login_rate_limit,
        REGISTER: settings.register_rate_limit,
        SENSITIVE: settings.sensitive_rate_limit,
    }
    return {name: RatePolicy.from_rate_string(name, rate) for name, rate in rates.items()}
