"""
api/guards.py -- Per-route security policy and the authorization pipeline.

Every route declares its requirements by name in ROUTE_POLICIES. One function,
authorize(), evaluates a policy in a fixed order:

  1. rate class    -- RateLimiter.check() on (client IP, class); runs before
                      anything account-specific
  2. bearer token  -- TokenIssuer.validate_access_token(), then the account
                      must still exist and be active
  3. role          -- admin-only routes compare the stored role, not the
                      token claim, so a demotion takes effect immediately
  4. device gate   -- DeviceLockPolicy.check_access() for paid accounts

Routes attach the pipeline with Depends(guard("auth.login")). A policy name
missing from the table fails at import time, not on first request.

The global rate class is not listed here: api/main.py applies it to every
non-GET request in middleware, before routing.

Policy decisions:
  - POST /auth/logout is never device-gated: revoking a session is always allowed.
  - POST /devices/register performs the device check itself.
  - Admin routes are not device-gated so a reviewer cannot lock themselves out.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from fastapi import Request, Response
from slowapi.util import get_remote_address

from api.envelope import deny_error, http_error, rate_limit_headers
from auth.models import AccessClaims, Account, Role
from core.outcomes import AuthError, Deny, Rejected
from devices.models import DeviceDecision, DeviceVerdict
from ratelimit.policies import LOGIN, REGISTER, SENSITIVE

logger = logging.getLogger("campusguard.api")

DEVICE_HEADER = "X-Device-Fingerprint"
DEVICE_WARNING_HEADER = "X-Device-Warning"


@dataclass(frozen=True)
class RoutePolicy:
    rate_class: str | None = None
    authenticated: bool = False
    admin: bool = False
    device: bool = False


ROUTE_POLICIES: dict[str, RoutePolicy] = {
    "auth.register": RoutePolicy(rate_class=REGISTER),
    "auth.login": RoutePolicy(rate_class=LOGIN),
    "auth.refresh": RoutePolicy(rate_class=SENSITIVE),
    "auth.logout": RoutePolicy(authenticated=True),
    "auth.me": RoutePolicy(authenticated=True, device=True),
    "auth.revoke_sessions": RoutePolicy(rate_class=SENSITIVE, authenticated=True, admin=True),
    "devices.register": RoutePolicy(authenticated=True),
    "devices.list": RoutePolicy(authenticated=True, device=True),
    "devices.unlock": RoutePolicy(rate_class=SENSITIVE, authenticated=True, admin=True),
}


@dataclass(frozen=True)
class Principal:
    """The authenticated caller of a request."""

    account: Account
    claims: AccessClaims
    device: DeviceDecision | None = None

    @property
    def is_admin(self) -> bool:
        return self.account.role == Role.ADMIN.value


def client_ip(request: Request) -> str:
    """Client address used as the rate-limit key.

    X-Forwarded-For is honoured only when TRUST_FORWARDED_FOR is set; otherwise
    any client could pick its own bucket by sending the header.
    """
    if request.app.state.settings.trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return get_remote_address(request)


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def authorize(request: Request, response: Response, policy: RoutePolicy) -> Principal | None:
    """Run the pipeline for one request. Raises HTTPException on any refusal.

    Returns the Principal for authenticated policies, None for public ones.
    """
    state = request.app.state

    if policy.rate_class is not None:
        decision = state.rate_limiter.check(client_ip(request), policy.rate_class)
        if isinstance(decision, Deny):
            error, headers, data = deny_error(decision)
            raise http_error(error, headers=headers, data=data)
        response.headers.update(rate_limit_headers(decision))

    if not policy.authenticated:
        return None

    token = _bearer_token(request)
    if token is None:
        raise http_error(AuthError.TOKEN_INVALID, headers={"WWW-Authenticate": "Bearer"})
    claims = state.issuer.validate_access_token(token)
    if isinstance(claims, Rejected):
        raise http_error(claims.error, headers={"WWW-Authenticate": "Bearer"})

    account = state.auth_store.get_by_id(claims.account_id)
    if account is None:
        raise http_error(AuthError.TOKEN_INVALID, headers={"WWW-Authenticate": "Bearer"})
    if not account.is_active:
        raise http_error(AuthError.ACCOUNT_DISABLED)

    if policy.admin and account.role != Role.ADMIN.value:
        raise http_error(AuthError.FORBIDDEN)

    device = None
    if policy.device:
        device = state.device_policy.check_access(account.id, request.headers.get(DEVICE_HEADER))
        if isinstance(device, Rejected):
            raise http_error(device.error)
        if device.verdict is DeviceVerdict.LOCKED_PENDING_REVIEW:
            raise http_error(AuthError.DEVICE_LOCKED_PENDING_REVIEW, data={"event_id": device.event_id})
        if device.verdict is DeviceVerdict.WARN:
            response.headers[DEVICE_WARNING_HEADER] = f"changes-remaining={device.changes_remaining}"

    return Principal(account=account, claims=claims, device=device)


def guard(route_name: str) -> Callable[[Request, Response], Principal | None]:
    """FastAPI dependency factory for a named route policy."""
    policy = ROUTE_POLICIES[route_name]

    def dependency(request: Request, response: Response) -> Principal | None:
        return authorize(request, response, policy)

    dependency.__name__ = f"guard_{route_name.replace('.', '_')}"
    return dependency
