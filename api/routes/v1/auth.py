"""
api/routes/v1/auth.py -- Registration, login, token refresh and session endpoints.

Routes:
  POST /api/v1/auth/register                        -- create account; returns a token pair (201)
  POST /api/v1/auth/login                           -- email/password login; returns a token pair
  POST /api/v1/auth/refresh                         -- rotate a refresh token
  POST /api/v1/auth/logout                          -- revoke one refresh token (requires auth)
  GET  /api/v1/auth/me                              -- current account (requires auth + device)
  POST /api/v1/auth/accounts/{id}/revoke-sessions   -- revoke every refresh token (admin only)

Security:
  Every route's requirements come from ROUTE_POLICIES via guard(); none are
  checked inline here.
  [C1] CredentialAuthenticator.authenticate() equalizes timing; never inline
       a lookup + bcrypt check in a handler.
  [M5] Cache-Control: no-store on every response that carries tokens,
       including the failures.
  Logout only revokes a token owned by the caller. Someone else's token, or
  an unknown one, gets the same success response.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.envelope import http_error, ok
from api.guards import Principal, guard
from api.models import (
    AccountResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
)
from auth.models import RevokedReason
from core.outcomes import AuthError, Rejected

router = APIRouter()

_NO_STORE = {"Cache-Control": "no-store"}


def _reject(rejected: Rejected):
    return http_error(rejected.error, headers=_NO_STORE)


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, response_model_by_alias=True, status_code=201)
def register(
    request: Request,
    response: Response,
    body: RegisterRequest,
    _: None = Depends(guard("auth.register")),
) -> Envelope:
    """Create a user account and sign it in.

    A taken email is reported as 409. Registration is rate limited per IP, which
    bounds how fast that signal can be used to enumerate accounts.
    """
    account = request.app.state.authenticator.register(body.email, body.password, body.name)
    if isinstance(account, Rejected):
        raise _reject(account)
    pair = request.app.state.issuer.issue_token_pair(account)
    response.headers.update(_NO_STORE)
    return ok(TokenResponse.from_domain(pair, account), message="Account created", status_code=201)


@router.post("/auth/login", response_model=Envelope, response_model_by_alias=True)
def login(
    request: Request,
    response: Response,
    body: LoginRequest,
    _: None = Depends(guard("auth.login")),
) -> Envelope:
    """Authenticate with email and password.

    "No such email" and "wrong password" share one response. A locked account
    gets ACCOUNT_LOCKED whether or not the password was right.
    """
    account = request.app.state.authenticator.authenticate(body.email, body.password)
    if isinstance(account, Rejected):
        raise _reject(account)
    pair = request.app.state.issuer.issue_token_pair(account)
    response.headers.update(_NO_STORE)
    return ok(TokenResponse.from_domain(pair, account), message="Login successful")


@router.post("/auth/refresh", response_model=Envelope, response_model_by_alias=True)
def refresh(
    request: Request,
    response: Response,
    body: RefreshRequest,
    _: None = Depends(guard("auth.refresh")),
) -> Envelope:
    """Exchange a refresh token for a new pair. Each refresh token works once."""
    pair = request.app.state.issuer.refresh(body.refresh_token)
    if isinstance(pair, Rejected):
        raise _reject(pair)
    response.headers.update(_NO_STORE)
    return ok(TokenResponse.from_domain(pair), message="Token refreshed")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=Envelope, response_model_by_alias=True)
def logout(
    request: Request,
    body: LogoutRequest,
    principal: Principal = Depends(guard("auth.logout")),
) -> Envelope:
    request.app.state.issuer.revoke(principal.account.id, body.refresh_token)
    return ok(message="Logged out successfully")


@router.get("/auth/me", response_model=Envelope, response_model_by_alias=True)
def me(principal: Principal = Depends(guard("auth.me"))) -> Envelope:
    """Return the authenticated account."""
    return ok(AccountResponse.from_domain(principal.account))


# ---------------------------------------------------------------------------
# Admin endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/accounts/{account_id}/revoke-sessions", response_model=Envelope, response_model_by_alias=True)
def revoke_sessions(
    request: Request,
    account_id: int,
    principal: Principal = Depends(guard("auth.revoke_sessions")),
) -> Envelope:
    """Revoke every outstanding refresh token of an account. Admin only.

    Access tokens already issued stay valid until they expire (at most the
    access TTL).
    """
    if request.app.state.auth_store.get_by_id(account_id) is None:
        raise http_error(AuthError.NOT_FOUND)
    revoked = request.app.state.issuer.revoke_all(account_id, RevokedReason.ADMIN)
    return ok({"account_id": account_id, "revoked": revoked}, message="Sessions revoked")
