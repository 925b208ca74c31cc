"""
auth/tokens.py -- JWT, password hashing, and keyed-hash utilities.

Security design decisions:
  JWT: python-jose with HS256. Two token kinds share one format
       (header.payload.signature, base64url):
         access  -- {sub, role, iat, exp, type="access"}, signed with SECRET_KEY
         refresh -- {sub, iat, exp, jti, type="refresh"}, signed with
                    REFRESH_SECRET_KEY
       The "type" claim is checked on decode, and the secrets differ, so one
       kind can never be presented as the other. jti makes every refresh token
       unique even when two are minted in the same second.

       Expiry is checked against the caller's clock rather than inside jose,
       so the whole service (lockouts, token rows, JWTs) agrees on one "now".
       jose's require_* options are left off: requiring exp re-enables its
       wall-clock check. Missing sub/exp claims are rejected after decode.

  Passwords: bcrypt directly. The DUMMY_HASH constant, computed with the
       configured cost, lets CredentialAuthenticator burn the same bcrypt time
       for unknown emails as for real ones [C1].

  Keyed hashes: HMAC-SHA256(SECRET_KEY, value) for refresh tokens and device
       fingerprints. Deterministic, so the store can look rows up by hash, and
       a leaked database does not reveal usable tokens.

Layer rule: no imports from api/, devices/, ratelimit/ or services/. Import
from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings
from core.outcomes import AuthError

logger = logging.getLogger("campusguard.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The API layer caps
    passwords at 100 characters; multi-byte input past 72 bytes is accepted
    with that known limitation.
    """
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash: treat as a mismatch, never as a match.
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load with the configured cost so an unknown email
# costs the same bcrypt work as a wrong password.
DUMMY_HASH: str = hash_password("campusguard_timing_dummy")


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(account_id: int, role: str, issued_at: datetime, ttl_seconds: int) -> str:
    """Encode a signed access token valid for ttl_seconds from issued_at."""
    payload = {
        "sub": str(account_id),
        "role": role,
        "type": ACCESS,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + timedelta(seconds=ttl_seconds)).timestamp()),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def create_refresh_token(account_id: int, issued_at: datetime, ttl_seconds: int) -> str:
    """Encode a signed refresh token. The caller must persist its hash."""
    payload = {
        "sub": str(account_id),
        "type": REFRESH,
        "jti": secrets.token_hex(16),
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + timedelta(seconds=ttl_seconds)).timestamp()),
    }
    return jwt.encode(payload, _settings.refresh_secret_key, algorithm=_ALGORITHM)


def decode_token(token: str, token_type: str, now: datetime) -> dict | AuthError:
    """Verify signature, type and expiry. Returns the payload or an AuthError.

    TOKEN_INVALID covers malformed tokens, bad signatures, a wrong "type" and
    missing claims. TOKEN_EXPIRED is returned only for an otherwise valid token.
    """
    secret = _settings.refresh_secret_key if token_type == REFRESH else _settings.secret_key
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[_ALGORITHM],
            options={"verify_exp": False},
        )
    except JWTError:
        return AuthError.TOKEN_INVALID
    if payload.get("type") != token_type:
        return AuthError.TOKEN_INVALID
    try:
        int(payload["sub"])
        expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
    except (KeyError, TypeError, ValueError):
        return AuthError.TOKEN_INVALID
    if token_type == ACCESS and "role" not in payload:
        return AuthError.TOKEN_INVALID
    if expires_at <= now:
        return AuthError.TOKEN_EXPIRED
    return payload


# ---------------------------------------------------------------------------
# Keyed hashing
# ---------------------------------------------------------------------------


def hash_secret(raw: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw) as a hex string.

    Using SECRET_KEY as the HMAC key means an attacker who obtains the DB
    cannot confirm guesses without also knowing SECRET_KEY.
    """
    return hmac.new(
        _settings.secret_key.encode(),
        raw.encode(),
        hashlib.sha256,
    ).hexdigest()
