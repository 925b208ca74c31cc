"""
auth/issuer.py -- Access/refresh token issuance, rotation and revocation.

Refresh tokens are single-use. refresh() revokes the presented token and hands
out a new pair in one store transaction (AuthStore.rotate_refresh_token).

Reuse detection: a correctly signed refresh token that is unknown to the store,
already revoked, or loses a concurrent rotation race means the token was used
twice -- once by its owner and once by someone else. The whole family is
revoked (every outstanding refresh token for the subject) and the caller must
log in again. The revoke-all is the point of the check; returning TOKEN_REUSED
alone would leave the attacker's copy usable.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from auth.models import AccessClaims, Account, RefreshToken, RevokedReason, TokenPair
from auth.store import AuthStore
from auth.tokens import ACCESS, REFRESH, create_access_token, create_refresh_token, decode_token, hash_secret
from core.clock import Clock, utc_now
from core.outcomes import AuthError, Rejected

logger = logging.getLogger("campusguard.auth")


class TokenIssuer:
    def __init__(
        self,
        store: AuthStore,
        *,
        access_ttl_seconds: int = 15 * 60,
        refresh_ttl_seconds: int = 7 * 24 * 60 * 60,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self._clock = clock

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def issue_token_pair(self, account: Account) -> TokenPair:
        """Mint an access/refresh pair and persist the refresh token row."""
        now = self._clock()
        pair, row = self._mint(account, now)
        self.store.insert_refresh_token(row)
        return pair

    def _mint(self, account: Account, now: datetime) -> tuple[TokenPair, RefreshToken]:
        access = create_access_token(account.id, account.role, now, self.access_ttl_seconds)
        refresh = create_refresh_token(account.id, now, self.refresh_ttl_seconds)
        row = RefreshToken(
            account_id=account.id,
            token_hash=hash_secret(refresh),
            expires_at=now + timedelta(seconds=self.refresh_ttl_seconds),
        )
        return TokenPair(access_token=access, refresh_token=refresh, expires_in=self.access_ttl_seconds), row

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_access_token(self, token: str) -> AccessClaims | Rejected:
        """Stateless check: signature, type and expiry only."""
        payload = decode_token(token, ACCESS, self._clock())
        if isinstance(payload, AuthError):
            return Rejected(payload)
        return AccessClaims(
            account_id=int(payload["sub"]),
            role=payload["role"],
            issued_at=datetime.fromtimestamp(int(payload.get("iat", 0)), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
        )

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def refresh(self, presented: str) -> TokenPair | Rejected:
        """Exchange a refresh token for a new pair, revoking the presented one."""
        now = self._clock()
        payload = decode_token(presented, REFRESH, now)
        if isinstance(payload, AuthError):
            return Rejected(payload)
        account_id = int(payload["sub"])
        token_hash = hash_secret(presented)

        row = self.store.get_refresh_token(token_hash)
        if row is None or row.is_revoked or row.account_id != account_id:
            return self._reuse_detected(account_id)
        if row.expires_at <= now:
            return Rejected(AuthError.TOKEN_EXPIRED)

        account = self.store.get_by_id(account_id)
        if account is None or not account.is_active:
            self.store.revoke_all_refresh_tokens(account_id, RevokedReason.ADMIN)
            return Rejected(AuthError.TOKEN_INVALID)

        pair, successor = self._mint(account, now)
        if self.store.rotate_refresh_token(token_hash, successor) is None:
            # Another request rotated this token between our read and write.
            return self._reuse_detected(account_id)
        return pair

    def _reuse_detected(self, account_id: int) -> Rejected:
        revoked = self.store.revoke_all_refresh_tokens(account_id, RevokedReason.REUSE_DETECTED)
        logger.warning("Refresh token reuse detected: account_id=%s revoked=%d", account_id, revoked)
        return Rejected(AuthError.TOKEN_REUSED)

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke(self, account_id: int, refresh_token: str) -> bool:
        """Logout: revoke one refresh token owned by account_id."""
        return self.store.revoke_refresh_token(account_id, hash_secret(refresh_token), RevokedReason.LOGOUT)

    def revoke_all(self, account_id: int, reason: RevokedReason = RevokedReason.ADMIN) -> int:
        """Revoke every outstanding refresh token for account_id."""
        revoked = self.store.revoke_all_refresh_tokens(account_id, reason)
        logger.info("Revoked %d refresh tokens for account_id=%s (%s)", revoked, account_id, reason.value)
        return revoked
