"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts and refresh tokens.

Pattern: Repository + Data Mapper. AuthStore is the repository;
_row_to_account / _row_to_refresh_token are the mappers. Services never touch
SQL directly.

Concurrency:
  Every read-modify-write the security logic depends on is a single
  conditional UPDATE, or an UPDATE followed by a read inside the same
  transaction. The UPDATE takes the row lock (SQLite: the database write
  lock) before anything is read, so concurrent requests serialize on it:

  record_failed_login()  -- increment and lock decision in one statement.
  rotate_refresh_token() -- revoke-if-not-revoked; successor inserted only
                            when this request won the revoke.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Refresh tokens are stored as HMAC hashes, never raw.

Layer rule: no imports from api/, devices/, ratelimit/ or services/.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, case, func, select, text
from sqlalchemy.engine import Engine

from auth.models import Account, RefreshToken, RevokedReason
from core.clock import Clock, from_iso, to_iso, utc_now
from core.db import create_store_engine

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("name", String(100)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("last_login", String(32)),
    Column("created_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("expires_at", String(32), nullable=False),
    Column("is_revoked", Integer, nullable=False, server_default="0"),
    Column("revoked_reason", String(30)),
    Column("created_at", String(32), nullable=False),
    Column("revoked_at", String(32)),
)

# Columns only the credential flow may write.
_LOCKOUT_COLUMNS = {"failed_login_attempts", "locked_until", "last_login"}
_UPDATABLE_COLUMNS = {"name", "role", "is_active", "password_hash"}


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for Account and RefreshToken entities.

    Usage:
        store = AuthStore("sqlite:///campusguard.db")
        account_id = store.create_account(Account(email="a@b.c", password_hash=hash_password("secret")))
        account = store.get_by_email("a@b.c")
        store.close()
    """

    def __init__(self, db_url: str, clock: Clock = utc_now) -> None:
        self.engine: Engine = create_store_engine(db_url)
        self._clock = clock
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by /health."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    # ------------------------------------------------------------------
    # Account queries
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> int:
        """Insert a new account and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Callers treat that as "email taken" -- a concurrent registration may
        have won the race after the caller's own existence check.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.insert().values(
                    email=account.email,
                    password_hash=account.password_hash,
                    role=account.role,
                    name=account.name,
                    is_active=1 if account.is_active else 0,
                    failed_login_attempts=0,
                    created_at=to_iso(self._clock()),
                )
            )
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> Account | None:
        """Look up an account by normalized email. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == email)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_id(self, account_id: int) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def update_account(self, account_id: int, **fields) -> bool:
        """Update profile fields on an existing account.

        Accepted fields: name, role, is_active, password_hash. Lockout state
        is rejected with ValueError -- only the credential flow may change it.

        Returns True if a row was updated, False if account_id was not found.
        """
        forbidden = set(fields) & _LOCKOUT_COLUMNS
        if forbidden:
            raise ValueError(f"Lockout columns are managed by the authenticator: {forbidden!r}")
        unknown = set(fields) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown account fields: {unknown!r}")
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        with self.engine.begin() as conn:
            result = conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**fields))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Lockout state (CredentialAuthenticator only)
    # ------------------------------------------------------------------

    def record_failed_login(self, account_id: int, threshold: int, lock_until: datetime) -> tuple[int, datetime | None]:
        """Atomically increment the failure counter and lock at the threshold.

        Returns (attempts_after_increment, locked_until). The UPDATE reads the
        pre-increment value inside the statement, so a burst of concurrent
        failures cannot all observe the same count.
        """
        attempts = _accounts.c.failed_login_attempts + 1
        with self.engine.begin() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(
                    failed_login_attempts=attempts,
                    locked_until=case((attempts >= threshold, to_iso(lock_until)), else_=_accounts.c.locked_until),
                )
            )
            row = conn.execute(
                select(_accounts.c.failed_login_attempts, _accounts.c.locked_until).where(_accounts.c.id == account_id)
            ).fetchone()
        if row is None:
            return 0, None
        return row.failed_login_attempts, from_iso(row.locked_until)

    def clear_expired_lock(self, account_id: int, observed_locked_until: datetime) -> bool:
        """Return the account to Active once its lock has elapsed.

        Conditional on the lock value the caller observed, so a lock set by a
        concurrent failure in the meantime is left alone.
        """
        observed = to_iso(observed_locked_until)
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where(
                    (_accounts.c.id == account_id)
                    & (_accounts.c.locked_until == observed)
                    & (_accounts.c.locked_until <= to_iso(self._clock()))
                )
                .values(failed_login_attempts=0, locked_until=None)
            )
        return result.rowcount > 0

    def record_successful_login(self, account_id: int) -> bool:
        """Reset the failure counter, clear any lock and stamp last_login.

        Conditional on the account not being locked at this instant, so a lock
        set by a concurrent failure after the caller read the row wins.
        Returns False (and changes nothing) when the account is locked.
        """
        now = to_iso(self._clock())
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where(
                    (_accounts.c.id == account_id)
                    & (_accounts.c.locked_until.is_(None) | (_accounts.c.locked_until <= now))
                )
                .values(failed_login_attempts=0, locked_until=None, last_login=now)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def insert_refresh_token(self, token: RefreshToken) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.insert().values(**_refresh_token_values(token, self._clock())))
            return result.inserted_primary_key[0]

    def get_refresh_token(self, token_hash: str) -> RefreshToken | None:
        """Look up a refresh token by hash, revoked or not."""
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def rotate_refresh_token(self, token_hash: str, successor: RefreshToken) -> int | None:
        """Revoke token_hash as "rotated" and persist its successor, atomically.

        Returns the successor's ID, or None if the token was already revoked
        (another request rotated or revoked it first). In that case nothing is
        written -- exactly one concurrent caller can win a rotation.
        """
        now = self._clock()
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.token_hash == token_hash) & (_refresh_tokens.c.is_revoked == 0))
                .values(is_revoked=1, revoked_reason=RevokedReason.ROTATED.value, revoked_at=to_iso(now))
            )
            if result.rowcount != 1:
                return None
            inserted = conn.execute(_refresh_tokens.insert().values(**_refresh_token_values(successor, now)))
            return inserted.inserted_primary_key[0]

    def revoke_refresh_token(self, account_id: int, token_hash: str, reason: RevokedReason) -> bool:
        """Revoke one outstanding token. account_id is checked to prevent IDOR.

        Returns True if a token was revoked, False if not found, not owned by
        account_id, or already revoked.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.token_hash == token_hash)
                    & (_refresh_tokens.c.account_id == account_id)
                    & (_refresh_tokens.c.is_revoked == 0)
                )
                .values(is_revoked=1, revoked_reason=reason.value, revoked_at=to_iso(self._clock()))
            )
        return result.rowcount > 0

    def revoke_all_refresh_tokens(self, account_id: int, reason: RevokedReason) -> int:
        """Revoke every outstanding token for account_id. Returns how many were revoked."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.account_id == account_id) & (_refresh_tokens.c.is_revoked == 0))
                .values(is_revoked=1, revoked_reason=reason.value, revoked_at=to_iso(self._clock()))
            )
        return result.rowcount

    def count_active_refresh_tokens(self, account_id: int) -> int:
        """Outstanding (non-revoked, unexpired) refresh tokens for account_id."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_refresh_tokens)
                .where(
                    (_refresh_tokens.c.account_id == account_id)
                    & (_refresh_tokens.c.is_revoked == 0)
                    & (_refresh_tokens.c.expires_at > to_iso(self._clock()))
                )
            ).scalar()
        return result or 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _refresh_token_values(token: RefreshToken, now: datetime) -> dict:
    return {
        "account_id": token.account_id,
        "token_hash": token.token_hash,
        "expires_at": to_iso(token.expires_at),
        "is_revoked": 0,
        "created_at": to_iso(now),
    }


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        role=row.role,
        name=row.name,
        is_active=bool(row.is_active),
        failed_login_attempts=row.failed_login_attempts,
        locked_until=from_iso(row.locked_until),
        last_login=from_iso(row.last_login),
        created_at=from_iso(row.created_at),
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        account_id=row.account_id,
        token_hash=row.token_hash,
        expires_at=from_iso(row.expires_at),
        is_revoked=bool(row.is_revoked),
        revoked_reason=row.revoked_reason,
        created_at=from_iso(row.created_at),
        revoked_at=from_iso(row.revoked_at),
    )
