"""
auth/credentials.py -- Email/password verification with per-account lockout.

State machine per account:

    Active --(max_failed_logins consecutive failures)--> Locked(until=T)
    Locked --(T elapses)--> Active

authenticate() always does exactly one bcrypt comparison unless the account
is locked, whether or not the email exists [C1]. A locked account is refused
before the password is looked at, so a correct password cannot bypass an
active lock. The final reset is itself conditional on the lock, so a lock set
by a concurrent failure after the row was read still refuses the login.

The failure that trips the lock sends an ACCOUNT_LOCKED notification, best
effort: a notifier outage never changes the outcome.

Every rejection other than ACCOUNT_LOCKED / ACCOUNT_DISABLED is
INVALID_CREDENTIALS, identical for "no such email" and "wrong password".
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from auth.models import Account, Role
from auth.store import AuthStore
from auth.tokens import DUMMY_HASH, hash_password, verify_password
from core.clock import Clock, utc_now
from core.outcomes import AuthError, Rejected
from services.notifications import ACCOUNT_LOCKED, NotificationsService, notify_best_effort

logger = logging.getLogger("campusguard.auth")


def normalize_email(email: str) -> str:
    return email.strip().lower()


class CredentialAuthenticator:
    def __init__(
        self,
        store: AuthStore,
        notifier: NotificationsService,
        *,
        max_failed_logins: int = 5,
        lockout_seconds: int = 30 * 60,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.max_failed_logins = max_failed_logins
        self.lockout = timedelta(seconds=lockout_seconds)
        self._clock = clock

    def authenticate(self, email: str, password: str) -> Account | Rejected:
        """Verify credentials. Returns the Account on success, Rejected otherwise."""
        account = self.store.get_by_email(normalize_email(email))
        if account is None:
            # Equalize timing -- do NOT return before running bcrypt [C1]
            verify_password(password, DUMMY_HASH)
            return Rejected(AuthError.INVALID_CREDENTIALS)

        now = self._clock()
        if account.locked_until is not None:
            if account.is_locked(now):
                return Rejected(AuthError.ACCOUNT_LOCKED)
            if self.store.clear_expired_lock(account.id, account.locked_until):
                logger.info("Lock expired for account_id=%s; counter reset", account.id)

        if not verify_password(password, account.password_hash):
            return self._register_failure(account)

        if not account.is_active:
            return Rejected(AuthError.ACCOUNT_DISABLED)

        if not self.store.record_successful_login(account.id):
            return Rejected(AuthError.ACCOUNT_LOCKED)
        refreshed = self.store.get_by_id(account.id)
        return refreshed if refreshed is not None else account

    def _register_failure(self, account: Account) -> Rejected:
        lock_until = self._clock() + self.lockout
        attempts, locked_until = self.store.record_failed_login(account.id, self.max_failed_logins, lock_until)
        if attempts >= self.max_failed_logins and locked_until is not None:
            if attempts == self.max_failed_logins:
                logger.warning("Account locked after %d failed logins: account_id=%s", attempts, account.id)
                notify_best_effort(self.notifier, account.id, ACCOUNT_LOCKED)
            return Rejected(AuthError.ACCOUNT_LOCKED)
        return Rejected(AuthError.INVALID_CREDENTIALS)

    def register(self, email: str, password: str, name: str | None = None) -> Account | Rejected:
        """Create an active "user" account. EMAIL_TAKEN if the email exists."""
        normalized = normalize_email(email)
        if self.store.get_by_email(normalized) is not None:
            return Rejected(AuthError.EMAIL_TAKEN)
        account = Account(email=normalized, password_hash=hash_password(password), role=Role.USER.value, name=name)
        try:
            account_id = self.store.create_account(account)
        except IntegrityError:
            # A concurrent registration for the same email won the insert.
            return Rejected(AuthError.EMAIL_TAKEN)
        logger.info("Account registered: account_id=%s", account_id)
        created = self.store.get_by_id(account_id)
        if created is None:
            raise RuntimeError("Account not found after insert")
        return created
