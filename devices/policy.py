"""
devices/policy.py -- Device-change lock for paid-tier accounts.

Policy per paid account (thresholds from Settings, defaults shown):

    change 1, 2, 4, 5  -> ALLOW, new device becomes active
    change 3           -> WARN, new device becomes active, owner notified
    change 6 and later -> LOCKED_PENDING_REVIEW, new device NOT activated,
                          every authenticated request blocked until an admin
                          approves the pending event

The change counter is monotonic. Initial registration of the first device is
recorded as change_number 1 in the ledger but does not advance the counter;
only switching away from the active device does. An admin approval clears the
lock without resetting the counter, so the next change after an approval
locks again.

Free-tier accounts bypass the policy entirely: nothing is recorded and every
fingerprint is allowed.

Notifications are sent after the transaction commits and through
notify_best_effort(), so a notifier outage never changes a decision.
"""

from __future__ import annotations

import logging

from auth.tokens import hash_secret
from core.outcomes import AuthError, Rejected
from devices.models import (
    ChangeStatus,
    DeviceChangeEvent,
    DeviceDecision,
    DeviceVerdict,
    PolicyState,
    ReviewDecision,
)
from devices.store import DeviceStore
from services.notifications import (
    DEVICE_CHANGE_WARNING,
    DEVICE_LOCKED,
    DEVICE_UNLOCKED,
    NotificationsService,
    notify_best_effort,
)
from services.subscriptions import SubscriptionsService

logger = logging.getLogger("campusguard.devices")

_APPROVED = "approved"
_REJECTED = "rejected"


class DeviceLockPolicy:
    def __init__(
        self,
        store: DeviceStore,
        subscriptions: SubscriptionsService,
        notifier: NotificationsService,
        *,
        warn_at: int = 3,
        lock_at: int = 6,
    ) -> None:
        self.store = store
        self.subscriptions = subscriptions
        self.notifier = notifier
        self.warn_at = warn_at
        self.lock_at = lock_at

    def _remaining(self, change_count: int) -> int:
        return max(0, self.lock_at - 1 - change_count)

    def classify(self, change_count: int) -> ChangeStatus:
        """Map a post-increment change counter to the status recorded for it."""
        if change_count >= self.lock_at:
            return ChangeStatus.LOCKED_PENDING_REVIEW
        if change_count == self.warn_at:
            return ChangeStatus.WARNED
        return ChangeStatus.ALLOWED

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_or_register_device(self, account_id: int, fingerprint: str) -> DeviceDecision:
        """Check a presented fingerprint, registering it or recording a change as needed."""
        if not self.subscriptions.is_paid_tier(account_id):
            return DeviceDecision(DeviceVerdict.ALLOW)

        fingerprint_hash = hash_secret(fingerprint)
        with self.store.transaction(account_id) as tx:
            change_count, state = tx.policy()
            if state is PolicyState.LOCKED_PENDING_REVIEW:
                pending = tx.latest_locked_event()
                return DeviceDecision(
                    DeviceVerdict.LOCKED_PENDING_REVIEW,
                    changes_remaining=0,
                    event_id=pending.id if pending else None,
                )

            active = tx.active_device()
            if active is None:
                device_id = tx.activate_fingerprint(fingerprint_hash)
                event_id = tx.insert_event(
                    DeviceChangeEvent(
                        account_id=account_id,
                        change_number=1,
                        status=ChangeStatus.ALLOWED.value,
                        requested_fingerprint_hash=fingerprint_hash,
                        new_device_id=device_id,
                    )
                )
                return DeviceDecision(
                    DeviceVerdict.ALLOW,
                    changes_remaining=self._remaining(change_count),
                    event_id=event_id,
                    device_id=device_id,
                )

            if active.fingerprint_hash == fingerprint_hash:
                tx.touch_device(active.id)
                return DeviceDecision(
                    DeviceVerdict.ALLOW, changes_remaining=self._remaining(change_count), device_id=active.id
                )

            change_count = tx.increment_change_count()
            status = self.classify(change_count)
            new_device_id = None
            if status is ChangeStatus.LOCKED_PENDING_REVIEW:
                tx.set_state(PolicyState.LOCKED_PENDING_REVIEW)
            else:
                new_device_id = tx.activate_fingerprint(fingerprint_hash)
            event_id = tx.insert_event(
                DeviceChangeEvent(
                    account_id=account_id,
                    change_number=change_count,
                    status=status.value,
                    requested_fingerprint_hash=fingerprint_hash,
                    old_device_id=active.id,
                    new_device_id=new_device_id,
                )
            )

        if status is ChangeStatus.LOCKED_PENDING_REVIEW:
            logger.warning("Device change %d locked pending review: account_id=%s", change_count, account_id)
            notify_best_effort(self.notifier, account_id, DEVICE_LOCKED)
            return DeviceDecision(DeviceVerdict.LOCKED_PENDING_REVIEW, changes_remaining=0, event_id=event_id)
        if status is ChangeStatus.WARNED:
            logger.info("Device change %d warned: account_id=%s", change_count, account_id)
            notify_best_effort(self.notifier, account_id, DEVICE_CHANGE_WARNING)
            return DeviceDecision(
                DeviceVerdict.WARN,
                changes_remaining=self._remaining(change_count),
                event_id=event_id,
                device_id=new_device_id,
            )
        return DeviceDecision(
            DeviceVerdict.ALLOW,
            changes_remaining=self._remaining(change_count),
            event_id=event_id,
            device_id=new_device_id,
        )

    def check_access(self, account_id: int, fingerprint: str | None) -> DeviceDecision | Rejected:
        """Gate for device-protected routes.

        Paid accounts must present a fingerprint; without one the request is
        refused (DEVICE_REQUIRED) unless the account is already locked, in
        which case the lock is reported instead.
        """
        if not self.subscriptions.is_paid_tier(account_id):
            return DeviceDecision(DeviceVerdict.ALLOW)
        if not fingerprint:
            _, state = self.store.get_policy_state(account_id)
            if state is PolicyState.LOCKED_PENDING_REVIEW:
                return DeviceDecision(DeviceVerdict.LOCKED_PENDING_REVIEW, changes_remaining=0)
            return Rejected(AuthError.DEVICE_REQUIRED)
        return self.validate_or_register_device(account_id, fingerprint)

    # ------------------------------------------------------------------
    # Admin review
    # ------------------------------------------------------------------

    def admin_review(self, event_id: int, decision: ReviewDecision, reviewer_id: int) -> DeviceChangeEvent | Rejected:
        """Approve or reject a locked device change.

        Only the account's most recent locked event can be reviewed, and only
        while the account is locked. A rejected event can be approved later;
        an approved event is final.
        """
        event = self.store.get_event(event_id)
        if event is None:
            return Rejected(AuthError.NOT_FOUND)
        if event.status != ChangeStatus.LOCKED_PENDING_REVIEW.value or event.review_decision == _APPROVED:
            return Rejected(AuthError.CONFLICT)

        with self.store.transaction(event.account_id) as tx:
            _, state = tx.policy()
            latest = tx.latest_locked_event()
            if state is not PolicyState.LOCKED_PENDING_REVIEW or latest is None or latest.id != event_id:
                return Rejected(AuthError.CONFLICT)
            if decision is ReviewDecision.APPROVE:
                device_id = tx.activate_fingerprint(event.requested_fingerprint_hash)
                tx.record_review(event_id, _APPROVED, reviewer_id, device_id)
                tx.set_state(PolicyState.UNRESTRICTED)
            else:
                tx.record_review(event_id, _REJECTED, reviewer_id, None)

        logger.warning(
            "Device change event %s %s by admin_id=%s (account_id=%s)",
            event_id,
            _APPROVED if decision is ReviewDecision.APPROVE else _REJECTED,
            reviewer_id,
            event.account_id,
        )
        if decision is ReviewDecision.APPROVE:
            notify_best_effort(self.notifier, event.account_id, DEVICE_UNLOCKED)
        reviewed = self.store.get_event(event_id)
        if reviewed is None:
            raise RuntimeError("Device change event disappeared after review")
        return reviewed

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def history(self, account_id: int) -> dict:
        """Devices, change ledger and policy state for one account."""
        change_count, state = self.store.get_policy_state(account_id)
        return {
            "devices": self.store.list_devices(account_id),
            "events": self.store.list_events(account_id),
            "change_count": change_count,
            "state": state,
            "changes_remaining": self._remaining(change_count),
        }
