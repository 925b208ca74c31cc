"""
services/notifications.py -- Fire-and-forget account notifications.

Delivery (WhatsApp, email, push) belongs to the notifications module. This
side only hands over (account_id, event_kind). notify_best_effort() is the
only entry point security code uses: a notification failure is logged and
swallowed so it can never change an authentication or device decision.
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger("campusguard.notifications")

DEVICE_CHANGE_WARNING = "device_change_warning"
DEVICE_LOCKED = "device_locked_pending_review"
DEVICE_UNLOCKED = "device_unlocked"
ACCOUNT_LOCKED = "account_locked"


class NotificationsService(Protocol):
    def notify(self, account_id: int, event_kind: str) -> None: ...


class LoggingNotifier:
    """Default notifier: records the event in the application log."""

    def notify(self, account_id: int, event_kind: str) -> None:
        logger.info("Notification queued: account_id=%s kind=%s", account_id, event_kind)


def notify_best_effort(notifier: NotificationsService, account_id: int, event_kind: str) -> bool:
    """Send a notification, never raising. Returns False if delivery failed."""
    try:
        notifier.notify(account_id, event_kind)
    except Exception:
        logger.exception("Notification failed: account_id=%s kind=%s", account_id, event_kind)
        return False
    return True
