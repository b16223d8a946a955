"""Notification senders used by the dispatch loop.

The engine only decides *when* to notify; a sender decides *how*. Anything
with a ``send(entry, condition, message) -> DeliveryResult`` method works.
"""
import logging
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy.orm import Session

from deadswitch.core.clock import utcnow
from deadswitch.core.config import settings
from deadswitch.models.condition import Condition
from deadswitch.models.message import Message
from deadswitch.models.notification import Notification
from deadswitch.models.reminder_schedule import FINAL_DELIVERY, ReminderScheduleEntry
from deadswitch.services.notification_ws import NotificationConnectionManager, manager

logger = logging.getLogger(__name__)


@dataclass
class DeliveryResult:
    success: bool
    error: str | None = None


class NotificationSender(Protocol):
    def send(self, entry: ReminderScheduleEntry, condition: Condition, message: Message | None) -> DeliveryResult: ...


def describe(entry: ReminderScheduleEntry, message: Message | None) -> str:
    title = (message.title if message else "") or f"message #{entry.message_id}"
    if entry.reminder_type == FINAL_DELIVERY:
        return f"Delivering '{title}': the check-in deadline has passed."
    return f"Reminder: '{title}' will be delivered at {entry.scheduled_at.isoformat()} unless you check in."


def _audience(entry, condition, message) -> list[str]:
    if entry.reminder_type == FINAL_DELIVERY:
        return list(condition.recipients or [])
    return [message.user_id] if message else []


class LogNotificationSender:
    """Dev channel: only logs what would be sent."""

    def send(self, entry, condition, message):
        logger.info(f"[dev] would send {entry.reminder_type} for condition {condition.id} to {_audience(entry, condition, message)}: {describe(entry, message)}")
        return DeliveryResult(success=True)


class InAppNotificationSender:
    """Stores notifications and pushes them to open sockets.

    Reminders go to the message owner. The final delivery goes to every
    recipient of the condition, and the owner gets a delivery receipt.
    """

    def __init__(self, db: Session, ws_manager: NotificationConnectionManager):
        self.db = db
        self.ws_manager = ws_manager

    def send(self, entry, condition, message):
        if message is None:
            return DeliveryResult(success=False, error=f"Message {entry.message_id} not found")
        text = describe(entry, message)
        if entry.reminder_type != FINAL_DELIVERY:
            self._notify(message.user_id, entry, text)
            return DeliveryResult(success=True)

        recipients = list(condition.recipients or [])
        if not recipients:
            return DeliveryResult(success=False, error=f"Condition {condition.id} has no recipients")
        for user_id in recipients:
            self._notify(user_id, entry, text)
        self._notify(message.user_id, entry, f"'{message.title or entry.message_id}' was delivered to {len(recipients)} recipient(s).")
        return DeliveryResult(success=True)

    def _notify(self, user_id: str, entry: ReminderScheduleEntry, text: str) -> Notification:
        n = Notification(user_id=user_id, type=entry.reminder_type, message=text, entry_id=entry.id, created_at=utcnow())
        self.db.add(n)
        self.db.flush()
        self.ws_manager.push(user_id, {
            "type": "notification",
            "data": {"id": n.id, "type": n.type, "message": text, "created_at": n.created_at.isoformat()},
        })
        return n


def build_sender(db: Session) -> NotificationSender:
    """Sender for the configured NOTIFICATION_CHANNEL."""
    if settings.notification_channel == "log":
        return LogNotificationSender()
    return InAppNotificationSender(db, manager)
