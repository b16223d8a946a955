import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import Session

from deadswitch.core.clock import utcnow
from deadswitch.core.config import settings
from deadswitch.core.errors import ConditionNotFound
from deadswitch.db.session import SessionLocal
from deadswitch.models.reminder_schedule import (
    FINAL_DELIVERY,
    ReminderScheduleEntry,
    STATUS_CANCELLED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SENT,
)
from deadswitch.services.cache import TTLCache
from deadswitch.services.conditions import ConditionService
from deadswitch.services.deadline import compute_deadline
from deadswitch.services.events import ConditionAction, EventNotifier
from deadswitch.services.sender import DeliveryResult, NotificationSender
from deadswitch.services.stores import ConditionStore, ScheduleStore

logger = logging.getLogger(__name__)

SENT = "sent"
RETRY = "retry"
FAILED = "failed"
CANCELLED = "cancelled"
SKIPPED = "skipped"


@dataclass
class DispatchReport:
    processed: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    cancelled: int = 0
    errors: int = 0
    entry_ids: list[int] = field(default_factory=list)

    def add(self, entry_id: int, outcome: str) -> None:
        self.processed += 1
        self.entry_ids.append(entry_id)
        if outcome == SENT:
            self.sent += 1
        elif outcome == RETRY:
            self.retried += 1
        elif outcome == FAILED:
            self.failed += 1
        elif outcome == CANCELLED:
            self.cancelled += 1

    def as_dict(self) -> dict:
        return {
            "processed": self.processed, "sent": self.sent, "retried": self.retried,
            "failed": self.failed, "cancelled": self.cancelled, "errors": self.errors,
        }


def backoff_delay(retry_count: int) -> timedelta:
    seconds = settings.retry_backoff_seconds * (2 ** max(retry_count - 1, 0))
    return timedelta(seconds=min(seconds, settings.retry_backoff_max_seconds))


class Dispatcher:
    """Delivers due schedule entries. Only writer of entry status/retry fields."""

    def __init__(self, db: Session, sender: NotificationSender, events: EventNotifier, cache: TTLCache | None = None):
        self.db = db
        self.sender = sender
        self.conditions = ConditionStore(db)
        self.schedule = ScheduleStore(db)
        self.service = ConditionService(db, events, cache)

    def tick(self, now: datetime | None = None) -> DispatchReport:
        now = now or utcnow()
        report = DispatchReport()
        due = self.schedule.list_due_pending(now, limit=settings.dispatch_batch_size)
        if not due:
            return report
        logger.info(f"Dispatch tick at {now.isoformat()}: {len(due)} due entries")
        self._process_batch([e.id for e in due], now, report)
        return report

    def force_process_condition(self, condition_id: int, now: datetime | None = None) -> DispatchReport:
        """Deliver everything currently due for one condition, ignoring retry backoff."""
        now = now or utcnow()
        self.conditions.get(condition_id)
        report = DispatchReport()
        due = self.schedule.list_due_pending(now, condition_id=condition_id, ignore_backoff=True)
        logger.warning(f"Forced processing of condition {condition_id}: {len(due)} due entries")
        self._process_batch([e.id for e in due], now, report)
        return report

    def _process_batch(self, entry_ids: list[int], now: datetime, report: DispatchReport) -> None:
        for entry_id in entry_ids:
            try:
                outcome = self.process_entry(entry_id, now)
            except Exception:
                self.db.rollback()
                report.errors += 1
                logger.exception(f"Unexpected error while dispatching entry {entry_id}")
                continue
            if outcome != SKIPPED:
                report.add(entry_id, outcome)

    def process_entry(self, entry_id: int, now: datetime) -> str:
        entry = self.schedule.get(entry_id)
        if entry is None:
            return SKIPPED
        self.db.refresh(entry)
        if entry.status != STATUS_PENDING:
            return SKIPPED

        # Last-instant guard: the condition row stays locked until the outcome is
        # committed, so a disarm either lands first and wins or waits for the send.
        try:
            condition = self.conditions.get(entry.condition_id, for_update=True)
        except ConditionNotFound:
            condition = None
        if condition is None or not condition.active:
            self.schedule.update_status(entry.id, STATUS_CANCELLED, next_attempt_at=None)
            self.db.commit()
            logger.info(f"Entry {entry.id} cancelled at dispatch: condition {entry.condition_id} is not armed")
            return CANCELLED

        message = self.conditions.get_message(condition.message_id)
        try:
            result = self.sender.send(entry, condition, message)
        except Exception as exc:
            logger.exception(f"Sender raised for entry {entry.id}")
            result = DeliveryResult(success=False, error=str(exc) or exc.__class__.__name__)

        if result.success:
            return self._mark_sent(entry, condition, now)
        return self._mark_failed(entry, condition, now, result.error)

    def _lost_to_concurrent_write(self, entry: ReminderScheduleEntry) -> bool:
        self.db.refresh(entry)
        if entry.status == STATUS_PENDING:
            return False
        self.db.commit()
        logger.warning(f"Entry {entry.id} became {entry.status} while it was being sent; keeping {entry.status}")
        return True

    def _mark_sent(self, entry: ReminderScheduleEntry, condition, now: datetime) -> str:
        if self._lost_to_concurrent_write(entry):
            return CANCELLED
        self.schedule.update_status(entry.id, STATUS_SENT, sent_at=now, last_attempt_at=now, next_attempt_at=None, last_error=None)
        action = ConditionAction.UPDATE
        if entry.reminder_type == FINAL_DELIVERY:
            action = self.service.complete_final_delivery(condition, entry, now)
        self.db.commit()
        logger.info(f"Sent {entry.reminder_type} entry {entry.id} for condition {condition.id} (retries={entry.retry_count})")
        self.service.publish(action, condition)
        return SENT

    def _mark_failed(self, entry: ReminderScheduleEntry, condition, now: datetime, error: str | None) -> str:
        if self._lost_to_concurrent_write(entry):
            return CANCELLED
        retry_count = (entry.retry_count or 0) + 1
        max_retries = settings.final_delivery_max_retries if entry.reminder_type == FINAL_DELIVERY else settings.max_retries
        if retry_count >= max_retries:
            self.schedule.update_status(
                entry.id, STATUS_FAILED,
                retry_count=retry_count, last_attempt_at=now, next_attempt_at=None, last_error=error,
            )
            self.db.commit()
            if entry.reminder_type == FINAL_DELIVERY:
                logger.critical(
                    f"FINAL DELIVERY FAILED for message {entry.message_id} (condition {condition.id}, entry {entry.id}) "
                    f"after {retry_count} attempts: {error}"
                )
            else:
                logger.error(f"Reminder entry {entry.id} failed after {retry_count} attempts: {error}")
            self.service.publish(ConditionAction.UPDATE, condition)
            return FAILED

        next_attempt = now + backoff_delay(retry_count)
        self.schedule.update_status(
            entry.id, STATUS_PENDING,
            retry_count=retry_count, last_attempt_at=now, next_attempt_at=next_attempt, last_error=error,
        )
        self.db.commit()
        logger.warning(f"Delivery of entry {entry.id} failed (attempt {retry_count}/{max_retries}), retry at {next_attempt.isoformat()}: {error}")
        return RETRY

    def _failed_current_deadline(self, entry: ReminderScheduleEntry, now: datetime) -> bool:
        """True if the failed final belongs to the deadline the condition still has."""
        try:
            condition = self.conditions.get(entry.condition_id)
        except ConditionNotFound:
            return False
        deadline = compute_deadline(condition, now)
        if deadline is None:
            return False
        return abs((entry.scheduled_at - deadline).total_seconds()) <= settings.schedule_match_tolerance_seconds

    def reset_stuck_reminders(self, now: datetime | None = None) -> dict:
        """Re-reconcile armed conditions whose schedule drifted from their deadline.

        Anomalies: a failed final delivery, pending entries overdue beyond the
        stuck threshold, or a passed deadline without any live final delivery.
        """
        now = now or utcnow()
        candidates: set[int] = set()
        for entry in self.schedule.list_failed(limit=1000):
            if entry.reminder_type == FINAL_DELIVERY and self._failed_current_deadline(entry, now):
                candidates.add(entry.condition_id)
        stuck_before = now - timedelta(seconds=settings.stuck_after_seconds)
        overdue = self.schedule.list_overdue_pending(stuck_before)
        candidates.update(e.condition_id for e in overdue)
        for condition in self.conditions.list_active_due_before(now):
            if not self.schedule.has_final(condition.id):
                candidates.add(condition.id)

        count = 0
        for condition_id in sorted(candidates):
            try:
                condition = self.conditions.get(condition_id, for_update=True)
                if not condition.active:
                    continue
                deadline = compute_deadline(condition, now)
                if deadline is not None and deadline <= now and self.service.delivered_since(condition_id, deadline):
                    continue
                for entry in overdue:
                    if entry.condition_id == condition_id and entry.status == STATUS_PENDING:
                        entry.next_attempt_at = None
                result = self.service.reconciler.reconcile_condition(condition, now)
                self.db.commit()
            except Exception:
                self.db.rollback()
                logger.exception(f"Failed to repair schedule of condition {condition_id}")
                continue
            count += 1
            logger.warning(
                f"Repaired schedule of condition {condition_id}: inserted={len(result.inserted)} cancelled={len(result.cancelled)}"
            )
            self.service.publish(ConditionAction.UPDATE, condition)
        return {"count": count}


async def dispatch_loop(
    sender_factory: Callable[[Session], NotificationSender],
    events: EventNotifier,
    cache: TTLCache | None = None,
    interval_seconds: float | None = None,
):
    """Singleton periodic dispatcher; run exactly one per deployment."""
    interval = interval_seconds or settings.dispatch_interval_seconds
    await asyncio.sleep(3)
    while True:
        db = SessionLocal()
        try:
            Dispatcher(db, sender_factory(db), events, cache).tick(utcnow())
        except Exception:
            logger.exception("Dispatch tick failed")
            try:
                db.rollback()
            except Exception:
                logger.exception("Rollback after failed tick failed")
        finally:
            db.close()
        await asyncio.sleep(interval)
