"""SQLAlchemy-backed adapters for conditions and reminder schedule rows.

The engine only talks to storage through these two classes, so they are the
seam to swap persistence technology. Neither class commits: the caller owns
the transaction.
"""
from datetime import datetime
from typing import Any, Iterable, Sequence

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from deadswitch.core.errors import ConditionNotFound
from deadswitch.models.condition import Condition
from deadswitch.models.message import Message
from deadswitch.models.reminder_schedule import (
    FINAL_DELIVERY,
    ReminderScheduleEntry,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SENT,
)
from deadswitch.services.deadline import compute_deadline
from deadswitch.services.schedule import PlannedEntry

_CONDITION_FIELDS = frozenset({
    "condition_type", "hours_threshold", "minutes_threshold", "trigger_date",
    "recurring_pattern", "panic_config", "panic_triggered_at", "last_checked",
    "active", "reminder_minutes", "recipients", "schedule_version",
})


class ConditionStore:
    def __init__(self, db: Session):
        self.db = db

    def get(self, condition_id: int, for_update: bool = False) -> Condition:
        q = self.db.query(Condition).filter(Condition.id == condition_id)
        if for_update:
            # row lock on Postgres (plain SELECT on SQLite); reload what another transaction committed
            q = q.with_for_update().populate_existing()
        condition = q.first()
        if condition is None:
            raise ConditionNotFound(f"Condition {condition_id} not found")
        return condition

    def get_by_message_id(self, message_id: int) -> Condition | None:
        return self.db.query(Condition).filter(Condition.message_id == message_id).first()

    def get_message(self, message_id: int) -> Message | None:
        return self.db.get(Message, message_id)

    def update(self, condition_id: int, partial: dict[str, Any]) -> Condition:
        unknown = set(partial) - _CONDITION_FIELDS
        if unknown:
            raise ValueError(f"Unknown condition fields: {', '.join(sorted(unknown))}")
        condition = self.get(condition_id)
        for key, value in partial.items():
            setattr(condition, key, value)
        self.db.flush()
        return condition

    def list_active(self) -> Sequence[Condition]:
        return self.db.query(Condition).filter(Condition.active == True).order_by(Condition.id).all()  # noqa: E712

    def list_active_for_user(self, user_id: str) -> Sequence[Condition]:
        return (
            self.db.query(Condition)
            .join(Message, Message.id == Condition.message_id)
            .filter(Message.user_id == user_id, Condition.active == True)  # noqa: E712
            .order_by(Condition.id)
            .all()
        )

    def list_active_due_before(self, timestamp: datetime) -> list[Condition]:
        # Deadlines of check-in conditions are derived, so the filter runs in Python.
        return [
            c for c in self.list_active()
            if (deadline := compute_deadline(c, timestamp)) is not None and deadline <= timestamp
        ]


class ScheduleStore:
    def __init__(self, db: Session):
        self.db = db

    def get(self, entry_id: int) -> ReminderScheduleEntry | None:
        return self.db.get(ReminderScheduleEntry, entry_id)

    def list_pending(self, condition_id: int) -> Sequence[ReminderScheduleEntry]:
        return self.list_for_condition(condition_id, (STATUS_PENDING,))

    def list_for_condition(self, condition_id: int, statuses: Iterable[str] | None = None) -> Sequence[ReminderScheduleEntry]:
        q = self.db.query(ReminderScheduleEntry).filter(ReminderScheduleEntry.condition_id == condition_id)
        if statuses is not None:
            q = q.filter(ReminderScheduleEntry.status.in_(list(statuses)))
        return q.order_by(ReminderScheduleEntry.scheduled_at, ReminderScheduleEntry.id).all()

    def list_due_pending(
        self,
        now: datetime,
        limit: int | None = None,
        condition_id: int | None = None,
        ignore_backoff: bool = False,
    ) -> Sequence[ReminderScheduleEntry]:
        due = ReminderScheduleEntry.scheduled_at <= now
        if not ignore_backoff:
            due = and_(
                due,
                or_(ReminderScheduleEntry.next_attempt_at.is_(None), ReminderScheduleEntry.next_attempt_at <= now),
            )
        q = self.db.query(ReminderScheduleEntry).filter(ReminderScheduleEntry.status == STATUS_PENDING, due)
        if condition_id is not None:
            q = q.filter(ReminderScheduleEntry.condition_id == condition_id)
        q = q.order_by(ReminderScheduleEntry.scheduled_at, ReminderScheduleEntry.id)
        if limit:
            q = q.limit(limit)
        return q.all()

    def list_overdue_pending(self, before: datetime) -> Sequence[ReminderScheduleEntry]:
        return (
            self.db.query(ReminderScheduleEntry)
            .filter(
                ReminderScheduleEntry.status == STATUS_PENDING,
                func.coalesce(ReminderScheduleEntry.next_attempt_at, ReminderScheduleEntry.scheduled_at) <= before,
            )
            .all()
        )

    def list_failed(self, limit: int = 200) -> Sequence[ReminderScheduleEntry]:
        # final deliveries first: those are the ones an operator has to act on
        return (
            self.db.query(ReminderScheduleEntry)
            .filter(ReminderScheduleEntry.status == STATUS_FAILED)
            .order_by((ReminderScheduleEntry.reminder_type == FINAL_DELIVERY).desc(), ReminderScheduleEntry.scheduled_at.desc())
            .limit(limit)
            .all()
        )

    def has_final(self, condition_id: int, statuses: Iterable[str] = (STATUS_PENDING, STATUS_SENT)) -> bool:
        count = (
            self.db.query(func.count(ReminderScheduleEntry.id))
            .filter(
                ReminderScheduleEntry.condition_id == condition_id,
                ReminderScheduleEntry.reminder_type == FINAL_DELIVERY,
                ReminderScheduleEntry.status.in_(list(statuses)),
            )
            .scalar()
        )
        return (count or 0) > 0

    def insert_many(self, condition: Condition, entries: Iterable[PlannedEntry]) -> list[ReminderScheduleEntry]:
        rows = [
            ReminderScheduleEntry(
                condition_id=condition.id,
                message_id=condition.message_id,
                scheduled_at=e.scheduled_at,
                reminder_type=e.reminder_type,
                priority=e.priority,
                status=STATUS_PENDING,
                retry_count=0,
            )
            for e in entries
        ]
        self.db.add_all(rows)
        self.db.flush()
        return rows

    def update_status(self, entry_id: int, status: str, **fields: Any) -> ReminderScheduleEntry:
        entry = self.get(entry_id)
        if entry is None:
            raise LookupError(f"Schedule entry {entry_id} not found")
        entry.status = status
        for key, value in fields.items():
            setattr(entry, key, value)
        self.db.flush()
        return entry
