"""Make persisted reminder rows match the schedule implied by a condition.

Single place where schedule rows are inserted or cancelled. The condition row
is locked (SELECT ... FOR UPDATE) and the deadline recomputed from it inside
the same transaction, so when two reconciliations race the one that commits
last always worked from the latest condition state; an earlier one cannot
resurrect entries for a stale deadline. The partial unique index on pending
rows backs this up: a losing writer gets an IntegrityError instead of a
duplicate, and the caller re-runs its operation.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Sequence

from sqlalchemy.orm import Session

from deadswitch.core.config import settings
from deadswitch.models.condition import Condition
from deadswitch.models.reminder_schedule import (
    ReminderScheduleEntry,
    STATUS_CANCELLED,
    STATUS_PENDING,
    STATUS_SENT,
)
from deadswitch.services.deadline import compute_deadline
from deadswitch.services.schedule import PlannedEntry, generate_schedule
from deadswitch.services.stores import ConditionStore, ScheduleStore

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    condition_id: int
    deadline: datetime | None
    inserted: list[ReminderScheduleEntry] = field(default_factory=list)
    cancelled: list[ReminderScheduleEntry] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.inserted or self.cancelled)


def _same_slot(reminder_type: str, scheduled_at: datetime, entry: ReminderScheduleEntry, tolerance_seconds: float) -> bool:
    return entry.reminder_type == reminder_type and abs((entry.scheduled_at - scheduled_at).total_seconds()) <= tolerance_seconds


def plan_reconciliation(
    desired: Sequence[PlannedEntry],
    existing: Iterable[ReminderScheduleEntry],
    retained: Sequence[PlannedEntry] | None = None,
    tolerance_seconds: float | None = None,
) -> tuple[list[PlannedEntry], list[ReminderScheduleEntry]]:
    """Diff the wanted schedule against stored rows.

    ``desired`` are entries that must exist (future ones plus the final
    delivery). ``retained`` optionally lists further slots of the same deadline
    that may stay pending if already stored (reminders that became due but
    were not dispatched yet). Returns ``(to_insert, to_cancel)``.
    """
    if tolerance_seconds is None:
        tolerance_seconds = settings.schedule_match_tolerance_seconds
    existing = sorted(existing, key=lambda e: (e.scheduled_at, e.id or 0))
    live = [e for e in existing if e.status in (STATUS_PENDING, STATUS_SENT)]

    to_insert = [
        d for d in desired
        if not any(_same_slot(d.reminder_type, d.scheduled_at, e, tolerance_seconds) for e in live)
    ]

    keep = list(desired) + list(retained or [])
    to_cancel: list[ReminderScheduleEntry] = []
    claimed: list[ReminderScheduleEntry] = []
    for entry in existing:
        if entry.status != STATUS_PENDING:
            continue
        wanted = any(_same_slot(k.reminder_type, k.scheduled_at, entry, tolerance_seconds) for k in keep)
        duplicate = any(_same_slot(c.reminder_type, c.scheduled_at, entry, tolerance_seconds) for c in claimed)
        if wanted and not duplicate:
            claimed.append(entry)
        else:
            to_cancel.append(entry)
    return to_insert, to_cancel


class ScheduleReconciler:
    def __init__(self, db: Session, tolerance_seconds: float | None = None):
        self.db = db
        self.conditions = ConditionStore(db)
        self.schedule = ScheduleStore(db)
        self.tolerance_seconds = tolerance_seconds

    def reconcile(self, condition_id: int, now: datetime) -> ReconcileResult:
        condition = self.conditions.get(condition_id, for_update=True)
        return self.reconcile_condition(condition, now)

    def reconcile_condition(self, condition: Condition, now: datetime) -> ReconcileResult:
        """Reconcile an already loaded (and, for concurrent callers, locked) condition."""
        deadline = compute_deadline(condition, now)
        if deadline is None:
            desired: list[PlannedEntry] = []
            retained: list[PlannedEntry] = []
        else:
            desired = generate_schedule(deadline, condition.reminder_minutes or [], now)
            retained = generate_schedule(deadline, condition.reminder_minutes or [], None)

        existing = self.schedule.list_for_condition(condition.id, (STATUS_PENDING, STATUS_SENT))
        to_insert, to_cancel = plan_reconciliation(desired, existing, retained, self.tolerance_seconds)

        result = ReconcileResult(condition_id=condition.id, deadline=deadline)
        for entry in to_cancel:
            result.cancelled.append(self.schedule.update_status(entry.id, STATUS_CANCELLED, next_attempt_at=None))
        if to_insert:
            result.inserted = self.schedule.insert_many(condition, to_insert)
        if result.changed:
            condition.schedule_version = (condition.schedule_version or 0) + 1
            self.db.flush()
            logger.info(
                f"Reconciled condition {condition.id}: deadline={deadline.isoformat() if deadline else None} "
                f"inserted={len(result.inserted)} cancelled={len(result.cancelled)} version={condition.schedule_version}"
            )
        return result
