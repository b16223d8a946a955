"""Check-in / arm / disarm / panic handlers.

These are the only writers of a condition's ``active``, ``last_checked`` and
``panic_triggered_at``. Every mutation re-runs the reconciler inside the same
transaction and publishes an event once committed.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Sequence, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from deadswitch.core.clock import Clock, to_naive_utc, utcnow
from deadswitch.core.errors import ConditionConfigError, ConditionForbidden, ConditionNotFound
from deadswitch.models.check_in import CheckIn
from deadswitch.models.condition import (
    CHECK_IN_TYPES,
    Condition,
    PANIC_TRIGGER,
    RECURRING,
    SCHEDULED,
)
from deadswitch.models.delivered_message import DeliveredMessage
from deadswitch.models.message import Message
from deadswitch.models.reminder_schedule import REMINDER, ReminderScheduleEntry
from deadswitch.services.cache import TTLCache
from deadswitch.services.deadline import advance_recurring, compute_deadline, validate_condition
from deadswitch.services.events import ConditionAction, ConditionEvent, EventNotifier
from deadswitch.services.reconciler import ReconcileResult, ScheduleReconciler
from deadswitch.services.stores import ConditionStore, ScheduleStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PANIC_KEYWORD = "SOS"

EDITABLE_FIELDS = frozenset({
    "condition_type", "hours_threshold", "minutes_threshold", "trigger_date",
    "recurring_pattern", "panic_config", "reminder_minutes", "recipients",
})


@dataclass
class CheckInResult:
    timestamp: datetime
    method: str
    conditions_updated: int
    panic_triggered: int = 0


@dataclass
class ConditionView:
    """Read snapshot of a condition, safe to cache across sessions."""
    id: int
    message_id: int
    condition_type: str
    active: bool
    hours_threshold: int
    minutes_threshold: int
    trigger_date: datetime | None
    recurring_pattern: dict | None
    panic_config: dict | None
    last_checked: datetime | None
    reminder_minutes: list[int]
    recipients: list[str]
    deadline: datetime | None
    next_reminder_at: datetime | None
    schedule_version: int


class ConditionService:
    def __init__(self, db: Session, events: EventNotifier, cache: TTLCache | None = None, clock: Clock = utcnow):
        self.db = db
        self.events = events
        self.cache = cache
        self.clock = clock
        self.conditions = ConditionStore(db)
        self.schedule = ScheduleStore(db)
        self.reconciler = ScheduleReconciler(db)

    def _transaction(self, fn: Callable[[], T]) -> T:
        """Run ``fn`` and commit; a racing writer's unique violation re-runs it once."""
        try:
            result = fn()
            self.db.commit()
            return result
        except IntegrityError:
            self.db.rollback()
            logger.warning("Concurrent schedule write detected, re-running operation")
            try:
                result = fn()
                self.db.commit()
                return result
            except Exception:
                self.db.rollback()
                raise
        except Exception:
            self.db.rollback()
            raise

    def publish(self, action: ConditionAction, condition: Condition, optimistic: bool = False, user_id: str | None = None) -> None:
        if self.cache is not None:
            self.cache.invalidate(condition.id)
        if user_id is None:
            message = self.conditions.get_message(condition.message_id)
            user_id = message.user_id if message else None
        self.events.publish(ConditionEvent(
            action=action,
            condition_id=condition.id,
            message_id=condition.message_id,
            user_id=user_id,
            optimistic=optimistic,
        ))

    def get_owned(self, condition_id: int, user_id: str) -> Condition:
        condition = self.conditions.get(condition_id)
        message = self.conditions.get_message(condition.message_id)
        if message is None or message.user_id != user_id:
            raise ConditionForbidden(f"Condition {condition_id} does not belong to user {user_id}")
        return condition

    def create(self, user_id: str, message_id: int, config: dict[str, Any], arm: bool = False) -> Condition:
        message = self.db.get(Message, message_id)
        if message is None:
            raise ConditionNotFound(f"Message {message_id} not found")
        if message.user_id != user_id:
            raise ConditionForbidden(f"Message {message_id} does not belong to user {user_id}")
        if self.conditions.get_by_message_id(message_id) is not None:
            raise ConditionConfigError(f"Message {message_id} already has a condition")
        unknown = set(config) - EDITABLE_FIELDS
        if unknown:
            raise ConditionConfigError(f"Unknown condition fields: {', '.join(sorted(unknown))}")
        config = _normalize(config)
        condition = Condition(message_id=message_id, active=False, schedule_version=0, **config)
        validate_condition(condition)

        def _create() -> Condition:
            self.db.add(condition)
            self.db.flush()
            return condition

        self._transaction(_create)
        logger.info(f"Created {condition.condition_type} condition {condition.id} for message {message_id}")
        if arm:
            self.arm(condition.id)
        return condition

    def update_config(self, condition_id: int, changes: dict[str, Any]) -> Condition:
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ConditionConfigError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
        changes = _normalize(changes)
        now = self.clock()

        def _update() -> Condition:
            condition = self.conditions.get(condition_id, for_update=True)
            for key, value in changes.items():
                setattr(condition, key, value)
            validate_condition(condition)
            if condition.active:
                if {"trigger_date", "condition_type"} & set(changes):
                    # an armed switch must never be edited into an immediate release
                    _check_trigger_in_future(condition, now)
                advance_recurring(condition, now)
                self.reconciler.reconcile_condition(condition, now)
            self.db.flush()
            return condition

        condition = self._transaction(_update)
        self.publish(ConditionAction.UPDATE, condition)
        return condition

    def check_in(self, user_id: str, method: str = "app", keyword: str | None = None) -> CheckInResult:
        """Proof of life for every armed condition of the user.

        A check-in that carries the panic keyword of one of the user's armed
        panic conditions also triggers that condition.
        """
        now = self.clock()

        def _check_in() -> list[Condition]:
            self.db.add(CheckIn(user_id=user_id, timestamp=now, method=method))
            touched = []
            for condition in self.conditions.list_active_for_user(user_id):
                condition = self.conditions.get(condition.id, for_update=True)
                if not condition.active:
                    continue
                condition.last_checked = now
                self.reconciler.reconcile_condition(condition, now)
                touched.append(condition)
            self.db.flush()
            return touched

        touched = self._transaction(_check_in)
        logger.info(f"Check-in for user {user_id} via {method}: {len(touched)} condition(s) reset")
        for condition in touched:
            self.publish(ConditionAction.CHECK_IN, condition, user_id=user_id)

        panicked = 0
        if keyword and keyword.strip():
            for condition in touched:
                if condition.condition_type == PANIC_TRIGGER and _panic_keyword(condition) == keyword.strip().casefold():
                    self.trigger_panic(user_id, condition.message_id)
                    panicked += 1
        return CheckInResult(timestamp=now, method=method, conditions_updated=len(touched), panic_triggered=panicked)

    def arm(self, condition_id: int) -> datetime | None:
        """Arm the switch and return the new deadline."""
        now = self.clock()
        condition = self.conditions.get(condition_id)
        validate_condition(condition)
        _check_trigger_in_future(condition, now)
        self.publish(ConditionAction.ARM, condition, optimistic=True)

        def _arm() -> ReconcileResult:
            condition = self.conditions.get(condition_id, for_update=True)
            validate_condition(condition)
            _check_trigger_in_future(condition, now)
            if not condition.active or condition.last_checked is None:
                # a fresh arm (or disarm-then-rearm) restarts the countdown
                condition.last_checked = now
            if condition.condition_type == PANIC_TRIGGER:
                condition.panic_triggered_at = None
            condition.active = True
            advance_recurring(condition, now)
            return self.reconciler.reconcile_condition(condition, now)

        try:
            result = self._transaction(_arm)
        except Exception:
            # the optimistic hint did not hold: tell subscribers to re-read
            self.publish(ConditionAction.UPDATE, condition)
            raise
        logger.info(f"Armed condition {condition_id}, deadline={result.deadline}")
        self.publish(ConditionAction.ARM, condition)
        return result.deadline

    def disarm(self, condition_id: int) -> ReconcileResult:
        """Disarm and cancel every pending entry in the same transaction."""
        now = self.clock()
        condition = self.conditions.get(condition_id)
        self.publish(ConditionAction.DISARM, condition, optimistic=True)

        def _disarm() -> ReconcileResult:
            condition = self.conditions.get(condition_id, for_update=True)
            condition.active = False
            condition.panic_triggered_at = None
            return self.reconciler.reconcile_condition(condition, now)

        try:
            result = self._transaction(_disarm)
        except Exception:
            self.publish(ConditionAction.UPDATE, condition)
            raise
        logger.info(f"Disarmed condition {condition_id}, cancelled {len(result.cancelled)} pending entries")
        self.publish(ConditionAction.DISARM, condition)
        return result

    def trigger_panic(self, user_id: str, message_id: int) -> datetime:
        """Schedule immediate delivery of a panic message (after its cancel window)."""
        now = self.clock()
        condition = self.conditions.get_by_message_id(message_id)
        if condition is None or condition.condition_type != PANIC_TRIGGER or not condition.active:
            raise ConditionNotFound(f"No active panic message {message_id}")
        self.get_owned(condition.id, user_id)
        window = int((condition.panic_config or {}).get("cancel_window_seconds") or 0)
        fire_at = now + timedelta(seconds=max(window, 0))

        def _trigger() -> ReconcileResult:
            locked = self.conditions.get(condition.id, for_update=True)
            locked.panic_triggered_at = fire_at
            return self.reconciler.reconcile_condition(locked, now)

        self._transaction(_trigger)
        logger.warning(f"Panic triggered for message {message_id} by user {user_id}, delivery at {fire_at.isoformat()}")
        self.publish(ConditionAction.UPDATE, condition, user_id=user_id)
        return fire_at

    def complete_final_delivery(self, condition: Condition, entry: ReminderScheduleEntry, now: datetime) -> ConditionAction:
        """Apply the effects of a delivered final message. Caller commits.

        One-shot conditions are disarmed; recurring ones move to their next
        occurrence; panic conditions configured with keep_armed stay armed.
        """
        self.db.add(DeliveredMessage(message_id=condition.message_id, condition_id=condition.id, entry_id=entry.id, delivered_at=now))
        if condition.condition_type == RECURRING and condition.recurring_pattern:
            advance_recurring(condition, now)
            self.reconciler.reconcile_condition(condition, now)
            return ConditionAction.UPDATE
        if condition.condition_type == PANIC_TRIGGER and (condition.panic_config or {}).get("keep_armed"):
            condition.panic_triggered_at = None
            condition.last_checked = now
            self.reconciler.reconcile_condition(condition, now)
            return ConditionAction.UPDATE
        condition.active = False
        self.reconciler.reconcile_condition(condition, now)
        return ConditionAction.DISARM

    def view(self, condition_id: int) -> ConditionView:
        if self.cache is not None:
            cached = self.cache.get(condition_id)
            if cached is not None:
                return cached
        condition = self.conditions.get(condition_id)
        now = self.clock()
        pending = self.schedule.list_pending(condition_id)
        upcoming = [e for e in pending if e.reminder_type == REMINDER and e.scheduled_at > now]
        view = ConditionView(
            id=condition.id,
            message_id=condition.message_id,
            condition_type=condition.condition_type,
            active=condition.active,
            hours_threshold=condition.hours_threshold,
            minutes_threshold=condition.minutes_threshold,
            trigger_date=condition.trigger_date,
            recurring_pattern=condition.recurring_pattern,
            panic_config=condition.panic_config,
            last_checked=condition.last_checked,
            reminder_minutes=list(condition.reminder_minutes or []),
            recipients=list(condition.recipients or []),
            deadline=compute_deadline(condition, now),
            next_reminder_at=upcoming[0].scheduled_at if upcoming else None,
            schedule_version=condition.schedule_version or 0,
        )
        if self.cache is not None:
            self.cache.set(condition_id, view)
        return view

    def upcoming_reminders(self, condition_id: int) -> Sequence[ReminderScheduleEntry]:
        return self.schedule.list_pending(condition_id)

    def next_check_in_deadline(self, user_id: str) -> datetime | None:
        now = self.clock()
        deadlines = [
            d for c in self.conditions.list_active_for_user(user_id)
            if c.condition_type in CHECK_IN_TYPES and (d := compute_deadline(c, now)) is not None
        ]
        return min(deadlines) if deadlines else None

    def delivered_since(self, condition_id: int, since: datetime) -> bool:
        return (
            self.db.query(DeliveredMessage.id)
            .filter(DeliveredMessage.condition_id == condition_id, DeliveredMessage.delivered_at >= since)
            .first()
        ) is not None


def _check_trigger_in_future(condition: Condition, now: datetime) -> None:
    if condition.condition_type == SCHEDULED and condition.trigger_date <= now:
        raise ConditionConfigError("trigger_date is in the past")


def _panic_keyword(condition: Condition) -> str:
    keyword = (condition.panic_config or {}).get("trigger_keyword") or DEFAULT_PANIC_KEYWORD
    return keyword.strip().casefold()


def _normalize(config: dict[str, Any]) -> dict[str, Any]:
    config = dict(config)
    if "trigger_date" in config:
        config["trigger_date"] = to_naive_utc(config["trigger_date"])
    if "reminder_minutes" in config:
        config["reminder_minutes"] = sorted({int(m) for m in (config["reminder_minutes"] or [])}, reverse=True)
    if "recipients" in config:
        config["recipients"] = list(dict.fromkeys(r.strip() for r in (config["recipients"] or []) if r and r.strip()))
    for key in ("hours_threshold", "minutes_threshold"):
        if key in config and config[key] is None:
            config[key] = 0
    return config
