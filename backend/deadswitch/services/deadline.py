"""Deadline math for conditions.

Everything here is pure: the current time is always passed in, never read.
"""
import calendar
from datetime import datetime, timedelta
from typing import Any

from deadswitch.core.errors import ConditionConfigError
from deadswitch.models.condition import (
    Condition,
    CHECK_IN_TYPES,
    CONDITION_TYPES,
    DATE_TYPES,
    PANIC_TRIGGER,
    RECURRING,
    SCHEDULED,
)

PATTERN_TYPES = ("daily", "weekly", "monthly", "yearly")
# safety net for next_occurrence on absurd inputs (e.g. trigger_date decades in the past, daily)
_MAX_ADVANCE_STEPS = 100_000


def compute_deadline(condition: Condition, now: datetime) -> datetime | None:
    """Return the moment the condition's message becomes due, or None.

    ``now`` is accepted for contract symmetry with the rest of the engine; the
    result depends only on the condition's stored fields. Recurring conditions
    whose ``trigger_date`` already passed must be advanced by the caller first
    (see ``advance_recurring``).
    """
    if not condition.active:
        return None
    ctype = condition.condition_type
    if ctype in DATE_TYPES:
        return condition.trigger_date
    if ctype in CHECK_IN_TYPES:
        if condition.last_checked is None:
            return None
        return condition.last_checked + threshold_delta(condition)
    if ctype == PANIC_TRIGGER:
        return condition.panic_triggered_at
    return None


def threshold_delta(condition: Condition) -> timedelta:
    return timedelta(hours=condition.hours_threshold or 0, minutes=condition.minutes_threshold or 0)


def _parse_start_time(value: str) -> tuple[int, int]:
    try:
        hh, mm = value.split(":")[:2]
        hour, minute = int(hh), int(mm)
    except (AttributeError, ValueError):
        raise ConditionConfigError(f"Invalid start_time {value!r}, expected HH:MM")
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ConditionConfigError(f"Invalid start_time {value!r}, expected HH:MM")
    return hour, minute


def _add_months(value: datetime, months: int, day: int | None = None) -> datetime:
    total = value.month - 1 + months
    year = value.year + total // 12
    month = total % 12 + 1
    target_day = min(day or value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=target_day)


def _step(pattern: dict[str, Any], value: datetime) -> datetime:
    ptype = pattern["type"]
    interval = int(pattern.get("interval") or 1)
    day = pattern.get("day")
    if ptype == "daily":
        return value + timedelta(days=interval)
    if ptype == "weekly":
        result = value + timedelta(weeks=interval)
        if day is not None:
            # day: 0=Sunday .. 6=Saturday
            current = (result.weekday() + 1) % 7
            result += timedelta(days=(int(day) - current) % 7)
        return result
    if ptype == "monthly":
        return _add_months(value, interval, int(day) if day else None)
    if ptype == "yearly":
        month = pattern.get("month")
        result = _add_months(value, 12 * interval)
        if month:
            last = calendar.monthrange(result.year, int(month))[1]
            result = result.replace(month=int(month), day=min(int(day) if day else result.day, last))
        elif day:
            result = result.replace(day=min(int(day), calendar.monthrange(result.year, result.month)[1]))
        return result
    raise ConditionConfigError(f"Unknown recurring pattern type {ptype!r}")


def next_occurrence(pattern: dict[str, Any], after: datetime, now: datetime) -> datetime:
    """First occurrence of ``pattern`` strictly after ``now``, stepping from ``after``."""
    validate_pattern(pattern)
    start_time = pattern.get("start_time")
    result = after
    for _ in range(_MAX_ADVANCE_STEPS):
        result = _step(pattern, result)
        if start_time:
            hour, minute = _parse_start_time(start_time)
            result = result.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if result > now:
            return result
    raise ConditionConfigError("Recurring pattern does not advance past the current time")


def advance_recurring(condition: Condition, now: datetime) -> bool:
    """Move a recurring condition's past trigger_date to its next occurrence.

    Returns True when the condition was changed.
    """
    if condition.condition_type != RECURRING or condition.trigger_date is None:
        return False
    if condition.trigger_date > now:
        return False
    condition.trigger_date = next_occurrence(condition.recurring_pattern or {}, condition.trigger_date, now)
    return True


def validate_pattern(pattern: dict[str, Any] | None) -> None:
    if not isinstance(pattern, dict):
        raise ConditionConfigError("Recurring condition requires a recurring_pattern")
    ptype = pattern.get("type")
    if ptype not in PATTERN_TYPES:
        raise ConditionConfigError(f"recurring_pattern.type must be one of {', '.join(PATTERN_TYPES)}")
    interval = pattern.get("interval", 1)
    if not isinstance(interval, int) or isinstance(interval, bool) or interval < 1:
        raise ConditionConfigError("recurring_pattern.interval must be a positive integer")
    day = pattern.get("day")
    if day is not None:
        if ptype == "weekly" and not (0 <= int(day) <= 6):
            raise ConditionConfigError("recurring_pattern.day must be 0-6 for weekly patterns")
        if ptype in ("monthly", "yearly") and not (1 <= int(day) <= 31):
            raise ConditionConfigError("recurring_pattern.day must be 1-31")
    month = pattern.get("month")
    if month is not None and not (1 <= int(month) <= 12):
        raise ConditionConfigError("recurring_pattern.month must be 1-12")
    if pattern.get("start_time"):
        _parse_start_time(pattern["start_time"])


def validate_condition(condition: Condition) -> None:
    """Reject settings that cannot produce a deadline. Called before arming and on edits."""
    ctype = condition.condition_type
    if ctype not in CONDITION_TYPES:
        raise ConditionConfigError(f"Unknown condition type {ctype!r}")
    if (condition.hours_threshold or 0) < 0 or (condition.minutes_threshold or 0) < 0:
        raise ConditionConfigError("Thresholds must be non-negative")
    if ctype in CHECK_IN_TYPES and threshold_delta(condition) <= timedelta(0):
        raise ConditionConfigError("Check-in conditions require a positive hours/minutes threshold")
    if ctype == SCHEDULED and condition.trigger_date is None:
        raise ConditionConfigError("Scheduled conditions require a trigger_date")
    if ctype == RECURRING:
        validate_pattern(condition.recurring_pattern)
        if condition.trigger_date is None:
            raise ConditionConfigError("Recurring conditions require a first trigger_date")
    for minutes in condition.reminder_minutes or []:
        if not isinstance(minutes, int) or isinstance(minutes, bool) or minutes < 0:
            raise ConditionConfigError("reminder_minutes must be non-negative integers")
