from datetime import datetime, timedelta

import pytest

from deadswitch.core.errors import ConditionConfigError
from deadswitch.models.condition import Condition
from deadswitch.services.deadline import (
    advance_recurring,
    compute_deadline,
    next_occurrence,
    validate_condition,
)

T0 = datetime(2030, 1, 1, 12, 0, 0)  # a Tuesday


def condition(**kwargs) -> Condition:
    kwargs.setdefault("active", True)
    kwargs.setdefault("hours_threshold", 0)
    kwargs.setdefault("minutes_threshold", 0)
    return Condition(**kwargs)


def test_inactive_condition_has_no_deadline():
    c = condition(condition_type="no_check_in", hours_threshold=24, last_checked=T0, active=False)
    assert compute_deadline(c, T0) is None


def test_check_in_deadline_is_last_checked_plus_threshold():
    c = condition(condition_type="regular_check_in", hours_threshold=2, minutes_threshold=30, last_checked=T0)
    assert compute_deadline(c, T0) == T0 + timedelta(hours=2, minutes=30)


def test_check_in_deadline_without_last_checked_is_none():
    c = condition(condition_type="inactivity_to_date", hours_threshold=1)
    assert compute_deadline(c, T0) is None


def test_date_types_use_trigger_date():
    when = T0 + timedelta(days=3)
    assert compute_deadline(condition(condition_type="scheduled", trigger_date=when), T0) == when
    pattern = {"type": "daily"}
    assert compute_deadline(condition(condition_type="recurring", trigger_date=when, recurring_pattern=pattern), T0) == when


def test_panic_deadline_only_after_trigger():
    c = condition(condition_type="panic_trigger")
    assert compute_deadline(c, T0) is None
    c.panic_triggered_at = T0 + timedelta(seconds=30)
    assert compute_deadline(c, T0) == T0 + timedelta(seconds=30)


def test_deadline_is_deterministic():
    c = condition(condition_type="no_check_in", hours_threshold=24, last_checked=T0)
    assert compute_deadline(c, T0) == compute_deadline(c, T0 + timedelta(hours=5))


@pytest.mark.parametrize("kwargs", [
    {"condition_type": "no_check_in"},
    {"condition_type": "regular_check_in", "hours_threshold": -1, "minutes_threshold": 90},
    {"condition_type": "scheduled"},
    {"condition_type": "recurring", "trigger_date": T0},
    {"condition_type": "recurring", "trigger_date": T0, "recurring_pattern": {"type": "hourly"}},
    {"condition_type": "recurring", "trigger_date": T0, "recurring_pattern": {"type": "weekly", "day": 7}},
    {"condition_type": "no_check_in", "hours_threshold": 1, "reminder_minutes": [-5]},
    {"condition_type": "teleport"},
])
def test_invalid_configs_are_rejected(kwargs):
    with pytest.raises(ConditionConfigError):
        validate_condition(condition(**kwargs))


def test_next_occurrence_daily_skips_past_occurrences():
    result = next_occurrence({"type": "daily"}, T0, T0 + timedelta(days=2, hours=1))
    assert result == T0 + timedelta(days=3)


def test_next_occurrence_weekly_on_day_with_start_time():
    # day 0 = Sunday
    result = next_occurrence({"type": "weekly", "day": 0, "start_time": "09:30"}, T0, T0)
    assert result.weekday() == 6
    assert (result.hour, result.minute) == (9, 30)
    assert T0 < result <= T0 + timedelta(days=14)


def test_next_occurrence_monthly_clamps_to_month_end():
    start = datetime(2030, 1, 31, 8, 0)
    result = next_occurrence({"type": "monthly", "day": 31}, start, start)
    assert result == datetime(2030, 2, 28, 8, 0)


def test_next_occurrence_yearly_with_month():
    start = datetime(2030, 3, 10, 8, 0)
    result = next_occurrence({"type": "yearly", "month": 7, "day": 4}, start, start)
    assert result == datetime(2031, 7, 4, 8, 0)


def test_advance_recurring_only_moves_past_trigger_dates():
    c = condition(condition_type="recurring", trigger_date=T0, recurring_pattern={"type": "daily", "interval": 2})
    assert advance_recurring(c, T0 - timedelta(minutes=1)) is False
    assert c.trigger_date == T0
    assert advance_recurring(c, T0) is True
    assert c.trigger_date == T0 + timedelta(days=2)
