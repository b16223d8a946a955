from datetime import datetime, timedelta

from deadswitch.models.reminder_schedule import FINAL_DELIVERY, PRIORITY_CRITICAL, PRIORITY_NORMAL, REMINDER
from deadswitch.services.schedule import generate_schedule, next_reminder

T0 = datetime(2030, 1, 1, 12, 0, 0)
DEADLINE = T0 + timedelta(hours=24)


def test_day_before_reminder_at_arm_time_is_skipped():
    entries = generate_schedule(DEADLINE, [1440, 360, 60, 15], T0)
    assert [e.scheduled_at for e in entries] == [
        T0 + timedelta(hours=18),
        T0 + timedelta(hours=23),
        T0 + timedelta(hours=23, minutes=45),
        DEADLINE,
    ]
    assert [e.reminder_type for e in entries] == [REMINDER, REMINDER, REMINDER, FINAL_DELIVERY]


def test_exactly_one_final_delivery_at_deadline():
    for minutes in ([], [30], [0, 30, 30], [5000]):
        finals = [e for e in generate_schedule(DEADLINE, minutes, T0) if e.reminder_type == FINAL_DELIVERY]
        assert len(finals) == 1
        assert finals[0].scheduled_at == DEADLINE
        assert finals[0].priority == PRIORITY_CRITICAL


def test_no_reminders_in_the_past():
    now = T0 + timedelta(hours=23, minutes=50)
    entries = generate_schedule(DEADLINE, [1440, 360, 60, 15, 5], now)
    reminders = [e for e in entries if e.reminder_type == REMINDER]
    assert [e.offset_minutes for e in reminders] == [5]
    assert all(e.scheduled_at > now for e in reminders)


def test_final_is_kept_when_deadline_already_passed():
    entries = generate_schedule(DEADLINE, [60], DEADLINE + timedelta(hours=1))
    assert len(entries) == 1
    assert entries[0].reminder_type == FINAL_DELIVERY


def test_full_plan_without_now():
    entries = generate_schedule(DEADLINE, [1440, 60], None)
    assert [e.offset_minutes for e in entries] == [1440, 60, 0]


def test_duplicate_and_zero_offsets_collapse():
    entries = generate_schedule(DEADLINE, [60, 60, 0], T0)
    assert len(entries) == 2
    assert [e.reminder_type for e in entries] == [REMINDER, FINAL_DELIVERY]


def test_priority_depends_on_offset():
    entries = generate_schedule(DEADLINE, [360, 60, 15], T0)
    priorities = {e.offset_minutes: e.priority for e in entries if e.reminder_type == REMINDER}
    assert priorities == {360: PRIORITY_NORMAL, 60: PRIORITY_NORMAL, 15: PRIORITY_CRITICAL}


def test_generation_is_deterministic():
    assert generate_schedule(DEADLINE, [15, 360, 60], T0) == generate_schedule(DEADLINE, [60, 15, 360], T0)


def test_next_reminder():
    entries = generate_schedule(DEADLINE, [360, 15], T0)
    assert next_reminder(entries).offset_minutes == 360
    assert next_reminder(generate_schedule(DEADLINE, [], T0)) is None
