from datetime import timedelta

from sqlalchemy import update

from conftest import FakeSender, T0, make_condition
from deadswitch.models.condition import Condition
from deadswitch.models.delivered_message import DeliveredMessage
from deadswitch.models.notification import Notification
from deadswitch.models.reminder_schedule import (
    FINAL_DELIVERY,
    REMINDER,
    STATUS_CANCELLED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SENT,
)
from deadswitch.services.dispatcher import Dispatcher, backoff_delay
from deadswitch.services.sender import DeliveryResult, InAppNotificationSender, LogNotificationSender
from deadswitch.services.stores import ScheduleStore

DAY = timedelta(hours=24)


def only(db, condition_id, reminder_type):
    return [e for e in ScheduleStore(db).list_for_condition(condition_id) if e.reminder_type == reminder_type]


def test_tick_sends_due_reminder(service, db, dispatcher, sender):
    condition = make_condition(service, db, reminder_minutes=[60])

    report = dispatcher.tick(T0 + timedelta(hours=22))
    assert report.processed == 0

    report = dispatcher.tick(T0 + timedelta(hours=23))
    assert report.sent == 1
    reminder = only(db, condition.id, REMINDER)[0]
    assert reminder.status == STATUS_SENT
    assert reminder.sent_at == T0 + timedelta(hours=23)
    assert sender.calls == [(reminder.id, REMINDER)]
    assert condition.active


def test_retry_then_success_keeps_retry_count(service, db, events):
    sender = FakeSender([False, False, True])
    dispatcher = Dispatcher(db, sender, events)
    condition = make_condition(service, db, reminder_minutes=[60])
    due = T0 + timedelta(hours=23)

    assert dispatcher.tick(due).retried == 1
    reminder = only(db, condition.id, REMINDER)[0]
    assert (reminder.status, reminder.retry_count) == (STATUS_PENDING, 1)
    assert reminder.next_attempt_at == due + backoff_delay(1)
    assert reminder.last_error == "provider unavailable"
    assert reminder.scheduled_at == due

    # still backing off
    assert dispatcher.tick(due + timedelta(seconds=5)).processed == 0

    second = reminder.next_attempt_at
    assert dispatcher.tick(second).retried == 1
    assert reminder.retry_count == 2

    assert dispatcher.tick(reminder.next_attempt_at).sent == 1
    assert (reminder.status, reminder.retry_count) == (STATUS_SENT, 2)


def test_reminder_fails_after_max_retries(service, db, events):
    sender = FakeSender([False] * 10)
    dispatcher = Dispatcher(db, sender, events)
    condition = make_condition(service, db, reminder_minutes=[60])
    now = T0 + timedelta(hours=23)

    for _ in range(3):
        dispatcher.tick(now)
        now += timedelta(hours=1) / 4

    reminder = only(db, condition.id, REMINDER)[0]
    assert (reminder.status, reminder.retry_count) == (STATUS_FAILED, 3)
    assert len(sender.calls) == 3
    assert condition.active


def test_final_delivery_has_larger_retry_budget(service, db, events):
    sender = FakeSender([False] * 10)
    dispatcher = Dispatcher(db, sender, events)
    condition = make_condition(service, db)

    for _ in range(4):
        dispatcher.force_process_condition(condition.id, T0 + DAY)
    final = only(db, condition.id, FINAL_DELIVERY)[0]
    assert (final.status, final.retry_count) == (STATUS_PENDING, 4)

    dispatcher.force_process_condition(condition.id, T0 + DAY)
    assert final.status == STATUS_FAILED
    assert condition.active


def test_sender_exception_counts_as_failed_attempt(service, db, events):
    sender = FakeSender([RuntimeError("smtp down")])
    dispatcher = Dispatcher(db, sender, events)
    condition = make_condition(service, db, reminder_minutes=[60])

    report = dispatcher.tick(T0 + timedelta(hours=23))

    assert report.retried == 1 and report.errors == 0
    reminder = only(db, condition.id, REMINDER)[0]
    assert reminder.last_error == "smtp down"


def test_final_delivery_disarms_and_cancels_rest(service, db, dispatcher):
    condition = make_condition(service, db, reminder_minutes=[60])

    # reminder never went out before the deadline
    report = dispatcher.tick(T0 + DAY)

    assert report.sent == 2
    assert not condition.active
    assert ScheduleStore(db).list_pending(condition.id) == []
    final = only(db, condition.id, FINAL_DELIVERY)[0]
    assert final.status == STATUS_SENT
    delivered = db.query(DeliveredMessage).filter(DeliveredMessage.condition_id == condition.id).all()
    assert [d.entry_id for d in delivered] == [final.id]


def test_final_delivery_cancels_leftover_pending_reminder(service, db, events):
    # the reminder keeps failing and is still backing off when the final goes out
    sender = FakeSender([False, False, True])
    dispatcher = Dispatcher(db, sender, events)
    condition = make_condition(service, db, reminder_minutes=[1])

    dispatcher.tick(T0 + DAY - timedelta(minutes=1))
    dispatcher.tick(T0 + DAY - timedelta(seconds=30))
    reminder = only(db, condition.id, REMINDER)[0]
    assert reminder.next_attempt_at > T0 + DAY

    report = dispatcher.tick(T0 + DAY)

    assert report.sent == 1
    assert reminder.status == STATUS_CANCELLED
    assert not condition.active


def test_recurring_condition_advances_after_delivery(service, db, dispatcher):
    condition = make_condition(
        service, db,
        condition_type="recurring",
        trigger_date=T0 + timedelta(hours=1),
        recurring_pattern={"type": "daily"},
    )

    assert dispatcher.tick(T0 + timedelta(hours=1)).sent == 1

    assert condition.active
    assert condition.trigger_date == T0 + timedelta(hours=25)
    pending = ScheduleStore(db).list_pending(condition.id)
    assert [(e.reminder_type, e.scheduled_at) for e in pending] == [(FINAL_DELIVERY, T0 + timedelta(hours=25))]


def test_keep_armed_panic_stays_armed(service, db, dispatcher):
    condition = make_condition(service, db, condition_type="panic_trigger", panic_config={"keep_armed": True})
    service.trigger_panic("user-1", condition.message_id)

    assert dispatcher.tick(T0).sent == 1
    assert condition.active
    assert condition.panic_triggered_at is None
    assert ScheduleStore(db).list_pending(condition.id) == []


def test_disarm_during_tick_aborts_send(service, db, dispatcher, sender):
    condition = make_condition(service, db)
    due = ScheduleStore(db).list_due_pending(T0 + DAY)
    assert len(due) == 1

    # another worker disarms between batch selection and delivery
    db.execute(update(Condition).where(Condition.id == condition.id).values(active=False))
    db.commit()

    outcome = dispatcher.process_entry(due[0].id, T0 + DAY)

    assert outcome == "cancelled"
    assert due[0].status == STATUS_CANCELLED
    assert sender.calls == []


def test_disarm_before_processing_skips_entry(service, db, dispatcher, sender):
    condition = make_condition(service, db)
    due = ScheduleStore(db).list_due_pending(T0 + DAY)
    service.disarm(condition.id)

    assert dispatcher.process_entry(due[0].id, T0 + DAY) == "skipped"
    assert due[0].status == STATUS_CANCELLED
    assert sender.calls == []


def test_force_process_ignores_backoff(service, db, events):
    sender = FakeSender([False, True])
    dispatcher = Dispatcher(db, sender, events)
    condition = make_condition(service, db, reminder_minutes=[60])
    due = T0 + timedelta(hours=23)

    dispatcher.tick(due)
    assert dispatcher.tick(due).processed == 0

    report = dispatcher.force_process_condition(condition.id, due)
    assert report.sent == 1
    assert only(db, condition.id, REMINDER)[0].status == STATUS_SENT


def test_reset_stuck_requeues_failed_final(service, db, events):
    sender = FakeSender([False] * 5)
    dispatcher = Dispatcher(db, sender, events)
    condition = make_condition(service, db)
    for _ in range(5):
        dispatcher.force_process_condition(condition.id, T0 + DAY)
    assert ScheduleStore(db).list_failed()[0].reminder_type == FINAL_DELIVERY

    result = dispatcher.reset_stuck_reminders(T0 + DAY + timedelta(minutes=10))

    assert result == {"count": 1}
    pending = ScheduleStore(db).list_pending(condition.id)
    assert [(e.reminder_type, e.retry_count) for e in pending] == [(FINAL_DELIVERY, 0)]

    assert dispatcher.tick(T0 + DAY + timedelta(minutes=11)).sent == 1
    assert not condition.active


def test_reset_stuck_restores_missing_final(service, db, dispatcher):
    condition = make_condition(service, db)
    final = only(db, condition.id, FINAL_DELIVERY)[0]
    ScheduleStore(db).update_status(final.id, STATUS_CANCELLED)
    db.commit()

    assert dispatcher.reset_stuck_reminders(T0 + DAY + timedelta(hours=1)) == {"count": 1}
    assert ScheduleStore(db).has_final(condition.id)


def test_reset_stuck_leaves_healthy_and_delivered_conditions_alone(service, db, dispatcher):
    make_condition(service, db)
    delivered = make_condition(service, db, condition_type="recurring", trigger_date=T0 + timedelta(hours=1), recurring_pattern={"type": "daily"})
    dispatcher.tick(T0 + timedelta(hours=1))
    assert delivered.active

    assert dispatcher.reset_stuck_reminders(T0 + timedelta(hours=2)) == {"count": 0}


def test_log_sender_always_succeeds(service, db, events):
    dispatcher = Dispatcher(db, LogNotificationSender(), events)
    condition = make_condition(service, db)

    assert dispatcher.tick(T0 + DAY).sent == 1
    assert not condition.active


def test_disarm_while_sending_keeps_entry_cancelled(service, db, events):
    condition = make_condition(service, db)

    class DisarmingSender:
        def send(self, entry, condition_, message):
            service.disarm(condition.id)
            return DeliveryResult(success=True)

    report = Dispatcher(db, DisarmingSender(), events).tick(T0 + DAY)

    assert (report.sent, report.cancelled) == (0, 1)
    assert only(db, condition.id, FINAL_DELIVERY)[0].status == STATUS_CANCELLED
    assert db.query(DeliveredMessage).count() == 0


def test_reset_stuck_ignores_failed_final_of_an_old_deadline(service, db, events, clock):
    dispatcher = Dispatcher(db, FakeSender([False] * 5), events)
    condition = make_condition(service, db)
    for _ in range(5):
        dispatcher.force_process_condition(condition.id, T0 + DAY)
    assert ScheduleStore(db).list_failed()[0].reminder_type == FINAL_DELIVERY

    # the owner shows up later; the new deadline has its own pending final
    clock.advance(hours=25)
    service.check_in("user-1")

    now = T0 + timedelta(hours=26)
    assert dispatcher.reset_stuck_reminders(now) == {"count": 0}
    assert dispatcher.reset_stuck_reminders(now) == {"count": 0}
    pending = ScheduleStore(db).list_pending(condition.id)
    assert [(e.reminder_type, e.scheduled_at) for e in pending] == [(FINAL_DELIVERY, T0 + timedelta(hours=49))]


class RecordingSockets:
    def __init__(self):
        self.pushed = []

    def push(self, user_id, payload):
        self.pushed.append((user_id, payload["data"]["type"]))


def test_in_app_sender_reminds_owner_and_delivers_to_recipients(service, db, events):
    sockets = RecordingSockets()
    dispatcher = Dispatcher(db, InAppNotificationSender(db, sockets), events)
    condition = make_condition(service, db, reminder_minutes=[60], recipients=["family-1", "lawyer"])

    assert dispatcher.tick(T0 + timedelta(hours=23)).sent == 1
    assert dispatcher.tick(T0 + DAY).sent == 1

    notes = db.query(Notification).order_by(Notification.id).all()
    assert [(n.user_id, n.type) for n in notes] == [
        ("user-1", REMINDER),
        ("family-1", FINAL_DELIVERY),
        ("lawyer", FINAL_DELIVERY),
        ("user-1", FINAL_DELIVERY),
    ]
    assert "delivered to 2 recipient(s)" in notes[-1].message
    assert [user for user, _ in sockets.pushed] == ["user-1", "family-1", "lawyer", "user-1"]
    assert not condition.active


def test_in_app_final_without_recipients_is_retried(service, db, events):
    dispatcher = Dispatcher(db, InAppNotificationSender(db, RecordingSockets()), events)
    condition = make_condition(service, db)

    assert dispatcher.tick(T0 + DAY).retried == 1

    final = only(db, condition.id, FINAL_DELIVERY)[0]
    assert final.last_error == f"Condition {condition.id} has no recipients"
    assert db.query(Notification).count() == 0
    assert condition.active
