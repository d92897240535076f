from datetime import date, datetime

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from config import get_settings
from database import Base
from models import (
    BillRecurrence,
    BillReminder,
    BillReminderStatus,
    ItemType,
    NotificationJob,
    NotificationStatus,
)
from push import PushSender
from reminders import due_dates_between, next_due_at
from schemas import BillReminderIn, PushTokenIn, RecurrenceRuleIn
from services import (
    BillReminderService,
    PushTokenService,
    RecurrenceService,
    process_pending_notification_jobs,
    schedule_bill_reminder_notifications,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


@pytest.fixture
def utc(monkeypatch):
    monkeypatch.setattr(get_settings(), "timezone", "UTC")


class RecordingPushClient:
    def __init__(self):
        self.sent = []

    def send(self, token, payload):
        self.sent.append((token, payload))
        return "projects/test/messages/1"


def _reminder(recurrence, due_day, start_month="2025-01", **kwargs):
    return BillReminder(
        name="Rent",
        due_day=due_day,
        recurrence_type=recurrence,
        start_month=start_month,
        **kwargs,
    )


def test_monthly_due_day_clamps_to_month_end() -> None:
    reminder = _reminder(BillRecurrence.monthly, 31, due_time="09:00")

    first = next_due_at(reminder, datetime(2025, 2, 1), "UTC")
    assert first == datetime(2025, 2, 28, 9, 0)
    assert next_due_at(reminder, first, "UTC") == datetime(2025, 3, 31, 9, 0)


def test_weekly_due_day_is_a_weekday_from_sunday() -> None:
    # 2025-01-01 is a Wednesday; weekday 1 is Monday.
    reminder = _reminder(BillRecurrence.weekly, 1)
    assert next_due_at(reminder, datetime(2025, 1, 1, 12, 0), "UTC") == datetime(
        2025, 1, 6
    )
    sunday = _reminder(BillRecurrence.weekly, 0)
    assert next_due_at(sunday, datetime(2025, 1, 1, 12, 0), "UTC") == datetime(
        2025, 1, 5
    )


def test_biweekly_steps_from_the_first_due_date() -> None:
    reminder = _reminder(BillRecurrence.biweekly, 5)
    assert next_due_at(reminder, datetime(2025, 1, 5), "UTC") == datetime(2025, 1, 19)
    assert next_due_at(reminder, datetime(2025, 1, 20), "UTC") == datetime(2025, 2, 2)


def test_quarterly_and_yearly_anchor_on_the_start_month() -> None:
    quarterly = _reminder(BillRecurrence.quarterly, 15)
    assert next_due_at(quarterly, datetime(2025, 2, 20), "UTC") == datetime(
        2025, 4, 15
    )
    yearly = _reminder(BillRecurrence.yearly, 10, start_month="2025-03")
    assert next_due_at(yearly, datetime(2025, 4, 1), "UTC") == datetime(2026, 3, 10)


def test_once_and_end_month_finish_the_series() -> None:
    once = _reminder(BillRecurrence.once, 10, start_month="2025-03")
    assert next_due_at(once, datetime(2025, 3, 1), "UTC") == datetime(2025, 3, 10)
    assert next_due_at(once, datetime(2025, 3, 11), "UTC") is None

    bounded = _reminder(BillRecurrence.monthly, 10, end_month="2025-02")
    assert next_due_at(bounded, datetime(2025, 2, 15), "UTC") is None


def test_series_does_not_start_before_its_start_month() -> None:
    reminder = _reminder(BillRecurrence.monthly, 10)
    assert next_due_at(reminder, datetime(2024, 6, 1), "UTC") == datetime(2025, 1, 10)


def test_due_time_is_local_to_the_ledger_time_zone() -> None:
    reminder = _reminder(BillRecurrence.monthly, 10, due_time="09:00")
    assert next_due_at(reminder, datetime(2025, 1, 1), "America/Sao_Paulo") == datetime(
        2025, 1, 10, 12, 0
    )


def test_due_dates_between_is_half_open() -> None:
    reminder = _reminder(BillRecurrence.monthly, 10)
    dues = due_dates_between(
        reminder, datetime(2025, 1, 10), datetime(2025, 4, 10), "UTC"
    )
    assert dues == [datetime(2025, 1, 10), datetime(2025, 2, 10), datetime(2025, 3, 10)]
    with pytest.raises(ValueError, match="after its start"):
        due_dates_between(reminder, datetime(2025, 2, 1), datetime(2025, 1, 1), "UTC")


def _create(session, **overrides):
    data = {
        "name": "Rent",
        "amount_cents": 150_000,
        "due_day": 10,
        "due_time": "09:00",
        "start_month": "2025-01",
    }
    data.update(overrides)
    return BillReminderService(session).create(BillReminderIn(**data))


def test_scheduling_queues_jobs_once(utc) -> None:
    session = make_session()
    rent = _create(session)
    _create(session, name="Gym", due_day=28)
    _create(session, name="Paused", status=BillReminderStatus.paused)
    now = datetime(2025, 1, 5, 12, 0)

    assert schedule_bill_reminder_notifications(session, now) == {
        "scheduled": 3,
        "skipped": 0,
    }
    session.commit()
    jobs = session.scalars(select(NotificationJob).order_by(NotificationJob.id)).all()
    assert {(j.item_type, j.item_id) for j in jobs} == {(ItemType.bill_reminder, rent.id)}
    assert [j.scheduled_at for j in jobs] == [
        datetime(2025, 1, 8, 9, 0),
        datetime(2025, 1, 9, 9, 0),
        datetime(2025, 1, 10, 9, 0),
    ]

    assert schedule_bill_reminder_notifications(session, now) == {
        "scheduled": 0,
        "skipped": 3,
    }


def test_scheduling_skips_times_already_past(utc) -> None:
    session = make_session()
    _create(session, notify_2_days_before=False)

    result = schedule_bill_reminder_notifications(session, datetime(2025, 1, 9, 10, 0))

    assert result == {"scheduled": 1, "skipped": 0}
    job = session.scalar(select(NotificationJob))
    assert job.scheduled_at == datetime(2025, 1, 10, 9, 0)


def test_pending_until_acknowledged(utc) -> None:
    session = make_session()
    rent = _create(session)
    _create(session, name="Gym", due_day=28)
    service = BillReminderService(session)
    now = datetime(2025, 1, 8, 12, 0)

    pending = service.pending(now=now)
    assert [(p.reminder.id, p.days_until) for p in pending] == [(rent.id, 1)]
    assert pending[0].next_due_at == datetime(2025, 1, 10, 9, 0)

    service.acknowledge(rent.id, today=date(2025, 1, 8))
    assert rent.last_acknowledged_month == "2025-01"
    assert service.pending(now=now) == []


def test_bill_reminder_notifications_are_delivered(utc) -> None:
    session = make_session()
    rent = _create(session)
    paused = _create(session, name="Water", due_day=9)
    PushTokenService(session).register(PushTokenIn(token="tok-1"))
    schedule_bill_reminder_notifications(session, datetime(2025, 1, 5, 12, 0))
    paused.status = BillReminderStatus.paused
    session.commit()
    client = RecordingPushClient()

    result = process_pending_notification_jobs(
        session, PushSender(session, client), now=datetime(2025, 1, 8, 10, 0)
    )

    assert result == {"processed": 1, "failed": 0}
    _, payload = client.sent[0]
    assert payload.title == "Bill Reminder: Rent"
    assert payload.body == "Amount due: 1,500.00"
    assert payload.tag == f"bill-reminder-{rent.id}"
    assert payload.type == "bill_reminder"
    cancelled = session.scalars(
        select(NotificationJob).where(
            NotificationJob.item_id == paused.id,
            NotificationJob.status == NotificationStatus.cancelled,
        )
    ).all()
    assert len(cancelled) == 2


def test_deleting_a_reminder_cancels_its_jobs(utc) -> None:
    session = make_session()
    rent = _create(session)
    schedule_bill_reminder_notifications(session, datetime(2025, 1, 5, 12, 0))
    session.commit()

    BillReminderService(session).delete(rent.id)

    statuses = set(session.scalars(select(NotificationJob.status)).all())
    assert statuses == {NotificationStatus.cancelled}
    with pytest.raises(ValueError, match="Bill reminder not found"):
        BillReminderService(session).get(rent.id)


def test_reminder_schedule_window(utc) -> None:
    session = make_session()
    rent = _create(session, due_time=None)
    dues = BillReminderService(session).schedule(
        rent.id, datetime(2025, 1, 1), datetime(2025, 3, 1)
    )
    assert dues == [datetime(2025, 1, 10), datetime(2025, 2, 10)]


def test_reminders_do_not_take_rrules() -> None:
    session = make_session()
    rent = _create(session)
    with pytest.raises(ValueError, match="own schedule"):
        RecurrenceService(session).set_rule(
            RecurrenceRuleIn(
                item_type=ItemType.bill_reminder, item_id=rent.id, rrule="FREQ=MONTHLY"
            )
        )
