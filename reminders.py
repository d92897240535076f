"""Due dates of bill reminders.

A reminder's due day is a local calendar date in the ledger's time zone.
Everything going in and coming out of this module is naive UTC, like the rest
of the stored timestamps.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from dateutil.relativedelta import relativedelta

from config import get_settings
from models import BillRecurrence, BillReminder
from periods import parse_year_month, to_naive_utc, utcnow, year_month_of

MAX_SCHEDULE_ITERATIONS = 366
BIWEEKLY = timedelta(days=14)


def parse_due_time(due_time: Optional[str]) -> time:
    if not due_time:
        return time(0, 0)
    try:
        hours, minutes = (int(part) for part in due_time.split(":"))
        return time(hours, minutes)
    except ValueError as exc:
        raise ValueError("Invalid due time (expected HH:MM)") from exc


def _on_day(year: int, month: int, day: int, at: time) -> datetime:
    # Day 31 in a 30-day month lands on the 30th.
    return datetime.combine(date(year, month, 1) + relativedelta(day=day), at)


def _js_weekday(value: datetime) -> int:
    return (value.weekday() + 1) % 7


def _next_local_due(reminder: BillReminder, after: datetime) -> Optional[datetime]:
    at = parse_due_time(reminder.due_time)
    start_year, start_month = parse_year_month(reminder.start_month)
    first_of_start = datetime(start_year, start_month, 1)
    if after < first_of_start:
        after = first_of_start - timedelta(microseconds=1)
    kind = reminder.recurrence_type

    if kind == BillRecurrence.once:
        due = _on_day(start_year, start_month, reminder.due_day, at)
        return due if due > after else None

    if kind == BillRecurrence.weekly:
        days_until = (reminder.due_day - _js_weekday(after)) % 7
        due = datetime.combine(after.date() + timedelta(days=days_until), at)
        if due <= after:
            due += timedelta(days=7)

    elif kind == BillRecurrence.biweekly:
        due = _on_day(start_year, start_month, reminder.due_day, at)
        if due <= after:
            due += BIWEEKLY * ((after - due) // BIWEEKLY + 1)

    elif kind == BillRecurrence.monthly:
        due = _on_day(after.year, after.month, reminder.due_day, at)
        if due <= after:
            following = after.date().replace(day=1) + relativedelta(months=1)
            due = _on_day(following.year, following.month, reminder.due_day, at)

    elif kind == BillRecurrence.quarterly:
        elapsed = (after.year - start_year) * 12 + after.month - start_month
        step = max(0, elapsed // 3)
        while True:
            month = first_of_start + relativedelta(months=3 * step)
            due = _on_day(month.year, month.month, reminder.due_day, at)
            if due > after:
                break
            step += 1

    elif kind == BillRecurrence.yearly:
        due = _on_day(after.year, start_month, reminder.due_day, at)
        if due <= after:
            due = _on_day(after.year + 1, start_month, reminder.due_day, at)

    else:
        raise ValueError(f"Unsupported recurrence type: {kind}")

    if reminder.end_month and year_month_of(due.date()) > reminder.end_month:
        return None
    return due


def next_due_at(
    reminder: BillReminder,
    after: Optional[datetime] = None,
    tz_name: Optional[str] = None,
) -> Optional[datetime]:
    """First due moment strictly after ``after``, or None when the series ended."""
    tz = ZoneInfo(tz_name or get_settings().timezone)
    after = to_naive_utc(after) if after else utcnow()
    local_after = after.replace(tzinfo=timezone.utc).astimezone(tz).replace(tzinfo=None)
    local_due = _next_local_due(reminder, local_after)
    if local_due is None:
        return None
    return local_due.replace(tzinfo=tz).astimezone(timezone.utc).replace(tzinfo=None)


def due_dates_between(
    reminder: BillReminder,
    start: datetime,
    end: datetime,
    tz_name: Optional[str] = None,
) -> list[datetime]:
    start, end = to_naive_utc(start), to_naive_utc(end)
    if end <= start:
        raise ValueError("Schedule window end must be after its start")
    dues: list[datetime] = []
    cursor = start - timedelta(microseconds=1)
    for _ in range(MAX_SCHEDULE_ITERATIONS):
        due = next_due_at(reminder, cursor, tz_name)
        if due is None or due >= end:
            break
        dues.append(due)
        cursor = due
    return dues
