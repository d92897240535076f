import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings

YEAR_MONTH_RE = re.compile(r"^\d{4}-\d{2}$")


@dataclass(frozen=True)
class MonthPeriod:
    year_month: str
    start: date
    end: date


def parse_year_month(year_month: str) -> tuple[int, int]:
    if not year_month or not YEAR_MONTH_RE.match(year_month):
        raise ValueError("Invalid year-month format (expected YYYY-MM)")
    year = int(year_month[:4])
    month = int(year_month[5:7])
    if month < 1 or month > 12:
        raise ValueError("Invalid year or month value")
    return year, month


def format_year_month(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def year_month_of(d: date) -> str:
    return format_year_month(d.year, d.month)


def add_months(year_month: str, count: int) -> str:
    year, month = parse_year_month(year_month)
    total = year * 12 + (month - 1) + count
    return format_year_month(total // 12, total % 12 + 1)


def month_period(year_month: str) -> MonthPeriod:
    year, month = parse_year_month(year_month)
    first = date(year, month, 1)
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return MonthPeriod(year_month, first, next_month - date.resolution)


def resolve_month(year_month: Optional[str], *, today: Optional[date] = None) -> str:
    if year_month:
        parse_year_month(year_month)
        return year_month
    return year_month_of(today or local_today())


def shift_date_by_months(d: date, count: int) -> date:
    target = add_months(year_month_of(d), count)
    period = month_period(target)
    return period.start.replace(day=min(d.day, period.end.day))


def fatura_month_for(purchase_date: date, closing_day: int) -> str:
    """Statement month a purchase lands on.

    Purchases on or before the closing day belong to the current month's
    statement; later purchases roll over to the next one.
    """
    current = year_month_of(purchase_date)
    if purchase_date.day <= closing_day:
        return current
    return add_months(current, 1)


def fatura_closing_date(year_month: str, closing_day: int) -> date:
    year, month = parse_year_month(year_month)
    return date(year, month, closing_day)


def payment_due_date(year_month: str, payment_due_day: int, closing_day: int) -> date:
    """Due date of a statement.

    A due day on or before the closing day can only be paid after the bill
    closes, so it falls in the following month.
    """
    if payment_due_day <= closing_day:
        target = add_months(year_month, 1)
    else:
        target = year_month
    year, month = parse_year_month(target)
    return date(year, month, payment_due_day)


def fatura_window_start(year_month: str, closing_day: int) -> date:
    previous_close = fatura_closing_date(add_months(year_month, -1), closing_day)
    return previous_close + date.resolution


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_local_date(value: datetime, tz_name: Optional[str] = None) -> date:
    """Calendar date of a naive UTC timestamp in the ledger's time zone."""
    tz = ZoneInfo(tz_name or get_settings().timezone)
    return value.replace(tzinfo=timezone.utc).astimezone(tz).date()
