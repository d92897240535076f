from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from itertools import takewhile
from typing import Iterator, Literal, Optional

from dateutil.rrule import rrulebase, rrulestr

from periods import to_naive_utc

Frequency = Literal["DAILY", "WEEKLY", "MONTHLY", "YEARLY"]


class RecurrenceRuleError(ValueError):
    pass


@dataclass(frozen=True)
class Occurrence:
    index: int
    start_at: datetime
    end_at: Optional[datetime] = None
    due_at: Optional[datetime] = None


def _restore_tz(value: datetime, like: datetime) -> datetime:
    if like.tzinfo is None:
        return value
    return value.replace(tzinfo=timezone.utc).astimezone(like.tzinfo)


def parse_rrule(rrule_string: str, dtstart: Optional[datetime] = None) -> rrulebase:
    if not rrule_string or not rrule_string.strip():
        raise RecurrenceRuleError("Invalid RRULE: rule is empty")
    kwargs: dict[str, object] = {"ignoretz": True}
    if dtstart is not None:
        kwargs["dtstart"] = to_naive_utc(dtstart)
    try:
        return rrulestr(rrule_string.strip(), **kwargs)
    except (ValueError, TypeError, KeyError, IndexError) as exc:
        raise RecurrenceRuleError(f"Invalid RRULE: {exc or 'unparseable rule'}") from exc


def is_valid_rrule(rrule_string: str) -> bool:
    try:
        parse_rrule(rrule_string)
    except RecurrenceRuleError:
        return False
    return True


def _check_window(start: datetime, end: Optional[datetime]) -> None:
    if start is None or end is None:
        raise ValueError("Recurrence expansion needs a bounded window")
    if to_naive_utc(end) <= to_naive_utc(start):
        raise ValueError("Recurrence window end must be after its start")


def expand_occurrences(
    rrule_string: str,
    window_start: datetime,
    window_end: datetime,
    base_start_at: datetime,
    base_end_at: Optional[datetime] = None,
    base_due_at: Optional[datetime] = None,
    duration_minutes: Optional[int] = None,
) -> Iterator[Occurrence]:
    """Lazily project a recurring item onto ``[window_start, window_end)``.

    ``index`` is the position of each occurrence in the whole series counted
    from the base start, so it does not depend on the window. Events keep
    their base duration (``end_at``); tasks keep the offset between their
    base start and due time (``due_at``), or ``duration_minutes`` when
    the task has no due time of its own.
    """
    _check_window(window_start, window_end)
    rule = parse_rrule(rrule_string, dtstart=base_start_at)
    return _iter_occurrences(
        rule,
        to_naive_utc(window_start),
        to_naive_utc(window_end),
        base_start_at,
        base_end_at,
        base_due_at,
        duration_minutes,
    )


def _iter_occurrences(
    rule: rrulebase,
    start: datetime,
    end: datetime,
    base_start_at: datetime,
    base_end_at: Optional[datetime],
    base_due_at: Optional[datetime],
    duration_minutes: Optional[int],
) -> Iterator[Occurrence]:
    base_start = to_naive_utc(base_start_at)
    duration = to_naive_utc(base_end_at) - base_start if base_end_at else None
    due_offset = to_naive_utc(base_due_at) - base_start if base_due_at else None

    preceding = sum(1 for _ in takewhile(lambda o: o < start, rule))
    for index, occurrence in enumerate(rule.xafter(start, inc=True), start=preceding):
        if occurrence >= end:
            return
        end_at = occurrence + duration if duration is not None else None
        if due_offset is not None:
            due_at = occurrence + due_offset
        elif duration_minutes:
            due_at = occurrence + timedelta(minutes=duration_minutes)
        else:
            due_at = None
        yield Occurrence(
            index=index,
            start_at=_restore_tz(occurrence, base_start_at),
            end_at=_restore_tz(end_at, base_start_at) if end_at else None,
            due_at=_restore_tz(due_at, base_start_at) if due_at else None,
        )


def occurrences_between(
    rrule_string: str, start: datetime, end: datetime, dtstart: Optional[datetime] = None
) -> list[datetime]:
    _check_window(start, end)
    rule = parse_rrule(rrule_string, dtstart=dtstart)
    return [
        occurrence
        for occurrence in rule.between(to_naive_utc(start), to_naive_utc(end), inc=True)
        if occurrence < to_naive_utc(end)
    ]


def next_occurrence(
    rrule_string: str, from_date: datetime, dtstart: Optional[datetime] = None
) -> Optional[datetime]:
    rule = parse_rrule(rrule_string, dtstart=dtstart)
    return rule.after(to_naive_utc(from_date))


def build_rrule(
    frequency: Frequency,
    interval: int = 1,
    count: Optional[int] = None,
    until: Optional[datetime] = None,
) -> str:
    if frequency not in ("DAILY", "WEEKLY", "MONTHLY", "YEARLY"):
        raise RecurrenceRuleError(f"Invalid RRULE: unsupported frequency {frequency}")
    if interval < 1:
        raise RecurrenceRuleError("Invalid RRULE: interval must be positive")
    if count is not None and until is not None:
        raise RecurrenceRuleError("Invalid RRULE: COUNT and UNTIL are exclusive")
    parts = [f"FREQ={frequency}", f"INTERVAL={interval}"]
    if count:
        parts.append(f"COUNT={count}")
    if until:
        parts.append(f"UNTIL={to_naive_utc(until).strftime('%Y%m%dT%H%M%SZ')}")
    return ";".join(parts)
