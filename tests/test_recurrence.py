from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from models import ItemType
from recurrence import (
    RecurrenceRuleError,
    build_rrule,
    expand_occurrences,
    is_valid_rrule,
    next_occurrence,
    occurrences_between,
    parse_rrule,
)
from schemas import EventIn, RecurrenceRuleIn, TaskIn
from services import EventService, RecurrenceService, TaskService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def test_monthly_count_rule_yields_three_occurrences() -> None:
    occurrences = list(
        expand_occurrences(
            "FREQ=MONTHLY;INTERVAL=1;COUNT=3",
            datetime(2025, 1, 1),
            datetime(2025, 12, 31),
            base_start_at=datetime(2025, 1, 15),
        )
    )
    assert [o.start_at for o in occurrences] == [
        datetime(2025, 1, 15),
        datetime(2025, 2, 15),
        datetime(2025, 3, 15),
    ]
    assert all(o.end_at is None and o.due_at is None for o in occurrences)


def test_event_occurrences_keep_duration() -> None:
    occurrences = list(
        expand_occurrences(
            "FREQ=WEEKLY;COUNT=2",
            datetime(2025, 1, 1),
            datetime(2025, 2, 1),
            base_start_at=datetime(2025, 1, 6, 9, 0),
            base_end_at=datetime(2025, 1, 6, 10, 30),
        )
    )
    assert [(o.start_at, o.end_at) for o in occurrences] == [
        (datetime(2025, 1, 6, 9, 0), datetime(2025, 1, 6, 10, 30)),
        (datetime(2025, 1, 13, 9, 0), datetime(2025, 1, 13, 10, 30)),
    ]


def test_task_occurrences_keep_due_offset() -> None:
    occurrences = list(
        expand_occurrences(
            "FREQ=DAILY;COUNT=2",
            datetime(2025, 3, 1),
            datetime(2025, 3, 31),
            base_start_at=datetime(2025, 3, 10, 8, 0),
            base_due_at=datetime(2025, 3, 10, 17, 0),
        )
    )
    assert [o.due_at for o in occurrences] == [
        datetime(2025, 3, 10, 17, 0),
        datetime(2025, 3, 11, 17, 0),
    ]


def test_task_without_due_offset_uses_duration() -> None:
    first = next(
        expand_occurrences(
            "FREQ=DAILY",
            datetime(2025, 3, 1),
            datetime(2025, 3, 2),
            base_start_at=datetime(2025, 3, 1, 8, 0),
            duration_minutes=45,
        )
    )
    assert first.due_at == datetime(2025, 3, 1, 8, 0) + timedelta(minutes=45)


def test_open_ended_rule_is_bounded_by_window() -> None:
    occurrences = expand_occurrences(
        "FREQ=DAILY",
        datetime(2025, 1, 10),
        datetime(2025, 1, 13),
        base_start_at=datetime(2025, 1, 1),
    )
    assert iter(occurrences) is occurrences
    assert [o.start_at.day for o in occurrences] == [10, 11, 12]


def test_occurrence_index_counts_from_series_start() -> None:
    def window(start, end):
        return {
            o.start_at: o.index
            for o in expand_occurrences(
                "FREQ=DAILY", start, end, base_start_at=datetime(2025, 1, 1)
            )
        }

    early = window(datetime(2025, 1, 1), datetime(2025, 1, 13))
    late = window(datetime(2025, 1, 10), datetime(2025, 1, 13))

    assert late == {
        datetime(2025, 1, 10): 9,
        datetime(2025, 1, 11): 10,
        datetime(2025, 1, 12): 11,
    }
    assert all(early[start] == index for start, index in late.items())


@pytest.mark.parametrize("rule", ["", "   ", "FREQ=SOMETIMES", "NOT A RULE"])
def test_malformed_rules_fail_fast(rule: str) -> None:
    with pytest.raises(RecurrenceRuleError, match="Invalid RRULE"):
        expand_occurrences(
            rule,
            datetime(2025, 1, 1),
            datetime(2025, 2, 1),
            base_start_at=datetime(2025, 1, 1),
        )
    assert not is_valid_rrule(rule)


def test_window_must_be_bounded_and_ordered() -> None:
    with pytest.raises(ValueError, match="bounded window"):
        expand_occurrences(
            "FREQ=DAILY", datetime(2025, 1, 1), None, base_start_at=datetime(2025, 1, 1)
        )
    with pytest.raises(ValueError, match="after its start"):
        expand_occurrences(
            "FREQ=DAILY",
            datetime(2025, 1, 2),
            datetime(2025, 1, 1),
            base_start_at=datetime(2025, 1, 1),
        )


def test_occurrences_between_excludes_window_end() -> None:
    dates = occurrences_between(
        "FREQ=WEEKLY;COUNT=4",
        datetime(2025, 1, 6),
        datetime(2025, 1, 20),
        dtstart=datetime(2025, 1, 6),
    )
    assert dates == [datetime(2025, 1, 6), datetime(2025, 1, 13)]


def test_next_occurrence() -> None:
    assert next_occurrence(
        "FREQ=MONTHLY", datetime(2025, 1, 15), dtstart=datetime(2025, 1, 15)
    ) == datetime(2025, 2, 15)
    assert next_occurrence(
        "FREQ=MONTHLY;COUNT=1", datetime(2025, 1, 15), dtstart=datetime(2025, 1, 15)
    ) is None


def test_build_rrule() -> None:
    assert build_rrule("MONTHLY", count=12) == "FREQ=MONTHLY;INTERVAL=1;COUNT=12"
    rule = build_rrule("WEEKLY", interval=2, until=datetime(2025, 12, 31, 23, 59, 59))
    assert rule == "FREQ=WEEKLY;INTERVAL=2;UNTIL=20251231T235959Z"
    assert parse_rrule(rule, dtstart=datetime(2025, 12, 1)).count() == 3
    with pytest.raises(RecurrenceRuleError):
        build_rrule("MONTHLY", count=2, until=datetime(2025, 1, 1))


def test_event_without_rule_projects_single_occurrence() -> None:
    session = make_session()
    event = EventService(session).create(
        EventIn(
            title="Dentist",
            start_at=datetime(2025, 2, 3, 14, 0),
            end_at=datetime(2025, 2, 3, 15, 0),
        )
    )
    service = RecurrenceService(session)

    inside = service.occurrences_for_item(
        ItemType.event, event.id, datetime(2025, 2, 1), datetime(2025, 3, 1)
    )
    assert [(o.start_at, o.end_at) for o in inside] == [
        (datetime(2025, 2, 3, 14, 0), datetime(2025, 2, 3, 15, 0))
    ]
    assert service.occurrences_for_item(
        ItemType.event, event.id, datetime(2025, 3, 1), datetime(2025, 4, 1)
    ) == []


def test_recurring_task_occurrences_from_stored_rule() -> None:
    session = make_session()
    task = TaskService(session).create(
        TaskIn(
            title="Pay rent",
            start_at=datetime(2025, 1, 5, 9, 0),
            due_at=datetime(2025, 1, 5, 18, 0),
        )
    )
    service = RecurrenceService(session)
    service.set_rule(
        RecurrenceRuleIn(
            item_type=ItemType.task, item_id=task.id, rrule="FREQ=MONTHLY;COUNT=6"
        )
    )

    occurrences = service.occurrences_for_item(
        ItemType.task, task.id, datetime(2025, 2, 1), datetime(2025, 4, 1)
    )
    assert [(o.start_at, o.due_at) for o in occurrences] == [
        (datetime(2025, 2, 5, 9, 0), datetime(2025, 2, 5, 18, 0)),
        (datetime(2025, 3, 5, 9, 0), datetime(2025, 3, 5, 18, 0)),
    ]


def test_storing_malformed_rule_is_rejected() -> None:
    session = make_session()
    task = TaskService(session).create(
        TaskIn(title="Water plants", due_at=datetime(2025, 1, 5, 18, 0))
    )
    with pytest.raises(RecurrenceRuleError):
        RecurrenceService(session).set_rule(
            RecurrenceRuleIn(item_type=ItemType.task, item_id=task.id, rrule="FREQ=NEVER")
        )
    assert RecurrenceService(session).get_rule(ItemType.task, task.id) is None
