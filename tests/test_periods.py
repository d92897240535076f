from datetime import date, datetime, timedelta, timezone

import pytest

from csrf import generate_csrf_token, validate_csrf_token
from periods import (
    add_months,
    month_period,
    parse_year_month,
    resolve_month,
    shift_date_by_months,
    to_naive_utc,
)


def test_add_months_crosses_years() -> None:
    assert add_months("2025-11", 2) == "2026-01"
    assert add_months("2025-01", -1) == "2024-12"
    assert add_months("2025-06", 0) == "2025-06"


def test_month_period_bounds() -> None:
    period = month_period("2024-02")
    assert period.start == date(2024, 2, 1)
    assert period.end == date(2024, 2, 29)
    assert month_period("2025-12").end == date(2025, 12, 31)


@pytest.mark.parametrize("value", ["", "2025-13", "2025-00", "25-01", "2025/01"])
def test_parse_year_month_rejects_bad_input(value: str) -> None:
    with pytest.raises(ValueError):
        parse_year_month(value)


def test_resolve_month_defaults_to_today() -> None:
    assert resolve_month(None, today=date(2025, 8, 19)) == "2025-08"
    assert resolve_month("2024-01") == "2024-01"


def test_shift_date_clamps_day() -> None:
    assert shift_date_by_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert shift_date_by_months(date(2024, 12, 15), 2) == date(2025, 2, 15)


def test_to_naive_utc() -> None:
    brt = timezone(timedelta(hours=-3))
    assert to_naive_utc(datetime(2026, 2, 1, 9, 0, tzinfo=brt)) == datetime(
        2026, 2, 1, 12, 0
    )
    assert to_naive_utc(datetime(2026, 2, 1, 9, 0)) == datetime(2026, 2, 1, 9, 0)


def test_csrf_token_roundtrip() -> None:
    token = generate_csrf_token(user_id=1)
    assert validate_csrf_token(token, user_id=1)
    assert not validate_csrf_token(token, user_id=2)
    assert not validate_csrf_token(token + "x", user_id=1)
    assert not validate_csrf_token(None)
    expired = generate_csrf_token(user_id=1, max_age_hours=-1)
    assert not validate_csrf_token(expired, user_id=1)
