from datetime import UTC, date, datetime

import pytest

from app.services.collections import dates
from app.services.collections.business_calendar import (
    add_business_days,
    is_business_day,
    next_business_day,
    parse_holidays,
    resolve_operational_date,
)

BA = "America/Argentina/Buenos_Aires"


def test_anchor_date_clamps_to_month_length():
    assert dates.anchor_date_for_month(date(2026, 2, 3), 31) == date(2026, 2, 28)
    assert dates.anchor_date_for_month(date(2028, 2, 3), 30) == date(2028, 2, 29)
    assert dates.anchor_date_for_month(date(2026, 4, 1), 10) == date(2026, 4, 10)


def test_next_anchor_date_rolls_year_and_reclamps():
    assert dates.next_anchor_date(date(2026, 12, 31), 31) == date(2027, 1, 31)
    assert dates.next_anchor_date(date(2026, 1, 31), 31) == date(2026, 2, 28)
    assert dates.next_anchor_date(date(2026, 2, 28), 31) == date(2026, 3, 31)


def test_local_day_bounds_are_utc_instants():
    start = dates.start_of_local_day(date(2026, 3, 10), BA)
    end = dates.end_of_local_day(date(2026, 3, 10), BA)

    assert start == datetime(2026, 3, 10, 3, 0, tzinfo=UTC)
    assert end == datetime(2026, 3, 11, 2, 59, 59, 999999, tzinfo=UTC)


def test_local_today_uses_timezone():
    late_utc = datetime(2026, 3, 11, 1, 30, tzinfo=UTC)
    assert dates.local_today(BA, late_utc) == date(2026, 3, 10)
    assert dates.local_today("UTC", late_utc) == date(2026, 3, 11)


@pytest.mark.parametrize(
    "raw",
    [
        '["2026-03-23", "2026-03-24"]',
        "2026-03-23, 2026-03-24",
        ["2026-03-23", "2026-03-24", "not-a-date", "2026-13-40"],
    ],
)
def test_parse_holidays_accepts_json_csv_and_lists(raw):
    assert parse_holidays(raw) == frozenset({date(2026, 3, 23), date(2026, 3, 24)})


def test_parse_holidays_empty_values():
    assert parse_holidays(None) == frozenset()
    assert parse_holidays("  ") == frozenset()


def test_business_days_skip_weekends_and_holidays():
    holidays = frozenset({date(2026, 3, 23), date(2026, 3, 24)})

    assert not is_business_day(date(2026, 3, 14))
    assert not is_business_day(date(2026, 3, 23), holidays)
    assert next_business_day(date(2026, 3, 21), holidays) == date(2026, 3, 25)
    # Friday + 2 business days lands on Tuesday without holidays.
    assert add_business_days(date(2026, 3, 13), 2) == date(2026, 3, 17)
    assert add_business_days(date(2026, 3, 20), 1, holidays) == date(2026, 3, 25)
    assert add_business_days(date(2026, 3, 14), 0) == date(2026, 3, 14)


def test_resolve_operational_date_defers_weekends():
    saturday = date(2026, 3, 14)

    deferred = resolve_operational_date(saturday)
    assert deferred.business_date == date(2026, 3, 16)
    assert deferred.deferred_to_next_business_day is True

    forced = resolve_operational_date(saturday, allow_non_business_day=True)
    assert forced.business_date == saturday
    assert forced.deferred_to_next_business_day is False
