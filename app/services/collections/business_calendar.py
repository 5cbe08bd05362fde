"""Bank business-day calendar (weekends plus configured holidays)."""

import json
import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, timedelta

_DATE_KEY = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_MAX_LOOKAHEAD_DAYS = 370


def parse_holidays(raw) -> frozenset[date]:
    """Accept a JSON list, a CSV string or an iterable of ``YYYY-MM-DD`` keys.

    Items that are not valid date keys are dropped.
    """
    if raw is None:
        return frozenset()
    items: Iterable
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return frozenset()
        try:
            parsed = json.loads(text)
        except ValueError:
            parsed = None
        items = parsed if isinstance(parsed, list) else text.split(",")
    else:
        items = raw
    holidays = set()
    for item in items:
        if isinstance(item, date):
            holidays.add(item)
            continue
        key = str(item or "").strip()
        if not _DATE_KEY.match(key):
            continue
        try:
            holidays.add(date.fromisoformat(key))
        except ValueError:
            continue
    return frozenset(holidays)


def is_business_day(value: date, holidays: frozenset[date] = frozenset()) -> bool:
    return value.weekday() < 5 and value not in holidays


def next_business_day(value: date, holidays: frozenset[date] = frozenset()) -> date:
    """``value`` itself when it is a business day, else the next one."""
    current = value
    for _ in range(_MAX_LOOKAHEAD_DAYS):
        if is_business_day(current, holidays):
            return current
        current += timedelta(days=1)
    raise ValueError(f"No business day found after {value.isoformat()}")


def add_business_days(value: date, days: int, holidays: frozenset[date] = frozenset()) -> date:
    """Move forward ``days`` business days; zero returns ``value`` unchanged."""
    remaining = max(0, int(days))
    current = value
    while remaining > 0:
        current += timedelta(days=1)
        if is_business_day(current, holidays):
            remaining -= 1
    return current


@dataclass(frozen=True)
class OperationalDate:
    target_date: date
    business_date: date
    business_day: bool
    deferred_to_next_business_day: bool


def resolve_operational_date(
    target: date,
    holidays: frozenset[date] = frozenset(),
    allow_non_business_day: bool = False,
) -> OperationalDate:
    business_day = is_business_day(target, holidays)
    if business_day or allow_non_business_day:
        return OperationalDate(
            target_date=target,
            business_date=target,
            business_day=business_day,
            deferred_to_next_business_day=False,
        )
    return OperationalDate(
        target_date=target,
        business_date=next_business_day(target, holidays),
        business_day=False,
        deferred_to_next_business_day=True,
    )
