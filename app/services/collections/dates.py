"""Calendar helpers for anchor dates and local business days."""

import calendar
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo


def _clamp_day(year: int, month: int, day: int) -> int:
    return max(1, min(int(day), calendar.monthrange(year, month)[1]))


def anchor_date_for_month(base: date, anchor_day: int) -> date:
    """Anchor date inside ``base``'s month, clamped to the month length."""
    return date(base.year, base.month, _clamp_day(base.year, base.month, anchor_day))


def next_anchor_date(anchor: date, anchor_day: int) -> date:
    """Anchor date of the month following ``anchor``."""
    year = anchor.year + (1 if anchor.month == 12 else 0)
    month = 1 if anchor.month == 12 else anchor.month + 1
    return date(year, month, _clamp_day(year, month, anchor_day))


def local_today(tz_name: str, now: datetime | None = None) -> date:
    current = now or datetime.now(UTC)
    return current.astimezone(ZoneInfo(tz_name)).date()


def local_hour(tz_name: str, now: datetime | None = None) -> int:
    current = now or datetime.now(UTC)
    return current.astimezone(ZoneInfo(tz_name)).hour


def start_of_local_day(value: date, tz_name: str) -> datetime:
    """UTC instant at which ``value`` starts in ``tz_name``."""
    local = datetime.combine(value, time.min, tzinfo=ZoneInfo(tz_name))
    return local.astimezone(UTC)


def end_of_local_day(value: date, tz_name: str) -> datetime:
    """Last UTC instant (microsecond precision) of ``value`` in ``tz_name``."""
    return start_of_local_day(value + timedelta(days=1), tz_name) - timedelta(microseconds=1)


def parse_date_key(value) -> date | None:
    """Parse ``YYYY-MM-DD``; dates and datetimes pass through."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        return None
