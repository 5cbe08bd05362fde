"""Common helper functions for service layer.

This module provides reusable utilities for:
- UUID handling
- Entity retrieval
- Monetary calculations
- Timezone-safe timestamps
- JSON-safe payloads
"""

from __future__ import annotations

import dataclasses
import enum
import uuid
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

T = TypeVar("T")


def coerce_uuid(value):
    """Convert value to UUID, returning None if value is None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def get_by_id(db: Session, model: type[T], value, **kwargs) -> T | None:
    """Get entity by ID, returning None if not found or value is None.

    Args:
        db: Database session
        model: SQLAlchemy model class
        value: Entity ID (can be None)
        **kwargs: Additional options passed to db.get()

    Returns:
        Entity instance or None
    """
    if value is None:
        return None
    return db.get(model, coerce_uuid(value), **kwargs)


def round_money(value: Decimal | int | float | str) -> Decimal:
    """Round monetary value to 2 decimal places, half-up.

    Args:
        value: Monetary value to round

    Returns:
        Decimal rounded to 2 decimal places
    """
    return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def to_decimal(value, default: Decimal | None = None) -> Decimal | None:
    """Parse a Decimal from user or file input, returning ``default`` on failure."""
    if value is None:
        return default
    if isinstance(value, Decimal):
        return value
    text = str(value).strip().replace(",", ".")
    if not text:
        return default
    try:
        return Decimal(text)
    except ArithmeticError:
        return default


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from the database."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_json_safe(value):
    """Turn UUIDs, dates, decimals, enums and dataclasses into JSON values."""
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, enum.Enum):
        return value.value
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return to_json_safe(dataclasses.asdict(value))
    if isinstance(value, dict):
        return {str(key): to_json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_json_safe(item) for item in value]
    return value
