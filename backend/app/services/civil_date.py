"""
Civil-date helpers.

Scheduled dates are calendar days, not instants. Every conversion here works on
year/month/day components directly so host timezone never shifts a date by a day.
"""
import re
from datetime import date, datetime, timedelta, timezone
from typing import Iterator, Optional, Union

from app.services.readiness_errors import InvalidInputError

_CIVIL_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")


def parse_civil_date(value: Union[str, date, None], field_name: str = "date") -> date:
    """
    Parse a ``YYYY-MM-DD`` string into a ``date``.

    ``datetime`` values are rejected: they carry a time component and silently
    truncating them is exactly the off-by-one-day bug this module exists to avoid.
    """
    if value is None or value == "":
        raise InvalidInputError(f"{field_name} is required")
    if isinstance(value, datetime):
        raise InvalidInputError(f"{field_name} must be a calendar date, not a timestamp")
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise InvalidInputError(f"{field_name} must be a YYYY-MM-DD string")

    match = _CIVIL_DATE_RE.match(value.strip())
    if not match:
        raise InvalidInputError(f"{field_name} must be in YYYY-MM-DD format, got {value!r}")
    year, month, day = (int(part) for part in match.groups())
    try:
        return date(year, month, day)
    except ValueError as exc:
        raise InvalidInputError(f"{field_name} is not a valid calendar date: {value!r}") from exc


def format_civil_date(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}-{value.day:02d}"


def cutoff_instant(scheduled_date: date) -> datetime:
    """Start of the scheduled day in UTC; sterility must extend strictly past it."""
    return datetime(scheduled_date.year, scheduled_date.month, scheduled_date.day, tzinfo=timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps from the store as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def date_range(start: date, end: date) -> Iterator[date]:
    current = start
    while current <= end:
        yield current
        current = current + timedelta(days=1)


def next_civil_day(today: date) -> date:
    return today + timedelta(days=1)
