"""Shared utility functions for date handling and request parsing.

ensure_utc:      naive/aware datetime → aware UTC (SQLite drops tzinfo on read)
parse_datetime:  strict datetime parsing for service inputs, raises ValueError
"""
import logging
from datetime import date, datetime, time, timezone

logger = logging.getLogger(__name__)


def ensure_utc(value):
    """Return *value* as an aware UTC datetime.

    Naive values are assumed to already be UTC, which is how every
    timestamp in this application is written.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value, *, end_of_day=False):
    """Parse a date or datetime input into an aware UTC datetime.

    A date-only value (``YYYY-MM-DD`` string or ``date`` object) expands to
    the start of that day, or to its last microsecond when *end_of_day* is
    set.  Raises ValueError on unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.max if end_of_day else time.min, tzinfo=timezone.utc)
    text = str(value).strip()
    if len(text) == 10:
        try:
            day = date.fromisoformat(text)
        except ValueError as exc:
            raise ValueError(f"Invalid date: {value!r}. Use YYYY-MM-DD.") from exc
        return datetime.combine(day, time.max if end_of_day else time.min, tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValueError(f"Invalid datetime: {value!r}. Use ISO 8601.") from exc
    return ensure_utc(parsed)
