"""Shared parsing helpers for blueprints and services.

parse_date:       query-string date → date (None on bad input)
parse_datetime:   ISO timestamp / date → aware UTC datetime (None on bad input)
as_utc:           normalise naive datetimes read back from SQLite
parse_int:        bounded integer query parameter
rollback_on_error: service decorator, rolls the session back on any raise
"""
import functools
import logging
from datetime import date, datetime, time, timezone

from refinery.models import db

logger = logging.getLogger(__name__)


def rollback_on_error(fn):
    """Roll back the session when ``fn`` raises, then re-raise.

    Leaves the batch or flow exactly as it was loaded when a domain error
    rejects the operation.
    """
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except Exception:
            db.session.rollback()
            raise
    return wrapper


def as_utc(value):
    """Return ``value`` as an aware UTC datetime.

    SQLite drops tzinfo on round-trip; stored values are always UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY (European format)
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError):
        return None


def parse_datetime(value, *, end_of_day=False):
    """Parse a timestamp filter to an aware UTC datetime.

    A bare date maps to the start of that day, or to its last microsecond
    when ``end_of_day`` is set (inclusive ``date_to`` filters).
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    text = str(value).strip()
    if "T" in text or " " in text:
        try:
            return as_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
        except ValueError:
            return None
    day = parse_date(text)
    if day is None:
        return None
    clock = time.max if end_of_day else time.min
    return datetime.combine(day, clock, tzinfo=timezone.utc)


def parse_int(value, default, *, minimum=None, maximum=None):
    """Parse an integer query parameter, clamping to [minimum, maximum]."""
    try:
        result = int(value)
    except (ValueError, TypeError):
        return default
    if minimum is not None:
        result = max(result, minimum)
    if maximum is not None:
        result = min(result, maximum)
    return result
