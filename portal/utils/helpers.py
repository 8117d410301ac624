"""Shared request-parsing helpers used by services and blueprints.

parse_date:  returns None on bad input
parse_bool:  strict JSON boolean, or None when the value is not one
parse_int:   query-string integers with a fallback
"""
from datetime import date, datetime


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY (European format)
    """
    if not value:
        return None
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


def parse_bool(value):
    """Return the value if it is a real boolean, else None.

    ``"false"`` is truthy in Python; JSON payloads must send ``true``/``false``.
    """
    if isinstance(value, bool):
        return value
    return None


def parse_int(value, default=None):
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
