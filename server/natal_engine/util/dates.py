"""
Flexible birth date/time parsing.

Accepts the many ways people type a birth date or time, using dateutil, and
normalises them into date/time values. Timezone-qualified input is rejected:
the timezone always comes from the birth place's IANA identifier.
"""

from dateutil import parser
from datetime import date, datetime, time
from typing import List


# sentinel default so a missing component can be detected after parsing
_DEFAULT = datetime(1900, 1, 1, 0, 0, 0)


def _parse(value: str, what: str) -> datetime:
    if not value or not value.strip():
        raise ValueError(f"Empty {what} string")

    value = value.strip()

    try:
        dt = parser.parse(value, default=_DEFAULT)
    except (parser.ParserError, OverflowError) as e:
        raise ValueError(f"Unable to parse {what} '{value}': {e}")

    if dt.tzinfo is not None:
        raise ValueError(
            f"Timezone information not allowed in birth {what}. "
            "Pass the IANA timezone of the birth place separately."
        )
    return dt


def parse_birth_date(value: str) -> date:
    """
    Parse a flexible birth date string.

    Args:
        value: Date string in various formats

    Returns:
        The parsed calendar date

    Raises:
        ValueError: If the string cannot be parsed, carries a timezone,
            or the year is outside 1000-3000

    Examples:
        >>> parse_birth_date("1990-03-15")
        datetime.date(1990, 3, 15)

        >>> parse_birth_date("15 March 1990")
        datetime.date(1990, 3, 15)
    """
    dt = _parse(value, "date")

    if dt.year < 1000 or dt.year > 3000:
        raise ValueError(f"Year {dt.year} outside reasonable range (1000-3000)")

    return dt.date()


def parse_birth_time(value: str) -> time:
    """
    Parse a flexible birth time string to second precision.

    Examples:
        >>> parse_birth_time("14:30")
        datetime.time(14, 30)

        >>> parse_birth_time("2:30 PM")
        datetime.time(14, 30)
    """
    dt = _parse(value, "time")
    return time(dt.hour, dt.minute, dt.second)


def is_valid_birth_date(value: str) -> bool:
    try:
        parse_birth_date(value)
        return True
    except ValueError:
        return False


def get_birth_format_hints() -> List[str]:
    """Supported date and time input examples, for error tips."""
    return [
        "1990-03-15",       # ISO 8601
        "1990/03/15",       # slashes
        "15 March 1990",    # European style
        "March 15, 1990",   # natural language
        "14:30",            # 24-hour time
        "14:30:45",         # with seconds
        "2:30 PM",          # 12-hour time
    ]
