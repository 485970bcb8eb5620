"""
Local birth time to UTC conversion.

Uses the IANA database shipped through zoneinfo/tzdata, so the offset applied
is the one in force on the birth date (DST and historical changes included).
"""

import logging
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..errors import UnknownTimezone

logger = logging.getLogger(__name__)


def resolve(identifier: str) -> ZoneInfo:
    """
    Look up an IANA timezone.

    Args:
        identifier: Zone name such as "Europe/Kyiv"

    Returns:
        ZoneInfo for the identifier

    Raises:
        UnknownTimezone: If the identifier is empty, malformed or not in the database
    """
    name = (identifier or "").strip()
    if not name:
        raise UnknownTimezone(identifier or "")

    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, TypeError) as e:
        logger.warning(f"Timezone lookup failed for '{name}': {e}")
        raise UnknownTimezone(name)


def _localize(local_date: date, local_time: time, tz: ZoneInfo) -> datetime:
    # fold=0 picks the first occurrence of an ambiguous wall time
    wall = time(local_time.hour, local_time.minute, local_time.second)
    return datetime.combine(local_date, wall, tzinfo=tz).replace(fold=0)


def to_utc(local_date: date, local_time: time, tz: ZoneInfo) -> datetime:
    """
    Convert a local wall-clock birth moment to an aware UTC datetime.

    Examples:
        >>> to_utc(date(2023, 1, 15), time(10, 15), resolve("America/New_York"))
        datetime.datetime(2023, 1, 15, 15, 15, tzinfo=datetime.timezone.utc)
    """
    return _localize(local_date, local_time, tz).astimezone(timezone.utc)


def utc_offset_seconds(local_date: date, local_time: time, tz: ZoneInfo) -> int:
    """Offset from UTC in force at the local instant, in seconds."""
    offset = _localize(local_date, local_time, tz).utcoffset()
    return int(offset.total_seconds()) if offset is not None else 0


def format_offset(seconds: int) -> str:
    """Render an offset in seconds as "+HH:MM" / "-HH:MM"."""
    sign = "-" if seconds < 0 else "+"
    minutes = abs(int(seconds)) // 60
    return f"{sign}{minutes // 60:02d}:{minutes % 60:02d}"
