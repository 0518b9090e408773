"""
Recurrence calculation for repeating messages.

The next occurrence is computed on the local wall clock of the message's
timezone, so a message written for 09:00 keeps arriving at 09:00 across
DST changes, and is then converted back to an absolute UTC instant.
"""

import calendar
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from courier.errors import InvalidTimezone

logger = logging.getLogger(__name__)

UTC = timezone.utc


class Recurrence(str, Enum):
    """How often a message repeats after a successful delivery."""

    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


@lru_cache(maxsize=256)
def resolve_timezone(tz_name: str) -> ZoneInfo:
    """
    Resolve an IANA timezone name.

    Raises:
        InvalidTimezone: If the name is empty or unknown
    """
    if not tz_name or not tz_name.strip():
        raise InvalidTimezone(tz_name)
    try:
        return ZoneInfo(tz_name.strip())
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidTimezone(tz_name) from e


def ensure_utc(instant: datetime) -> datetime:
    """Return an aware UTC datetime; naive values are taken to be UTC."""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=UTC)
    return instant.astimezone(UTC)


def to_local(instant: datetime, tz_name: str) -> datetime:
    """Render an absolute instant on the wall clock of ``tz_name``."""
    return ensure_utc(instant).astimezone(resolve_timezone(tz_name))


def _add_months(local: datetime, months: int) -> datetime:
    # Day is clamped to the target month, so Jan 31 + 1 month is Feb 28/29.
    month_index = local.month - 1 + months
    year = local.year + month_index // 12
    month = month_index % 12 + 1
    day = min(local.day, calendar.monthrange(year, month)[1])
    return local.replace(year=year, month=month, day=day)


def next_occurrence(current: datetime, tz_name: str, pattern) -> datetime:
    """
    Compute the next delivery instant for a recurring message.

    Args:
        current: Current delivery instant (aware, or naive UTC)
        tz_name: IANA timezone the wall-clock arithmetic is done in
        pattern: Recurrence value or its string name

    Returns:
        Next delivery instant as an aware UTC datetime

    Raises:
        InvalidTimezone: If ``tz_name`` cannot be resolved
        ValueError: If the pattern is ``none`` or unknown
    """
    pattern = Recurrence(pattern)
    if pattern is Recurrence.NONE:
        raise ValueError("Message does not recur")

    zone = resolve_timezone(tz_name)
    wall = ensure_utc(current).astimezone(zone).replace(tzinfo=None)

    if pattern is Recurrence.DAILY:
        wall = wall + timedelta(days=1)
    elif pattern is Recurrence.WEEKLY:
        wall = wall + timedelta(days=7)
    elif pattern is Recurrence.MONTHLY:
        wall = _add_months(wall, 1)
    else:
        wall = _add_months(wall, 12)

    # fold=0 always: ambiguous wall times resolve to the first occurrence
    return wall.replace(tzinfo=zone, fold=0).astimezone(UTC)
