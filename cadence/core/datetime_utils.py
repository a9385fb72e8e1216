"""Centralized datetime utilities for consistent timezone handling.

All stored instants are naive UTC datetimes (SQLAlchemy models use naive UTC).
Recipient-facing calendar math is always done in the recipient's own zone, from
the local calendar date, never from a cached UTC offset.

Usage:
    from cadence.core.datetime_utils import utc_now, next_weekly_occurrence

    now = utc_now()
    due_at = next_weekly_occurrence("Europe/Paris", weekday=0, at=time(9, 0), now=now)
"""

from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    """Get current UTC time as naive datetime.

    Returns naive datetime for database compatibility.
    Replaces deprecated datetime.utcnow().
    """
    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(dt: datetime) -> datetime:
    """Convert a datetime to naive UTC.

    Args:
        dt: Datetime to convert (can be aware or naive)

    Returns:
        Naive UTC datetime for database compatibility
    """
    if dt.tzinfo is None:
        # Already naive, assume it's UTC
        return dt
    return dt.astimezone(UTC).replace(tzinfo=None)


def is_valid_timezone(tz_name: str | None) -> bool:
    """Check if a timezone name is a valid IANA identifier.

    Args:
        tz_name: Timezone string (e.g., "America/New_York")

    Returns:
        True if valid IANA timezone
    """
    if not tz_name:
        return False
    try:
        ZoneInfo(tz_name)
        return True
    except (KeyError, ValueError):
        return False


def parse_slot_time(slot_time_local: str) -> time:
    """Parse a slot time string (HH:MM) into a time object.

    Args:
        slot_time_local: Time in "HH:MM" format (e.g., "09:00")

    Returns:
        time object, defaults to 09:00 if parsing fails
    """
    try:
        parts = slot_time_local.split(":")
        return time(hour=int(parts[0]), minute=int(parts[1]))
    except (ValueError, IndexError):
        return time(hour=9, minute=0)


def local_date(timezone: str, at: datetime | None = None) -> date:
    """Calendar date in a timezone at a given instant.

    Args:
        timezone: IANA timezone string
        at: Naive UTC (or aware) instant, defaults to now

    Returns:
        The local calendar date
    """
    instant = to_naive_utc(at or utc_now()).replace(tzinfo=UTC)
    return instant.astimezone(ZoneInfo(timezone)).date()


def next_weekly_occurrence(
    timezone: str,
    weekday: int,
    at: time,
    now: datetime | None = None,
) -> datetime:
    """Next occurrence of a weekly local slot, strictly after now.

    The candidate is built from the local calendar date and attached to the zone,
    so the offset is the one in force on that date. A slot at 09:00 stays at
    09:00 local on both sides of a daylight-saving transition.

    Args:
        timezone: IANA timezone string
        weekday: Day of week, 0 = Monday
        at: Local wall-clock time of the slot
        now: Naive UTC (or aware) reference instant, defaults to now

    Returns:
        Naive UTC datetime of the next slot

    Raises:
        KeyError/ValueError: If the timezone is unknown
    """
    tz = ZoneInfo(timezone)
    local_now = to_naive_utc(now or utc_now()).replace(tzinfo=UTC).astimezone(tz)

    days_ahead = (weekday - local_now.weekday()) % 7
    candidate_date = local_now.date() + timedelta(days=days_ahead)
    candidate = datetime.combine(candidate_date, at, tzinfo=tz)

    if candidate <= local_now:
        candidate = datetime.combine(candidate_date + timedelta(days=7), at, tzinfo=tz)

    return to_naive_utc(candidate)
