"""Time and display helpers shared by the schedule and real-time code."""

from datetime import date, datetime, time, timedelta, tzinfo
from typing import Dict, Iterable, List, Optional, Union

from .models import Departure, Direction

SECONDS_PER_DAY = 24 * 60 * 60


def parse_gtfs_time(value: str) -> int:
    """
    Parse a GTFS clock time into seconds after service-day midnight.

    GTFS allows hours past 23 for trips that run after midnight, so
    "25:10:00" is 1:10 AM on the following calendar day.

    Raises:
        ValueError: If the value is not in H:MM:SS form.
    """
    parts = value.strip().split(":")
    if len(parts) != 3:
        raise ValueError(f"Invalid GTFS time: {value!r}")
    hours, minutes, seconds = (int(p) for p in parts)
    if hours < 0 or not 0 <= minutes < 60 or not 0 <= seconds < 60:
        raise ValueError(f"Invalid GTFS time: {value!r}")
    return hours * 3600 + minutes * 60 + seconds


def to_local(moment: datetime, tz: tzinfo) -> datetime:
    """Express a datetime in the feed timezone. Naive values are taken as local already."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=tz)
    return moment.astimezone(tz)


def local_day(moment: Union[date, datetime], tz: tzinfo) -> date:
    """Calendar day in the feed timezone."""
    if isinstance(moment, datetime):
        return to_local(moment, tz).date()
    return moment


def at_service_time(day: date, seconds: int, tz: tzinfo) -> datetime:
    """Wall-clock instant for a GTFS time on a service day."""
    extra_days, remainder = divmod(seconds, SECONDS_PER_DAY)
    clock = time(remainder // 3600, (remainder % 3600) // 60, remainder % 60)
    return datetime.combine(day + timedelta(days=extra_days), clock, tzinfo=tz)


def format_display_time(moment: datetime) -> str:
    """Format as "h:mm AM" without a leading zero."""
    return moment.strftime("%I:%M %p").lstrip("0")


def day_type(moment: Union[date, datetime]) -> str:
    """Return "weekend" for Saturday and Sunday, otherwise "weekday"."""
    return "weekend" if moment.weekday() >= 5 else "weekday"


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'' if count == 1 else 's'}"


def format_duration(minutes: int) -> str:
    """Human readable duration, e.g. "1 hour and 5 minutes"."""
    if minutes < 60:
        return _plural(minutes, "minute")
    hours, remaining = divmod(minutes, 60)
    result = _plural(hours, "hour")
    if remaining > 0:
        result += f" and {_plural(remaining, 'minute')}"
    return result


def relative_time(future: datetime, now: datetime) -> str:
    """Describe how far away a departure is ("now", "in 15 minutes")."""
    diff_minutes = int((future - now).total_seconds() // 60)
    if diff_minutes < 1:
        return "now"
    return f"in {format_duration(diff_minutes)}"


def parse_direction(value: Union[None, int, str, Direction]) -> Optional[int]:
    """
    Normalise a direction filter to a GTFS direction_id.

    Accepts None, 0/1, a Direction member, digits as text, or the names
    "southbound"/"northbound" (case insensitive).

    Raises:
        ValueError: For anything else.
    """
    if value is None:
        return None
    if isinstance(value, int):
        if value not in (0, 1):
            raise ValueError(f"Invalid direction: {value}")
        return int(value)

    text = str(value).strip().lower()
    if text in ("0", "1"):
        return int(text)
    for direction in Direction:
        if direction.name.lower() == text:
            return int(direction)
    raise ValueError(f"Invalid direction: {value!r}")


def group_by_direction(departures: Iterable[Departure]) -> Dict[Optional[int], List[Departure]]:
    """Group departures by direction_id, keeping their order."""
    grouped: Dict[Optional[int], List[Departure]] = {}
    for departure in departures:
        grouped.setdefault(departure.direction_id, []).append(departure)
    return grouped
