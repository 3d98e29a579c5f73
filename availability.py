"""
Charger availability evaluation against weekly schedules.

Weekdays are numbered from Sunday = 0. Hours are evaluated in local calendar
time: the ``tz`` argument when given, otherwise ``PLUGIN_TIMEZONE``, otherwise
the datetime as supplied. The service clock is UTC, so with
``PLUGIN_TIMEZONE`` unset schedules are read as UTC hours.
"""
import os
from datetime import datetime, tzinfo
from typing import List, Optional
from zoneinfo import ZoneInfo

from errors import ValidationError
from schemas import Charger, DayAvailability


def default_timezone() -> Optional[tzinfo]:
    name = os.getenv("PLUGIN_TIMEZONE")
    return ZoneInfo(name) if name else None


def weekday_index(when: datetime) -> int:
    return when.isoweekday() % 7


def is_available(charger: Charger, when: datetime, tz: Optional[tzinfo] = None) -> bool:
    schedule = charger.availability_schedule
    if schedule is None:
        return True

    tz = tz or default_timezone()
    if tz is not None and when.tzinfo is not None:
        when = when.astimezone(tz)

    day = weekday_index(when)
    entry = next((e for e in schedule if e.day == day), None)
    if entry is None:
        # No entry for this weekday: treated as open.
        return True
    return entry.is_available and entry.start_hour <= when.hour < entry.end_hour


def schedule_is_complete(schedule: Optional[List[DayAvailability]]) -> bool:
    if schedule is None:
        return True
    return sorted(e.day for e in schedule) == list(range(7))


def normalize_schedule(schedule: Optional[List[DayAvailability]]) -> Optional[List[DayAvailability]]:
    """Validate a host-supplied schedule and return it ordered by weekday."""
    if schedule is None:
        return None
    days = [e.day for e in schedule]
    if len(days) != len(set(days)):
        raise ValidationError("Availability schedule lists a weekday more than once")
    for entry in schedule:
        if entry.is_available and entry.start_hour >= entry.end_hour:
            raise ValidationError(f"{entry.day_name}: start hour must be before end hour")
    return sorted(schedule, key=lambda e: e.day)
