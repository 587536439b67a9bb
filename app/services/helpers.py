from __future__ import annotations

import math
import re
from datetime import date, datetime, time
from typing import Tuple

# Weekdays on the wire follow the 0 = Sunday convention
WEEKDAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]

_HHMM_RE = re.compile(r"(\d{1,2}):(\d{2})")


def sunday_weekday(d: date) -> int:
    """Weekday of ``d`` with 0 = Sunday (Python's date.weekday() has 0 = Monday)."""
    return (d.weekday() + 1) % 7


def normalize_weekday(value: int) -> int:
    if value == 7:
        return 0
    return value


def parse_hour_minute(value: str) -> Tuple[int, int]:
    """Extract hour and minute from "08:30", "09:15:00Z", "2007-11-30 13:45:00" or an ISO datetime."""
    if value is None:
        raise ValueError("time value is required")
    raw = str(value).strip()
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        return parsed.hour, parsed.minute
    except ValueError:
        pass
    # Time-only values, possibly with seconds and a trailing zone
    m = _HHMM_RE.match(raw)
    if not m:
        raise ValueError(f"invalid time value '{value}', expected HH:MM")
    hour, minute = int(m.group(1)), int(m.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"invalid time value '{value}', expected HH:MM")
    return hour, minute


def parse_time(value: str) -> time:
    hour, minute = parse_hour_minute(value)
    return time(hour, minute)


def format_hhmm(t: time) -> str:
    return t.strftime("%H:%M")


def minutes_of_day(t: time) -> int:
    return t.hour * 60 + t.minute


def duration_minutes(hours: float) -> int:
    return int(round(hours * 60))


def add_minutes(t: time, minutes: int) -> time:
    """Clock time ``minutes`` after ``t``; callers ensure the result stays within the day."""
    total = minutes_of_day(t) + minutes
    if total >= 24 * 60:
        raise ValueError(f"session starting at {format_hhmm(t)} runs past midnight")
    return time(total // 60, total % 60)


def week_number(session_date: date, start_date: date) -> int:
    days = (session_date - start_date).days
    if days < 0:
        days = 0
    return days // 7 + 1


def session_count(total_hours: float, hours_per_session: float) -> int:
    """floor(total_hours / hours_per_session); the remainder is dropped, never rounded up."""
    if hours_per_session <= 0:
        return 0
    # round() guards against 0.3 / 0.1 == 2.9999999999999996
    return int(math.floor(round(total_hours / hours_per_session, 9)))
