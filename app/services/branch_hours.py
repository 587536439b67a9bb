"""Branch operating-hours validation for session slots."""
import logging
from dataclasses import dataclass
from datetime import time
from typing import Optional

from sqlalchemy.orm import Session

from app import models
from app.core.config import settings
from app.core.exceptions import OutOfOperatingHours
from app.services.helpers import add_minutes, duration_minutes, format_hhmm, minutes_of_day, parse_hour_minute

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BranchHours:
    open_minutes: int
    close_minutes: int

    @property
    def is_valid(self) -> bool:
        return 0 <= self.open_minutes < self.close_minutes <= 24 * 60

    def label(self, minutes: int) -> str:
        return f"{minutes // 60:02d}:{minutes % 60:02d}"


def _to_minutes(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        hour, minute = parse_hour_minute(value)
    except ValueError:
        return None
    return hour * 60 + minute


def default_branch_hours() -> BranchHours:
    hours = BranchHours(
        _to_minutes(settings.default_branch_open) if settings.default_branch_open else 8 * 60,
        _to_minutes(settings.default_branch_close) if settings.default_branch_close else 21 * 60,
    )
    if hours.open_minutes is None or hours.close_minutes is None or not hours.is_valid:
        return BranchHours(8 * 60, 21 * 60)
    return hours


def branch_hours_from(open_time: Optional[str], close_time: Optional[str]) -> BranchHours:
    open_m = _to_minutes(open_time)
    close_m = _to_minutes(close_time)
    if open_m is None or close_m is None:
        return default_branch_hours()
    hours = BranchHours(open_m, close_m)
    if not hours.is_valid:
        logger.warning("Invalid branch hours %s-%s, using default window", open_time, close_time)
        return default_branch_hours()
    return hours


def resolve_branch_hours(db: Session, branch_id: Optional[int] = None, room_id: Optional[int] = None) -> BranchHours:
    """Hours of the explicit branch, else of the room's branch, else the default window."""
    if branch_id is None and room_id is not None:
        room = db.get(models.Room, room_id)
        branch_id = room.branch_id if room else None
    if branch_id is None:
        return default_branch_hours()
    branch = db.get(models.Branch, branch_id)
    if branch is None:
        logger.warning("Branch %s not found, using default operating window", branch_id)
        return default_branch_hours()
    return branch_hours_from(branch.open_time, branch.close_time)


def validate_slot(weekday: int, start: time, hours_per_session: float, hours: BranchHours) -> time:
    """Return the slot end time or raise OutOfOperatingHours."""
    start_m = minutes_of_day(start)
    end_m = start_m + duration_minutes(hours_per_session)
    end_label = f"{end_m // 60:02d}:{end_m % 60:02d}"
    if start_m < hours.open_minutes or end_m > hours.close_minutes:
        raise OutOfOperatingHours(
            weekday,
            format_hhmm(start),
            end_label,
            hours.label(hours.open_minutes),
            hours.label(hours.close_minutes),
        )
    return add_minutes(start, duration_minutes(hours_per_session))
