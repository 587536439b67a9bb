"""Read-only views across schedules: schedule listings and the session calendar."""
import logging
from datetime import date
from typing import List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from app import models, schemas
from app.core.exceptions import HolidayFetchFailed, ScheduleValidationError
from app.schemas import ScheduleStatus, ScheduleType, SessionStatus
from app.services.holiday_calendar import HolidayCalendar

logger = logging.getLogger(__name__)

# Sessions that will not take place are left off the calendar
HIDDEN_STATUSES = (SessionStatus.cancelled.value, SessionStatus.no_show.value)
MAX_CALENDAR_DAYS = 366


def list_schedules(
    db: Session,
    *,
    status: Optional[ScheduleStatus] = None,
    schedule_type: Optional[ScheduleType] = None,
    teacher_id: Optional[int] = None,
    room_id: Optional[int] = None,
    branch_id: Optional[int] = None,
    group_id: Optional[int] = None,
) -> List[models.Schedule]:
    """Schedules matching every given filter.

    A teacher or room matches either as the schedule default or through any
    session that overrides it.
    """
    q = db.query(models.Schedule)
    if status is not None:
        q = q.filter(models.Schedule.status == status.value)
    if schedule_type is not None:
        q = q.filter(models.Schedule.schedule_type == schedule_type.value)
    if group_id is not None:
        q = q.filter(models.Schedule.group_id == group_id)
    if teacher_id is not None:
        taught = select(models.ScheduleSession.schedule_id).where(models.ScheduleSession.assigned_teacher_id == teacher_id)
        q = q.filter(or_(models.Schedule.default_teacher_id == teacher_id, models.Schedule.id.in_(taught)))
    if room_id is not None:
        booked = select(models.ScheduleSession.schedule_id).where(models.ScheduleSession.room_id == room_id)
        q = q.filter(or_(models.Schedule.default_room_id == room_id, models.Schedule.id.in_(booked)))
    if branch_id is not None:
        branch_rooms = select(models.Room.id).where(models.Room.branch_id == branch_id)
        q = q.filter(or_(models.Schedule.branch_id == branch_id, models.Schedule.default_room_id.in_(branch_rooms)))
    return q.order_by(models.Schedule.start_date, models.Schedule.id).all()


def calendar_view(
    db: Session,
    start_date: date,
    end_date: date,
    *,
    teacher_id: Optional[int] = None,
    room_id: Optional[int] = None,
    branch_id: Optional[int] = None,
    include_holidays: bool = False,
    calendar: Optional[HolidayCalendar] = None,
) -> schemas.CalendarViewResponse:
    if end_date < start_date:
        raise ScheduleValidationError(
            "end_date must not be before start_date",
            {"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
        )
    if (end_date - start_date).days >= MAX_CALENDAR_DAYS:
        raise ScheduleValidationError(
            f"calendar range is limited to {MAX_CALENDAR_DAYS} days",
            {"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
        )

    teacher = func.coalesce(models.ScheduleSession.assigned_teacher_id, models.Schedule.default_teacher_id)
    q = (
        db.query(models.ScheduleSession, models.Schedule, models.Room)
        .join(models.Schedule, models.Schedule.id == models.ScheduleSession.schedule_id)
        .outerjoin(models.Room, models.Room.id == models.ScheduleSession.room_id)
        .filter(
            models.ScheduleSession.session_date >= start_date,
            models.ScheduleSession.session_date <= end_date,
            models.ScheduleSession.status.notin_(HIDDEN_STATUSES),
        )
    )
    if teacher_id is not None:
        q = q.filter(teacher == teacher_id)
    if room_id is not None:
        q = q.filter(models.ScheduleSession.room_id == room_id)
    if branch_id is not None:
        q = q.filter(or_(models.Room.branch_id == branch_id, models.Schedule.branch_id == branch_id))
    rows = q.order_by(
        models.ScheduleSession.session_date, models.ScheduleSession.start_time, models.ScheduleSession.id
    ).all()

    events = [
        schemas.CalendarEvent(
            id=s.id,
            schedule_id=schedule.id,
            title=schedule.schedule_name,
            schedule_type=schedule.schedule_type,
            session_date=s.session_date,
            start_time=s.start_time,
            end_time=s.end_time,
            status=s.status,
            session_number=s.session_number,
            week_number=s.week_number,
            is_makeup=bool(s.is_makeup),
            teacher_id=s.assigned_teacher_id if s.assigned_teacher_id is not None else schedule.default_teacher_id,
            room_id=s.room_id,
            room_name=room.name if room is not None else None,
        )
        for s, schedule, room in rows
    ]
    response = schemas.CalendarViewResponse(
        start_date=start_date, end_date=end_date, events=events, total_events=len(events)
    )

    if include_holidays and calendar is not None:
        try:
            holidays = calendar.fetch_holidays(start_date.year, end_date.year)
        except HolidayFetchFailed as e:
            logger.warning("Calendar view without holidays: %s", e)
            response.holiday_fetch_failed = True
        else:
            response.holidays = [
                schemas.HolidayEntry(date=d, name=name or "Holiday")
                for d, name in holidays.items()
                if start_date <= d <= end_date
            ]
    logger.info("Calendar %s..%s: %d events", start_date, end_date, len(events))
    return response
