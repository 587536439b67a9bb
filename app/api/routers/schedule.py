import logging
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app import schemas
from app.core.database import get_db, get_serializable_db
from app.core.exceptions import (
    ScheduleEngineError,
    concurrent_booking_detail,
    error_detail,
    is_serialization_failure,
    status_code_for,
)
from app.services import calendar_view, lifecycle
from app.services import schedule_service as sched_svc
from app.services.holiday_calendar import HolidayCalendar, get_holiday_calendar

router = APIRouter(prefix="/schedules", tags=["schedules"])
logger = logging.getLogger(__name__)


def _raise_http(e: ScheduleEngineError, action: str):
    status = status_code_for(e)
    logger.warning("%s failed (%s): %s", action, status, e)
    raise HTTPException(status_code=status, detail=error_detail(e))


def _stale(schedule_id: int):
    logger.warning("Schedule %s changed concurrently", schedule_id)
    raise HTTPException(status_code=409, detail={"code": "STALE_VERSION", "message": f"schedule {schedule_id} was modified concurrently"})


def _raise_if_concurrent(e: OperationalError, action: str):
    if not is_serialization_failure(e):
        raise e
    logger.warning("%s aborted by a concurrent transaction: %s", action, e.orig)
    raise HTTPException(status_code=409, detail=concurrent_booking_detail(action))


@router.post(
    "/preview",
    response_model=schemas.PreviewReport,
    summary="Dry-run the full generation pipeline without persisting anything",
)
def preview_schedule(
    request: schemas.ScheduleCreateRequest,
    db: Session = Depends(get_db),
    calendar: HolidayCalendar = Depends(get_holiday_calendar),
):
    """
    Runs exactly what creation runs (generation, branch hours, holidays,
    rescheduling, conflicts) and returns every problem as an issue.

    A validation failure is not an HTTP error here: the report comes back with
    `can_create = false` and the matching `error` issue.
    """
    logger.info("Preview schedule '%s' (%s, %s)", request.schedule_name, request.schedule_type.value, request.recurring_pattern.value)
    return sched_svc.preview_schedule(db, request, calendar)


@router.post(
    "",
    response_model=schemas.ScheduleCreateResponse,
    status_code=201,
    summary="Create a schedule and persist its sessions",
)
def create_schedule(
    request: schemas.ScheduleCreateRequest,
    db: Session = Depends(get_serializable_db),
    calendar: HolidayCalendar = Depends(get_holiday_calendar),
):
    try:
        return sched_svc.create_schedule(db, request, calendar)
    except ScheduleEngineError as e:
        _raise_http(e, "Create schedule")
    except OperationalError as e:
        _raise_if_concurrent(e, "Create schedule")


@router.post("/rooms/check", response_model=schemas.RoomCheckResponse, summary="Check one room slot against branch hours and bookings")
def check_room(request: schemas.RoomCheckRequest, db: Session = Depends(get_db)):
    return sched_svc.check_room(db, request)


@router.get("", response_model=List[schemas.ScheduleResponse], summary="List schedules")
def list_schedules(
    status: Optional[schemas.ScheduleStatus] = Query(None),
    schedule_type: Optional[schemas.ScheduleType] = Query(None),
    teacher_id: Optional[int] = Query(None, description="Default teacher or teacher of any session"),
    room_id: Optional[int] = Query(None),
    branch_id: Optional[int] = Query(None),
    group_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
):
    return calendar_view.list_schedules(
        db,
        status=status,
        schedule_type=schedule_type,
        teacher_id=teacher_id,
        room_id=room_id,
        branch_id=branch_id,
        group_id=group_id,
    )


@router.get(
    "/calendar",
    response_model=schemas.CalendarViewResponse,
    summary="Sessions of all schedules in a date range",
)
def get_calendar(
    start_date: date = Query(...),
    end_date: date = Query(...),
    teacher_id: Optional[int] = Query(None),
    room_id: Optional[int] = Query(None),
    branch_id: Optional[int] = Query(None),
    include_holidays: bool = Query(False),
    db: Session = Depends(get_db),
    calendar: HolidayCalendar = Depends(get_holiday_calendar),
):
    """Cancelled and no-show sessions are left out."""
    try:
        return calendar_view.calendar_view(
            db,
            start_date,
            end_date,
            teacher_id=teacher_id,
            room_id=room_id,
            branch_id=branch_id,
            include_holidays=include_holidays,
            calendar=calendar,
        )
    except ScheduleEngineError as e:
        _raise_http(e, "Calendar view")


@router.get("/{schedule_id}", response_model=schemas.ScheduleResponse)
def get_schedule(schedule_id: int, db: Session = Depends(get_db)):
    try:
        return lifecycle.get_schedule(db, schedule_id)
    except ScheduleEngineError as e:
        _raise_http(e, "Get schedule")


@router.get("/{schedule_id}/sessions", response_model=List[schemas.SessionResponse])
def get_schedule_sessions(
    schedule_id: int,
    include_inactive: bool = Query(True, description="Include completed, cancelled and superseded sessions"),
    db: Session = Depends(get_db),
):
    try:
        return sched_svc.get_schedule_sessions(db, schedule_id, include_inactive=include_inactive)
    except ScheduleEngineError as e:
        _raise_http(e, "List sessions")


@router.put(
    "/{schedule_id}/sessions",
    response_model=schemas.ScheduleCreateResponse,
    summary="Regenerate the pending sessions of a schedule",
)
def regenerate_sessions(
    schedule_id: int,
    request: schemas.ScheduleRegenerateRequest,
    db: Session = Depends(get_serializable_db),
    calendar: HolidayCalendar = Depends(get_holiday_calendar),
):
    try:
        return sched_svc.regenerate_sessions(db, schedule_id, request, calendar)
    except ScheduleEngineError as e:
        _raise_http(e, "Regenerate sessions")
    except StaleDataError:
        _stale(schedule_id)
    except OperationalError as e:
        _raise_if_concurrent(e, "Regenerate sessions")


@router.post("/{schedule_id}/confirm", response_model=schemas.ScheduleResponse, summary="Teacher confirms an assigned schedule")
def confirm_schedule(schedule_id: int, user_id: Optional[int] = Query(None), db: Session = Depends(get_db)):
    try:
        return lifecycle.confirm_schedule(db, schedule_id, user_id)
    except ScheduleEngineError as e:
        _raise_http(e, "Confirm schedule")
    except StaleDataError:
        _stale(schedule_id)


@router.patch("/{schedule_id}/status", response_model=schemas.ScheduleResponse)
def change_schedule_status(schedule_id: int, update: schemas.ScheduleStatusUpdate, db: Session = Depends(get_db)):
    try:
        return lifecycle.change_schedule_status(
            db, schedule_id, update.status, expected_version=update.expected_version, reason=update.reason
        )
    except ScheduleEngineError as e:
        _raise_http(e, "Change schedule status")
    except StaleDataError:
        _stale(schedule_id)
