"""Schedule and session state machines plus the edits that move them."""
import logging
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional, Tuple

from sqlalchemy.orm import Session

from app import models, schemas
from app.core.exceptions import InvalidSlot, InvalidTransition, NotFoundError, ScheduleConflictError
from app.core.monitoring import record_conflicts
from app.schemas import ScheduleStatus, ScheduleType, SessionStatus
from app.services.branch_hours import resolve_branch_hours, validate_slot
from app.services.conflicts import ConflictDetector, SqlSessionStore
from app.services.helpers import minutes_of_day, parse_time, sunday_weekday

logger = logging.getLogger(__name__)

SCHEDULE_TRANSITIONS: Dict[ScheduleStatus, FrozenSet[ScheduleStatus]] = {
    ScheduleStatus.assigned: frozenset({ScheduleStatus.scheduled, ScheduleStatus.cancelled}),
    ScheduleStatus.scheduled: frozenset({ScheduleStatus.paused, ScheduleStatus.completed, ScheduleStatus.cancelled}),
    ScheduleStatus.paused: frozenset({ScheduleStatus.scheduled, ScheduleStatus.completed, ScheduleStatus.cancelled}),
    ScheduleStatus.completed: frozenset(),
    ScheduleStatus.cancelled: frozenset(),
}

_INTERRUPTIONS = frozenset({SessionStatus.cancelled, SessionStatus.rescheduled, SessionStatus.no_show})

SESSION_TRANSITIONS: Dict[SessionStatus, FrozenSet[SessionStatus]] = {
    SessionStatus.assigned: frozenset({SessionStatus.scheduled, SessionStatus.confirmed}) | _INTERRUPTIONS,
    SessionStatus.scheduled: frozenset({SessionStatus.confirmed}) | _INTERRUPTIONS,
    SessionStatus.confirmed: frozenset({SessionStatus.completed}) | _INTERRUPTIONS,
    SessionStatus.completed: frozenset(),
    SessionStatus.cancelled: frozenset(),
    SessionStatus.rescheduled: frozenset(),
    SessionStatus.no_show: frozenset(),
}

# Sessions that have not happened yet and can still be cancelled or superseded
PRE_COMPLETION_STATUSES = (SessionStatus.assigned.value, SessionStatus.scheduled.value, SessionStatus.confirmed.value)

# Sessions that used up their slot; regeneration keeps them and plans only the rest
HELD_STATUSES = (SessionStatus.completed.value, SessionStatus.no_show.value)

ELIGIBLE_PAYMENT_STATUSES = ("deposit_paid", "fully_paid")


def validate_schedule_transition(current: str, target: str) -> None:
    current_s, target_s = ScheduleStatus(current), ScheduleStatus(target)
    if target_s not in SCHEDULE_TRANSITIONS[current_s]:
        raise InvalidTransition(
            f"schedule cannot move from {current_s.value} to {target_s.value}",
            {"from": current_s.value, "to": target_s.value},
        )


def validate_session_transition(current: str, target: str) -> None:
    current_s, target_s = SessionStatus(current), SessionStatus(target)
    if target_s not in SESSION_TRANSITIONS[current_s]:
        raise InvalidTransition(
            f"session cannot move from {current_s.value} to {target_s.value}",
            {"from": current_s.value, "to": target_s.value},
        )


def get_schedule(db: Session, schedule_id: int, *, for_update: bool = False) -> models.Schedule:
    q = db.query(models.Schedule).filter(models.Schedule.id == schedule_id)
    if for_update:
        q = q.with_for_update()
    schedule = q.first()
    if schedule is None:
        raise NotFoundError(f"schedule {schedule_id} not found", {"schedule_id": schedule_id})
    return schedule


def get_session(db: Session, session_id: int, *, for_update: bool = False) -> models.ScheduleSession:
    q = db.query(models.ScheduleSession).filter(models.ScheduleSession.id == session_id)
    if for_update:
        q = q.with_for_update()
    session = q.first()
    if session is None:
        raise NotFoundError(f"session {session_id} not found", {"session_id": session_id})
    return session


def check_version(schedule: models.Schedule, expected_version: Optional[int]) -> None:
    if expected_version is not None and schedule.version != expected_version:
        raise ScheduleConflictError(
            f"schedule {schedule.id} was modified concurrently",
            {"expected_version": expected_version, "current_version": schedule.version},
        )


def people_for_schedule(db: Session, schedule: models.Schedule) -> Tuple[List[int], str]:
    """People attached to a persisted schedule and the conflict type they are reported under."""
    if ScheduleType(schedule.schedule_type) == ScheduleType.class_:
        if schedule.group_id is None:
            return [], "student"
        rows = (
            db.query(models.GroupMember.user_id)
            .filter(models.GroupMember.group_id == schedule.group_id, models.GroupMember.status == "active")
            .all()
        )
        return sorted({r.user_id for r in rows}), "student"
    return sorted({p.user_id for p in schedule.participants if p.status != "declined"}), "participant"


def confirm_schedule(db: Session, schedule_id: int, user_id: Optional[int] = None) -> models.Schedule:
    """Teacher acceptance: the schedule and its assigned sessions become scheduled."""
    schedule = get_schedule(db, schedule_id, for_update=True)
    validate_schedule_transition(schedule.status, ScheduleStatus.scheduled.value)
    schedule.status = ScheduleStatus.scheduled.value
    promoted = 0
    for s in schedule.sessions:
        if s.status == SessionStatus.assigned.value:
            s.status = SessionStatus.scheduled.value
            promoted += 1
    db.commit()
    db.refresh(schedule)
    logger.info("Schedule %s confirmed by user %s, %d sessions promoted", schedule_id, user_id, promoted)
    return schedule


def change_schedule_status(
    db: Session,
    schedule_id: int,
    status: ScheduleStatus,
    *,
    expected_version: Optional[int] = None,
    reason: Optional[str] = None,
) -> models.Schedule:
    schedule = get_schedule(db, schedule_id, for_update=True)
    check_version(schedule, expected_version)
    validate_schedule_transition(schedule.status, status.value)
    schedule.status = status.value

    if status == ScheduleStatus.cancelled:
        cancelled = 0
        for s in schedule.sessions:
            if s.status in PRE_COMPLETION_STATUSES:
                s.status = SessionStatus.cancelled.value
                s.cancelling_reason = reason or "Schedule cancelled"
                cancelled += 1
        logger.info("Schedule %s cancelled, %d pending sessions cancelled", schedule_id, cancelled)
    elif status == ScheduleStatus.completed:
        done = [s.session_date for s in schedule.sessions if s.status == SessionStatus.completed.value]
        schedule.actual_end_date = max(done) if done else datetime.utcnow().date()
    if reason:
        schedule.notes = f"{schedule.notes}; {reason}" if schedule.notes else reason

    db.commit()
    db.refresh(schedule)
    return schedule


def change_session_status(db: Session, session_id: int, update: schemas.SessionStatusUpdate) -> models.ScheduleSession:
    session = get_session(db, session_id, for_update=True)
    if update.status == SessionStatus.rescheduled:
        # A rescheduled session always points at its replacement
        raise InvalidTransition(
            "sessions are rescheduled by creating a makeup session",
            {"session_id": session_id, "status": session.status, "use": f"/sessions/{session_id}/makeup"},
        )
    validate_session_transition(session.status, update.status.value)
    session.status = update.status.value
    if update.status == SessionStatus.confirmed:
        session.confirmed_at = datetime.utcnow()
        session.confirmed_by_user_id = update.user_id
    if update.status in _INTERRUPTIONS and update.cancelling_reason:
        session.cancelling_reason = update.cancelling_reason
    if update.notes:
        session.notes = f"{session.notes}; {update.notes}" if session.notes else update.notes
    db.commit()
    db.refresh(session)
    logger.info("Session %s -> %s", session_id, update.status.value)
    return session


def create_makeup_session(
    db: Session, session_id: int, request: schemas.MakeupSessionRequest
) -> Tuple[models.ScheduleSession, models.ScheduleSession]:
    """Replace ``session_id`` with a new session on another date; history of the original is kept."""
    original = get_session(db, session_id, for_update=True)
    validate_session_transition(original.status, request.original_status)
    schedule = original.schedule

    try:
        start = parse_time(request.new_start_time)
    except ValueError as e:
        raise InvalidSlot(str(e), {"new_start_time": request.new_start_time})
    hours_per_session = (minutes_of_day(original.end_time) - minutes_of_day(original.start_time)) / 60
    room_id = request.room_id if request.room_id is not None else original.room_id
    teacher_id = request.assigned_teacher_id if request.assigned_teacher_id is not None else original.assigned_teacher_id

    hours = resolve_branch_hours(db, branch_id=schedule.branch_id, room_id=room_id)
    end = validate_slot(sunday_weekday(request.new_session_date), start, hours_per_session, hours)

    candidate = schemas.GeneratedSession(
        session_number=original.session_number,
        week_number=original.week_number,
        session_date=request.new_session_date,
        start_time=start,
        end_time=end,
        status=SessionStatus.scheduled,
        is_makeup=True,
        makeup_for_session_id=original.id,
        assigned_teacher_id=teacher_id,
        room_id=room_id,
    )
    people, people_type = people_for_schedule(db, schedule)
    report = ConflictDetector(SqlSessionStore(db)).detect(
        [candidate], participant_ids=people, people_type=people_type, exclude_session_ids=[original.id]
    )
    record_conflicts(report)
    blocking = report.room + report.teacher + report.participant
    if blocking:
        raise ScheduleConflictError(
            f"makeup session on {request.new_session_date} conflicts with {len(blocking)} existing sessions",
            {"conflicts": len(blocking)},
            report,
        )
    if report.student:
        logger.warning("Makeup for session %s overlaps %d student bookings", session_id, len(report.student))

    original.status = request.original_status
    original.cancelling_reason = request.cancelling_reason or original.cancelling_reason
    makeup = models.ScheduleSession(
        schedule_id=schedule.id,
        notes=f"Makeup for session {original.session_number}",
        **candidate.model_dump(exclude={"notes"}, mode="python"),
    )
    makeup.status = candidate.status.value
    db.add(makeup)
    db.commit()
    db.refresh(original)
    db.refresh(makeup)
    logger.info("Session %s %s, makeup %s on %s", original.id, original.status, makeup.id, makeup.session_date)
    return original, makeup
