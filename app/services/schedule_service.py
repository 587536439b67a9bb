"""Schedule preview/create pipeline.

``assemble()`` is the single pipeline behind preview, create and regenerate:

    plan -> branch hours -> participants -> holidays -> reschedule -> conflicts

Preview returns its report; create and regenerate run the very same call
inside their write transaction and persist exactly ``report.final_sessions``,
so a preview and the create that follows it cannot disagree.
"""
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, List, Literal, Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from app import models, schemas
from app.core.exceptions import (
    HolidayFetchFailed,
    InvalidSlot,
    InvalidTransition,
    ScheduleConflictError,
    ScheduleValidationError,
    weekday_label,
)
from app.core.monitoring import SCHEDULE_GENERATION_COUNT, SCHEDULE_GENERATION_DURATION, record_conflicts
from app.schemas import (
    ConflictReport,
    GeneratedSession,
    HolidayPeriod,
    PaymentSummary,
    PreviewIssue,
    PreviewReport,
    ScheduleCreateRequest,
    ScheduleStatus,
    ScheduleType,
    SessionSlot,
    SessionStatus,
)
from app.services.branch_hours import resolve_branch_hours, validate_slot
from app.services.conflicts import ConflictDetector, SqlSessionStore, find_self_overlaps
from app.services.helpers import format_hhmm, parse_time, sunday_weekday
from app.services.holiday_calendar import HolidayCalendar, merge_holiday_periods
from app.services.lifecycle import (
    ELIGIBLE_PAYMENT_STATUSES,
    HELD_STATUSES,
    PRE_COMPLETION_STATUSES,
    check_version,
    get_schedule,
)
from app.services.recurrence import plan_sessions
from app.services.reschedule import compute_holiday_impacts, reschedule_sessions

logger = logging.getLogger(__name__)

Mode = Literal["preview", "create", "regenerate"]

CONFLICT_ISSUE_CODES = {"room": "ROOM_CONFLICT", "teacher": "TEACHER_CONFLICT", "participant": "PARTICIPANT_CONFLICT"}
# Students of a class double-booked elsewhere are reported but do not block creation
STUDENT_CONFLICT_CODE = "STUDENT_CONFLICT"
SUPERSEDED_REASON = "Superseded by regenerated schedule"


def _issue(severity: str, code: str, message: str, **details) -> PreviewIssue:
    return PreviewIssue(severity=severity, code=code, message=message, details=details)


@dataclass
class Participants:
    user_ids: List[int] = field(default_factory=list)
    # Conflict resource type the people are reported under
    people_type: Literal["participant", "student"] = "participant"
    payment_summary: Optional[PaymentSummary] = None
    issues: List[PreviewIssue] = field(default_factory=list)


def _group_participants(db: Session, group_id: Optional[int]) -> Participants:
    result = Participants(people_type="student")
    if group_id is None:
        result.issues.append(_issue("error", "MISSING_GROUP", "class schedules require a group_id"))
        return result
    members = (
        db.query(models.GroupMember)
        .filter(models.GroupMember.group_id == group_id, models.GroupMember.status == "active")
        .all()
    )
    eligible = [m for m in members if m.payment_status in ELIGIBLE_PAYMENT_STATUSES]
    result.user_ids = sorted({m.user_id for m in members})
    result.payment_summary = PaymentSummary(
        group_id=group_id,
        total_members=len(members),
        eligible_members=len(eligible),
        pending_members=len(members) - len(eligible),
        has_eligible_members=bool(eligible),
    )
    if not eligible:
        result.issues.append(
            _issue(
                "error",
                "NO_ELIGIBLE_MEMBERS",
                f"group {group_id} has no active member with a deposit or full payment",
                group_id=group_id,
                total_members=len(members),
            )
        )
    return result


def resolve_participants(db: Session, request: ScheduleCreateRequest) -> Participants:
    """Class schedules draw people from their group; every other type uses its explicit list."""
    match request.schedule_type:
        case ScheduleType.class_:
            return _group_participants(db, request.group_id)
        case ScheduleType.meeting | ScheduleType.appointment:
            result = Participants(user_ids=sorted(set(request.participant_user_ids)))
            if not result.user_ids:
                result.issues.append(
                    _issue(
                        "error",
                        "MISSING_PARTICIPANTS",
                        f"{request.schedule_type.value} schedules require at least one participant",
                    )
                )
            return result
        case ScheduleType.event | ScheduleType.holiday:
            return Participants(user_ids=sorted(set(request.participant_user_ids)))
    raise InvalidSlot(f"unsupported schedule type '{request.schedule_type}'")


def _conflict_issues(report: ConflictReport) -> List[PreviewIssue]:
    issues = []
    for resource_type, records in report.by_type().items():
        for r in records:
            code = CONFLICT_ISSUE_CODES.get(resource_type, STUDENT_CONFLICT_CODE)
            issues.append(
                _issue(
                    "error" if resource_type in CONFLICT_ISSUE_CODES else "warning",
                    code,
                    f"{resource_type} {r.resource_id} is already booked on {r.session_date} "
                    f"{format_hhmm(r.start_time)}-{format_hhmm(r.end_time)} (schedule {r.existing_schedule_id})",
                    resource_id=r.resource_id,
                    session_number=r.session_number,
                    existing_schedule_id=r.existing_schedule_id,
                    existing_session_id=r.existing_session_id,
                    date=r.session_date.isoformat(),
                )
            )
    return issues


def _holiday_issues(report: PreviewReport, fallback: List[int], auto_reschedule: bool) -> List[PreviewIssue]:
    issues = []
    for impact in report.holiday_impacts:
        if not auto_reschedule:
            issues.append(
                _issue(
                    "warning",
                    "HOLIDAY_NOT_RESCHEDULED",
                    f"session {impact.session_number} falls on {impact.holiday_name} ({impact.date}) and stays in place",
                    session_number=impact.session_number,
                    date=impact.date.isoformat(),
                )
            )
        elif impact.session_number in fallback:
            issues.append(
                _issue(
                    "warning",
                    "HOLIDAY_WEEKDAY_FALLBACK",
                    f"no free {weekday_label(sunday_weekday(impact.date))} found for session {impact.session_number}; "
                    f"moved to {impact.shifted_to}",
                    session_number=impact.session_number,
                    date=impact.date.isoformat(),
                    shifted_to=impact.shifted_to.isoformat() if impact.shifted_to else None,
                )
            )
        elif impact.was_rescheduled:
            issues.append(
                _issue(
                    "warning",
                    "HOLIDAY_RESCHEDULED",
                    f"session {impact.session_number} on {impact.date} ({impact.holiday_name}) moved to {impact.shifted_to}",
                    session_number=impact.session_number,
                    date=impact.date.isoformat(),
                    shifted_to=impact.shifted_to.isoformat() if impact.shifted_to else None,
                )
            )
    return issues


def _run_pipeline(
    db: Session,
    request: ScheduleCreateRequest,
    calendar: HolidayCalendar,
    exclude_schedule_id: Optional[int],
    resume_after: Optional[date],
    held: int,
    before_conflicts: Optional[Callable[[], None]],
) -> PreviewReport:
    report = PreviewReport(can_create=False)
    try:
        hours = resolve_branch_hours(db, branch_id=request.branch_id, room_id=request.default_room_id)
        original = plan_sessions(request, hours, resume_after=resume_after, held=held)
    except ScheduleValidationError as e:
        report.issues.append(_issue("error", e.code, e.message, **e.details))
        return report
    report.original_sessions = original

    people = resolve_participants(db, request)
    report.issues.extend(people.issues)
    report.payment_summary = people.payment_summary

    # Rescheduled sessions may spill into the following year
    start_year = request.start_date.year
    end_year = original[-1].session_date.year + 1
    try:
        public = calendar.fetch_holidays(start_year, end_year)
    except HolidayFetchFailed as e:
        logger.warning("Holiday calendar unavailable for %d-%d: %s", start_year, end_year, e)
        report.holiday_fetch_failed = True
        report.issues.append(
            _issue(
                "warning",
                "HOLIDAY_FETCH_FAILED",
                "public holidays could not be loaded; sessions were not checked against them",
                errors=e.errors,
            )
        )
        public = {}
    holidays = merge_holiday_periods(public, request.holidays)

    fallback: List[int] = []
    moved = {}
    if request.auto_reschedule:
        result = reschedule_sessions(original, holidays.keys(), request.start_date, first_number=held + 1)
        final, moved, fallback = result.sessions, result.moved, result.fallback
    else:
        final = list(original)
    report.final_sessions = final
    report.holiday_impacts = compute_holiday_impacts(original, holidays, moved)
    report.issues.extend(_holiday_issues(report, fallback, request.auto_reschedule))

    if before_conflicts is not None:
        before_conflicts()
    detector = ConflictDetector(SqlSessionStore(db))
    detect_kwargs = dict(
        participant_ids=people.user_ids,
        people_type=people.people_type,
        exclude_schedule_id=exclude_schedule_id,
    )
    report.conflicts = detector.detect(final, **detect_kwargs)
    if moved:
        report.pre_reschedule_conflicts = detector.detect(original, **detect_kwargs)
        if report.pre_reschedule_conflicts.total:
            report.issues.append(
                _issue(
                    "warning",
                    "PRE_RESCHEDULE_CONFLICT",
                    f"{report.pre_reschedule_conflicts.total} conflicts existed before holiday adjustment",
                    total=report.pre_reschedule_conflicts.total,
                )
            )
    else:
        report.pre_reschedule_conflicts = report.conflicts
    report.issues.extend(_conflict_issues(report.conflicts))

    for first, second in find_self_overlaps(final):
        report.issues.append(
            _issue(
                "error",
                "SELF_OVERLAP",
                f"sessions {first} and {second} of this schedule overlap",
                session_numbers=[first, second],
            )
        )

    report.estimated_end_date = final[-1].session_date if final else None
    report.can_create = not any(i.severity == "error" for i in report.issues)
    return report


def assemble(
    db: Session,
    request: ScheduleCreateRequest,
    calendar: HolidayCalendar,
    exclude_schedule_id: Optional[int] = None,
    *,
    mode: Mode = "preview",
    resume_after: Optional[date] = None,
    held: int = 0,
    before_conflicts: Optional[Callable[[], None]] = None,
) -> PreviewReport:
    """Run the pipeline once.

    ``before_conflicts`` runs after holidays are loaded and right before the
    conflict queries; write paths take their locks there so no lock is held
    across the holiday provider call.
    """
    with SCHEDULE_GENERATION_DURATION.labels(mode=mode).time():
        report = _run_pipeline(db, request, calendar, exclude_schedule_id, resume_after, held, before_conflicts)
    if not report.final_sessions:
        outcome = "invalid"
    else:
        outcome = "ready" if report.can_create else "blocked"
        record_conflicts(report.conflicts)
    SCHEDULE_GENERATION_COUNT.labels(mode=mode, status=outcome).inc()
    logger.info(
        "Assembled %s for '%s': %d sessions, %d issues, can_create=%s",
        mode,
        request.schedule_name,
        len(report.final_sessions),
        len(report.issues),
        report.can_create,
    )
    return report


def preview_schedule(db: Session, request: ScheduleCreateRequest, calendar: HolidayCalendar) -> PreviewReport:
    return assemble(db, request, calendar, mode="preview")


def _lock_room(db: Session, room_id: Optional[int]) -> None:
    """Serialize writers booking the same room until the transaction ends."""
    if room_id is None:
        return
    if db.get_bind().dialect.name == "postgresql":
        db.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": room_id})
    db.query(models.Room).filter(models.Room.id == room_id).with_for_update().first()


def _raise_on_errors(report: PreviewReport, override_conflicts: bool) -> None:
    errors = [i for i in report.issues if i.severity == "error"]
    conflict_codes = set(CONFLICT_ISSUE_CODES.values())
    validation = [i for i in errors if i.code not in conflict_codes]
    if validation:
        raise ScheduleValidationError(
            validation[0].message,
            {"issues": [i.model_dump() for i in validation]},
            issues=validation,
        )
    conflicts = [i for i in errors if i.code in conflict_codes]
    if conflicts:
        if override_conflicts:
            logger.warning("Persisting schedule despite %d conflicts (override requested)", len(conflicts))
            return
        raise ScheduleConflictError(
            f"schedule conflicts with {len(conflicts)} existing bookings",
            {"issues": [i.model_dump() for i in conflicts]},
            report.conflicts,
        )


def _session_row(schedule_id: int, s: GeneratedSession) -> models.ScheduleSession:
    row = models.ScheduleSession(schedule_id=schedule_id, **s.model_dump(exclude={"status"}))
    row.status = s.status.value
    return row


def _slots_json(slots: Optional[List[SessionSlot]]):
    return [s.model_dump() for s in slots] if slots else None


def _periods_json(periods: Optional[List[HolidayPeriod]]):
    return [p.model_dump(mode="json") for p in periods] if periods else None


def _create_response(
    schedule: models.Schedule, rows: List[models.ScheduleSession], report: PreviewReport, superseded: int = 0
) -> schemas.ScheduleCreateResponse:
    return schemas.ScheduleCreateResponse(
        schedule_id=schedule.id,
        schedule=schemas.ScheduleResponse.model_validate(schedule),
        final_sessions=[GeneratedSession.model_validate(row) for row in rows],
        original_sessions=report.original_sessions,
        holiday_impacts=report.holiday_impacts,
        conflicts=report.conflicts,
        issues=report.issues,
        superseded_sessions=superseded,
    )


def create_schedule(
    db: Session, request: ScheduleCreateRequest, calendar: HolidayCalendar
) -> schemas.ScheduleCreateResponse:
    """Check and insert in one transaction; callers pass a SERIALIZABLE session."""
    try:
        report = assemble(
            db, request, calendar, mode="create", before_conflicts=lambda: _lock_room(db, request.default_room_id)
        )
        _raise_on_errors(report, request.override_conflicts)

        schedule = models.Schedule(
            schedule_name=request.schedule_name,
            schedule_type=request.schedule_type.value,
            group_id=request.group_id,
            created_by_user_id=request.created_by_user_id,
            recurring_pattern=request.recurring_pattern.value,
            total_hours=request.total_hours,
            hours_per_session=request.hours_per_session,
            session_per_week=request.sessions_per_week,
            start_date=request.start_date,
            estimated_end_date=report.estimated_end_date,
            session_start_time=request.session_start_time,
            session_slots=_slots_json(request.session_slots),
            custom_recurring_days=request.custom_recurring_days,
            default_teacher_id=request.default_teacher_id,
            default_room_id=request.default_room_id,
            branch_id=request.branch_id,
            holiday_periods=_periods_json(request.holidays),
            status=ScheduleStatus.assigned.value,
            auto_reschedule=request.auto_reschedule,
            notes=request.notes,
        )
        db.add(schedule)
        db.flush()

        if request.schedule_type != ScheduleType.class_:
            for user_id in sorted(set(request.participant_user_ids)):
                role = "organizer" if user_id == request.created_by_user_id else "participant"
                db.add(models.ScheduleParticipant(schedule_id=schedule.id, user_id=user_id, role=role))
        rows = [_session_row(schedule.id, s) for s in report.final_sessions]
        db.add_all(rows)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(schedule)
    logger.info("Created schedule %s '%s' with %d sessions", schedule.id, schedule.schedule_name, len(report.final_sessions))
    return _create_response(schedule, rows, report)


def definition_from_schedule(
    schedule: models.Schedule, changes: Optional[schemas.ScheduleRegenerateRequest] = None
) -> ScheduleCreateRequest:
    """Rebuild the creation request of a persisted schedule, with ``changes`` applied."""
    data = dict(
        schedule_name=schedule.schedule_name,
        schedule_type=schedule.schedule_type,
        recurring_pattern=schedule.recurring_pattern,
        total_hours=schedule.total_hours,
        hours_per_session=schedule.hours_per_session,
        sessions_per_week=schedule.session_per_week,
        start_date=schedule.start_date,
        session_start_time=schedule.session_start_time,
        session_slots=schedule.session_slots,
        custom_recurring_days=schedule.custom_recurring_days,
        default_teacher_id=schedule.default_teacher_id,
        default_room_id=schedule.default_room_id,
        branch_id=schedule.branch_id,
        auto_reschedule=schedule.auto_reschedule,
        holidays=schedule.holiday_periods,
        group_id=schedule.group_id,
        participant_user_ids=[p.user_id for p in schedule.participants if p.status != "declined"],
        created_by_user_id=schedule.created_by_user_id,
        notes=schedule.notes,
    )
    if changes is not None:
        updates = changes.model_dump(exclude_unset=True, exclude={"expected_version", "override_conflicts"})
        if updates.get("session_slots") is not None or updates.get("session_start_time") is not None:
            # Switching generation mode: the other mode's inputs no longer apply
            if "session_slots" not in updates:
                data["session_slots"] = None
            if "session_start_time" not in updates:
                data["session_start_time"] = None
        data.update(updates)
        data["override_conflicts"] = changes.override_conflicts
    return ScheduleCreateRequest.model_validate(data)


def regenerate_sessions(
    db: Session,
    schedule_id: int,
    changes: schemas.ScheduleRegenerateRequest,
    calendar: HolidayCalendar,
) -> schemas.ScheduleCreateResponse:
    """Replace the not-yet-held sessions of a schedule with a freshly generated set.

    Completed and no-show sessions keep their place at the head of the series
    and count towards the total; only the remaining sessions are planned, after
    the last held one. Pending sessions are soft-cancelled as superseded.
    """
    try:
        schedule = get_schedule(db, schedule_id, for_update=True)
        check_version(schedule, changes.expected_version)
        if schedule.status in (ScheduleStatus.completed.value, ScheduleStatus.cancelled.value):
            raise InvalidTransition(
                f"cannot regenerate a {schedule.status} schedule",
                {"schedule_id": schedule_id, "status": schedule.status},
            )
        request = definition_from_schedule(schedule, changes)
        held = [s for s in schedule.sessions if s.status in HELD_STATUSES]
        report = assemble(
            db,
            request,
            calendar,
            exclude_schedule_id=schedule.id,
            mode="regenerate",
            resume_after=held[-1].session_date if held else None,
            held=len(held),
            before_conflicts=lambda: _lock_room(db, request.default_room_id),
        )
        _raise_on_errors(report, request.override_conflicts)

        superseded = 0
        for s in schedule.sessions:
            if s.status in PRE_COMPLETION_STATUSES:
                s.status = SessionStatus.cancelled.value
                s.cancelling_reason = SUPERSEDED_REASON
                superseded += 1
        # sessions are ordered by date, so held ones become 1..k ahead of the new set
        for idx, s in enumerate(held):
            s.session_number = idx + 1

        schedule.recurring_pattern = request.recurring_pattern.value
        schedule.total_hours = request.total_hours
        schedule.hours_per_session = request.hours_per_session
        schedule.session_per_week = request.sessions_per_week
        schedule.start_date = request.start_date
        schedule.session_start_time = request.session_start_time
        schedule.session_slots = _slots_json(request.session_slots)
        schedule.custom_recurring_days = request.custom_recurring_days
        schedule.default_teacher_id = request.default_teacher_id
        schedule.default_room_id = request.default_room_id
        schedule.auto_reschedule = request.auto_reschedule
        schedule.holiday_periods = _periods_json(request.holidays)
        schedule.estimated_end_date = report.estimated_end_date

        # Sessions of an already confirmed schedule skip teacher confirmation again
        promote = schedule.status != ScheduleStatus.assigned.value
        rows = []
        for s in report.final_sessions:
            if promote and s.status == SessionStatus.assigned:
                s = s.model_copy(update={"status": SessionStatus.scheduled})
            rows.append(_session_row(schedule.id, s))
        db.add_all(rows)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(schedule)
    logger.info(
        "Regenerated schedule %s: %d held, %d superseded, %d new sessions",
        schedule_id,
        len(held),
        superseded,
        len(report.final_sessions),
    )
    return _create_response(schedule, rows, report, superseded)


def get_schedule_sessions(db: Session, schedule_id: int, include_inactive: bool = True) -> List[models.ScheduleSession]:
    schedule = get_schedule(db, schedule_id)
    if include_inactive:
        return list(schedule.sessions)
    return [s for s in schedule.sessions if s.status in PRE_COMPLETION_STATUSES]


def check_room(db: Session, request: schemas.RoomCheckRequest) -> schemas.RoomCheckResponse:
    """Ad-hoc availability of one room slot: branch hours first, then bookings."""
    try:
        start = parse_time(request.start_time)
        hours = resolve_branch_hours(db, branch_id=request.branch_id, room_id=request.room_id)
        end = validate_slot(sunday_weekday(request.session_date), start, request.hours_per_session, hours)
    except ScheduleValidationError as e:
        return schemas.RoomCheckResponse(available=False, issues=[_issue("error", e.code, e.message, **e.details)])
    except ValueError as e:
        return schemas.RoomCheckResponse(available=False, issues=[_issue("error", InvalidSlot.code, str(e))])

    candidate = GeneratedSession(
        session_number=1,
        week_number=1,
        session_date=request.session_date,
        start_time=start,
        end_time=end,
        room_id=request.room_id,
    )
    report = ConflictDetector(SqlSessionStore(db)).detect([candidate], exclude_schedule_id=request.exclude_schedule_id)
    issues = _conflict_issues(ConflictReport(room=report.room))
    return schemas.RoomCheckResponse(available=not report.room, issues=issues, conflicts=report.room)
