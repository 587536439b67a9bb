"""Expand a schedule definition into a raw, chronologically ordered session list.

Two generation modes:

- explicit weekly slots (``session_slots``): walk the calendar one day at a
  time from ``start_date`` and emit one session per slot of that weekday;
- legacy single-slot patterns (daily / weekly / bi-weekly / monthly / custom /
  none) driven by ``session_start_time``.

Both stop once ``floor(total_hours / hours_per_session)`` sessions exist. The
output is the *pre-holiday* sequence; see ``reschedule.py`` for the holiday pass.
"""
import logging
from collections import defaultdict
from datetime import date, time, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from app.core.config import settings
from app.core.exceptions import DuplicateSlotWeekday, InvalidDuration, InvalidSlot, SlotCountMismatch, UnboundedGeneration
from app.schemas import GeneratedSession, RecurrencePattern, ScheduleCreateRequest, ScheduleType, SessionStatus
from app.services.branch_hours import BranchHours, validate_slot
from app.services.helpers import (
    WEEKDAY_NAMES,
    add_minutes,
    duration_minutes,
    normalize_weekday,
    parse_time,
    session_count,
    sunday_weekday,
    week_number,
)

logger = logging.getLogger(__name__)

# (weekday, start, end) with weekday 0 = Sunday
Slot = Tuple[int, time, time]


def expected_session_count(request: ScheduleCreateRequest) -> int:
    if request.total_hours <= 0 or request.hours_per_session <= 0:
        raise InvalidDuration(
            "total_hours and hours_per_session must be greater than zero",
            {"total_hours": request.total_hours, "hours_per_session": request.hours_per_session},
        )
    n = session_count(request.total_hours, request.hours_per_session)
    if n <= 0:
        raise InvalidDuration(
            f"total_hours {request.total_hours:g} is shorter than one session of {request.hours_per_session:g}h",
            {"total_hours": request.total_hours, "hours_per_session": request.hours_per_session},
        )
    if request.recurring_pattern == RecurrencePattern.none:
        return 1
    return n


def initial_session_status(schedule_type: ScheduleType) -> SessionStatus:
    # Class sessions wait for the assigned teacher to confirm
    if schedule_type == ScheduleType.class_:
        return SessionStatus.assigned
    return SessionStatus.scheduled


def resolve_slots(request: ScheduleCreateRequest) -> Optional[List[Tuple[int, time]]]:
    """Validated explicit slots as (weekday, start) pairs, or None for legacy patterns."""
    if not request.session_slots:
        return None
    if len(request.session_slots) != request.sessions_per_week:
        raise SlotCountMismatch(
            f"{len(request.session_slots)} session slots given but sessions_per_week is {request.sessions_per_week}",
            {"slots": len(request.session_slots), "sessions_per_week": request.sessions_per_week},
        )
    resolved: List[Tuple[int, time]] = []
    seen: set[int] = set()
    for slot in request.session_slots:
        weekday = normalize_weekday(slot.weekday)
        if not 0 <= weekday <= 6:
            raise InvalidSlot(f"invalid weekday {slot.weekday} for session slot", {"weekday": slot.weekday})
        if not (0 <= slot.start_hour <= 23 and 0 <= slot.start_minute <= 59):
            raise InvalidSlot(
                f"invalid start time {slot.start_hour}:{slot.start_minute} for session slot",
                {"weekday": weekday, "start_hour": slot.start_hour, "start_minute": slot.start_minute},
            )
        if weekday in seen:
            raise DuplicateSlotWeekday(f"more than one session slot on {WEEKDAY_NAMES[weekday]}", {"weekday": weekday})
        seen.add(weekday)
        resolved.append((weekday, time(slot.start_hour, slot.start_minute)))
    return resolved


def _legacy_start_time(request: ScheduleCreateRequest) -> time:
    if not request.session_start_time:
        raise InvalidSlot("session_start_time is required when no session slots are given")
    try:
        return parse_time(request.session_start_time)
    except ValueError as e:
        raise InvalidSlot(str(e), {"session_start_time": request.session_start_time})


def _custom_days(request: ScheduleCreateRequest) -> set[int]:
    days = {normalize_weekday(d) for d in (request.custom_recurring_days or [])}
    if not days:
        raise InvalidSlot("custom pattern requires session_slots or custom_recurring_days")
    invalid = sorted(d for d in days if not 0 <= d <= 6)
    if invalid:
        raise InvalidSlot(f"invalid custom recurring days {invalid}", {"custom_recurring_days": invalid})
    return days


def _pattern_predicate(request: ScheduleCreateRequest) -> Callable[[date], bool]:
    start = request.start_date
    pattern = request.recurring_pattern
    if pattern == RecurrencePattern.daily:
        return lambda d: True
    if pattern == RecurrencePattern.weekly:
        return lambda d: d.weekday() == start.weekday()
    if pattern == RecurrencePattern.bi_weekly:
        return lambda d: d.weekday() == start.weekday() and ((d - start).days // 7) % 2 == 0
    if pattern == RecurrencePattern.monthly:
        return lambda d: d.day == start.day
    if pattern == RecurrencePattern.custom:
        days = _custom_days(request)
        return lambda d: sunday_weekday(d) in days
    if pattern == RecurrencePattern.none:
        return lambda d: d == start
    raise InvalidSlot(f"unsupported recurring pattern '{pattern}'")


def build_slot_table(request: ScheduleCreateRequest, hours: Optional[BranchHours]) -> Dict[int, List[Tuple[time, time]]]:
    """Weekday -> [(start, end)] sorted by start, validated against branch hours."""
    minutes = duration_minutes(request.hours_per_session)
    explicit = resolve_slots(request)
    if explicit is not None:
        pairs = explicit
    else:
        start = _legacy_start_time(request)
        first = sunday_weekday(request.start_date)
        if request.recurring_pattern in (RecurrencePattern.weekly, RecurrencePattern.bi_weekly, RecurrencePattern.none):
            weekdays = [first]
        elif request.recurring_pattern == RecurrencePattern.custom:
            weekdays = sorted(_custom_days(request))
        else:
            weekdays = [(first + offset) % 7 for offset in range(7)]
        pairs = [(wd, start) for wd in weekdays]

    table: Dict[int, List[Tuple[time, time]]] = defaultdict(list)
    for weekday, start in pairs:
        if hours is not None:
            end = validate_slot(weekday, start, request.hours_per_session, hours)
        else:
            try:
                end = add_minutes(start, minutes)
            except ValueError as e:
                raise InvalidSlot(str(e), {"weekday": weekday})
        table[weekday].append((start, end))
    for weekday in table:
        table[weekday].sort()
    return table


def _walk(first_day: date, total: int, max_days: int, emit_for_day: Callable[[date], List[Tuple[time, time]]]) -> List[Tuple[date, time, time]]:
    produced: List[Tuple[date, time, time]] = []
    current = first_day
    processed = 0
    while len(produced) < total and processed <= max_days:
        for start, end in emit_for_day(current):
            if len(produced) >= total:
                break
            produced.append((current, start, end))
        current += timedelta(days=1)
        processed += 1
    if len(produced) != total:
        raise UnboundedGeneration(
            f"unable to generate the requested number of sessions ({len(produced)}/{total}) within {max_days} days",
            {"generated": len(produced), "requested": total, "max_days": max_days},
        )
    return produced


def plan_sessions(
    request: ScheduleCreateRequest,
    hours: Optional[BranchHours] = None,
    *,
    max_days: Optional[int] = None,
    resume_after: Optional[date] = None,
    held: int = 0,
) -> List[GeneratedSession]:
    """Raw session sequence for ``request``; raises a ScheduleValidationError subclass on bad input.

    ``held`` sessions already took place up to ``resume_after``: only the rest
    of the series is planned, from the following day, numbered after them.
    Pattern parity and week numbers stay anchored on ``request.start_date``.
    """
    total = expected_session_count(request) - held
    if total <= 0:
        raise InvalidDuration(
            f"all {held} sessions of this schedule have already been held",
            {"held": held, "total_hours": request.total_hours, "hours_per_session": request.hours_per_session},
        )
    table = build_slot_table(request, hours)
    max_days = settings.max_generation_days if max_days is None else max_days
    first_day = request.start_date
    if resume_after is not None and resume_after >= first_day:
        first_day = resume_after + timedelta(days=1)

    if request.session_slots:
        def emit_for_day(d: date):
            return table.get(sunday_weekday(d), [])
    else:
        matches = _pattern_predicate(request)

        def emit_for_day(d: date):
            return table.get(sunday_weekday(d), []) if matches(d) else []

    status = initial_session_status(request.schedule_type)
    sessions = [
        GeneratedSession(
            session_number=held + idx + 1,
            week_number=week_number(day, request.start_date),
            session_date=day,
            start_time=start,
            end_time=end,
            status=status,
            assigned_teacher_id=request.default_teacher_id,
            room_id=request.default_room_id,
        )
        for idx, (day, start, end) in enumerate(_walk(first_day, total, max_days, emit_for_day))
    ]
    logger.debug(
        "Planned %d sessions (%s, %s slots) from %s to %s",
        len(sessions),
        request.recurring_pattern.value,
        "explicit" if request.session_slots else "legacy",
        sessions[0].session_date,
        sessions[-1].session_date,
    )
    return sessions
