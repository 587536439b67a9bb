"""Holiday adjustment of a generated session sequence ("lift and append").

Sessions that fall on a holiday are lifted out and appended after the last
kept session, each on the next non-holiday date with the same weekday it
originally had, so the weekly rhythm of the schedule survives. The whole
sequence is then re-indexed.

An earlier approach shifted each holiday session to the next calendar day;
it broke the weekday pattern and is intentionally not provided here.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Collection, Dict, List, Mapping, Optional

from app.core.config import settings
from app.core.monitoring import SESSIONS_RESCHEDULED
from app.schemas import GeneratedSession, HolidayImpact
from app.services.helpers import week_number

logger = logging.getLogger(__name__)

HOLIDAY_NOTE = "Rescheduled due to holiday"
FALLBACK_NOTE = "Rescheduled due to holiday (no matching weekday found, moved to next available day)"


@dataclass
class RescheduleResult:
    sessions: List[GeneratedSession]
    # original session_number -> new date
    moved: Dict[int, date] = field(default_factory=dict)
    # original session_numbers placed by the weekday-agnostic fallback
    fallback: List[int] = field(default_factory=list)


def reindex_sessions(sessions: List[GeneratedSession], start_date: date, first_number: int = 1) -> List[GeneratedSession]:
    """Sort by (date, start) and renumber from ``first_number`` with week numbers relative to ``start_date``."""
    ordered = sorted(sessions, key=lambda s: (s.session_date, s.start_time))
    return [
        s.model_copy(update={"session_number": first_number + idx, "week_number": week_number(s.session_date, start_date)})
        for idx, s in enumerate(ordered)
    ]


def _with_note(session: GeneratedSession, note: str, new_date: date) -> GeneratedSession:
    notes = f"{session.notes}; {note}" if session.notes else note
    return session.model_copy(update={"session_date": new_date, "notes": notes})


def _next_same_weekday(anchor: date, weekday: int, holidays: Collection[date], window: int) -> Optional[date]:
    candidate = anchor + timedelta(days=1)
    for _ in range(window):
        if candidate.weekday() == weekday and candidate not in holidays:
            return candidate
        candidate += timedelta(days=1)
    return None


def _next_open_day(anchor: date, holidays: Collection[date]) -> date:
    candidate = anchor + timedelta(days=1)
    while candidate in holidays:
        candidate += timedelta(days=1)
    return candidate


def reschedule_sessions(
    sessions: List[GeneratedSession],
    holidays: Collection[date],
    start_date: date,
    search_window_days: Optional[int] = None,
    first_number: int = 1,
) -> RescheduleResult:
    if not sessions:
        return RescheduleResult(sessions=[])
    window = settings.reschedule_search_days if search_window_days is None else search_window_days
    holiday_dates = set(holidays)

    kept = [s for s in sessions if s.session_date not in holiday_dates]
    postponed = [s for s in sessions if s.session_date in holiday_dates]

    if not postponed:
        return RescheduleResult(sessions=reindex_sessions(kept, start_date, first_number))
    if not kept:
        # Nothing to anchor against: leave the sequence as generated
        logger.warning("All %d sessions fall on holidays; leaving them in place", len(sessions))
        return RescheduleResult(sessions=reindex_sessions(list(sessions), start_date, first_number))

    result = RescheduleResult(sessions=[])
    anchor = max(s.session_date for s in kept)
    adjusted: List[GeneratedSession] = []
    for session in postponed:
        target = _next_same_weekday(anchor, session.session_date.weekday(), holiday_dates, window)
        if target is not None:
            adjusted.append(_with_note(session, HOLIDAY_NOTE, target))
            SESSIONS_RESCHEDULED.labels(strategy="same_weekday").inc()
        else:
            target = _next_open_day(anchor, holiday_dates)
            logger.warning(
                "No %s within %d days after %s for session %d; falling back to %s",
                session.session_date.strftime("%A"),
                window,
                anchor,
                session.session_number,
                target,
            )
            adjusted.append(_with_note(session, FALLBACK_NOTE, target))
            result.fallback.append(session.session_number)
            SESSIONS_RESCHEDULED.labels(strategy="fallback").inc()
        result.moved[session.session_number] = target
        anchor = target

    result.sessions = reindex_sessions(kept + adjusted, start_date, first_number)
    logger.info("Rescheduled %d holiday sessions (%d via fallback)", len(adjusted), len(result.fallback))
    return result


def compute_holiday_impacts(
    original: List[GeneratedSession],
    holidays: Mapping[date, str],
    moved: Optional[Mapping[int, date]] = None,
) -> List[HolidayImpact]:
    """One entry per original session that landed on a holiday, numbered as in ``original``."""
    moved = moved or {}
    impacts = []
    for s in original:
        name = holidays.get(s.session_date)
        if name is None:
            continue
        shifted_to = moved.get(s.session_number)
        impacts.append(
            HolidayImpact(
                session_number=s.session_number,
                date=s.session_date,
                holiday_name=name or "Holiday",
                shifted_to=shifted_to,
                was_rescheduled=shifted_to is not None,
            )
        )
    return impacts
