"""Resource conflict detection against persisted sessions.

The detector only sees persisted sessions through ``SessionStore`` (list
sessions by resource and date range), so the storage behind it can change
without touching the overlap logic.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, time
from typing import Dict, Iterable, List, Literal, Optional, Protocol, Sequence, Tuple

from sqlalchemy import and_
from sqlalchemy.orm import Session

from app import models
from app.schemas import ConflictRecord, ConflictReport, GeneratedSession, ScheduleStatus, SessionStatus

logger = logging.getLogger(__name__)

ResourceType = Literal["room", "teacher", "participant", "student"]

# Sessions in these states no longer occupy anyone
INACTIVE_SESSION_STATUSES = (SessionStatus.cancelled.value, SessionStatus.no_show.value)


@dataclass(frozen=True)
class ExistingSession:
    id: int
    schedule_id: int
    session_date: date
    start_time: time
    end_time: time
    resource_id: int


class SessionStore(Protocol):
    def list_sessions(
        self,
        resource_type: ResourceType,
        resource_ids: Sequence[int],
        date_from: date,
        date_to: date,
        exclude_schedule_id: Optional[int] = None,
    ) -> List[ExistingSession]:
        ...


def overlaps(start_a: time, end_a: time, start_b: time, end_b: time) -> bool:
    """Half-open [start, end) overlap; back-to-back sessions do not collide."""
    return not (end_b <= start_a or end_a <= start_b)


class SqlSessionStore:
    def __init__(self, db: Session):
        self.db = db

    def _active_sessions(self, date_from: date, date_to: date, exclude_schedule_id: Optional[int]):
        q = (
            self.db.query(models.ScheduleSession)
            .join(models.Schedule, models.Schedule.id == models.ScheduleSession.schedule_id)
            .filter(
                models.ScheduleSession.session_date >= date_from,
                models.ScheduleSession.session_date <= date_to,
                models.ScheduleSession.status.notin_(INACTIVE_SESSION_STATUSES),
                models.Schedule.status != ScheduleStatus.cancelled.value,
            )
        )
        if exclude_schedule_id is not None:
            q = q.filter(models.ScheduleSession.schedule_id != exclude_schedule_id)
        return q

    @staticmethod
    def _existing(s: models.ScheduleSession, resource_id: int) -> ExistingSession:
        return ExistingSession(s.id, s.schedule_id, s.session_date, s.start_time, s.end_time, resource_id)

    def list_sessions(
        self,
        resource_type: ResourceType,
        resource_ids: Sequence[int],
        date_from: date,
        date_to: date,
        exclude_schedule_id: Optional[int] = None,
    ) -> List[ExistingSession]:
        ids = sorted(set(resource_ids))
        if not ids:
            return []
        base = self._active_sessions(date_from, date_to, exclude_schedule_id)
        if resource_type == "room":
            return [self._existing(s, s.room_id) for s in base.filter(models.ScheduleSession.room_id.in_(ids)).all()]
        if resource_type == "teacher":
            return [
                self._existing(s, s.assigned_teacher_id)
                for s in base.filter(models.ScheduleSession.assigned_teacher_id.in_(ids)).all()
            ]

        # People: explicit participants of other schedules plus students of class groups
        found: Dict[Tuple[int, int], ExistingSession] = {}
        by_participant = (
            base.join(models.ScheduleParticipant, models.ScheduleParticipant.schedule_id == models.Schedule.id)
            .filter(models.ScheduleParticipant.user_id.in_(ids), models.ScheduleParticipant.status != "declined")
            .with_entities(models.ScheduleSession, models.ScheduleParticipant.user_id)
            .all()
        )
        by_membership = (
            base.join(
                models.GroupMember,
                and_(models.GroupMember.group_id == models.Schedule.group_id, models.GroupMember.status == "active"),
            )
            .filter(models.GroupMember.user_id.in_(ids))
            .with_entities(models.ScheduleSession, models.GroupMember.user_id)
            .all()
        )
        for s, user_id in list(by_participant) + list(by_membership):
            found.setdefault((s.id, user_id), self._existing(s, user_id))
        return list(found.values())


class ConflictDetector:
    def __init__(self, store: SessionStore):
        self.store = store

    def _dimension(
        self,
        resource_type: ResourceType,
        candidates: List[GeneratedSession],
        resources_of,
        exclude_schedule_id: Optional[int],
        exclude_session_ids: Iterable[int],
    ) -> List[ConflictRecord]:
        wanted = {rid for s in candidates for rid in resources_of(s)}
        if not wanted:
            return []
        date_from = min(s.session_date for s in candidates)
        date_to = max(s.session_date for s in candidates)
        skip = set(exclude_session_ids)
        index: Dict[Tuple[int, date], List[ExistingSession]] = defaultdict(list)
        for existing in self.store.list_sessions(resource_type, sorted(wanted), date_from, date_to, exclude_schedule_id):
            if existing.id not in skip:
                index[(existing.resource_id, existing.session_date)].append(existing)

        records: List[ConflictRecord] = []
        for candidate in candidates:
            for rid in resources_of(candidate):
                for existing in index.get((rid, candidate.session_date), []):
                    if overlaps(candidate.start_time, candidate.end_time, existing.start_time, existing.end_time):
                        records.append(
                            ConflictRecord(
                                resource_type=resource_type,
                                resource_id=rid,
                                existing_schedule_id=existing.schedule_id,
                                existing_session_id=existing.id,
                                session_date=existing.session_date,
                                start_time=existing.start_time,
                                end_time=existing.end_time,
                                session_number=candidate.session_number,
                            )
                        )
        return records

    def detect(
        self,
        candidates: List[GeneratedSession],
        *,
        participant_ids: Sequence[int] = (),
        people_type: ResourceType = "participant",
        exclude_schedule_id: Optional[int] = None,
        exclude_session_ids: Iterable[int] = (),
    ) -> ConflictReport:
        """Conflicts of ``candidates`` by room, teacher and people.

        Rooms and teachers are taken per session (so session-level overrides
        count); ``participant_ids`` apply to every candidate and are reported
        under ``people_type`` ("student" for class groups, "participant" otherwise).
        """
        report = ConflictReport()
        if not candidates:
            return report
        exclude_session_ids = list(exclude_session_ids)
        report.room = self._dimension(
            "room", candidates, lambda s: [s.room_id] if s.room_id is not None else [], exclude_schedule_id, exclude_session_ids
        )
        report.teacher = self._dimension(
            "teacher",
            candidates,
            lambda s: [s.assigned_teacher_id] if s.assigned_teacher_id is not None else [],
            exclude_schedule_id,
            exclude_session_ids,
        )
        people = sorted(set(participant_ids))
        setattr(
            report,
            people_type,
            self._dimension(people_type, candidates, lambda s: people, exclude_schedule_id, exclude_session_ids),
        )
        if report.total:
            logger.info(
                "Conflicts found: room=%d teacher=%d participant=%d student=%d",
                len(report.room),
                len(report.teacher),
                len(report.participant),
                len(report.student),
            )
        return report


def find_self_overlaps(sessions: List[GeneratedSession]) -> List[Tuple[int, int]]:
    """Pairs of session_numbers within one sequence that overlap on the same date."""
    by_date: Dict[date, List[GeneratedSession]] = defaultdict(list)
    for s in sessions:
        by_date[s.session_date].append(s)
    pairs = []
    for day_sessions in by_date.values():
        ordered = sorted(day_sessions, key=lambda s: s.start_time)
        for i, a in enumerate(ordered):
            for b in ordered[i + 1:]:
                if overlaps(a.start_time, a.end_time, b.start_time, b.end_time):
                    pairs.append((a.session_number, b.session_number))
    return pairs
