"""Periodic maintenance sweeps run alongside the API process.

Each ``PeriodicTask`` owns one asyncio loop task with explicit start/stop.
Sweeps are plain synchronous functions over a database session; they run in
a worker thread so the event loop never blocks on SQL or holiday HTTP calls.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from app import models
from app.core.config import settings
from app.core.database import SessionLocal
from app.core.exceptions import HolidayFetchFailed
from app.core.logging_config import request_id_var
from app.core.monitoring import SWEEP_RUNS
from app.schemas import ScheduleStatus, SessionStatus
from app.services.holiday_calendar import HolidayCalendar, get_holiday_calendar
from app.services.lifecycle import PRE_COMPLETION_STATUSES

logger = logging.getLogger(__name__)


@dataclass
class SweepEvent:
    task: str
    kind: str
    session_id: Optional[int] = None
    schedule_id: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)


def sweep_missed_sessions(db: Session, now: Optional[datetime] = None, grace_minutes: Optional[int] = None) -> List[SweepEvent]:
    """Close out sessions whose time has passed.

    Confirmed sessions that have ended become completed; scheduled sessions
    that were never confirmed become no-show once the grace period after
    their start has elapsed.
    """
    now = now or datetime.now()
    grace = timedelta(minutes=settings.missed_session_grace_minutes if grace_minutes is None else grace_minutes)
    rows = (
        db.query(models.ScheduleSession)
        .join(models.Schedule, models.Schedule.id == models.ScheduleSession.schedule_id)
        .filter(
            models.ScheduleSession.session_date <= now.date(),
            models.ScheduleSession.status.in_((SessionStatus.confirmed.value, SessionStatus.scheduled.value)),
            models.Schedule.status.notin_((ScheduleStatus.cancelled.value, ScheduleStatus.paused.value)),
        )
        .all()
    )
    events: List[SweepEvent] = []
    for s in rows:
        if s.status == SessionStatus.confirmed.value and datetime.combine(s.session_date, s.end_time) <= now:
            s.status = SessionStatus.completed.value
            events.append(SweepEvent("missed_sessions", "completed", s.id, s.schedule_id))
        elif s.status == SessionStatus.scheduled.value and datetime.combine(s.session_date, s.start_time) + grace <= now:
            s.status = SessionStatus.no_show.value
            s.notes = f"{s.notes}; Marked no-show automatically" if s.notes else "Marked no-show automatically"
            events.append(SweepEvent("missed_sessions", "no_show", s.id, s.schedule_id))
    if events:
        db.commit()
        logger.info("Missed-session sweep updated %d sessions", len(events))
    return events


def sweep_upcoming_holidays(
    db: Session,
    calendar: HolidayCalendar,
    today: Optional[date] = None,
    days: Optional[int] = None,
) -> List[SweepEvent]:
    """One event per active session that sits on a public holiday within the reminder horizon."""
    today = today or date.today()
    horizon = today + timedelta(days=settings.holiday_reminder_days if days is None else days)
    try:
        holidays = calendar.fetch_holidays(today.year, horizon.year)
    except HolidayFetchFailed as e:
        logger.warning("Holiday reminder skipped: %s", e)
        return []
    upcoming = {d: name for d, name in holidays.items() if today <= d <= horizon}
    if not upcoming:
        return []
    rows = (
        db.query(models.ScheduleSession)
        .filter(
            models.ScheduleSession.session_date.in_(list(upcoming)),
            models.ScheduleSession.status.in_(PRE_COMPLETION_STATUSES),
        )
        .all()
    )
    events = [
        SweepEvent(
            "upcoming_holidays",
            "session_on_holiday",
            s.id,
            s.schedule_id,
            {"date": s.session_date.isoformat(), "holiday_name": upcoming[s.session_date] or "Holiday"},
        )
        for s in rows
    ]
    if events:
        logger.info("%d active sessions fall on holidays before %s", len(events), horizon)
    return events


class PeriodicTask:
    def __init__(self, name: str, interval: float, run: Callable[[], List[SweepEvent]], queue: asyncio.Queue):
        self.name = name
        self.interval = interval
        self._run = run
        self._queue = queue
        self._task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name=f"sweep:{self.name}")
        logger.info("Started periodic task %s every %ss", self.name, self.interval)

    async def stop(self) -> None:
        """Let an in-flight sweep finish, then end the loop."""
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None
        logger.info("Stopped periodic task %s", self.name)

    async def run_once(self) -> List[SweepEvent]:
        try:
            events = await asyncio.to_thread(self._run)
        except Exception:
            SWEEP_RUNS.labels(task=self.name, status="error").inc()
            logger.exception("Periodic task %s failed", self.name)
            return []
        SWEEP_RUNS.labels(task=self.name, status="ok").inc()
        for event in events:
            if self._queue.full():
                # Keep the newest events when nobody is draining
                self._queue.get_nowait()
            self._queue.put_nowait(event)
        return events

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass


def _with_session(name: str, sweep: Callable[..., List[SweepEvent]], *args) -> Callable[[], List[SweepEvent]]:
    def run() -> List[SweepEvent]:
        token = request_id_var.set(f"sweep:{name}")
        db = SessionLocal()
        try:
            return sweep(db, *args)
        finally:
            db.close()
            request_id_var.reset(token)

    return run


class ScheduleManager:
    """Owns the sweep tasks and the queue their events are published on."""

    def __init__(self, calendar: Optional[HolidayCalendar] = None, maxsize: int = 1000):
        self.events: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        calendar = calendar or get_holiday_calendar()
        self.tasks = [
            PeriodicTask(
                "missed_sessions",
                settings.missed_session_interval_seconds,
                _with_session("missed_sessions", sweep_missed_sessions),
                self.events,
            ),
            PeriodicTask(
                "upcoming_holidays",
                settings.holiday_reminder_interval_seconds,
                _with_session("upcoming_holidays", sweep_upcoming_holidays, calendar),
                self.events,
            ),
        ]

    def start(self) -> None:
        for task in self.tasks:
            task.start()

    async def stop(self) -> None:
        for task in self.tasks:
            await task.stop()

    def drain(self) -> List[SweepEvent]:
        drained = []
        while not self.events.empty():
            drained.append(self.events.get_nowait())
        return drained
