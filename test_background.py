import asyncio
from datetime import date, datetime, time

import pytest

from app import models
from app.core.logging_config import request_id_var
from app.services.background import (
    PeriodicTask,
    ScheduleManager,
    SweepEvent,
    _with_session,
    sweep_missed_sessions,
    sweep_upcoming_holidays,
)
from conftest import make_calendar, persist_session


def test_missed_sessions_are_closed(db):
    _, confirmed = persist_session(db, room_id=1, session_date=date(2025, 10, 14), start=time(9), end=time(11), status="confirmed")
    _, missed = persist_session(db, room_id=2, session_date=date(2025, 10, 14), start=time(9), end=time(11))
    _, recent = persist_session(db, room_id=3, session_date=date(2025, 10, 14), start=time(11, 45), end=time(13))
    _, paused = persist_session(db, room_id=4, session_date=date(2025, 10, 14), start=time(8), end=time(9), schedule_status="paused")

    events = sweep_missed_sessions(db, now=datetime(2025, 10, 14, 12, 0), grace_minutes=30)

    kinds = {(e.session_id, e.kind) for e in events}
    assert kinds == {(confirmed.id, "completed"), (missed.id, "no_show")}
    db.expire_all()
    assert db.get(models.ScheduleSession, confirmed.id).status == "completed"
    assert db.get(models.ScheduleSession, missed.id).status == "no-show"
    assert db.get(models.ScheduleSession, recent.id).status == "scheduled"
    assert db.get(models.ScheduleSession, paused.id).status == "scheduled"


def test_upcoming_holiday_reminders(db):
    _, on_holiday = persist_session(db, room_id=1, session_date=date(2025, 10, 13), start=time(9), end=time(11))
    persist_session(db, room_id=1, session_date=date(2025, 10, 13), start=time(13), end=time(15), status="cancelled")
    persist_session(db, room_id=1, session_date=date(2025, 10, 23), start=time(9), end=time(11))

    calendar = make_calendar()
    events = sweep_upcoming_holidays(db, calendar, today=date(2025, 10, 10), days=7)
    assert [(e.session_id, e.details["holiday_name"]) for e in events] == [(on_holiday.id, "King Bhumibol Memorial Day")]


def test_holiday_reminder_survives_outage(db):
    assert sweep_upcoming_holidays(db, make_calendar(fail_all=True), today=date(2025, 10, 10)) == []


@pytest.mark.asyncio
async def test_periodic_task_publishes_events():
    queue = asyncio.Queue()
    runs = []

    def sweep():
        runs.append(1)
        return [SweepEvent("demo", "tick")]

    task = PeriodicTask("demo", 3600, sweep, queue)
    task.start()
    event = await asyncio.wait_for(queue.get(), timeout=5)
    assert event.kind == "tick"
    assert task.running
    await task.stop()
    assert not task.running
    assert len(runs) == 1


@pytest.mark.asyncio
async def test_periodic_task_survives_failures():
    queue = asyncio.Queue(maxsize=1)

    def broken():
        raise RuntimeError("boom")

    task = PeriodicTask("broken", 3600, broken, queue)
    assert await task.run_once() == []

    def two_events():
        return [SweepEvent("demo", "first"), SweepEvent("demo", "second")]

    task = PeriodicTask("full", 3600, two_events, queue)
    await task.run_once()
    assert queue.qsize() == 1
    assert queue.get_nowait().kind == "second"


@pytest.mark.asyncio
async def test_schedule_manager_start_stop(db):
    manager = ScheduleManager(calendar=make_calendar())
    manager.start()
    assert all(t.running for t in manager.tasks)
    await manager.stop()
    assert not any(t.running for t in manager.tasks)
    assert isinstance(manager.drain(), list)


def test_sweeps_log_under_their_own_request_id(db):
    seen = []

    def sweep(session):
        seen.append(request_id_var.get())
        return [SweepEvent("demo", "noop")]

    events = _with_session("demo", sweep)()
    assert [(e.task, e.kind) for e in events] == [("demo", "noop")]
    assert seen == ["sweep:demo"]
    assert request_id_var.get() == "-", "request id must be restored after the sweep"
