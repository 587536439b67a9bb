import os

# Settings are read at import time: point the app at a throwaway database first
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["LOG_TO_FILE"] = "false"
os.environ["BACKGROUND_JOBS_ENABLED"] = "false"

import json
from datetime import date

import httpx
import pytest

from app import models
from app.core.database import Base, SessionLocal, engine, get_db, get_serializable_db
from app.main import app
from app.services.holiday_calendar import HolidayCalendar, get_holiday_calendar

# Public holidays served by the fake provider, keyed by Gregorian year
HOLIDAYS = {
    2025: {
        date(2025, 10, 13): "King Bhumibol Memorial Day",
        date(2025, 10, 23): "Chulalongkorn Day",
        date(2025, 12, 5): "Father's Day",
        date(2025, 12, 10): "Constitution Day",
        date(2025, 12, 31): "New Year's Eve",
    },
    2026: {
        date(2026, 1, 1): "New Year's Day",
        date(2026, 4, 13): "Songkran",
    },
}


def holiday_json(holidays):
    return {
        "VCALENDAR": [
            {
                "VEVENT": [
                    {"DTSTART;VALUE=DATE": d.strftime("%Y%m%d"), "SUMMARY": name}
                    for d, name in sorted(holidays.items())
                ]
            }
        ]
    }


def holiday_ics(holidays):
    lines = ["BEGIN:VCALENDAR"]
    for d, name in sorted(holidays.items()):
        lines += ["BEGIN:VEVENT", f"DTSTART;VALUE=DATE:{d.strftime('%Y%m%d')}", f"SUMMARY:{name}", "END:VEVENT"]
    lines.append("END:VCALENDAR")
    return "\r\n".join(lines)


def holiday_transport(holidays_by_year=None, *, fail_json=False, fail_all=False, calls=None):
    """MockTransport that answers the provider URLs ("?<buddhist year>.json|.ics")."""
    holidays_by_year = HOLIDAYS if holidays_by_year is None else holidays_by_year

    def handler(request: httpx.Request) -> httpx.Response:
        query = request.url.query.decode() if isinstance(request.url.query, bytes) else request.url.query
        be_year, _, ext = query.partition(".")
        year = int(be_year) - 543
        if calls is not None:
            calls.append((year, ext))
        if fail_all or (fail_json and ext == "json"):
            return httpx.Response(503, text="unavailable")
        holidays = holidays_by_year.get(year, {})
        if ext == "json":
            return httpx.Response(200, text=json.dumps(holiday_json(holidays)))
        return httpx.Response(200, text=holiday_ics(holidays))

    return httpx.MockTransport(handler)


def make_calendar(**kwargs) -> HolidayCalendar:
    return HolidayCalendar(client=httpx.Client(transport=holiday_transport(**kwargs)))


@pytest.fixture(scope="function")
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def calendar():
    cal = make_calendar()
    try:
        yield cal
    finally:
        cal.close()


@pytest.fixture(scope="function")
def seed(db):
    """Branch with 10:00-20:00 hours, rooms 1-4, and a class group with mixed payments."""
    branch = models.Branch(id=1, name="Main", open_time="10:00", close_time="20:00")
    db.add(branch)
    db.add(models.Branch(id=2, name="Annex"))
    for room_id in (1, 2, 3, 4):
        db.add(models.Room(id=room_id, name=f"Room {room_id}", branch_id=1))
    db.add(models.Room(id=5, name="Annex Hall", branch_id=2))
    db.add_all(
        [
            models.GroupMember(group_id=10, user_id=101, payment_status="fully_paid"),
            models.GroupMember(group_id=10, user_id=102, payment_status="deposit_paid"),
            models.GroupMember(group_id=10, user_id=103, payment_status="pending"),
            models.GroupMember(group_id=10, user_id=104, payment_status="fully_paid", status="inactive"),
            models.GroupMember(group_id=20, user_id=201, payment_status="pending"),
        ]
    )
    db.commit()
    return db


def persist_session(db, *, room_id=None, teacher_id=None, session_date, start, end, schedule_type="meeting",
                    group_id=None, participants=(), status="scheduled", schedule_status="scheduled"):
    """Insert a one-session schedule directly, bypassing the pipeline."""
    schedule = models.Schedule(
        schedule_name="Existing",
        schedule_type=schedule_type,
        group_id=group_id,
        recurring_pattern="none",
        total_hours=2,
        hours_per_session=2,
        session_per_week=1,
        start_date=session_date,
        default_room_id=room_id,
        default_teacher_id=teacher_id,
        status=schedule_status,
    )
    db.add(schedule)
    db.flush()
    for user_id in participants:
        db.add(models.ScheduleParticipant(schedule_id=schedule.id, user_id=user_id))
    session = models.ScheduleSession(
        schedule_id=schedule.id,
        session_date=session_date,
        start_time=start,
        end_time=end,
        session_number=1,
        week_number=1,
        status=status,
        room_id=room_id,
        assigned_teacher_id=teacher_id,
    )
    db.add(session)
    db.commit()
    return schedule, session


@pytest.fixture(scope="function")
async def client(db, calendar):
    def override_db():
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_db
    # SQLite has no SERIALIZABLE sessions to hand out; the plain session is enough in tests
    app.dependency_overrides[get_serializable_db] = override_db
    app.dependency_overrides[get_holiday_calendar] = lambda: calendar
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test", timeout=30.0) as c:
        yield c
    app.dependency_overrides.clear()
