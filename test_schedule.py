import logging
from datetime import date, time

import pytest
from sqlalchemy.exc import OperationalError

from app import models
from app.core.exceptions import is_serialization_failure
from app.schemas import GeneratedSession, ScheduleCreateRequest
from app.services import schedule_service
from conftest import make_calendar, persist_session

logger = logging.getLogger(__name__)


def weekly_payload(**overrides):
    payload = {
        "schedule_name": "Business English",
        "schedule_type": "meeting",
        "recurring_pattern": "weekly",
        "total_hours": 10,
        "hours_per_session": 2,
        "start_date": "2025-10-06",
        "session_start_time": "10:00",
        "default_room_id": 4,
        "default_teacher_id": 7,
        "participant_user_ids": [301, 302],
        "created_by_user_id": 301,
    }
    payload.update(overrides)
    return payload


def class_payload(**overrides):
    payload = weekly_payload(schedule_type="class", group_id=10, participant_user_ids=[])
    payload.update(overrides)
    return payload


def issue_codes(body):
    return [i["code"] for i in body["issues"]]


# Test 1: preview reschedules the holiday session onto the same weekday
@pytest.mark.asyncio
async def test_preview_reschedules_holiday(client, seed):
    response = await client.post("/schedules/preview", json=weekly_payload())
    assert response.status_code == 200, f"Preview failed: {response.text}"
    body = response.json()
    assert body["can_create"], f"Unexpected issues: {body['issues']}"
    assert [s["session_date"] for s in body["final_sessions"]] == [
        "2025-10-06", "2025-10-20", "2025-10-27", "2025-11-03", "2025-11-10"
    ]
    assert [s["session_number"] for s in body["final_sessions"]] == [1, 2, 3, 4, 5]
    assert body["original_sessions"][1]["session_date"] == "2025-10-13"
    assert body["holiday_impacts"] == [
        {
            "session_number": 2,
            "date": "2025-10-13",
            "holiday_name": "King Bhumibol Memorial Day",
            "shifted_to": "2025-11-10",
            "was_rescheduled": True,
        }
    ]
    assert "HOLIDAY_RESCHEDULED" in issue_codes(body)
    assert body["estimated_end_date"] == "2025-11-10"
    assert body["payment_summary"] is None
    assert not body["holiday_fetch_failed"]


# Test 2: preview writes nothing
@pytest.mark.asyncio
async def test_preview_has_no_side_effects(client, seed):
    await client.post("/schedules/preview", json=weekly_payload())
    seed.expire_all()
    assert seed.query(models.Schedule).count() == 0
    assert seed.query(models.ScheduleSession).count() == 0


# Test 3: what preview shows is exactly what create persists
@pytest.mark.asyncio
async def test_preview_and_create_agree(client, seed):
    payload = weekly_payload(
        recurring_pattern="custom",
        session_start_time=None,
        sessions_per_week=2,
        total_hours=24,
        session_slots=[{"weekday": 1, "start_hour": 10}, {"weekday": 4, "start_hour": 15, "start_minute": 30}],
        holidays=[{"start_date": "2025-10-30", "end_date": "2025-10-30", "name": "School trip"}],
    )
    preview = await client.post("/schedules/preview", json=payload)
    assert preview.status_code == 200, preview.text
    preview_body = preview.json()
    assert preview_body["can_create"], preview_body["issues"]

    created = await client.post("/schedules", json=payload)
    assert created.status_code == 201, f"Create failed: {created.text}"
    created_body = created.json()
    assert created_body["final_sessions"] == preview_body["final_sessions"]
    assert created_body["holiday_impacts"] == preview_body["holiday_impacts"]

    schedule_id = created_body["schedule_id"]
    seed.expire_all()
    rows = (
        seed.query(models.ScheduleSession)
        .filter(models.ScheduleSession.schedule_id == schedule_id)
        .order_by(models.ScheduleSession.session_date, models.ScheduleSession.start_time)
        .all()
    )
    persisted = [GeneratedSession.model_validate(r).model_dump(mode="json") for r in rows]
    assert persisted == preview_body["final_sessions"]

    schedule = seed.get(models.Schedule, schedule_id)
    assert schedule.estimated_end_date.isoformat() == preview_body["estimated_end_date"]
    assert sorted(p.user_id for p in schedule.participants) == [301, 302]


@pytest.mark.asyncio
async def test_create_rejects_room_conflict(client, seed):
    persist_session(seed, room_id=4, session_date=date(2025, 10, 20), start=time(11), end=time(13))

    preview = (await client.post("/schedules/preview", json=weekly_payload())).json()
    assert not preview["can_create"]
    assert "ROOM_CONFLICT" in issue_codes(preview)
    assert preview["conflicts"]["total"] == 1
    assert preview["conflicts"]["room"][0]["session_number"] == 2

    response = await client.post("/schedules", json=weekly_payload())
    assert response.status_code == 409, response.text
    assert response.json()["detail"]["code"] == "SCHEDULE_CONFLICT"
    seed.expire_all()
    assert seed.query(models.Schedule).count() == 1


@pytest.mark.asyncio
async def test_create_with_override_persists_anyway(client, seed):
    persist_session(seed, room_id=4, session_date=date(2025, 10, 20), start=time(11), end=time(13))
    response = await client.post("/schedules", json=weekly_payload(override_conflicts=True))
    assert response.status_code == 201, response.text
    assert response.json()["conflicts"]["total"] == 1


@pytest.mark.asyncio
async def test_conflict_only_before_reschedule_is_a_warning(client, seed):
    # Room is taken on the holiday itself, which the schedule moves away from
    persist_session(seed, room_id=4, session_date=date(2025, 10, 13), start=time(10), end=time(12))
    body = (await client.post("/schedules/preview", json=weekly_payload())).json()
    assert body["can_create"], body["issues"]
    assert body["conflicts"]["total"] == 0
    assert body["pre_reschedule_conflicts"]["total"] == 1
    assert "PRE_RESCHEDULE_CONFLICT" in issue_codes(body)


@pytest.mark.asyncio
async def test_validation_errors_in_preview_and_create(client, seed):
    payload = weekly_payload(
        sessions_per_week=2,
        session_slots=[
            {"weekday": 1, "start_hour": 10},
            {"weekday": 3, "start_hour": 10},
            {"weekday": 5, "start_hour": 10},
        ],
    )
    preview = (await client.post("/schedules/preview", json=payload)).json()
    assert not preview["can_create"]
    assert issue_codes(preview) == ["SLOT_COUNT_MISMATCH"]
    assert preview["final_sessions"] == []

    response = await client.post("/schedules", json=payload)
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "VALIDATION_FAILED"


@pytest.mark.asyncio
async def test_out_of_hours_reported(client, seed):
    payload = weekly_payload(
        sessions_per_week=1,
        session_start_time=None,
        session_slots=[{"weekday": 6, "start_hour": 21}],
    )
    body = (await client.post("/schedules/preview", json=payload)).json()
    assert issue_codes(body) == ["OUT_OF_OPERATING_HOURS"]
    assert body["issues"][0]["details"]["weekday"] == 6
    assert body["issues"][0]["details"]["start_time"] == "21:00"


@pytest.mark.asyncio
async def test_class_schedule_uses_group_payments(client, seed):
    body = (await client.post("/schedules/preview", json=class_payload())).json()
    assert body["can_create"], body["issues"]
    assert body["payment_summary"] == {
        "group_id": 10,
        "total_members": 3,
        "eligible_members": 2,
        "pending_members": 1,
        "has_eligible_members": True,
    }
    assert {s["status"] for s in body["final_sessions"]} == {"assigned"}

    no_group = (await client.post("/schedules/preview", json=class_payload(group_id=None))).json()
    assert "MISSING_GROUP" in issue_codes(no_group)

    unpaid = (await client.post("/schedules/preview", json=class_payload(group_id=20))).json()
    assert "NO_ELIGIBLE_MEMBERS" in issue_codes(unpaid)


@pytest.mark.asyncio
async def test_meeting_requires_participants(client, seed):
    body = (await client.post("/schedules/preview", json=weekly_payload(participant_user_ids=[]))).json()
    assert "MISSING_PARTICIPANTS" in issue_codes(body)
    assert not body["can_create"]


@pytest.mark.asyncio
async def test_student_conflict_is_only_a_warning(client, seed):
    persist_session(seed, participants=[101], session_date=date(2025, 10, 6), start=time(9), end=time(11))
    body = (await client.post("/schedules/preview", json=class_payload())).json()
    assert body["can_create"], body["issues"]
    assert "STUDENT_CONFLICT" in issue_codes(body)
    assert len(body["conflicts"]["student"]) == 1


@pytest.mark.asyncio
async def test_auto_reschedule_off_keeps_holiday_sessions(client, seed):
    body = (await client.post("/schedules/preview", json=weekly_payload(auto_reschedule=False))).json()
    assert body["final_sessions"][1]["session_date"] == "2025-10-13"
    assert "HOLIDAY_NOT_RESCHEDULED" in issue_codes(body)
    assert body["holiday_impacts"][0]["was_rescheduled"] is False


@pytest.mark.asyncio
async def test_holiday_outage_is_not_fatal(client, seed):
    from app.main import app
    from app.services.holiday_calendar import get_holiday_calendar

    app.dependency_overrides[get_holiday_calendar] = lambda: make_calendar(fail_all=True)
    body = (await client.post("/schedules/preview", json=weekly_payload())).json()
    assert body["can_create"]
    assert body["holiday_fetch_failed"]
    assert "HOLIDAY_FETCH_FAILED" in issue_codes(body)
    assert body["final_sessions"][1]["session_date"] == "2025-10-13"


@pytest.mark.asyncio
async def test_schedule_read_and_confirm(client, seed):
    created = (await client.post("/schedules", json=class_payload())).json()
    schedule_id = created["schedule_id"]

    response = await client.get(f"/schedules/{schedule_id}")
    assert response.status_code == 200
    assert response.json()["status"] == "assigned"

    response = await client.post(f"/schedules/{schedule_id}/confirm", params={"user_id": 7})
    assert response.status_code == 200, response.text
    assert response.json()["status"] == "scheduled"

    sessions = (await client.get(f"/schedules/{schedule_id}/sessions")).json()
    assert {s["status"] for s in sessions} == {"scheduled"}

    response = await client.post(f"/schedules/{schedule_id}/confirm")
    assert response.status_code == 409

    assert (await client.get("/schedules/999")).status_code == 404


@pytest.mark.asyncio
async def test_status_change_with_stale_version(client, seed):
    created = (await client.post("/schedules", json=weekly_payload())).json()
    schedule_id = created["schedule_id"]
    version = created["schedule"]["version"]

    response = await client.patch(f"/schedules/{schedule_id}/status", json={"status": "cancelled", "expected_version": version + 1})
    assert response.status_code == 409

    response = await client.patch(f"/schedules/{schedule_id}/status", json={"status": "cancelled", "expected_version": version})
    assert response.status_code == 200, response.text
    sessions = (await client.get(f"/schedules/{schedule_id}/sessions")).json()
    assert {s["status"] for s in sessions} == {"cancelled"}


@pytest.mark.asyncio
async def test_regenerate_supersedes_pending_sessions(client, seed):
    created = (await client.post("/schedules", json=weekly_payload())).json()
    schedule_id = created["schedule_id"]
    version = created["schedule"]["version"]

    response = await client.put(
        f"/schedules/{schedule_id}/sessions",
        json={"session_start_time": "14:00", "total_hours": 6, "expected_version": version},
    )
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["superseded_sessions"] == 5
    assert [s["start_time"] for s in body["final_sessions"]] == ["14:00:00"] * 3
    assert body["schedule"]["version"] == version + 1

    sessions = (await client.get(f"/schedules/{schedule_id}/sessions")).json()
    assert len(sessions) == 8
    active = (await client.get(f"/schedules/{schedule_id}/sessions", params={"include_inactive": False})).json()
    assert len(active) == 3

    stale = await client.put(f"/schedules/{schedule_id}/sessions", json={"total_hours": 4, "expected_version": version})
    assert stale.status_code == 409


@pytest.mark.asyncio
async def test_session_status_and_makeup_endpoints(client, seed):
    created = (await client.post("/schedules", json=weekly_payload())).json()
    sessions = (await client.get(f"/schedules/{created['schedule_id']}/sessions")).json()
    first = sessions[0]

    response = await client.patch(f"/sessions/{first['id']}/status", json={"status": "confirmed", "user_id": 7})
    assert response.status_code == 200, response.text
    assert response.json()["confirmed_by_user_id"] == 7

    second = sessions[1]
    response = await client.post(
        f"/sessions/{second['id']}/makeup",
        json={"new_session_date": "2025-10-22", "new_start_time": "10:00", "cancelling_reason": "Teacher away"},
    )
    assert response.status_code == 201, response.text
    body = response.json()
    assert body["original_session"]["status"] == "rescheduled"
    assert body["makeup_session"]["is_makeup"] is True
    assert body["makeup_session"]["makeup_for_session_id"] == second["id"]

    response = await client.patch(f"/sessions/{second['id']}/status", json={"status": "confirmed"})
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_room_check_endpoint(client, seed):
    persist_session(seed, room_id=4, session_date=date(2025, 10, 14), start=time(10), end=time(12))

    busy = (await client.post("/schedules/rooms/check", json={
        "room_id": 4, "session_date": "2025-10-14", "start_time": "11:00", "hours_per_session": 2,
    })).json()
    assert not busy["available"]
    assert busy["issues"][0]["code"] == "ROOM_CONFLICT"

    free = (await client.post("/schedules/rooms/check", json={
        "room_id": 4, "session_date": "2025-10-14", "start_time": "12:00", "hours_per_session": 2,
    })).json()
    assert free["available"], free

    late = (await client.post("/schedules/rooms/check", json={
        "room_id": 4, "session_date": "2025-10-18", "start_time": "21:00", "hours_per_session": 2,
    })).json()
    assert not late["available"]
    assert late["issues"][0]["code"] == "OUT_OF_OPERATING_HOURS"


@pytest.mark.asyncio
async def test_holidays_endpoint(client):
    response = await client.get("/holidays", params={"start_year": 2025})
    assert response.status_code == 200
    body = response.json()
    assert body["holidays"][0] == {"date": "2025-10-13", "name": "King Bhumibol Memorial Day"}
    assert len(body["holidays"]) == 5

    assert (await client.get("/holidays", params={"start_year": 2026, "end_year": 2025})).status_code == 400


@pytest.mark.asyncio
async def test_health_and_metrics(client):
    assert (await client.get("/health")).json() == {"status": "ok"}
    metrics = await client.get("/metrics")
    assert metrics.status_code == 200
    assert "session_engine_requests_total" in metrics.text
    stats = (await client.get("/stats")).json()
    assert "summary" in stats


# Test 4: held sessions stay at the head of the series on regeneration
@pytest.mark.asyncio
async def test_regenerate_keeps_held_sessions(client, seed):
    created = (await client.post("/schedules", json=weekly_payload())).json()
    schedule_id = created["schedule_id"]
    sessions = (await client.get(f"/schedules/{schedule_id}/sessions")).json()
    first = sessions[0]
    for status in ("confirmed", "completed"):
        response = await client.patch(f"/sessions/{first['id']}/status", json={"status": status})
        assert response.status_code == 200, response.text

    response = await client.put(f"/schedules/{schedule_id}/sessions", json={"session_start_time": "14:00"})
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["superseded_sessions"] == 4
    assert [s["session_number"] for s in body["final_sessions"]] == [2, 3, 4, 5]
    assert [s["session_date"] for s in body["final_sessions"]] == ["2025-10-20", "2025-10-27", "2025-11-03", "2025-11-10"]

    live = [s for s in (await client.get(f"/schedules/{schedule_id}/sessions")).json() if s["status"] != "cancelled"]
    assert sorted(s["session_number"] for s in live) == [1, 2, 3, 4, 5], "session numbers must stay unique and gapless"
    assert len(live) == 5, "held plus new sessions must match the total hours"
    assert live[0]["id"] == first["id"]
    assert (live[0]["status"], live[0]["start_time"]) == ("completed", "10:00:00")

    # Nothing left to plan once the total is covered by held sessions
    response = await client.put(f"/schedules/{schedule_id}/sessions", json={"total_hours": 2})
    assert response.status_code == 400
    assert response.json()["detail"]["details"]["issues"][0]["code"] == "INVALID_DURATION"


# Test 5: closures given at creation survive a regeneration
@pytest.mark.asyncio
async def test_regenerate_keeps_creation_closures(client, seed):
    closure = [{"start_date": "2025-10-20", "end_date": "2025-10-20", "name": "Office move"}]
    created = (await client.post("/schedules", json=weekly_payload(holidays=closure))).json()
    dates = [s["session_date"] for s in created["final_sessions"]]
    assert dates == ["2025-10-06", "2025-10-27", "2025-11-03", "2025-11-10", "2025-11-17"]

    stored = seed.get(models.Schedule, created["schedule_id"])
    assert stored.holiday_periods == closure

    response = await client.put(f"/schedules/{created['schedule_id']}/sessions", json={})
    assert response.status_code == 200, response.text
    assert response.json()["final_sessions"] == created["final_sessions"]


@pytest.mark.asyncio
async def test_session_cannot_be_marked_rescheduled_directly(client, seed):
    created = (await client.post("/schedules", json=weekly_payload())).json()
    session = (await client.get(f"/schedules/{created['schedule_id']}/sessions")).json()[1]

    response = await client.patch(f"/sessions/{session['id']}/status", json={"status": "rescheduled"})
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "INVALID_TRANSITION"

    after = (await client.get(f"/schedules/{created['schedule_id']}/sessions")).json()
    assert after[1]["status"] == session["status"]
    assert not any(s["is_makeup"] for s in after), "no makeup session should appear"


class SerializationFailure(Exception):
    pgcode = "40001"


class DeadlockDetected(Exception):
    pgcode = "40P01"


def test_serialization_failure_detection():
    assert is_serialization_failure(OperationalError("COMMIT", {}, SerializationFailure("could not serialize access")))
    assert not is_serialization_failure(OperationalError("COMMIT", {}, DeadlockDetected("deadlock detected")))
    assert not is_serialization_failure(ValueError("plain"))


@pytest.mark.asyncio
async def test_concurrent_booking_is_a_conflict(client, seed, monkeypatch):
    def collide(db, request, calendar):
        raise OperationalError("COMMIT", {}, SerializationFailure("could not serialize access"))

    monkeypatch.setattr(schedule_service, "create_schedule", collide)
    response = await client.post("/schedules", json=weekly_payload())
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "CONCURRENT_BOOKING"


def test_room_lock_taken_after_holidays_load(seed, calendar, monkeypatch):
    order = []
    fetch = calendar.fetch_holidays
    lock = schedule_service._lock_room

    def recording_fetch(start_year, end_year):
        order.append("holidays")
        return fetch(start_year, end_year)

    def recording_lock(db, room_id):
        order.append("lock")
        return lock(db, room_id)

    monkeypatch.setattr(calendar, "fetch_holidays", recording_fetch)
    monkeypatch.setattr(schedule_service, "_lock_room", recording_lock)

    created = schedule_service.create_schedule(seed, ScheduleCreateRequest(**weekly_payload()), calendar)
    assert len(created.final_sessions) == 5
    assert order == ["holidays", "lock"], "room lock must not be held across the holiday fetch"
