from datetime import time

import pytest

from app import models
from app.core.exceptions import OutOfOperatingHours
from app.services.branch_hours import BranchHours, branch_hours_from, default_branch_hours, resolve_branch_hours, validate_slot


# Test 1: Saturday 21:00 against a 10:00-20:00 branch is rejected with weekday and time
def test_saturday_evening_slot_rejected():
    with pytest.raises(OutOfOperatingHours) as exc:
        validate_slot(6, time(21, 0), 2, BranchHours(10 * 60, 20 * 60))
    err = exc.value
    assert err.weekday == 6
    assert err.start_time == "21:00"
    assert err.end_time == "23:00"
    assert err.details["open_time"] == "10:00" and err.details["close_time"] == "20:00"
    assert "Saturday" in err.message


def test_slot_before_opening_rejected():
    with pytest.raises(OutOfOperatingHours):
        validate_slot(1, time(9, 30), 1, BranchHours(10 * 60, 20 * 60))


def test_slot_ending_at_close_is_accepted():
    assert validate_slot(2, time(18, 0), 2, BranchHours(10 * 60, 20 * 60)) == time(20, 0)
    assert validate_slot(2, time(10, 0), 1.5, BranchHours(10 * 60, 20 * 60)) == time(11, 30)


def test_default_window():
    hours = default_branch_hours()
    assert (hours.open_minutes, hours.close_minutes) == (8 * 60, 21 * 60)


def test_invalid_branch_hours_fall_back_to_default():
    assert branch_hours_from("20:00", "10:00") == default_branch_hours()
    assert branch_hours_from(None, "18:00") == default_branch_hours()
    assert branch_hours_from("garbage", "18:00") == default_branch_hours()
    assert branch_hours_from("09:00", "18:30") == BranchHours(9 * 60, 18 * 60 + 30)


def test_resolve_from_room_branch(db):
    db.add(models.Branch(id=1, name="Main", open_time="10:00", close_time="20:00"))
    db.add(models.Branch(id=2, name="Annex", open_time="18:00", close_time="09:00"))
    db.add(models.Room(id=4, name="Room 4", branch_id=1))
    db.add(models.Room(id=9, name="Loose room"))
    db.commit()

    assert resolve_branch_hours(db, room_id=4) == BranchHours(10 * 60, 20 * 60)
    assert resolve_branch_hours(db, branch_id=2, room_id=4) == default_branch_hours()
    assert resolve_branch_hours(db, room_id=9) == default_branch_hours()
    assert resolve_branch_hours(db, branch_id=99) == default_branch_hours()
    assert resolve_branch_hours(db) == default_branch_hours()
