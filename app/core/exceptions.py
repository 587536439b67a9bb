"""Errors raised by the schedule session engine.

Every error carries a stable ``code`` (also used as the preview issue code)
and a ``details`` dict. Validation errors subclass ValueError so routers can
keep translating them into HTTP 400 the same way as other input errors.
"""
from typing import Any, Dict, List, Optional


class ScheduleEngineError(ValueError):
    code = "SCHEDULE_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ScheduleValidationError(ScheduleEngineError):
    code = "VALIDATION_FAILED"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, issues: Optional[List[Any]] = None):
        super().__init__(message, details)
        self.issues = issues or []


class InvalidDuration(ScheduleValidationError):
    code = "INVALID_DURATION"


class SlotCountMismatch(ScheduleValidationError):
    code = "SLOT_COUNT_MISMATCH"


class DuplicateSlotWeekday(ScheduleValidationError):
    code = "DUPLICATE_SLOT_WEEKDAY"


class InvalidSlot(ScheduleValidationError):
    code = "INVALID_SLOT"


class UnboundedGeneration(ScheduleValidationError):
    code = "UNBOUNDED_GENERATION"


class OutOfOperatingHours(ScheduleValidationError):
    code = "OUT_OF_OPERATING_HOURS"

    def __init__(self, weekday: int, start_time: str, end_time: str, open_time: str, close_time: str):
        super().__init__(
            f"Session starting at {start_time} on {weekday_label(weekday)} ends at {end_time}, outside branch hours {open_time}-{close_time}",
            {"weekday": weekday, "start_time": start_time, "end_time": end_time, "open_time": open_time, "close_time": close_time},
        )
        self.weekday = weekday
        self.start_time = start_time
        self.end_time = end_time


class ScheduleConflictError(ScheduleEngineError):
    code = "SCHEDULE_CONFLICT"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, report: Any = None):
        super().__init__(message, details)
        self.report = report


class InvalidTransition(ScheduleEngineError):
    code = "INVALID_TRANSITION"


class NotFoundError(ScheduleEngineError):
    code = "NOT_FOUND"


class HolidayFetchFailed(RuntimeError):
    """No year in the requested range produced any holiday data."""

    code = "HOLIDAY_FETCH_FAILED"

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or []


_WEEKDAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


def weekday_label(weekday: int) -> str:
    if 0 <= weekday <= 6:
        return _WEEKDAY_NAMES[weekday]
    return str(weekday)


def status_code_for(error: Exception) -> int:
    """HTTP status a router should answer with for a service error."""
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, (ScheduleConflictError, InvalidTransition)):
        return 409
    return 400


def error_detail(error: Exception) -> Any:
    if isinstance(error, ScheduleEngineError):
        detail = {"code": error.code, "message": error.message, "details": error.details}
        report = getattr(error, "report", None)
        if report is not None:
            detail["conflicts"] = report.model_dump(mode="json")
        return detail
    return str(error)


# PostgreSQL SQLSTATE for a transaction aborted by serializable isolation
SERIALIZATION_FAILURE = "40001"


def is_serialization_failure(error: Exception) -> bool:
    """True for a DBAPI error wrapped by SQLAlchemy whose driver reports SQLSTATE 40001."""
    orig = getattr(error, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    return code == SERIALIZATION_FAILURE


def concurrent_booking_detail(action: str) -> Dict[str, Any]:
    return {
        "code": "CONCURRENT_BOOKING",
        "message": f"{action} collided with a concurrent booking; check availability and retry",
    }
