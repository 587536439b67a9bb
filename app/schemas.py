from datetime import date, datetime, time
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, computed_field, field_validator


class ScheduleType(str, Enum):
    class_ = "class"
    meeting = "meeting"
    event = "event"
    holiday = "holiday"
    appointment = "appointment"


class RecurrencePattern(str, Enum):
    daily = "daily"
    weekly = "weekly"
    bi_weekly = "bi-weekly"
    monthly = "monthly"
    custom = "custom"
    none = "none"


class ScheduleStatus(str, Enum):
    assigned = "assigned"
    scheduled = "scheduled"
    paused = "paused"
    completed = "completed"
    cancelled = "cancelled"


class SessionStatus(str, Enum):
    assigned = "assigned"
    scheduled = "scheduled"
    confirmed = "confirmed"
    completed = "completed"
    cancelled = "cancelled"
    rescheduled = "rescheduled"
    no_show = "no-show"


class SessionSlot(BaseModel):
    # 0 = Sunday ... 6 = Saturday; some clients send 7 for Sunday
    weekday: int
    start_hour: int
    start_minute: int = 0

    @field_validator("weekday", mode="before")
    @classmethod
    def _sunday_as_seven(cls, v):
        return 0 if v == 7 else v


class HolidayPeriod(BaseModel):
    start_date: date
    end_date: date
    name: Optional[str] = None


class ScheduleCreateRequest(BaseModel):
    schedule_name: str
    schedule_type: ScheduleType = ScheduleType.class_
    recurring_pattern: RecurrencePattern = RecurrencePattern.weekly
    total_hours: float
    hours_per_session: float
    sessions_per_week: int = 1
    start_date: date
    # Recomputed from the generated sessions; never used as a generation bound
    estimated_end_date: Optional[date] = None
    # Legacy single daily start time ("HH:MM"); ignored when session_slots are given
    session_start_time: Optional[str] = None
    session_slots: Optional[List[SessionSlot]] = None
    # Weekdays (0 = Sunday) for the legacy "custom" pattern without explicit slots
    custom_recurring_days: Optional[List[int]] = None
    default_teacher_id: Optional[int] = None
    default_room_id: Optional[int] = None
    branch_id: Optional[int] = None
    auto_reschedule: bool = True
    # class schedules
    group_id: Optional[int] = None
    # meeting / event / holiday / appointment schedules
    participant_user_ids: List[int] = Field(default_factory=list)
    created_by_user_id: Optional[int] = None
    # Extra closures merged with the public holiday calendar
    holidays: Optional[List[HolidayPeriod]] = None
    notes: Optional[str] = None
    # Create path only: persist even when conflicts were found
    override_conflicts: bool = False


class ScheduleRegenerateRequest(BaseModel):
    """Recurrence changes for an existing schedule; omitted fields keep their stored value."""

    recurring_pattern: Optional[RecurrencePattern] = None
    total_hours: Optional[float] = None
    hours_per_session: Optional[float] = None
    sessions_per_week: Optional[int] = None
    start_date: Optional[date] = None
    session_start_time: Optional[str] = None
    session_slots: Optional[List[SessionSlot]] = None
    custom_recurring_days: Optional[List[int]] = None
    default_teacher_id: Optional[int] = None
    default_room_id: Optional[int] = None
    auto_reschedule: Optional[bool] = None
    holidays: Optional[List[HolidayPeriod]] = None
    expected_version: Optional[int] = None
    override_conflicts: bool = False


class GeneratedSession(BaseModel):
    session_number: int
    week_number: int
    session_date: date
    start_time: time
    end_time: time
    status: SessionStatus = SessionStatus.scheduled
    is_makeup: bool = False
    makeup_for_session_id: Optional[int] = None
    assigned_teacher_id: Optional[int] = None
    room_id: Optional[int] = None
    notes: Optional[str] = None

    class Config:
        from_attributes = True


class SessionResponse(GeneratedSession):
    id: int
    schedule_id: int
    cancelling_reason: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    confirmed_by_user_id: Optional[int] = None


class HolidayEntry(BaseModel):
    date: date
    name: str


class CalendarEvent(BaseModel):
    id: int
    schedule_id: int
    title: str
    schedule_type: ScheduleType
    session_date: date
    start_time: time
    end_time: time
    status: SessionStatus
    session_number: int
    week_number: int
    is_makeup: bool = False
    # Session override, falling back to the schedule default
    teacher_id: Optional[int] = None
    room_id: Optional[int] = None
    room_name: Optional[str] = None


class CalendarViewResponse(BaseModel):
    start_date: date
    end_date: date
    events: List[CalendarEvent]
    holidays: List[HolidayEntry] = Field(default_factory=list)
    total_events: int
    holiday_fetch_failed: bool = False


class HolidayListResponse(BaseModel):
    start_year: int
    end_year: int
    holidays: List[HolidayEntry]


class PreviewIssue(BaseModel):
    severity: Literal["error", "warning"]
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class HolidayImpact(BaseModel):
    session_number: int
    date: date
    holiday_name: str
    shifted_to: Optional[date] = None
    was_rescheduled: bool = False


class ConflictRecord(BaseModel):
    resource_type: Literal["room", "teacher", "participant", "student"]
    resource_id: int
    existing_schedule_id: int
    existing_session_id: int
    session_date: date
    start_time: time
    end_time: time
    # Candidate session that collides
    session_number: Optional[int] = None


class ConflictReport(BaseModel):
    room: List[ConflictRecord] = Field(default_factory=list)
    teacher: List[ConflictRecord] = Field(default_factory=list)
    participant: List[ConflictRecord] = Field(default_factory=list)
    student: List[ConflictRecord] = Field(default_factory=list)

    @computed_field
    @property
    def total(self) -> int:
        return len(self.room) + len(self.teacher) + len(self.participant) + len(self.student)

    def by_type(self) -> Dict[str, List[ConflictRecord]]:
        return {"room": self.room, "teacher": self.teacher, "participant": self.participant, "student": self.student}


class PaymentSummary(BaseModel):
    group_id: int
    total_members: int
    eligible_members: int
    pending_members: int
    has_eligible_members: bool


class PreviewReport(BaseModel):
    can_create: bool
    issues: List[PreviewIssue] = Field(default_factory=list)
    original_sessions: List[GeneratedSession] = Field(default_factory=list)
    final_sessions: List[GeneratedSession] = Field(default_factory=list)
    holiday_impacts: List[HolidayImpact] = Field(default_factory=list)
    # Authoritative: checked on the final (rescheduled) sequence
    conflicts: ConflictReport = Field(default_factory=ConflictReport)
    # Informational: what the raw sequence would have hit before holiday adjustment
    pre_reschedule_conflicts: ConflictReport = Field(default_factory=ConflictReport)
    payment_summary: Optional[PaymentSummary] = None
    estimated_end_date: Optional[date] = None
    holiday_fetch_failed: bool = False


class ScheduleResponse(BaseModel):
    id: int
    schedule_name: str
    schedule_type: ScheduleType
    group_id: Optional[int] = None
    recurring_pattern: RecurrencePattern
    total_hours: float
    hours_per_session: float
    session_per_week: int
    start_date: date
    estimated_end_date: Optional[date] = None
    session_start_time: Optional[str] = None
    default_teacher_id: Optional[int] = None
    default_room_id: Optional[int] = None
    branch_id: Optional[int] = None
    status: ScheduleStatus
    auto_reschedule: bool
    notes: Optional[str] = None
    version: int

    class Config:
        from_attributes = True


class ScheduleCreateResponse(BaseModel):
    schedule_id: int
    schedule: ScheduleResponse
    final_sessions: List[GeneratedSession]
    original_sessions: List[GeneratedSession]
    holiday_impacts: List[HolidayImpact]
    conflicts: ConflictReport
    issues: List[PreviewIssue]
    superseded_sessions: int = 0


class ScheduleStatusUpdate(BaseModel):
    status: ScheduleStatus
    expected_version: Optional[int] = None
    reason: Optional[str] = None


class SessionStatusUpdate(BaseModel):
    status: SessionStatus
    notes: Optional[str] = None
    cancelling_reason: Optional[str] = None
    user_id: Optional[int] = None


class MakeupSessionRequest(BaseModel):
    new_session_date: date
    new_start_time: str
    # What happens to the original session
    original_status: Literal["rescheduled", "cancelled"] = "rescheduled"
    cancelling_reason: Optional[str] = None
    room_id: Optional[int] = None
    assigned_teacher_id: Optional[int] = None


class MakeupSessionResponse(BaseModel):
    original_session: SessionResponse
    makeup_session: SessionResponse


class RoomCheckRequest(BaseModel):
    room_id: int
    session_date: date
    start_time: str
    hours_per_session: float
    branch_id: Optional[int] = None
    exclude_schedule_id: Optional[int] = None


class RoomCheckResponse(BaseModel):
    available: bool
    issues: List[PreviewIssue] = Field(default_factory=list)
    conflicts: List[ConflictRecord] = Field(default_factory=list)
