from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, Date, DateTime, Float, ForeignKey, Index, Integer, String, Text, Time
from sqlalchemy.orm import relationship

from app.core.database import Base


# --- Read-only views of entities owned by the surrounding back office ---

class Branch(Base):
    __tablename__ = "branches"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    # "HH:MM"; null or close <= open means "use the default window"
    open_time = Column(String, nullable=True)
    close_time = Column(String, nullable=True)
    rooms = relationship("Room", back_populates="branch")


class Room(Base):
    __tablename__ = "rooms"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=True, index=True)
    branch = relationship("Branch", back_populates="rooms")


class GroupMember(Base):
    __tablename__ = "group_members"
    id = Column(Integer, primary_key=True, index=True)
    group_id = Column(Integer, nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    payment_status = Column(String, default="pending", nullable=False)  # pending | deposit_paid | fully_paid
    status = Column(String, default="active", nullable=False)  # active | inactive | suspended


# --- Tables owned by the session engine ---

class Schedule(Base):
    __tablename__ = "schedules"
    id = Column(Integer, primary_key=True, index=True)
    schedule_name = Column(String(100), nullable=False)
    schedule_type = Column(String(50), nullable=False)  # class | meeting | event | holiday | appointment
    group_id = Column(Integer, nullable=True, index=True)
    created_by_user_id = Column(Integer, nullable=True)
    recurring_pattern = Column(String(50), nullable=False)
    total_hours = Column(Float, nullable=False)
    hours_per_session = Column(Float, nullable=False)
    session_per_week = Column(Integer, nullable=False)
    start_date = Column(Date, nullable=False)
    estimated_end_date = Column(Date, nullable=True)
    actual_end_date = Column(Date, nullable=True)
    # Recurrence inputs kept so the session set can be regenerated
    session_start_time = Column(String(5), nullable=True)
    session_slots = Column(JSON, nullable=True)
    custom_recurring_days = Column(JSON, nullable=True)
    # Extra closures given at creation, merged with public holidays on every regeneration
    holiday_periods = Column(JSON, nullable=True)
    default_teacher_id = Column(Integer, nullable=True, index=True)
    default_room_id = Column(Integer, ForeignKey("rooms.id"), nullable=True, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=True)
    status = Column(String(50), default="assigned", nullable=False)  # assigned | scheduled | paused | completed | cancelled
    auto_reschedule = Column(Boolean, default=True, nullable=False)
    notes = Column(Text, nullable=True)
    # Optimistic lock for concurrent regenerate/status edits
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=True)

    sessions = relationship(
        "ScheduleSession",
        back_populates="schedule",
        order_by="[ScheduleSession.session_date, ScheduleSession.start_time, ScheduleSession.id]",
    )
    participants = relationship("ScheduleParticipant", back_populates="schedule", cascade="all, delete-orphan")

    __mapper_args__ = {"version_id_col": version}


class ScheduleSession(Base):
    __tablename__ = "schedule_sessions"
    id = Column(Integer, primary_key=True, index=True)
    schedule_id = Column(Integer, ForeignKey("schedules.id"), nullable=False, index=True)
    session_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    session_number = Column(Integer, nullable=False)
    week_number = Column(Integer, nullable=False)
    status = Column(String(50), default="scheduled", nullable=False)
    cancelling_reason = Column(Text, nullable=True)
    is_makeup = Column(Boolean, default=False, nullable=False)
    makeup_for_session_id = Column(Integer, ForeignKey("schedule_sessions.id"), nullable=True)
    notes = Column(Text, nullable=True)
    # Session-level overrides of the schedule defaults
    assigned_teacher_id = Column(Integer, nullable=True, index=True)
    room_id = Column(Integer, ForeignKey("rooms.id"), nullable=True, index=True)
    confirmed_at = Column(DateTime, nullable=True)
    confirmed_by_user_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=True)

    schedule = relationship("Schedule", back_populates="sessions")

    __table_args__ = (
        Index("ix_schedule_sessions_date_room", "session_date", "room_id"),
        Index("ix_schedule_sessions_date_teacher", "session_date", "assigned_teacher_id"),
    )


class ScheduleParticipant(Base):
    __tablename__ = "schedule_participants"
    id = Column(Integer, primary_key=True, index=True)
    schedule_id = Column(Integer, ForeignKey("schedules.id"), nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    role = Column(String(50), default="participant", nullable=False)  # organizer | participant | observer
    status = Column(String(50), default="invited", nullable=False)  # invited | confirmed | declined | tentative

    schedule = relationship("Schedule", back_populates="participants")
