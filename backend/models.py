import uuid
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Boolean, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from db import Base

def _uuid() -> str:
    return str(uuid.uuid4())

class User(Base):
    __tablename__ = "users"
    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), unique=True, index=True, nullable=False)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)
    department = Column(String(255), nullable=True)
    user_type = Column(String(50), nullable=False, default="HOD")  # HOD | Master Admin
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

class UserSession(Base):
    __tablename__ = "user_sessions"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    recent_apps = Column(JSON, nullable=True)
    last_accessed = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

class Form(Base):
    __tablename__ = "forms"
    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    form_type = Column(String(50), nullable=False, default="general")  # general | parents_survey
    form_url = Column(String(255), unique=True, index=True, nullable=True)
    status = Column(String(20), nullable=False, default="draft")  # draft | active
    created_by = Column(String(36), ForeignKey("users.id"), index=True, nullable=False)
    settings = Column(JSON, nullable=True)
    last_saved_at = Column(DateTime(timezone=True), nullable=True)
    last_published_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    snapshots = relationship("FormSnapshot", back_populates="form", cascade="all, delete-orphan")

class FormSnapshot(Base):
    __tablename__ = "form_snapshots"
    __table_args__ = (UniqueConstraint("form_id", "stage", name="uq_form_snapshot_stage"),)
    id = Column(Integer, primary_key=True, index=True)
    form_id = Column(String(36), ForeignKey("forms.id", ondelete="CASCADE"), index=True, nullable=False)
    stage = Column(String(20), nullable=False)  # working | preview | published
    content = Column(JSON, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    form = relationship("Form", back_populates="snapshots")

class FormResponse(Base):
    __tablename__ = "form_responses"
    id = Column(String(36), primary_key=True, default=_uuid)
    # responses outlive their form; retention is decided elsewhere
    form_id = Column(String(36), ForeignKey("forms.id", ondelete="SET NULL"), index=True, nullable=True)
    respondent_id = Column(String(255), nullable=True)
    responses = Column(JSON, nullable=False)
    submitted_at = Column(DateTime(timezone=True), server_default=func.now())

class Respondent(Base):
    __tablename__ = "respondents"
    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False)
    department = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    created_by = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

class Event(Base):
    __tablename__ = "events"
    id = Column(String(36), primary_key=True, default=_uuid)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    event_type = Column(String(50), nullable=False)
    location = Column(String(255), nullable=True)
    capacity = Column(Integer, nullable=True)
    status = Column(String(20), nullable=False, default="upcoming")  # upcoming | ongoing | completed | cancelled
    start_date_time = Column(DateTime(timezone=True), nullable=False)
    end_date_time = Column(DateTime(timezone=True), nullable=False)
    created_by = Column(String(36), ForeignKey("users.id"), index=True, nullable=False)
    settings = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    attendees = relationship("EventAttendee", back_populates="event", cascade="all, delete-orphan")

class EventAttendee(Base):
    __tablename__ = "event_attendees"
    __table_args__ = (UniqueConstraint("event_id", "attendee_id", name="uq_event_attendee"),)
    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(String(36), ForeignKey("events.id", ondelete="CASCADE"), index=True, nullable=False)
    attendee_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    registration_status = Column(String(20), nullable=False, default="registered")  # registered | confirmed | attended | absent
    attended_at = Column(DateTime(timezone=True), nullable=True)
    registered_at = Column(DateTime(timezone=True), server_default=func.now())
    event = relationship("Event", back_populates="attendees")

class Student(Base):
    __tablename__ = "students"
    id = Column(String(36), primary_key=True, default=_uuid)
    student_bc = Column(String(64), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    date_of_birth = Column(String(64), nullable=True)  # free text, source formats vary
    gender = Column(String(32), nullable=True)
    level = Column(String(64), nullable=True)
    class_name = Column("class", String(64), nullable=True)
    centre = Column(String(255), nullable=True)
    guardian_name = Column(String(255), nullable=True)
    guardian_email = Column(String(255), nullable=True)
    guardian_phone = Column(String(64), nullable=True)
    address = Column(Text, nullable=True)
    emergency_contact = Column(String(255), nullable=True)
    emergency_phone = Column(String(64), nullable=True)
    medical_info = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="active")  # active | inactive | transferred | graduated
    additional_data = Column(JSON, nullable=True)
    created_by = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
