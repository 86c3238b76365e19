import uuid

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.sql import func, text

from app.db.base import Base, JSONType


class Patient(Base):
    __tablename__ = "patients"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    mrn = Column(String(20), unique=True)
    name = Column(String(200))
    age = Column(Integer)
    sex = Column(String(1))
    phone = Column(String(32), unique=True)
    primary_doctor = Column(String(200))
    allergies = Column(JSONType, nullable=False, default=list, server_default=text("'[]'"))
    risk_level = Column(String(10), nullable=False, server_default=text("'MED'"))
    status = Column(String(30), nullable=False, server_default=text("'Active'"))
    conditions = Column(JSONType, nullable=False, default=list, server_default=text("'[]'"))
    medications = Column(JSONType, nullable=False, default=list, server_default=text("'[]'"))
    prior_episodes = Column(JSONType, nullable=False, default=list, server_default=text("'[]'"))
    last_contact = Column(DateTime(timezone=True))
    last_updated = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Call(Base):
    __tablename__ = "calls"
    __table_args__ = (
        Index("idx_calls_status", "status"),
        Index("idx_calls_created_at", "created_at"),
    )

    # Provider-assigned call id.
    id = Column(String(100), primary_key=True)
    agent_id = Column(String(20), nullable=False, server_default=text("'a1'"))
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    ended_at = Column(DateTime(timezone=True))
    duration_seconds = Column(Integer, nullable=False, default=0, server_default=text("0"))
    caller_phone = Column(String(32), nullable=False, server_default=text("'***-***-****'"))
    status = Column(String(20), nullable=False, server_default=text("'Live'"))
    triage_level = Column(String(10), nullable=False, server_default=text("'MED'"))
    reason_short = Column(Text)
    chief_complaint = Column(Text)
    symptoms = Column(JSONType, nullable=False, default=list, server_default=text("'[]'"))
    risk_flags = Column(JSONType, nullable=False, default=list, server_default=text("'[]'"))
    summary = Column(Text)
    recommendation = Column(Text)
    transcript = Column(JSONType, nullable=False, default=list, server_default=text("'[]'"))
    patient_id = Column(Uuid(as_uuid=True), ForeignKey("patients.id"), index=True)


class Encounter(Base):
    __tablename__ = "encounters"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    patient_id = Column(Uuid(as_uuid=True), ForeignKey("patients.id"), nullable=False, index=True)
    call_id = Column(String(100), ForeignKey("calls.id"))
    type = Column(String(20), nullable=False, server_default=text("'call'"))
    timestamp = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    chief_complaint = Column(Text)
    symptoms = Column(JSONType, nullable=False, default=list, server_default=text("'[]'"))
    triage_level = Column(String(10))
    outcome = Column(Text)


class TimelineEvent(Base):
    __tablename__ = "timeline_events"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    patient_id = Column(Uuid(as_uuid=True), ForeignKey("patients.id"), nullable=False, index=True)
    # call | visit | medication | note | escalation | test
    type = Column(String(20), nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    title = Column(Text, nullable=False)
    description = Column(Text)
    event_metadata = Column("metadata", JSONType, nullable=False, default=dict, server_default=text("'{}'"))


class DoctorNote(Base):
    __tablename__ = "doctor_notes"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    patient_id = Column(Uuid(as_uuid=True), ForeignKey("patients.id"), nullable=False, index=True)
    author_id = Column(String(100))
    author_name = Column(String(200))
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
