from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class PatientUpsert(BaseModel):
    """Incoming patient data keyed by phone.

    ``None`` scalars keep the stored value; empty lists keep the stored list.
    """

    phone: str
    name: str | None = None
    age: int | None = None
    sex: str | None = None
    primary_doctor: str | None = None
    allergies: list[str] = Field(default_factory=list)
    risk_level: str | None = None
    patient_status: str | None = None
    conditions: list[dict[str, Any]] = Field(default_factory=list)
    medications: list[dict[str, Any]] = Field(default_factory=list)
    prior_episodes: list[str] = Field(default_factory=list)
    last_contact: datetime | None = None


class PatientContext(BaseModel):
    """Clinical context handed to the summarization collaborator."""

    id: UUID
    name: str | None = None
    age: int | None = None
    sex: str | None = None
    allergies: list[str] = Field(default_factory=list)
    conditions: list[dict[str, Any]] = Field(default_factory=list)
    medications: list[dict[str, Any]] = Field(default_factory=list)
    prior_episodes: list[str] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class PatientOut(BaseModel):
    id: UUID
    mrn: str | None = None
    name: str | None = None
    age: int | None = None
    sex: str | None = None
    phone: str | None = None
    primary_doctor: str | None = None
    allergies: list[str] = Field(default_factory=list)
    risk_level: str
    status: str
    conditions: list[dict[str, Any]] = Field(default_factory=list)
    medications: list[dict[str, Any]] = Field(default_factory=list)
    prior_episodes: list[str] = Field(default_factory=list)
    last_contact: datetime | None = None
    last_updated: datetime | None = None
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class PatientList(BaseModel):
    items: list[PatientOut]
    total: int


class EncounterOut(BaseModel):
    id: UUID
    patient_id: UUID
    call_id: str | None = None
    type: str
    timestamp: datetime
    chief_complaint: str | None = None
    symptoms: list[dict[str, Any]] = Field(default_factory=list)
    triage_level: str | None = None
    outcome: str | None = None

    model_config = ConfigDict(from_attributes=True)


class TimelineEventOut(BaseModel):
    id: UUID
    patient_id: UUID
    type: str
    timestamp: datetime
    title: str
    description: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("event_metadata", "metadata"))

    model_config = ConfigDict(from_attributes=True)


class DoctorNoteOut(BaseModel):
    id: UUID
    patient_id: UUID
    author_name: str | None = None
    content: str
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class PatientDetail(BaseModel):
    patient: PatientOut
    encounters: list[EncounterOut]
    timeline: list[TimelineEventOut]
    notes: list[DoctorNoteOut]
