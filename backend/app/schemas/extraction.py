"""Structured output expected back from the summarization collaborator.

The model is untrusted: every field has a default and enum-like fields fall
back to a safe value instead of failing validation.
"""
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from app.schemas.calls import TriageLevel

CallStatusValue = Literal["Escalated", "Needs review", "Resolved"]
PatientStatusValue = Literal["Critical", "Active", "Stable", "Follow-up needed"]


def coerce_choice(value: Any, allowed: tuple[str, ...], default: str) -> str:
    return value if isinstance(value, str) and value in allowed else default


def coerce_string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if isinstance(item, (str, int, float)) and str(item).strip()]


def coerce_object_list(value: Any) -> list[dict]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict) and item.get("name")]


def coerce_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


class Condition(BaseModel):
    name: str
    diagnosed_date: str = ""
    status: Literal["Active", "Resolved", "Chronic"] = "Active"

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value):
        return coerce_choice(value, ("Active", "Resolved", "Chronic"), "Active")

    @field_validator("diagnosed_date", mode="before")
    @classmethod
    def _date(cls, value):
        return coerce_text(value)


class Medication(BaseModel):
    name: str
    dosage: str = ""
    frequency: str = ""
    started_date: str = ""

    @field_validator("dosage", "frequency", "started_date", mode="before")
    @classmethod
    def _strings(cls, value):
        return coerce_text(value)


class Symptom(BaseModel):
    name: str
    severity: Literal["Mild", "Moderate", "Severe"] = "Moderate"
    onset: str = "unknown"
    notes: str | None = None

    @field_validator("severity", mode="before")
    @classmethod
    def _severity(cls, value):
        return coerce_choice(value, ("Mild", "Moderate", "Severe"), "Moderate")

    @field_validator("onset", mode="before")
    @classmethod
    def _onset(cls, value):
        return coerce_text(value) or "unknown"

    @field_validator("notes", mode="before")
    @classmethod
    def _notes(cls, value):
        return coerce_text(value) or None


class CallClassification(BaseModel):
    triage_level: TriageLevel = "MED"
    reason_short: str = "Call completed"
    chief_complaint: str = ""
    symptoms: list[str] = Field(default_factory=list)
    risk_flags: list[str] = Field(default_factory=list)
    summary: str = ""
    recommendation: str = ""
    call_status: CallStatusValue = "Needs review"

    @field_validator("triage_level", mode="before")
    @classmethod
    def _triage(cls, value):
        return coerce_choice(value, ("HIGH", "MED", "LOW"), "MED")

    @field_validator("call_status", mode="before")
    @classmethod
    def _call_status(cls, value):
        return coerce_choice(value, ("Escalated", "Needs review", "Resolved"), "Needs review")

    @field_validator("reason_short", mode="before")
    @classmethod
    def _reason(cls, value):
        return coerce_text(value) or "Call completed"

    @field_validator("chief_complaint", "summary", "recommendation", mode="before")
    @classmethod
    def _texts(cls, value):
        return coerce_text(value)

    @field_validator("symptoms", "risk_flags", mode="before")
    @classmethod
    def _lists(cls, value):
        return coerce_string_list(value)


class PatientUpdate(BaseModel):
    name: str | None = None
    age: int | None = None
    sex: Literal["M", "F"] | None = None
    allergies: list[str] = Field(default_factory=list)
    risk_level: TriageLevel = "MED"
    patient_status: PatientStatusValue = "Active"
    conditions: list[Condition] = Field(default_factory=list)
    medications: list[Medication] = Field(default_factory=list)
    prior_episodes: list[str] = Field(default_factory=list)

    @field_validator("name", mode="before")
    @classmethod
    def _name(cls, value):
        return coerce_text(value) or None

    @field_validator("age", mode="before")
    @classmethod
    def _age(cls, value):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return int(value)

    @field_validator("sex", mode="before")
    @classmethod
    def _sex(cls, value):
        return value if value in ("M", "F") else None

    @field_validator("risk_level", mode="before")
    @classmethod
    def _risk(cls, value):
        return coerce_choice(value, ("HIGH", "MED", "LOW"), "MED")

    @field_validator("patient_status", mode="before")
    @classmethod
    def _patient_status(cls, value):
        return coerce_choice(value, ("Critical", "Active", "Stable", "Follow-up needed"), "Active")

    @field_validator("allergies", "prior_episodes", mode="before")
    @classmethod
    def _lists(cls, value):
        return coerce_string_list(value)

    @field_validator("conditions", "medications", mode="before")
    @classmethod
    def _objects(cls, value):
        return coerce_object_list(value)


class EncounterSummary(BaseModel):
    chief_complaint: str = ""
    symptoms: list[Symptom] = Field(default_factory=list)
    outcome: str = ""

    @field_validator("chief_complaint", "outcome", mode="before")
    @classmethod
    def _texts(cls, value):
        return coerce_text(value)

    @field_validator("symptoms", mode="before")
    @classmethod
    def _symptoms(cls, value):
        return coerce_object_list(value)


class CallProfileExtraction(BaseModel):
    call: CallClassification = Field(default_factory=CallClassification)
    patient: PatientUpdate = Field(default_factory=PatientUpdate)
    encounter: EncounterSummary = Field(default_factory=EncounterSummary)

    @field_validator("call", "patient", "encounter", mode="before")
    @classmethod
    def _sections(cls, value):
        return value if isinstance(value, (dict, BaseModel)) else {}
