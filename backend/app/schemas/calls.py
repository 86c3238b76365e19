from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

Speaker = Literal["Agent", "Caller"]
TriageLevel = Literal["HIGH", "MED", "LOW"]
LiveStatus = Literal["Live", "Ended"]
CallStatus = Literal["Needs review", "Escalated", "Resolved"]

CALL_STATUSES: tuple[str, ...] = ("Needs review", "Escalated", "Resolved")
PENDING_REASON = "Pending AI analysis"


class TranscriptLine(BaseModel):
    timestamp: str
    speaker: Speaker
    text: str


class RawMessage(BaseModel):
    """A provider message in either known shape.

    Conversation updates carry ``content``; the end-of-call artifact carries
    ``message``. Anything else is ignored.
    """

    role: str = "user"
    content: str | None = None
    message: str | None = None

    model_config = ConfigDict(extra="ignore")


class AISummary(BaseModel):
    patient_name: str | None = None
    age: int | None = None
    sex: Literal["M", "F"] | None = None
    symptoms: list[str] = Field(default_factory=list)
    risk_flags: list[str] = Field(default_factory=list)
    triage_level: TriageLevel = "MED"
    reason_short: str = "Live call in progress"
    chief_complaint: str = ""
    summary: str = ""
    recommendation: str = ""


class LiveCall(BaseModel):
    id: str
    phone_number: str
    created_at: datetime
    transcript: list[TranscriptLine] = Field(default_factory=list)
    status: LiveStatus = "Live"
    ai_summary: AISummary | None = None


class CompletedCall(BaseModel):
    id: str
    agent_id: str = "a1"
    created_at: datetime
    duration_seconds: int = 0
    caller_phone: str
    patient_id: UUID | None = None
    patient_name: str | None = None
    age: int | None = None
    sex: Literal["M", "F"] | None = None
    triage_level: TriageLevel = "MED"
    reason_short: str = PENDING_REASON
    chief_complaint: str = ""
    symptoms: list[str] = Field(default_factory=list)
    risk_flags: list[str] = Field(default_factory=list)
    summary: str = ""
    recommendation: str = ""
    status: CallStatus = "Needs review"
    ended_reason: str | None = None
    transcript: list[TranscriptLine] = Field(default_factory=list)


class CallFinalization(BaseModel):
    """Full call record written at end-of-call and again after enrichment."""

    caller_phone: str
    created_at: datetime | None = None
    duration_seconds: int = 0
    status: str = "Needs review"
    triage_level: str = "MED"
    reason_short: str = PENDING_REASON
    chief_complaint: str = ""
    symptoms: list[str] = Field(default_factory=list)
    risk_flags: list[str] = Field(default_factory=list)
    summary: str = ""
    recommendation: str = ""
    transcript: list[TranscriptLine] = Field(default_factory=list)
    patient_id: UUID | None = None


class CallOut(BaseModel):
    id: str
    created_at: datetime | None = None
    ended_at: datetime | None = None
    duration_seconds: int = 0
    caller_phone: str
    status: str
    triage_level: str
    reason_short: str | None = None
    chief_complaint: str | None = None
    symptoms: list[str] = Field(default_factory=list)
    risk_flags: list[str] = Field(default_factory=list)
    summary: str | None = None
    recommendation: str | None = None
    transcript: list[TranscriptLine] = Field(default_factory=list)
    patient_id: UUID | None = None
    patient_name: str | None = None
    patient_age: int | None = None
    patient_sex: str | None = None

    model_config = ConfigDict(from_attributes=True)


class CallList(BaseModel):
    items: list[CallOut]
    total: int


class LiveCallList(BaseModel):
    items: list[LiveCall]
    total: int


class CallStatusUpdate(BaseModel):
    status: CallStatus
