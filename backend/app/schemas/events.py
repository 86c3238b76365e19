"""Live-update events fanned out to dashboard viewers.

Every variant carries a literal ``type`` so viewers can dispatch on it and
the union stays exhaustive.
"""
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from app.schemas.calls import AISummary, CompletedCall, LiveCall, TranscriptLine


class FullStateEvent(BaseModel):
    type: Literal["full-state"] = "full-state"
    calls: list[LiveCall]
    completed_calls: list[CompletedCall]


class CallStartedEvent(BaseModel):
    type: Literal["call-started"] = "call-started"
    call: LiveCall


class TranscriptEvent(BaseModel):
    type: Literal["transcript"] = "transcript"
    call_id: str
    line: TranscriptLine


class TranscriptSyncEvent(BaseModel):
    type: Literal["transcript-sync"] = "transcript-sync"
    call_id: str
    transcript: list[TranscriptLine]


class AISummaryEvent(BaseModel):
    type: Literal["ai-summary"] = "ai-summary"
    call_id: str
    summary: AISummary


class CallEndedEvent(BaseModel):
    type: Literal["call-ended"] = "call-ended"
    call_id: str
    ended_reason: str


class CallCompletedEvent(BaseModel):
    type: Literal["call-completed"] = "call-completed"
    call: CompletedCall


LiveCallEvent = Annotated[
    Union[
        FullStateEvent,
        CallStartedEvent,
        TranscriptEvent,
        TranscriptSyncEvent,
        AISummaryEvent,
        CallEndedEvent,
        CallCompletedEvent,
    ],
    Field(discriminator="type"),
]

live_call_event_adapter: TypeAdapter[LiveCallEvent] = TypeAdapter(LiveCallEvent)
