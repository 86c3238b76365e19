"""Database setup and models."""

from app.db.base import Base
from app.db.models import (
    Call,
    DoctorNote,
    Encounter,
    Patient,
    TimelineEvent,
)

__all__ = [
    "Base",
    "Patient",
    "Call",
    "Encounter",
    "TimelineEvent",
    "DoctorNote",
]
