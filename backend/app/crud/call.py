import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from app.db.models import Call, Patient
from app.schemas.calls import CallFinalization, TranscriptLine
from app.services.phone import is_placeholder_phone

logger = logging.getLogger(__name__)


def _dump_transcript(lines: list[TranscriptLine]) -> list[dict]:
    return [line.model_dump() for line in lines]


def _merge_transcript(call: Call, lines: list[TranscriptLine]) -> None:
    # A stored transcript is only replaced by one at least as long.
    stored = call.transcript or []
    if lines and len(lines) >= len(stored):
        call.transcript = _dump_transcript(lines)
    elif stored and len(lines) < len(stored):
        logger.warning(
            "Call %s: keeping stored transcript (%d lines) over shorter update (%d lines)",
            call.id,
            len(stored),
            len(lines),
        )


def get_call(db: Session, call_id: str) -> Call | None:
    return db.query(Call).filter(Call.id == call_id).first()


def upsert_call_stub(
    db: Session,
    call_id: str,
    caller_phone: str,
    created_at: datetime,
) -> Call:
    call = get_call(db, call_id)
    if not call:
        call = Call(
            id=call_id,
            caller_phone=caller_phone,
            created_at=created_at,
            status="Live",
            triage_level="MED",
        )
        db.add(call)
        db.commit()
        db.refresh(call)
        return call

    if is_placeholder_phone(call.caller_phone) and not is_placeholder_phone(caller_phone):
        call.caller_phone = caller_phone
        db.add(call)
        db.commit()
        db.refresh(call)
    return call


def finalize_call(db: Session, call_id: str, data: CallFinalization) -> Call:
    """Insert or overwrite the durable record of an ended call.

    Works even when the initial stub was never written. The stored phone wins
    over the placeholder, ``patient_id`` is coalesced, and the transcript is
    never shortened.
    """
    now = datetime.now(timezone.utc)
    call = get_call(db, call_id)
    if not call:
        call = Call(id=call_id, caller_phone=data.caller_phone, created_at=data.created_at or now)
        call.transcript = []
    elif not is_placeholder_phone(data.caller_phone):
        call.caller_phone = data.caller_phone

    call.ended_at = now
    call.duration_seconds = data.duration_seconds
    call.status = data.status
    call.triage_level = data.triage_level
    call.reason_short = data.reason_short
    call.chief_complaint = data.chief_complaint
    call.symptoms = list(data.symptoms)
    call.risk_flags = list(data.risk_flags)
    call.summary = data.summary
    call.recommendation = data.recommendation
    _merge_transcript(call, data.transcript)
    if data.patient_id is not None:
        call.patient_id = data.patient_id

    db.add(call)
    db.commit()
    db.refresh(call)
    return call


def update_call_transcript(
    db: Session,
    call_id: str,
    transcript: list[TranscriptLine],
    duration_seconds: int | None = None,
) -> Call | None:
    call = get_call(db, call_id)
    if not call:
        return None
    _merge_transcript(call, transcript)
    if duration_seconds:
        call.duration_seconds = duration_seconds
    db.add(call)
    db.commit()
    db.refresh(call)
    return call


def update_call_status(db: Session, call: Call, status: str) -> Call:
    call.status = status
    db.add(call)
    db.commit()
    db.refresh(call)
    return call


def _with_patient(call: Call, patient: Patient | None) -> dict:
    row = {column.name: getattr(call, column.name) for column in Call.__table__.columns}
    if not row.get("duration_seconds") and call.ended_at and call.created_at:
        row["duration_seconds"] = max(0, int((call.ended_at - call.created_at).total_seconds()))
    row["patient_name"] = patient.name if patient else None
    row["patient_age"] = patient.age if patient else None
    row["patient_sex"] = patient.sex if patient else None
    return row


def get_call_with_patient(db: Session, call_id: str) -> dict | None:
    result = (
        db.query(Call, Patient)
        .outerjoin(Patient, Call.patient_id == Patient.id)
        .filter(Call.id == call_id)
        .first()
    )
    if not result:
        return None
    call, patient = result
    return _with_patient(call, patient)


def list_completed_calls(db: Session, limit: int = 100) -> list[dict]:
    rows = (
        db.query(Call, Patient)
        .outerjoin(Patient, Call.patient_id == Patient.id)
        .filter(Call.status != "Live")
        .order_by(Call.created_at.desc())
        .limit(limit)
        .all()
    )
    return [_with_patient(call, patient) for call, patient in rows]
