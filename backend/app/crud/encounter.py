from datetime import datetime

from sqlalchemy.orm import Session

from app.db.models import Encounter


def create_encounter(
    db: Session,
    patient_id,
    call_id: str,
    timestamp: datetime,
    chief_complaint: str,
    symptoms: list[dict],
    triage_level: str,
    outcome: str,
) -> Encounter:
    encounter = Encounter(
        patient_id=patient_id,
        call_id=call_id,
        type="call",
        timestamp=timestamp,
        chief_complaint=chief_complaint,
        symptoms=symptoms,
        triage_level=triage_level,
        outcome=outcome,
    )
    db.add(encounter)
    db.commit()
    db.refresh(encounter)
    return encounter


def list_encounters_for_call(db: Session, call_id: str) -> list[Encounter]:
    return db.query(Encounter).filter(Encounter.call_id == call_id).order_by(Encounter.timestamp.desc()).all()


def save_call_encounter(
    db: Session,
    patient_id,
    call_id: str,
    timestamp: datetime,
    chief_complaint: str,
    symptoms: list[dict],
    triage_level: str,
    outcome: str,
) -> Encounter:
    """Create the encounter of a call, or refresh it when the call was analyzed before."""
    existing = list_encounters_for_call(db, call_id)
    if not existing:
        return create_encounter(db, patient_id, call_id, timestamp, chief_complaint, symptoms, triage_level, outcome)

    encounter = existing[0]
    encounter.patient_id = patient_id
    encounter.chief_complaint = chief_complaint
    encounter.symptoms = symptoms
    encounter.triage_level = triage_level
    encounter.outcome = outcome
    db.add(encounter)
    db.commit()
    db.refresh(encounter)
    return encounter
