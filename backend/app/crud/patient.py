import logging
import secrets
import string
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from app.crud.timeline import list_timeline_events
from app.db.models import DoctorNote, Encounter, Patient
from app.schemas.patient import PatientContext, PatientUpsert

logger = logging.getLogger(__name__)

MERGED_LIST_FIELDS = ("allergies", "conditions", "medications", "prior_episodes")


def generate_mrn(length: int = 6) -> str:
    suffix = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(length))
    return f"MRN-{suffix}"


def get_patient(db: Session, patient_id) -> Patient | None:
    return db.query(Patient).filter(Patient.id == patient_id).first()


def get_patient_by_phone(db: Session, phone: str) -> Patient | None:
    return db.query(Patient).filter(Patient.phone == phone).first()


def get_patient_context_by_phone(db: Session, phone: str) -> PatientContext | None:
    patient = get_patient_by_phone(db, phone)
    if not patient:
        return None
    return PatientContext.model_validate(patient)


def upsert_patient_by_phone(db: Session, data: PatientUpsert) -> Patient:
    """Create or merge a patient keyed by phone number.

    Scalars take the incoming value when present and otherwise keep what is
    stored. Clinical lists are only replaced by a non-empty incoming list, so
    an extraction that missed a field never erases earlier data.
    """
    last_contact = data.last_contact or datetime.now(timezone.utc)
    patient = get_patient_by_phone(db, data.phone)

    if patient:
        for field in ("name", "age", "sex", "primary_doctor", "risk_level"):
            value = getattr(data, field)
            if value is not None:
                setattr(patient, field, value)
        if data.patient_status is not None:
            patient.status = data.patient_status
        for field in MERGED_LIST_FIELDS:
            incoming = getattr(data, field)
            if incoming:
                setattr(patient, field, list(incoming))
        patient.last_contact = last_contact
        patient.last_updated = datetime.now(timezone.utc)
        db.add(patient)
        db.commit()
        db.refresh(patient)
        return patient

    patient = Patient(
        mrn=generate_mrn(),
        phone=data.phone,
        name=data.name,
        age=data.age,
        sex=data.sex,
        primary_doctor=data.primary_doctor,
        allergies=list(data.allergies),
        risk_level=data.risk_level or "MED",
        status=data.patient_status or "Active",
        conditions=list(data.conditions),
        medications=list(data.medications),
        prior_episodes=list(data.prior_episodes),
        last_contact=last_contact,
    )
    db.add(patient)
    db.commit()
    db.refresh(patient)
    logger.info("Created patient %s (%s) for phone %s", patient.id, patient.mrn, data.phone)
    return patient


def list_patients(db: Session, offset: int = 0, limit: int = 100) -> list[Patient]:
    return (
        db.query(Patient)
        .order_by(Patient.last_contact.desc().nullslast(), Patient.created_at.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def count_patients(db: Session) -> int:
    return db.query(Patient).count()


def get_patient_details(db: Session, patient_id) -> dict | None:
    patient = get_patient(db, patient_id)
    if not patient:
        return None
    encounters = (
        db.query(Encounter)
        .filter(Encounter.patient_id == patient.id)
        .order_by(Encounter.timestamp.desc())
        .limit(10)
        .all()
    )
    timeline = list_timeline_events(db, patient.id)
    notes = (
        db.query(DoctorNote)
        .filter(DoctorNote.patient_id == patient.id)
        .order_by(DoctorNote.created_at.desc())
        .limit(10)
        .all()
    )
    return {"patient": patient, "encounters": encounters, "timeline": timeline, "notes": notes}
