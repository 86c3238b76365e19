import re
from datetime import datetime, timezone

from app.crud import patient as patient_crud
from app.db.models import DoctorNote, Encounter, TimelineEvent
from app.schemas.patient import PatientUpsert


def test_new_patient_gets_record_number_and_defaults(db):
    patient = patient_crud.upsert_patient_by_phone(db, PatientUpsert(phone="+15551230000"))

    assert re.fullmatch(r"MRN-[A-Z0-9]{6}", patient.mrn)
    assert patient.risk_level == "MED"
    assert patient.status == "Active"
    assert patient.allergies == []
    assert patient.last_contact is not None


def test_empty_fields_never_erase_stored_data(db):
    patient_crud.upsert_patient_by_phone(
        db,
        PatientUpsert(
            phone="+15551230000",
            name="Dana Reyes",
            age=58,
            allergies=["penicillin"],
            conditions=[{"name": "Hypertension", "status": "Chronic"}],
        ),
    )

    patient = patient_crud.upsert_patient_by_phone(db, PatientUpsert(phone="+15551230000", allergies=[]))

    assert patient.name == "Dana Reyes"
    assert patient.age == 58
    assert patient.allergies == ["penicillin"]
    assert patient.conditions == [{"name": "Hypertension", "status": "Chronic"}]
    assert patient_crud.count_patients(db) == 1


def test_non_empty_fields_replace_stored_data(db):
    patient_crud.upsert_patient_by_phone(
        db, PatientUpsert(phone="+15551230000", allergies=["penicillin"], risk_level="LOW")
    )

    patient = patient_crud.upsert_patient_by_phone(
        db,
        PatientUpsert(
            phone="+15551230000",
            allergies=["penicillin", "latex"],
            risk_level="HIGH",
            patient_status="Critical",
        ),
    )

    assert patient.allergies == ["penicillin", "latex"]
    assert patient.risk_level == "HIGH"
    assert patient.status == "Critical"


def test_list_fields_merge_independently(db):
    patient_crud.upsert_patient_by_phone(
        db,
        PatientUpsert(
            phone="+15551230000",
            conditions=[{"name": "Asthma", "status": "Chronic"}],
            medications=[{"name": "Albuterol", "dosage": "90mcg", "frequency": "as needed"}],
        ),
    )

    patient = patient_crud.upsert_patient_by_phone(
        db,
        PatientUpsert(
            phone="+15551230000",
            conditions=[],
            medications=[{"name": "Prednisone", "dosage": "20mg", "frequency": "daily"}],
        ),
    )

    assert patient.conditions == [{"name": "Asthma", "status": "Chronic"}]
    assert patient.medications == [{"name": "Prednisone", "dosage": "20mg", "frequency": "daily"}]


def test_patient_context_by_phone(db):
    assert patient_crud.get_patient_context_by_phone(db, "+15551230000") is None
    patient_crud.upsert_patient_by_phone(
        db, PatientUpsert(phone="+15551230000", name="Dana Reyes", prior_episodes=["2024 chest pain"])
    )

    context = patient_crud.get_patient_context_by_phone(db, "+15551230000")

    assert context.name == "Dana Reyes"
    assert context.prior_episodes == ["2024 chest pain"]


def test_patient_details_limits_related_records(db):
    patient = patient_crud.upsert_patient_by_phone(db, PatientUpsert(phone="+15551230000"))
    now = datetime(2026, 3, 1, tzinfo=timezone.utc)
    for i in range(12):
        db.add(Encounter(patient_id=patient.id, type="call", timestamp=now, chief_complaint=f"c{i}"))
        db.add(TimelineEvent(patient_id=patient.id, type="call", timestamp=now, title=f"t{i}"))
        db.add(DoctorNote(patient_id=patient.id, author_name="Dr. Okafor", content=f"note {i}"))
    db.commit()

    details = patient_crud.get_patient_details(db, patient.id)

    assert details["patient"].id == patient.id
    assert len(details["encounters"]) == 10
    assert len(details["timeline"]) == 12
    assert len(details["notes"]) == 10
