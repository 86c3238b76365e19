from sqlalchemy.orm import Session

from app.db.models import DoctorNote


def list_recent_notes(db: Session, patient_id, limit: int = 5) -> list[DoctorNote]:
    return (
        db.query(DoctorNote)
        .filter(DoctorNote.patient_id == patient_id)
        .order_by(DoctorNote.created_at.desc())
        .limit(limit)
        .all()
    )
