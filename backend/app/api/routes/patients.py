from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.crud import patient as patient_crud
from app.db.session import get_db
from app.schemas.patient import PatientDetail, PatientList

router = APIRouter()


@router.get("/", response_model=PatientList)
def list_patients(
    offset: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
) -> PatientList:
    items = patient_crud.list_patients(db, offset=offset, limit=limit)
    total = patient_crud.count_patients(db)
    return PatientList(items=items, total=total)


@router.get("/{patient_id}", response_model=PatientDetail)
def get_patient(
    patient_id: UUID,
    db: Session = Depends(get_db),
) -> PatientDetail:
    """Patient record with recent encounters, timeline events and doctor notes."""
    details = patient_crud.get_patient_details(db, patient_id)
    if not details:
        raise HTTPException(status_code=404, detail="Patient not found")
    return PatientDetail.model_validate(details, from_attributes=True)
