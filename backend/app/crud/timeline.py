from datetime import datetime

from sqlalchemy.orm import Session

from app.db.models import TimelineEvent


def create_timeline_event(
    db: Session,
    patient_id,
    type: str,
    timestamp: datetime,
    title: str,
    description: str,
    metadata: dict | None = None,
) -> TimelineEvent:
    event = TimelineEvent(
        patient_id=patient_id,
        type=type,
        timestamp=timestamp,
        title=title,
        description=description,
        event_metadata=metadata or {},
    )
    db.add(event)
    db.commit()
    db.refresh(event)
    return event


def list_timeline_events(db: Session, patient_id, limit: int | None = 20) -> list[TimelineEvent]:
    query = (
        db.query(TimelineEvent)
        .filter(TimelineEvent.patient_id == patient_id)
        .order_by(TimelineEvent.timestamp.desc())
    )
    if limit is not None:
        query = query.limit(limit)
    return query.all()


def get_call_timeline_event(db: Session, patient_id, call_id: str) -> TimelineEvent | None:
    # Metadata is JSONB on Postgres and JSON on SQLite, so match in Python.
    for event in list_timeline_events(db, patient_id, limit=None):
        if event.type == "call" and (event.event_metadata or {}).get("call_id") == call_id:
            return event
    return None


def save_call_timeline_event(
    db: Session,
    patient_id,
    call_id: str,
    timestamp: datetime,
    title: str,
    description: str,
    metadata: dict | None = None,
) -> TimelineEvent:
    event = get_call_timeline_event(db, patient_id, call_id)
    if event is None:
        return create_timeline_event(db, patient_id, "call", timestamp, title, description, metadata)

    event.title = title
    event.description = description
    event.event_metadata = metadata or {}
    db.add(event)
    db.commit()
    db.refresh(event)
    return event
