from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.api.deps import get_live_call_registry
from app.core.settings import get_settings
from app.crud import doctor_note as note_crud
from app.crud import patient as patient_crud
from app.db.session import get_db
from app.services.live_calls import LiveCallRegistry
from app.services.phone import caller_phone_or_placeholder, is_placeholder_phone
from app.services.transcripts import normalize

logger = logging.getLogger(__name__)

router = APIRouter()

END_OF_CALL_REPORT = "end-of-call-report"
NEW_PATIENT_CONTEXT = "New patient: no prior record on file."
NONE_ON_RECORD = "none on record"


def _dig(data: dict, *keys):
    current = data
    for key in keys:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _parse_timestamp(value) -> datetime | None:
    if isinstance(value, str):
        try:
            cleaned = value.strip()
            if cleaned.endswith("Z"):
                cleaned = cleaned[:-1] + "+00:00"
            return datetime.fromisoformat(cleaned)
        except ValueError:
            return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    return None


def _get_call(message: dict) -> dict:
    call = message.get("call")
    return call if isinstance(call, dict) else {}


def _get_call_id(call: dict) -> str | None:
    return call.get("id") or call.get("callId") or call.get("call_id")


def _get_caller_number(call: dict) -> str | None:
    return _dig(call, "customer", "number") or _dig(call, "customer", "phoneNumber")


def _reported_duration(call: dict) -> int:
    """Provider duration when positive, otherwise ``endedAt - startedAt``."""
    reported = call.get("duration")
    if isinstance(reported, (int, float)) and not isinstance(reported, bool) and reported > 0:
        return round(reported)
    started = _parse_timestamp(call.get("startedAt"))
    ended = _parse_timestamp(call.get("endedAt"))
    if started and ended:
        if (started.tzinfo is None) != (ended.tzinfo is None):
            return 0
        return max(0, round((ended - started).total_seconds()))
    return 0


def _verify_vapi_secret(request: Request) -> None:
    settings = get_settings()
    if not settings.vapi_webhook_secret:
        return
    provided = request.headers.get("x-vapi-secret") or request.headers.get("x-vapi-signature")
    if not provided or provided != settings.vapi_webhook_secret:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid Vapi webhook secret.")


@router.post("")
async def vapi_webhook(
    request: Request,
    db: Session = Depends(get_db),
    registry: LiveCallRegistry = Depends(get_live_call_registry),
) -> dict:
    _verify_vapi_secret(request)
    try:
        event = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body.") from exc

    message = event.get("message") if isinstance(event, dict) else None
    if not isinstance(message, dict) or not message.get("type"):
        return {"status": "ignored"}

    event_type = message["type"]
    call = _get_call(message)
    call_id = _get_call_id(call)

    # The provider has no reliable "call started" event: the first event seen
    # for an id starts the call. End-of-call events must not open one: an
    # unknown call is rebuilt from the report's artifact instead.
    ends_call = event_type == END_OF_CALL_REPORT or (event_type == "status-update" and call.get("status") == "ended")
    if call_id and not ends_call and not registry.has(call_id):
        phone = caller_phone_or_placeholder(_get_caller_number(call))
        if registry.start_call(call_id, phone) is not None:
            logger.info("Auto-started call %s on first event %s", call_id, event_type)

    if event_type == "assistant-request":
        return _handle_assistant_request(call, db)
    if event_type == "status-update":
        return _handle_status_update(message, call, call_id, registry)
    if event_type == "transcript":
        return _handle_transcript(message, call_id, registry)
    if event_type == "conversation-update":
        return _handle_conversation_update(message, call_id, registry)
    if event_type == END_OF_CALL_REPORT:
        return _handle_end_of_call_report(message, call, call_id, registry)
    if event_type == "function-call":
        logger.info("Function call %s for call %s", _dig(message, "functionCall", "name"), call_id)
        return {"status": "ignored"}
    if event_type not in {"speech-update", "user-interrupted"}:
        logger.debug("Unhandled Vapi event %s", event_type)
    return {"status": "ignored"}


def _handle_assistant_request(call: dict, db: Session) -> dict:
    settings = get_settings()
    phone = caller_phone_or_placeholder(_get_caller_number(call))
    patient_name = "there"
    patient_context = NEW_PATIENT_CONTEXT

    patient = None if is_placeholder_phone(phone) else patient_crud.get_patient_by_phone(db, phone)
    if patient:
        notes = note_crud.list_recent_notes(db, patient.id)
        patient_name = patient.name or "there"
        patient_context = _returning_patient_context(patient, notes)

    logger.info(
        "assistant-request for %s: %s patient",
        phone,
        "returning" if patient else "new",
    )
    return {
        "assistantId": settings.vapi_assistant_id,
        "assistantOverrides": {
            "variableValues": {"patientName": patient_name, "patientContext": patient_context},
        },
    }


def _returning_patient_context(patient, notes) -> str:
    def joined(items, sep=", "):
        return sep.join(items) if items else NONE_ON_RECORD

    conditions = [f"{c.get('name')} ({c.get('status', 'Active')})" for c in patient.conditions or []]
    medications = [
        " ".join(part for part in (m.get("name"), m.get("dosage"), m.get("frequency")) if part)
        for m in patient.medications or []
    ]
    note_lines = [
        f"  [{note.created_at.date().isoformat() if note.created_at else 'undated'}] "
        f"{note.author_name or 'Unknown provider'}: {note.content}"
        for note in notes
    ]
    return "\n".join(
        [
            "RETURNING PATIENT: record found in database.",
            f"Name: {patient.name or 'Unknown'} | Age: {patient.age or 'Unknown'} | Sex: {patient.sex or 'Unknown'}",
            f"Allergies: {joined(patient.allergies or [])}",
            f"Conditions: {joined(conditions)}",
            f"Medications: {joined(medications)}",
            f"Prior episodes: {joined(patient.prior_episodes or [], '; ')}",
            "Recent doctor notes:\n" + ("\n".join(note_lines) if note_lines else f"  {NONE_ON_RECORD}"),
        ]
    )


def _handle_status_update(message: dict, call: dict, call_id: str | None, registry: LiveCallRegistry) -> dict:
    if not call_id or call.get("status") != "ended":
        return {"status": "ok"}
    registry.end_call(call_id, message.get("endedReason") or "unknown")
    return {"status": "ok"}


def _handle_transcript(message: dict, call_id: str | None, registry: LiveCallRegistry) -> dict:
    text = message.get("transcript")
    if not call_id or message.get("transcriptType") != "final" or not isinstance(text, str):
        return {"status": "ignored"}
    registry.append_transcript_line(call_id, message.get("role") or "user", text)
    return {"status": "ok"}


def _handle_conversation_update(message: dict, call_id: str | None, registry: LiveCallRegistry) -> dict:
    conversation = message.get("conversation")
    if not call_id or not isinstance(conversation, list) or not conversation:
        return {"status": "ignored"}
    registry.sync_transcript(call_id, conversation)
    return {"status": "ok"}


def _handle_end_of_call_report(
    message: dict,
    call: dict,
    call_id: str | None,
    registry: LiveCallRegistry,
) -> dict:
    if not call_id:
        return {"status": "ignored"}

    duration = _reported_duration(call)
    ended_reason = message.get("endedReason") or "completed"
    artifact_messages = _dig(message, "artifact", "messages")
    if not isinstance(artifact_messages, list):
        artifact_messages = []
    phone = caller_phone_or_placeholder(_get_caller_number(call))
    logger.info(
        "End-of-call report for %s (duration %ss, %d artifact messages)",
        call_id,
        duration,
        len(artifact_messages),
    )

    if registry.is_completed(call_id):
        registry.supplement_completed(call_id, artifact_messages, duration_seconds=duration)
        return {"status": "ok"}

    live = registry.get(call_id)
    if live is None:
        if not artifact_messages:
            logger.error("End-of-call report for unknown call %s has no artifact messages", call_id)
            return {"status": "ignored"}
        logger.info("Call %s not in memory, reconstructing from artifact", call_id)
        registry.start_call(call_id, phone)
        registry.sync_transcript(call_id, artifact_messages)
    else:
        registry.update_phone(call_id, phone)
        if len(normalize(artifact_messages)) > len(live.transcript):
            registry.sync_transcript(call_id, artifact_messages)

    registry.end_call(call_id, ended_reason, duration_seconds=duration)
    return {"status": "ok"}
