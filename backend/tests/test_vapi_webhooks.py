import pytest

from app.core.settings import get_settings
from app.crud import call as call_crud
from app.crud import encounter as encounter_crud
from app.crud import patient as patient_crud
from app.db.models import DoctorNote
from app.schemas.patient import PatientUpsert

CONVERSATION = [
    {"role": "system", "content": "You are a triage assistant."},
    {"role": "assistant", "content": "Triage line, what is going on?"},
    {"role": "user", "content": "My chest hurts."},
]


def _event(event_type: str, call_id: str = "call-1", number: str | None = "(555) 123-0000", **fields) -> dict:
    call = {"id": call_id}
    if number:
        call["customer"] = {"number": number}
    call.update(fields.pop("call", {}))
    return {"message": {"type": event_type, "call": call, **fields}}


@pytest.mark.asyncio
async def test_first_event_auto_starts_the_call(client, persistent_registry):
    response = await client.post("/api/webhooks/vapi", json=_event("speech-update"))

    assert response.status_code == 200
    (call,) = persistent_registry.get_live()
    assert call.id == "call-1"
    assert call.phone_number == "+15551230000"
    await persistent_registry.wait_for_background_tasks(timeout=5)


@pytest.mark.asyncio
async def test_transcript_and_conversation_updates(client, persistent_registry):
    await client.post(
        "/api/webhooks/vapi",
        json=_event("transcript", transcriptType="partial", role="user", transcript="My ch"),
    )
    await client.post(
        "/api/webhooks/vapi",
        json=_event("transcript", transcriptType="final", role="user", transcript="My chest hurts."),
    )
    assert [line.text for line in persistent_registry.get("call-1").transcript] == ["My chest hurts."]

    await client.post("/api/webhooks/vapi", json=_event("conversation-update", conversation=CONVERSATION))

    transcript = persistent_registry.get("call-1").transcript
    assert [(line.speaker, line.text) for line in transcript] == [
        ("Agent", "Triage line, what is going on?"),
        ("Caller", "My chest hurts."),
    ]
    await persistent_registry.wait_for_background_tasks(timeout=5)


@pytest.mark.asyncio
async def test_status_update_ended_finalizes_call(client, persistent_registry, session_factory):
    await client.post("/api/webhooks/vapi", json=_event("conversation-update", conversation=CONVERSATION))

    response = await client.post(
        "/api/webhooks/vapi",
        json=_event("status-update", call={"status": "ended"}, endedReason="customer-ended-call"),
    )
    await persistent_registry.wait_for_background_tasks(timeout=5)

    assert response.json() == {"status": "ok"}
    assert persistent_registry.get_live() == []
    record = persistent_registry.get_completed_call("call-1")
    assert record.triage_level == "HIGH"
    with session_factory() as db:
        call = call_crud.get_call(db, "call-1")
        assert call.caller_phone == "+15551230000"
        assert call.status == "Escalated"
        assert len(call.transcript) == 2


@pytest.mark.asyncio
async def test_late_event_does_not_restart_ended_call(client, persistent_registry):
    await client.post("/api/webhooks/vapi", json=_event("conversation-update", conversation=CONVERSATION))
    await client.post("/api/webhooks/vapi", json=_event("status-update", call={"status": "ended"}))
    await client.post("/api/webhooks/vapi", json=_event("speech-update"))
    await persistent_registry.wait_for_background_tasks(timeout=5)

    assert persistent_registry.get_live() == []


@pytest.mark.asyncio
async def test_end_of_call_report_reconstructs_unknown_call(client, persistent_registry, session_factory):
    report = _event(
        "end-of-call-report",
        call={"duration": 93.4},
        endedReason="customer-ended-call",
        artifact={
            "messages": [
                {"role": "bot", "message": "Triage line, what is going on?"},
                {"role": "user", "message": "My chest hurts."},
                {"role": "bot", "message": "Any trouble breathing?"},
            ]
        },
    )

    response = await client.post("/api/webhooks/vapi", json=report)
    await persistent_registry.wait_for_background_tasks(timeout=5)

    assert response.status_code == 200
    record = persistent_registry.get_completed_call("call-1")
    assert record.duration_seconds == 93
    assert len(record.transcript) == 3
    with session_factory() as db:
        call = call_crud.get_call(db, "call-1")
        assert call.duration_seconds == 93
        assert len(call.transcript) == 3


@pytest.mark.asyncio
async def test_end_of_call_report_without_artifact_for_unknown_call(client, persistent_registry, session_factory):
    response = await client.post("/api/webhooks/vapi", json=_event("end-of-call-report"))

    assert response.json() == {"status": "ignored"}
    assert persistent_registry.get_completed_call("call-1") is None
    with session_factory() as db:
        assert call_crud.get_call(db, "call-1") is None


@pytest.mark.asyncio
async def test_end_of_call_report_fixes_placeholder_phone_and_duration(client, persistent_registry):
    await client.post(
        "/api/webhooks/vapi",
        json=_event("conversation-update", number=None, conversation=CONVERSATION),
    )
    assert persistent_registry.get("call-1").phone_number == "***-***-****"

    report = _event(
        "end-of-call-report",
        call={"startedAt": "2026-03-01T09:30:00Z", "endedAt": "2026-03-01T09:31:10Z"},
        endedReason="customer-ended-call",
        artifact={"messages": [{"role": "user", "message": "My chest hurts."}]},
    )
    await client.post("/api/webhooks/vapi", json=report)
    await persistent_registry.wait_for_background_tasks(timeout=5)

    record = persistent_registry.get_completed_call("call-1")
    assert record.caller_phone == "+15551230000"
    assert record.duration_seconds == 70
    assert len(record.transcript) == 2


@pytest.mark.asyncio
async def test_report_after_status_update_supplements_completed_call(client, persistent_registry, session_factory):
    await client.post("/api/webhooks/vapi", json=_event("conversation-update", conversation=CONVERSATION))
    await client.post("/api/webhooks/vapi", json=_event("status-update", call={"status": "ended"}))
    await persistent_registry.wait_for_background_tasks(timeout=5)

    report = _event(
        "end-of-call-report",
        call={"duration": 120},
        artifact={
            "messages": [
                {"role": "bot", "message": "Triage line, what is going on?"},
                {"role": "user", "message": "My chest hurts."},
                {"role": "bot", "message": "Any trouble breathing?"},
                {"role": "user", "message": "A little."},
            ]
        },
    )
    await client.post("/api/webhooks/vapi", json=report)
    await persistent_registry.wait_for_background_tasks(timeout=5)

    assert len(persistent_registry.get_completed_call("call-1").transcript) == 4
    with session_factory() as db:
        call = call_crud.get_call(db, "call-1")
        assert len(call.transcript) == 4
        assert call.duration_seconds == 120


REPORT_MESSAGES = [
    {"role": "bot", "message": "Triage line, what is going on?"},
    {"role": "user", "message": "My chest hurts."},
    {"role": "bot", "message": "Any trouble breathing?"},
    {"role": "user", "message": "A little."},
]


@pytest.mark.asyncio
async def test_status_update_ended_for_unknown_call_waits_for_report(
    client, persistent_registry, extractor, session_factory
):
    await client.post(
        "/api/webhooks/vapi",
        json=_event("status-update", call={"status": "ended"}, endedReason="customer-ended-call"),
    )
    await persistent_registry.wait_for_background_tasks(timeout=5)

    assert persistent_registry.get_live() == []
    assert persistent_registry.get_completed_call("call-1") is None
    assert extractor.calls == []

    report = _event("end-of-call-report", call={"duration": 64}, artifact={"messages": REPORT_MESSAGES})
    await client.post("/api/webhooks/vapi", json=report)
    await persistent_registry.wait_for_background_tasks(timeout=5)

    assert [len(transcript) for transcript, _ in extractor.calls] == [4]
    record = persistent_registry.get_completed_call("call-1")
    assert record.triage_level == "HIGH"
    assert len(record.transcript) == 4
    with session_factory() as db:
        assert call_crud.get_call(db, "call-1").reason_short == "Chest pain with shortness of breath"


@pytest.mark.asyncio
async def test_longer_report_after_short_live_call_is_analyzed(
    client, persistent_registry, extractor, session_factory
):
    analysis = extractor.result
    extractor.result = None
    await client.post("/api/webhooks/vapi", json=_event("conversation-update", conversation=CONVERSATION[:2]))
    await client.post("/api/webhooks/vapi", json=_event("status-update", call={"status": "ended"}))
    await persistent_registry.wait_for_background_tasks(timeout=5)
    assert persistent_registry.get_completed_call("call-1").reason_short == "Pending AI analysis"

    extractor.result = analysis
    report = _event("end-of-call-report", call={"duration": 64}, artifact={"messages": REPORT_MESSAGES})
    await client.post("/api/webhooks/vapi", json=report)
    await persistent_registry.wait_for_background_tasks(timeout=5)

    assert [len(transcript) for transcript, _ in extractor.calls] == [1, 4]
    record = persistent_registry.get_completed_call("call-1")
    assert record.reason_short == "Chest pain with shortness of breath"
    assert record.duration_seconds == 64
    assert len(record.transcript) == 4
    with session_factory() as db:
        call = call_crud.get_call(db, "call-1")
        assert call.reason_short == "Chest pain with shortness of breath"
        assert len(call.transcript) == 4
        assert len(encounter_crud.list_encounters_for_call(db, "call-1")) == 1


@pytest.mark.asyncio
async def test_assistant_request_includes_returning_patient_context(client, persistent_registry, session_factory):
    with session_factory() as db:
        patient = patient_crud.upsert_patient_by_phone(
            db, PatientUpsert(phone="+15551230000", name="Dana Reyes", allergies=["penicillin"])
        )
        db.add(DoctorNote(patient_id=patient.id, author_name="Dr. Okafor", content="Watch blood pressure."))
        db.commit()

    response = await client.post("/api/webhooks/vapi", json=_event("assistant-request"))
    await persistent_registry.wait_for_background_tasks(timeout=5)

    body = response.json()
    assert body["assistantId"] == "assistant-test"
    variables = body["assistantOverrides"]["variableValues"]
    assert variables["patientName"] == "Dana Reyes"
    assert variables["patientContext"].startswith("RETURNING PATIENT")
    assert "Allergies: penicillin" in variables["patientContext"]
    assert "Dr. Okafor: Watch blood pressure." in variables["patientContext"]


@pytest.mark.asyncio
async def test_assistant_request_for_new_caller(client, persistent_registry):
    response = await client.post("/api/webhooks/vapi", json=_event("assistant-request"))
    await persistent_registry.wait_for_background_tasks(timeout=5)

    variables = response.json()["assistantOverrides"]["variableValues"]
    assert variables == {"patientName": "there", "patientContext": "New patient: no prior record on file."}


@pytest.mark.asyncio
async def test_malformed_bodies(client, persistent_registry):
    response = await client.post(
        "/api/webhooks/vapi", content=b"{not json", headers={"content-type": "application/json"}
    )
    assert response.status_code == 400

    response = await client.post("/api/webhooks/vapi", json={"hello": "world"})
    assert response.json() == {"status": "ignored"}
    assert persistent_registry.get_live() == []


@pytest.mark.asyncio
async def test_webhook_secret_is_enforced(client, monkeypatch):
    monkeypatch.setattr(get_settings(), "vapi_webhook_secret", "s3cret")

    response = await client.post("/api/webhooks/vapi", json={"message": {"type": "speech-update"}})
    assert response.status_code == 401

    response = await client.post(
        "/api/webhooks/vapi", json={"message": {"type": "speech-update"}}, headers={"x-vapi-secret": "s3cret"}
    )
    assert response.status_code == 200
