"""Durable processing of ended calls.

An ended call is written in three phases so that nothing captured during the
call is lost when the summarization collaborator is slow or down:

1. preliminary write of the full transcript with placeholder analysis
2. patient context lookup and structured extraction (bounded by a timeout)
3. enriched write of the patient, call, encounter and timeline records

Phase 1 always completes before phase 2 starts.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.crud import call as call_crud
from app.crud import encounter as encounter_crud
from app.crud import patient as patient_crud
from app.crud import timeline as timeline_crud
from app.schemas.calls import (
    CALL_STATUSES,
    PENDING_REASON,
    CallFinalization,
    CompletedCall,
    LiveCall,
    TranscriptLine,
)
from app.schemas.extraction import CallProfileExtraction
from app.schemas.patient import PatientContext, PatientUpsert
from app.services.call_extraction import CallProfileExtractor
from app.services.phone import is_placeholder_phone

logger = logging.getLogger(__name__)


class AnalysisError(Exception):
    """Manual re-analysis could not produce a result."""

    status_code = 503


class TranscriptTooShortError(AnalysisError):
    status_code = 422


def completed_call_from_row(row: dict[str, Any]) -> CompletedCall:
    return CompletedCall(
        id=row["id"],
        agent_id=row.get("agent_id") or "a1",
        created_at=row["created_at"],
        duration_seconds=row.get("duration_seconds") or 0,
        caller_phone=row["caller_phone"],
        patient_id=row.get("patient_id"),
        patient_name=row.get("patient_name"),
        age=row.get("patient_age"),
        sex=row.get("patient_sex") if row.get("patient_sex") in ("M", "F") else None,
        triage_level=row.get("triage_level") or "MED",
        reason_short=row.get("reason_short") or PENDING_REASON,
        chief_complaint=row.get("chief_complaint") or "",
        symptoms=row.get("symptoms") or [],
        risk_flags=row.get("risk_flags") or [],
        summary=row.get("summary") or "",
        recommendation=row.get("recommendation") or "",
        status=row.get("status") if row.get("status") in CALL_STATUSES else "Needs review",
        transcript=_stored_transcript(row.get("transcript")),
    )


def _stored_transcript(raw: list | None) -> list[TranscriptLine]:
    lines = []
    for item in raw or []:
        try:
            lines.append(TranscriptLine.model_validate(item))
        except ValidationError:
            logger.warning("Skipping malformed stored transcript line: %r", item)
    return lines


class CallFinalizer:
    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        extractor: CallProfileExtractor | None = None,
    ):
        if session_factory is None:
            from app.db.session import SessionLocal

            session_factory = SessionLocal
        self.session_factory = session_factory
        self.extractor = extractor or CallProfileExtractor()

    async def _run(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        def _work():
            db = self.session_factory()
            try:
                return fn(db, *args, **kwargs)
            finally:
                db.close()

        return await asyncio.to_thread(_work)

    async def save_call_stub(self, call: LiveCall) -> None:
        await self._run(call_crud.upsert_call_stub, call.id, call.phone_number, call.created_at)
        logger.info("Call %s: initial record saved", call.id)

    async def save_transcript(self, record: CompletedCall) -> None:
        saved = await self._run(
            call_crud.update_call_transcript,
            record.id,
            list(record.transcript),
            record.duration_seconds,
        )
        if saved is None:
            logger.info("Call %s: no stored row yet, transcript will be written by finalization", record.id)

    async def finalize(self, record: CompletedCall) -> CompletedCall:
        """Run all three phases and return the record to broadcast.

        Never raises: the preliminary record is returned when extraction is
        unavailable or the enriched write fails.
        """
        phone = None if is_placeholder_phone(record.caller_phone) else record.caller_phone
        transcript = list(record.transcript)

        # Phase 1
        patient_id = record.patient_id
        if phone:
            try:
                patient = await self._run(
                    patient_crud.upsert_patient_by_phone,
                    PatientUpsert(phone=phone, last_contact=record.created_at),
                )
                patient_id = patient.id
            except Exception:
                logger.exception("Call %s: patient link failed during preliminary save", record.id)
        try:
            await self._run(
                call_crud.finalize_call,
                record.id,
                CallFinalization(
                    caller_phone=record.caller_phone,
                    created_at=record.created_at,
                    duration_seconds=record.duration_seconds,
                    status=record.status,
                    triage_level="MED",
                    reason_short=PENDING_REASON,
                    transcript=transcript,
                    patient_id=patient_id,
                ),
            )
            logger.info("Call %s: preliminary record saved (%d lines)", record.id, len(transcript))
        except Exception:
            logger.exception("Call %s: preliminary save failed", record.id)
        preliminary = record.model_copy(update={"patient_id": patient_id})

        # Phase 2
        context = await self._patient_context(record.id, phone)
        extraction = await self.extractor.extract(transcript, context)
        if extraction is None:
            logger.info("Call %s: no extraction available, keeping preliminary record", record.id)
            return preliminary

        # Phase 3
        try:
            patient_id = await self._apply_extraction(record, extraction, phone) or patient_id
        except Exception:
            logger.exception("Call %s: enriched save failed, keeping preliminary record", record.id)
            return preliminary
        logger.info(
            "Call %s: finalized as %s / %s (%s)",
            record.id,
            extraction.call.triage_level,
            extraction.call.call_status,
            extraction.call.reason_short,
        )
        return self._enriched(record, extraction, patient_id, context)

    async def refine(self, record: CompletedCall) -> CompletedCall | None:
        """Analyze a finalized call again after its transcript grew.

        The longer transcript is saved first. Returns ``None`` when no new
        analysis could be stored, leaving the earlier result in place.
        """
        await self.save_transcript(record)
        phone = None if is_placeholder_phone(record.caller_phone) else record.caller_phone
        context = await self._patient_context(record.id, phone)
        extraction = await self.extractor.extract(list(record.transcript), context)
        if extraction is None:
            logger.info("Call %s: no extraction for the longer transcript", record.id)
            return None
        try:
            patient_id = await self._apply_extraction(record, extraction, phone) or record.patient_id
        except Exception:
            logger.exception("Call %s: enriched save of the longer transcript failed", record.id)
            return None
        logger.info(
            "Call %s: re-finalized on %d lines as %s", record.id, len(record.transcript), extraction.call.triage_level
        )
        return self._enriched(record, extraction, patient_id, context)

    async def reanalyze(self, call_id: str) -> dict | None:
        """Re-run extraction and the enriched write for a stored call.

        Returns the refreshed call row, or ``None`` when the call is unknown.
        Each run adds one encounter and one timeline event.
        """
        row = await self._run(call_crud.get_call_with_patient, call_id)
        if row is None:
            return None
        record = completed_call_from_row(row)
        if len(record.transcript) < 2:
            raise TranscriptTooShortError("Transcript is too short to analyze")

        phone = None if is_placeholder_phone(record.caller_phone) else record.caller_phone
        context = await self._run(patient_crud.get_patient_context_by_phone, phone) if phone else None
        extraction = await self.extractor.extract(record.transcript, context)
        if extraction is None:
            raise AnalysisError("Analysis failed, try again in a moment")
        try:
            await self._apply_extraction(record, extraction, phone, append=True)
        except Exception as exc:
            logger.exception("Call %s: re-analysis save failed", call_id)
            raise AnalysisError("Analysis failed, try again in a moment") from exc
        logger.info("Call %s: re-analyzed as %s", call_id, extraction.call.triage_level)
        return await self._run(call_crud.get_call_with_patient, call_id)

    async def _apply_extraction(
        self,
        record: CompletedCall,
        extraction: CallProfileExtraction,
        phone: str | None,
        append: bool = False,
    ) -> UUID | None:
        found = extraction.patient
        classified = extraction.call
        patient_id = None
        if phone:
            patient = await self._run(
                patient_crud.upsert_patient_by_phone,
                PatientUpsert(
                    phone=phone,
                    name=found.name,
                    age=found.age,
                    sex=found.sex,
                    allergies=found.allergies,
                    risk_level=found.risk_level,
                    patient_status=found.patient_status,
                    conditions=[condition.model_dump() for condition in found.conditions],
                    medications=[medication.model_dump() for medication in found.medications],
                    prior_episodes=found.prior_episodes,
                    last_contact=record.created_at,
                ),
            )
            patient_id = patient.id

        await self._run(
            call_crud.finalize_call,
            record.id,
            CallFinalization(
                caller_phone=record.caller_phone,
                created_at=record.created_at,
                duration_seconds=record.duration_seconds,
                status=classified.call_status,
                triage_level=classified.triage_level,
                reason_short=classified.reason_short,
                chief_complaint=classified.chief_complaint,
                symptoms=classified.symptoms,
                risk_flags=classified.risk_flags,
                summary=classified.summary,
                recommendation=classified.recommendation,
                transcript=list(record.transcript),
                patient_id=patient_id,
            ),
        )

        if patient_id is None:
            logger.info("Call %s: caller unknown, skipping encounter and timeline", record.id)
            return None

        # Automatic runs keep one encounter and one timeline event per call;
        # manual re-analysis appends.
        save_encounter = encounter_crud.create_encounter if append else encounter_crud.save_call_encounter
        await self._run(
            save_encounter,
            patient_id,
            record.id,
            record.created_at,
            extraction.encounter.chief_complaint or classified.chief_complaint,
            [symptom.model_dump() for symptom in extraction.encounter.symptoms],
            classified.triage_level,
            extraction.encounter.outcome or classified.recommendation,
        )
        title = f"Triage call: {classified.reason_short}"
        metadata = {"call_id": record.id, "triage_level": classified.triage_level, "status": classified.call_status}
        if append:
            await self._run(
                timeline_crud.create_timeline_event,
                patient_id,
                "call",
                record.created_at,
                title,
                classified.summary,
                metadata,
            )
        else:
            await self._run(
                timeline_crud.save_call_timeline_event,
                patient_id,
                record.id,
                record.created_at,
                title,
                classified.summary,
                metadata,
            )
        return patient_id

    async def _patient_context(self, call_id: str, phone: str | None) -> PatientContext | None:
        if not phone:
            return None
        try:
            return await self._run(patient_crud.get_patient_context_by_phone, phone)
        except Exception:
            logger.exception("Call %s: patient context lookup failed", call_id)
            return None

    def _enriched(
        self,
        record: CompletedCall,
        extraction: CallProfileExtraction,
        patient_id: UUID | None,
        context: PatientContext | None,
    ) -> CompletedCall:
        classified = extraction.call
        found = extraction.patient
        return record.model_copy(
            update={
                "patient_id": patient_id,
                "patient_name": found.name or (context.name if context else None) or record.patient_name,
                "age": found.age if found.age is not None else (context.age if context else record.age),
                "sex": found.sex or record.sex,
                "triage_level": classified.triage_level,
                "reason_short": classified.reason_short,
                "chief_complaint": classified.chief_complaint,
                "symptoms": classified.symptoms,
                "risk_flags": classified.risk_flags,
                "summary": classified.summary,
                "recommendation": classified.recommendation,
                "status": classified.call_status,
            }
        )
