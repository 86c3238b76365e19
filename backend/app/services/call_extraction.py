"""Turn a finished or in-progress call transcript into structured data.

The language model is treated as an untrusted, slow, optional collaborator:
every entry point returns ``None`` instead of raising when it times out,
errors, or answers with something that is not the expected JSON.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from pydantic import ValidationError

from app.core.settings import get_settings
from app.schemas.calls import AISummary, TranscriptLine
from app.schemas.extraction import CallProfileExtraction, coerce_choice, coerce_string_list, coerce_text
from app.schemas.patient import PatientContext
from app.services.llm_client import LlmClient
from app.services.transcripts import transcript_text

logger = logging.getLogger(__name__)

SCHEMA_BLOCK = """\
Return ONLY a JSON object with exactly this shape (no markdown, no fences):
{
  "call": {
    "triage_level": "HIGH" | "MED" | "LOW",
    "reason_short": "5-8 word reason for the call",
    "chief_complaint": "1-2 sentence chief complaint",
    "symptoms": ["..."],
    "risk_flags": ["..."],
    "summary": "2-3 sentence clinical summary",
    "recommendation": "recommended next step",
    "call_status": "Escalated" | "Needs review" | "Resolved"
  },
  "patient": {
    "name": "string or null",
    "age": number or null,
    "sex": "M" | "F" | null,
    "allergies": ["..."],
    "risk_level": "HIGH" | "MED" | "LOW",
    "patient_status": "Critical" | "Active" | "Stable" | "Follow-up needed",
    "conditions": [{"name": "...", "diagnosed_date": "...", "status": "Active" | "Resolved" | "Chronic"}],
    "medications": [{"name": "...", "dosage": "...", "frequency": "...", "started_date": "..."}],
    "prior_episodes": ["..."]
  },
  "encounter": {
    "chief_complaint": "...",
    "symptoms": [{"name": "...", "severity": "Mild" | "Moderate" | "Severe", "onset": "...", "notes": "..."}],
    "outcome": "..."
  }
}

Rules:
- triage_level HIGH: life-threatening (cardiac, stroke, severe respiratory, altered consciousness, major trauma)
- triage_level MED: significant concern requiring timely clinical attention
- triage_level LOW: non-urgent (administrative, minor symptoms, information-only)
- risk_level should match triage_level
"""

NEW_PATIENT_PROMPT = """\
You are a medical AI analyst completing post-call processing for a patient triage phone call.

NEW PATIENT: no prior record exists for this caller's phone number.
Fill in as much of the schema as the transcript supports. Leave fields null
when the transcript does not clearly state the value. Do not guess.

{schema}"""

RETURNING_PATIENT_PROMPT = """\
You are a medical AI analyst completing post-call processing for a patient triage phone call.

EXISTING PATIENT RECORD (matched by caller phone number):
  Name: {name}
  Age: {age}
  Sex: {sex}
  Allergies: {allergies}
  Conditions: {conditions}
  Medications: {medications}
  Prior episodes: {episodes}

You are UPDATING this record. Start from the values above, change a field only
when the transcript provides new information, and add newly mentioned
conditions, medications, allergies or episodes to the existing lists.

{schema}"""

LIVE_SUMMARY_PROMPT = """\
You are a medical triage AI. Analyze this in-progress phone call between a patient (Caller)
and a triage agent (Agent). Return ONLY a JSON object with these fields, omitting what is
not known yet:
{
  "patient_name": "string or null",
  "age": number or null,
  "sex": "M" | "F" | null,
  "symptoms": ["..."],
  "risk_flags": ["..."],
  "triage_level": "HIGH" | "MED" | "LOW",
  "reason_short": "5-8 word reason for the call",
  "chief_complaint": "1-2 sentence chief complaint",
  "summary": "2-3 sentence clinical summary of what is known so far",
  "recommendation": "recommended next step"
}
Use triage_level "MED" when there is not enough information yet.
"""

NONE_ON_RECORD = "None on record"


def _joined(items: list[str], sep: str = ", ") -> str:
    return sep.join(items) if items else NONE_ON_RECORD


def build_extraction_prompt(transcript: list[TranscriptLine], existing: PatientContext | None = None) -> str:
    if existing is None:
        header = NEW_PATIENT_PROMPT.format(schema=SCHEMA_BLOCK)
    else:
        conditions = [
            f"{c.get('name')} ({c.get('status', 'Active')}, diagnosed {c.get('diagnosed_date') or 'unknown'})"
            for c in existing.conditions
        ]
        medications = [
            " ".join(part for part in (m.get("name"), m.get("dosage"), m.get("frequency")) if part)
            for m in existing.medications
        ]
        header = RETURNING_PATIENT_PROMPT.format(
            name=existing.name or "Unknown",
            age=existing.age if existing.age is not None else "Unknown",
            sex=existing.sex or "Unknown",
            allergies=_joined(existing.allergies),
            conditions=_joined(conditions, "; "),
            medications=_joined(medications, "; "),
            episodes=_joined(existing.prior_episodes, "; "),
            schema=SCHEMA_BLOCK,
        )
    return f"{header}\n--- TRANSCRIPT ---\n{transcript_text(transcript)}\n"


def parse_json_object(raw: str | None) -> dict[str, Any] | None:
    """Pull a JSON object out of a model answer, tolerating fences and chatter."""
    if not raw:
        return None
    text = raw.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else text[3:]
        if text.endswith("```"):
            text = text[:-3]
        text = text.strip()

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end <= start:
            return None
        try:
            data = json.loads(text[start : end + 1])
        except json.JSONDecodeError:
            return None
    return data if isinstance(data, dict) else None


def to_ai_summary(data: dict[str, Any]) -> AISummary:
    age = data.get("age")
    return AISummary(
        patient_name=coerce_text(data.get("patient_name")) or None,
        age=int(age) if isinstance(age, (int, float)) and not isinstance(age, bool) else None,
        sex=data.get("sex") if data.get("sex") in ("M", "F") else None,
        symptoms=coerce_string_list(data.get("symptoms")),
        risk_flags=coerce_string_list(data.get("risk_flags")),
        triage_level=coerce_choice(data.get("triage_level"), ("HIGH", "MED", "LOW"), "MED"),
        reason_short=coerce_text(data.get("reason_short")) or "Live call in progress",
        chief_complaint=coerce_text(data.get("chief_complaint")),
        summary=coerce_text(data.get("summary")),
        recommendation=coerce_text(data.get("recommendation")),
    )


class CallProfileExtractor:
    def __init__(self, client: LlmClient | None = None, timeout_seconds: float | None = None):
        self.client = client or LlmClient()
        self.timeout_seconds = timeout_seconds or get_settings().summarizer_timeout_seconds

    async def extract(
        self,
        transcript: list[TranscriptLine],
        existing: PatientContext | None = None,
    ) -> CallProfileExtraction | None:
        if len(transcript) < 2:
            logger.info("Skipping extraction: transcript has %d line(s)", len(transcript))
            return None

        raw = await self._generate(build_extraction_prompt(transcript, existing), "call extraction")
        data = parse_json_object(raw)
        if data is None:
            if raw is not None:
                logger.warning("Call extraction returned unparseable output")
            return None
        try:
            return CallProfileExtraction.model_validate(data)
        except ValidationError:
            logger.warning("Call extraction output failed validation", exc_info=True)
            return None

    async def summarize_live(self, transcript: list[TranscriptLine]) -> AISummary | None:
        if len(transcript) < 2:
            return None
        prompt = f"{LIVE_SUMMARY_PROMPT}\n--- TRANSCRIPT ---\n{transcript_text(transcript)}\n"
        data = parse_json_object(await self._generate(prompt, "live summary"))
        if data is None:
            return None
        return to_ai_summary(data)

    async def _generate(self, prompt: str, purpose: str) -> str | None:
        try:
            return await asyncio.wait_for(self.client.generate_text(prompt), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("%s timed out after %ss", purpose.capitalize(), self.timeout_seconds)
        except Exception:
            logger.exception("%s request failed", purpose.capitalize())
        return None
