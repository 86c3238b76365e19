"""Canonical transcript handling.

Provider messages arrive in two shapes: conversation updates use
``{"role", "content"}`` and the end-of-call artifact uses
``{"role", "message", ...}``. Both are resolved here into
:class:`TranscriptLine` and nothing downstream sees the raw shapes.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import ValidationError

from app.schemas.calls import RawMessage, TranscriptLine

logger = logging.getLogger(__name__)

SECONDS_PER_LINE = 5


def format_elapsed(seconds: float) -> str:
    total = max(0, int(seconds))
    return f"{total // 60}:{total % 60:02d}"


def speaker_for_role(role: str | None) -> str:
    return "Caller" if role == "user" else "Agent"


def _coerce(raw: RawMessage | Mapping[str, Any]) -> RawMessage | None:
    if isinstance(raw, RawMessage):
        return raw
    if not isinstance(raw, Mapping):
        return None
    try:
        return RawMessage.model_validate(raw)
    except ValidationError:
        return None


def _resolve_text(message: RawMessage) -> str:
    for value in (message.content, message.message):
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def normalize(raw_messages: Iterable[RawMessage | Mapping[str, Any]] | None) -> list[TranscriptLine]:
    lines: list[TranscriptLine] = []
    for raw in raw_messages or []:
        message = _coerce(raw)
        if message is None or message.role == "system":
            continue
        text = _resolve_text(message)
        if not text:
            continue
        lines.append(
            TranscriptLine(
                timestamp=format_elapsed(len(lines) * SECONDS_PER_LINE),
                speaker=speaker_for_role(message.role),
                text=text,
            )
        )
    return lines


def reconcile(
    existing: list[TranscriptLine],
    candidate: list[TranscriptLine],
    call_id: str | None = None,
) -> list[TranscriptLine]:
    """Merge a candidate transcript into the current one.

    The provider resends the whole conversation on every update, so a
    non-empty candidate replaces the current transcript. An empty candidate
    never wipes existing lines.
    """
    if not candidate and existing:
        logger.warning(
            "Transcript update for %s produced 0 lines but %d already exist; keeping existing transcript",
            call_id or "unknown call",
            len(existing),
        )
        return existing
    return list(candidate)


def transcript_text(lines: Iterable[TranscriptLine]) -> str:
    return "\n".join(f"[{line.timestamp}] {line.speaker}: {line.text}" for line in lines)
