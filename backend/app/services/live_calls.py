"""In-memory registry of calls in progress.

The registry is the single owner of live and recently completed calls. Its
public operations are synchronous: they mutate state, publish an event and
schedule any slow work (durable writes, summarization) as background tasks
that never block the caller. State changes and their events happen under one
lock so every viewer sees the events of a call in the order the operations ran.
"""
from __future__ import annotations

import asyncio
import logging
import math
import re
import threading
from collections.abc import Awaitable, Callable, Coroutine, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from app.core.settings import Settings, get_settings
from app.schemas.calls import (
    AISummary,
    CompletedCall,
    LiveCall,
    PENDING_REASON,
    RawMessage,
    TranscriptLine,
)
from app.schemas.events import (
    AISummaryEvent,
    CallCompletedEvent,
    CallEndedEvent,
    CallStartedEvent,
    FullStateEvent,
    LiveCallEvent,
    TranscriptEvent,
    TranscriptSyncEvent,
)
from app.services.broadcast import LiveCallBroadcaster, Subscription
from app.services.transcripts import format_elapsed, normalize, reconcile, speaker_for_role

if TYPE_CHECKING:
    from app.services.finalization import CallFinalizer

logger = logging.getLogger(__name__)

ESCALATION_NOTE_PREFIX = "[Call was escalated and transferred to a human operator."

LiveSummarizer = Callable[[list[TranscriptLine]], Awaitable[AISummary | None]]
RawMessages = Iterable[RawMessage | Mapping[str, Any]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EscalationRules:
    """Keyword match deciding whether an ended call was handed to a human."""

    reason_pattern: re.Pattern[str]
    transcript_pattern: re.Pattern[str]

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> EscalationRules:
        settings = settings or get_settings()
        return cls(
            reason_pattern=re.compile(settings.escalation_reason_pattern, re.IGNORECASE),
            transcript_pattern=re.compile(settings.escalation_transcript_pattern, re.IGNORECASE),
        )

    def is_escalation(self, ended_reason: str, transcript: Iterable[TranscriptLine]) -> bool:
        if self.reason_pattern.search(ended_reason or ""):
            return True
        text = " ".join(line.text for line in transcript)
        return bool(self.transcript_pattern.search(text))


def to_completed_call(
    call: LiveCall,
    status: str,
    duration_seconds: int,
    ended_reason: str,
) -> CompletedCall:
    summary = call.ai_summary
    return CompletedCall(
        id=call.id,
        created_at=call.created_at,
        duration_seconds=duration_seconds,
        caller_phone=call.phone_number,
        patient_name=summary.patient_name if summary else None,
        age=summary.age if summary else None,
        sex=summary.sex if summary else None,
        triage_level=summary.triage_level if summary else "MED",
        reason_short=summary.reason_short if summary else PENDING_REASON,
        chief_complaint=summary.chief_complaint if summary else "",
        symptoms=list(summary.symptoms) if summary else [],
        risk_flags=list(summary.risk_flags) if summary else [],
        summary=summary.summary if summary else "",
        recommendation=summary.recommendation if summary else "",
        status=status,
        ended_reason=ended_reason,
        transcript=list(call.transcript),
    )


class LiveCallRegistry:
    def __init__(
        self,
        broadcaster: LiveCallBroadcaster,
        finalizer: CallFinalizer | None = None,
        live_summarizer: LiveSummarizer | None = None,
        escalation: EscalationRules | None = None,
        clock: Callable[[], datetime] = utcnow,
        placeholder_phone: str | None = None,
        live_summary_interval: int = 4,
        completed_snapshot_limit: int = 100,
    ) -> None:
        self.broadcaster = broadcaster
        self.finalizer = finalizer
        self.live_summarizer = live_summarizer
        self.escalation = escalation or EscalationRules.from_settings()
        self.clock = clock
        self.placeholder_phone = placeholder_phone or get_settings().placeholder_phone
        self.live_summary_interval = max(1, live_summary_interval)
        self.completed_snapshot_limit = completed_snapshot_limit

        self._live: dict[str, LiveCall] = {}
        self._completed: dict[str, CompletedCall] = {}
        self._finalizing: set[str] = set()
        self._summary_in_flight: set[str] = set()
        self._summarized_lines: dict[str, int] = {}
        self._tasks: set[asyncio.Task] = set()
        self._stub_tasks: dict[str, asyncio.Task] = {}
        self._lock = threading.RLock()

    # -- reads ---------------------------------------------------------------

    def has(self, call_id: str) -> bool:
        return call_id in self._live

    def get(self, call_id: str) -> LiveCall | None:
        with self._lock:
            call = self._live.get(call_id)
            return call.model_copy(deep=True) if call else None

    def get_completed_call(self, call_id: str) -> CompletedCall | None:
        with self._lock:
            record = self._completed.get(call_id)
            return record.model_copy(deep=True) if record else None

    def is_completed(self, call_id: str) -> bool:
        return call_id in self._completed

    def get_live(self) -> list[LiveCall]:
        with self._lock:
            return [call.model_copy(deep=True) for call in self._live.values() if call.status == "Live"]

    def get_completed(self, limit: int | None = None) -> list[CompletedCall]:
        with self._lock:
            records = sorted(self._completed.values(), key=lambda record: record.created_at, reverse=True)
            if limit is not None:
                records = records[:limit]
            return [record.model_copy(deep=True) for record in records]

    # -- lifecycle -----------------------------------------------------------

    def start_call(self, call_id: str, phone: str | None = None) -> LiveCall | None:
        """Register a new live call. A known or already ended id is left untouched."""
        with self._lock:
            if call_id in self._live or call_id in self._completed:
                logger.debug("start_call ignored for known call %s", call_id)
                return None
            call = LiveCall(
                id=call_id,
                phone_number=phone or self.placeholder_phone,
                created_at=self.clock(),
            )
            self._live[call_id] = call
            snapshot = call.model_copy(deep=True)
            self._emit(CallStartedEvent(call=snapshot))
        logger.info("Call %s started (caller %s)", call_id, snapshot.phone_number)

        if self.finalizer is not None:
            task = self._spawn(
                self._guarded(self.finalizer.save_call_stub(snapshot), f"initial persist of call {call_id}")
            )
            if task is not None:
                self._stub_tasks[call_id] = task
                task.add_done_callback(lambda _: self._stub_tasks.pop(call_id, None))
        return snapshot

    def update_phone(self, call_id: str, phone: str | None) -> None:
        if not phone or phone == self.placeholder_phone:
            return
        with self._lock:
            call = self._live.get(call_id)
            if call and call.phone_number != phone:
                call.phone_number = phone

    def append_transcript_line(self, call_id: str, role: str | None, text: str) -> TranscriptLine | None:
        text = (text or "").strip()
        if not text or role == "system":
            return None
        with self._lock:
            call = self._live.get(call_id)
            if call is None:
                return None
            elapsed = (self.clock() - call.created_at).total_seconds()
            line = TranscriptLine(
                timestamp=format_elapsed(elapsed),
                speaker=speaker_for_role(role),
                text=text,
            )
            call.transcript.append(line)
            self._emit(TranscriptEvent(call_id=call_id, line=line.model_copy()))
        self._maybe_refresh_summary(call_id)
        return line

    def sync_transcript(self, call_id: str, raw_messages: RawMessages | None) -> list[TranscriptLine] | None:
        """Replace a live call's transcript with the provider's full conversation."""
        candidate = normalize(raw_messages)
        with self._lock:
            call = self._live.get(call_id)
            if call is None:
                return None
            merged = reconcile(call.transcript, candidate, call_id=call_id)
            if merged == call.transcript:
                return list(call.transcript)
            call.transcript = merged
            self._emit(TranscriptSyncEvent(call_id=call_id, transcript=[line.model_copy() for line in merged]))
        self._maybe_refresh_summary(call_id)
        return list(merged)

    def end_call(
        self,
        call_id: str,
        ended_reason: str,
        duration_seconds: int | None = None,
    ) -> CompletedCall | None:
        """Seal a live call and hand it to finalization.

        Unknown and already ended ids are ignored. ``duration_seconds`` is the
        provider-reported duration and wins over wall-clock time when positive.
        """
        ended_reason = ended_reason or "unknown"
        with self._lock:
            call = self._live.get(call_id)
            if call is None or call.status != "Live":
                logger.debug("end_call ignored for unknown or ended call %s", call_id)
                return None

            now = self.clock()
            elapsed = max(0.0, (now - call.created_at).total_seconds())
            escalated = self.escalation.is_escalation(ended_reason, call.transcript)
            if escalated:
                call.transcript.append(
                    TranscriptLine(
                        timestamp=format_elapsed(elapsed),
                        speaker="Agent",
                        text=f"{ESCALATION_NOTE_PREFIX} Reason: {ended_reason}]",
                    )
                )
            call.status = "Ended"
            if duration_seconds and duration_seconds > 0:
                duration = duration_seconds
            else:
                # Any ended call lasted at least one second.
                duration = max(1, math.ceil(elapsed))
            record = to_completed_call(
                call,
                status="Escalated" if escalated else "Needs review",
                duration_seconds=duration,
                ended_reason=ended_reason,
            )
            self._completed[call_id] = record
            del self._live[call_id]
            self._summary_in_flight.discard(call_id)
            self._summarized_lines.pop(call_id, None)
            self._finalizing.add(call_id)
            self._emit(CallEndedEvent(call_id=call_id, ended_reason=ended_reason))

        logger.info(
            "Call %s ended (reason: %s, status: %s, duration: %ss, %d lines)",
            call_id,
            ended_reason,
            record.status,
            record.duration_seconds,
            len(record.transcript),
        )
        self._spawn(self._finalize(record))
        return record.model_copy(deep=True)

    def supplement_completed(
        self,
        call_id: str,
        raw_messages: RawMessages | None,
        duration_seconds: int | None = None,
    ) -> CompletedCall | None:
        """Fold a late end-of-call report into a call that already ended.

        The final artifact can be longer than what was captured live and
        carries the provider's duration; neither may be lost. A longer
        transcript is analyzed again once any running finalization is done.
        """
        candidate = normalize(raw_messages)
        with self._lock:
            record = self._completed.get(call_id)
            if record is None:
                return None
            notes = [line for line in record.transcript if line.text.startswith(ESCALATION_NOTE_PREFIX)]
            captured = len(record.transcript) - len(notes)
            grew = False
            changed = False
            if len(candidate) > captured:
                logger.info(
                    "Supplementing ended call %s transcript (%d -> %d lines)", call_id, captured, len(candidate)
                )
                record.transcript = candidate + notes
                grew = changed = True
            if duration_seconds and duration_seconds > 0 and duration_seconds != record.duration_seconds:
                record.duration_seconds = duration_seconds
                changed = True
            if not changed:
                return record.model_copy(deep=True)
            snapshot = record.model_copy(deep=True)
            finalizing = call_id in self._finalizing
            if not finalizing:
                self._emit(CallCompletedEvent(call=snapshot))
                if grew and self.finalizer is not None:
                    self._finalizing.add(call_id)

        if self.finalizer is None:
            return snapshot
        if grew and not finalizing:
            self._spawn(self._finalize(snapshot, refine=True))
        else:
            # A running finalization picks up the longer transcript when it ends.
            self._spawn(
                self._guarded(self.finalizer.save_transcript(snapshot), f"transcript save of call {call_id}")
            )
        return snapshot

    def set_ai_summary(self, call_id: str, summary: AISummary) -> None:
        with self._lock:
            call = self._live.get(call_id)
            if call is None:
                return
            call.ai_summary = summary
            self._emit(AISummaryEvent(call_id=call_id, summary=summary.model_copy()))

    def replace_completed(self, record: CompletedCall) -> None:
        with self._lock:
            if record.id in self._live:
                return
            self._completed[record.id] = record
            self._emit(CallCompletedEvent(call=record.model_copy(deep=True)))

    # -- viewers -------------------------------------------------------------

    def subscribe(self) -> Subscription:
        """Attach a viewer; its first event is a ``full-state`` snapshot."""
        with self._lock:
            snapshot = FullStateEvent(
                calls=self.get_live(),
                completed_calls=self.get_completed(limit=self.completed_snapshot_limit),
            )
            return self.broadcaster.subscribe(initial=snapshot)

    def unsubscribe(self, subscription: Subscription) -> None:
        self.broadcaster.unsubscribe(subscription)

    # -- background work -----------------------------------------------------

    async def wait_for_background_tasks(self, timeout: float | None = None) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        while self._tasks:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                logger.warning("%d background task(s) still running at shutdown", len(self._tasks))
                return
            await asyncio.wait(set(self._tasks), timeout=remaining)

    def _emit(self, event: LiveCallEvent) -> None:
        self.broadcaster.publish(event)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            thread = threading.Thread(target=asyncio.run, args=(coro,), daemon=True)
            thread.start()
            return None
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guarded(self, awaitable: Awaitable[Any], description: str) -> None:
        try:
            await awaitable
        except Exception:
            logger.exception("Background %s failed", description)

    async def _finalize(self, record: CompletedCall, refine: bool = False) -> None:
        """Persist and analyze an ended call, then publish the outcome.

        With ``refine`` only the analysis is redone, for a call whose
        transcript grew after it was first finalized.
        """
        working = record.model_copy(deep=True)
        result = None
        stub = self._stub_tasks.pop(record.id, None)
        if stub is not None and not stub.done() and stub.get_loop() is asyncio.get_running_loop():
            await asyncio.wait({stub})
        if self.finalizer is not None:
            try:
                if refine:
                    result = await self.finalizer.refine(working)
                else:
                    result = await self.finalizer.finalize(working)
            except Exception:
                logger.exception("Finalization failed for call %s", record.id)

        with self._lock:
            self._finalizing.discard(record.id)
            current = self._completed.get(record.id, record)
            if result is None:
                result = current
            supplemented = len(current.transcript) > len(working.transcript)
            result = result.model_copy(
                update={
                    "transcript": list(current.transcript) if supplemented else list(result.transcript),
                    "duration_seconds": current.duration_seconds,
                }
            )
            rerun = supplemented and self.finalizer is not None
            if rerun:
                self._finalizing.add(record.id)
            self._completed[record.id] = result
            self._emit(CallCompletedEvent(call=result.model_copy(deep=True)))
        logger.info("Call %s completed: %s (%s)", record.id, result.reason_short, result.status)
        if rerun:
            logger.info("Call %s transcript grew during finalization, analyzing again", record.id)
            self._spawn(self._finalize(result, refine=True))

    def _maybe_refresh_summary(self, call_id: str) -> None:
        if self.live_summarizer is None:
            return
        with self._lock:
            call = self._live.get(call_id)
            if call is None or call_id in self._summary_in_flight:
                return
            count = len(call.transcript)
            if count < 2 or count - self._summarized_lines.get(call_id, 0) < self.live_summary_interval:
                return
            self._summary_in_flight.add(call_id)
            self._summarized_lines[call_id] = count
            transcript = [line.model_copy() for line in call.transcript]
        self._spawn(self._refresh_summary(call_id, transcript))

    async def _refresh_summary(self, call_id: str, transcript: list[TranscriptLine]) -> None:
        summary = None
        try:
            summary = await self.live_summarizer(transcript)
        except Exception:
            logger.exception("Live summary failed for call %s", call_id)
        finally:
            with self._lock:
                self._summary_in_flight.discard(call_id)
        if summary is not None:
            self.set_ai_summary(call_id, summary)
