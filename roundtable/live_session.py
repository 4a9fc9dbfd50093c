"""
LiveSession: one running roundtable with all components wired to one SessionContext.

    capture events / manual entry
        -> SpeakerAttributionEngine -> TranscriptStore.append
        -> AutoTriggerPolicy (store growth, forward phase advance)
        -> InsightOrchestrator -> ai_insights
        -> SnapshotWriter (after every state-affecting mutation)

Everything runs on one event loop; there is exactly one writer of the context.
Reset swaps the context, and every component is re-bound to the new one.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx

from roundtable.agenda import AgendaQuestion, SessionProfile, load_agenda, profile_from_settings
from roundtable.attribution import SpeakerAttributionEngine
from roundtable.capture import ChannelSpeechCapture, NullSpeechCapture, SpeechCapture, TranscriptEvent
from roundtable.config import Settings, get_settings
from roundtable.models import Clock, SessionContext, SpeakerSuggestion, TranscriptEntry
from roundtable.services.auto_trigger import AutoTriggerPolicy
from roundtable.services.insight_orchestrator import InsightOrchestrator, InsightRequest
from roundtable.session import SessionStateMachine
from roundtable.snapshot import NoOpSnapshotWriter, SnapshotWriterBase, from_snapshot, to_snapshot
from roundtable.transcript import TranscriptStore

logger = logging.getLogger(__name__)

# Recognizer error codes after which capture will not come back on its own
FATAL_CAPTURE_ERRORS = frozenset({"not-allowed", "service-not-allowed", "audio-capture"})
CAPTURE_DRAIN_TIMEOUT_SEC = 2.0


@dataclass
class CaptureNotice:
    """Outcome of one consumed capture event, fanned out to subscribers (the transcript WebSocket)."""

    kind: str  # "entry" | "capture_error"
    entry: TranscriptEntry | None = None
    code: str | None = None
    manual_only: bool = False


class LiveSession:
    def __init__(
        self,
        session_id: str,
        settings: Settings | None = None,
        profile: SessionProfile | None = None,
        agenda: list[AgendaQuestion] | None = None,
        capture: SpeechCapture | None = None,
        writer: SnapshotWriterBase | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Clock = time.time,
        context: SessionContext | None = None,
    ) -> None:
        self.session_id = session_id
        self.settings = settings or get_settings()
        self.profile = profile or profile_from_settings(self.settings)
        self.agenda = agenda or load_agenda(self.settings.AGENDA_FILE)
        self.capture = capture or NullSpeechCapture()
        self.writer = writer or NoOpSnapshotWriter()
        self._clock = clock
        self.partial_text = ""
        self.last_capture_error: str | None = None
        self._subscribers: list[asyncio.Queue[CaptureNotice]] = []
        self._capture_task: asyncio.Task | None = None
        # entry id -> pending suggestion; process-local, cleared on reset and restore
        self.speaker_suggestions: dict[str, SpeakerSuggestion] = {}

        ctx = context or SessionContext(
            state="intro", facilitator=self.profile.facilitator_label, topic=self.profile.topic
        )
        self.engine = SpeakerAttributionEngine(
            self.profile,
            self.agenda,
            continuity_window_sec=self.settings.SPEAKER_CONTINUITY_WINDOW_SEC,
            clock=clock,
        )
        self.store = TranscriptStore(ctx, self.engine, clock=clock)
        self.state_machine = SessionStateMachine(ctx, self.agenda, self.capture, clock=clock)
        self.orchestrator = InsightOrchestrator(
            ctx,
            self.store,
            self.agenda,
            settings=self.settings,
            client=client,
            clock=clock,
            on_change=self.persist,
        )
        self.auto_trigger = AutoTriggerPolicy(ctx, self.orchestrator, settings=self.settings, clock=clock)

        self.store.on_append(self.auto_trigger.on_entry)
        self.store.on_append(self._entry_appended)
        self.state_machine.on_phase_advanced(self.auto_trigger.on_phase_advanced)
        self.state_machine.on_reset(self._rebind)

    @property
    def context(self) -> SessionContext:
        return self.state_machine.context

    @property
    def manual_only(self) -> bool:
        return self.state_machine.manual_only

    def _entry_appended(self, entry: TranscriptEntry) -> None:
        self.persist()

    def _rebind(self, context: SessionContext) -> None:
        self.engine.reset()
        self.store.bind(context)
        self.orchestrator.bind(context)
        self.auto_trigger.bind(context)
        self.partial_text = ""
        self.speaker_suggestions = {}

    # --- Persistence ---

    def snapshot(self) -> dict[str, Any]:
        return to_snapshot(self.context, clock=self._clock)

    def persist(self) -> None:
        """Queue a snapshot write. Never raises."""
        try:
            self.writer.submit(self.snapshot())
        except Exception as e:
            logger.warning("Session %s persist failed: %s", self.session_id, e)

    def restore(self, snapshot: dict[str, Any]) -> SessionContext:
        """Replace the context with a decoded snapshot. Raises SnapshotError on bad input."""
        context = from_snapshot(snapshot)
        self.state_machine.load(context)
        self._rebind(context)
        logger.info(
            "Session %s restored: %s, %d entries, %d insights",
            self.session_id, context.state, len(context.live_transcript), len(context.ai_insights),
        )
        self.persist()
        return context

    # --- Transcript ---

    def ingest_event(self, event: TranscriptEvent) -> TranscriptEntry | None:
        """Apply one capture event. Only final events create transcript entries."""
        if event.kind == "partial":
            self.partial_text = event.text or ""
            return None
        if event.kind == "error":
            self.last_capture_error = event.code or "unknown"
            logger.warning("Session %s capture error: %s", self.session_id, self.last_capture_error)
            if self.last_capture_error in FATAL_CAPTURE_ERRORS:
                self.state_machine.manual_only = True
            return None
        return self.ingest_final(event)

    def ingest_final(self, event: TranscriptEvent) -> TranscriptEntry | None:
        self.partial_text = ""
        text = (event.text or "").strip()
        if not text:
            return None
        return self.store.append(text, confidence=event.confidence, is_auto_detected=True)

    def add_manual_entry(self, text: str, speaker: str | None = None) -> TranscriptEntry:
        """Typed entry. No speaker -> attributed like captured speech."""
        if not (text or "").strip():
            raise ValueError("text is required")
        if speaker and speaker.strip():
            return self.store.append(text, speaker=speaker, confidence=1.0)
        return self.store.append(text)

    def import_bulk(self, raw_text: str) -> list[TranscriptEntry]:
        return self.store.import_bulk(raw_text)

    def apply_corrections(self, corrections: dict[str, str]) -> int:
        changed = self.store.apply_corrections(corrections)
        if changed:
            self.persist()
        return changed

    def set_speaker_suggestions(self, suggestions: list[SpeakerSuggestion]) -> None:
        """Replace the pending suggestions. Ones for unknown entries are dropped."""
        known = {e.id for e in self.context.live_transcript}
        self.speaker_suggestions = {s.entry_id: s for s in suggestions if s.entry_id in known}

    def accept_speaker_suggestions(self, entry_ids: list[str] | None = None, min_confidence: float = 0.0) -> int:
        """
        Apply pending suggestions (all of them, or those for entry_ids) whose confidence is at
        least min_confidence. Accepted ones leave the pending set. Returns entries changed.
        """
        wanted = set(self.speaker_suggestions) if entry_ids is None else set(entry_ids)
        accepted = {
            entry_id: s.speaker
            for entry_id, s in self.speaker_suggestions.items()
            if entry_id in wanted and s.confidence >= min_confidence
        }
        for entry_id in accepted:
            del self.speaker_suggestions[entry_id]
        return self.apply_corrections(accepted) if accepted else 0

    def record_key_themes(self, themes: list[str]) -> list[str]:
        """Store themes from a session summary, case-insensitively de-duplicated, in order."""
        seen = set()
        unique = []
        for theme in themes:
            key = theme.strip().lower()
            if key and key not in seen:
                seen.add(key)
                unique.append(theme.strip())
        self.context.key_themes = unique
        self.persist()
        return unique

    async def consume_capture(self) -> int:
        """Drain the capture stream until it closes. Returns number of entries appended."""
        appended = 0
        async for event in self.capture.events():
            entry = self.ingest_event(event)
            if entry is not None:
                appended += 1
                self._notify(CaptureNotice("entry", entry=entry))
            elif event.kind == "error":
                self._notify(CaptureNotice("capture_error", code=self.last_capture_error, manual_only=self.manual_only))
        return appended

    def push_event(self, event: TranscriptEvent) -> bool:
        """Hand a recognizer event to the capture channel. False when capture is not accepting events."""
        if not isinstance(self.capture, ChannelSpeechCapture):
            return False
        return self.capture.push(event)

    def subscribe(self) -> asyncio.Queue[CaptureNotice]:
        queue: asyncio.Queue[CaptureNotice] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[CaptureNotice]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _notify(self, notice: CaptureNotice) -> None:
        for queue in self._subscribers:
            queue.put_nowait(notice)

    # --- Insights ---

    def request_insight(self, insight_type: str, supersede: bool = False) -> InsightRequest:
        return self.orchestrator.request(insight_type, supersede=supersede)

    async def generate_insight(self, insight_type: str, supersede: bool = False) -> InsightRequest:
        return await self.orchestrator.generate(insight_type, supersede=supersede)

    # --- Lifecycle ---

    async def open(self) -> None:
        """Start the background snapshot writer and the capture consumer. Idempotent."""
        await self.writer.start()
        if isinstance(self.capture, ChannelSpeechCapture) and self._capture_task is None:
            self._capture_task = asyncio.create_task(self.consume_capture())

    async def start(self) -> None:
        await self.open()
        await self.state_machine.start()
        self.persist()

    def advance_phase(self, direction: str | int = "next") -> bool:
        moved = self.state_machine.advance_phase(direction)
        if moved:
            self.persist()
        return moved

    async def end(self) -> None:
        await self.state_machine.end()
        self.auto_trigger.cancel_all()
        self.persist()

    def complete(self) -> None:
        self.state_machine.complete()
        self.persist()

    def reset(self) -> SessionContext:
        context = self.state_machine.reset()
        self.persist()
        return context

    async def close(self) -> None:
        """End the capture stream, cancel timers and requests, flush snapshots."""
        if isinstance(self.capture, ChannelSpeechCapture):
            self.capture.close()
            if self._capture_task is not None:
                # the consumer drains what is queued, then stops at the end-of-stream marker
                try:
                    await asyncio.wait_for(self._capture_task, timeout=CAPTURE_DRAIN_TIMEOUT_SEC)
                except asyncio.TimeoutError:
                    logger.warning("Session %s capture consumer did not drain in time", self.session_id)
                self._capture_task = None
        elif self.capture.is_listening:
            try:
                await self.capture.stop()
            except Exception as e:
                logger.warning("Session %s capture stop failed: %s", self.session_id, e)
        self.auto_trigger.cancel_all()
        self.orchestrator.cancel_all()
        # let cancelled request tasks run their cleanup
        await asyncio.sleep(0)
        await self.writer.close()
