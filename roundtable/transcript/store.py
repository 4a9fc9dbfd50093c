"""
TranscriptStore: append-only ordered log of attributed entries.

- Insertion order is chronological order; entries are never reordered or removed.
- Unlabeled entries are attributed by the SpeakerAttributionEngine on append.
- The only mutation after append is the correction pass, which rewrites `speaker`.

The log lives in SessionContext.live_transcript; the store is the only writer.
"""
from __future__ import annotations

import logging
import re
import time
from typing import Callable

from roundtable.attribution import SpeakerAttributionEngine
from roundtable.models import (
    UNKNOWN_SPEAKER,
    Clock,
    SessionContext,
    TranscriptEntry,
    clamp_confidence,
    generate_id,
    now_datetime,
)

logger = logging.getLogger(__name__)

# "<speaker>: <text>" for bulk paste
_BULK_LINE = re.compile(r"^([^:]+):\s*(.+)$")
_AUTO_SPEAKER = "auto"
MANUAL_CONFIDENCE = 1.0
# Labels that say "someone" rather than who
PLACEHOLDER_SPEAKERS = frozenset({"speaker", "unknown", UNKNOWN_SPEAKER.lower()})


class TranscriptStore:
    def __init__(
        self,
        context: SessionContext,
        engine: SpeakerAttributionEngine,
        clock: Clock = time.time,
    ) -> None:
        self._context = context
        self._engine = engine
        self._clock = clock
        self._listeners: list[Callable[[TranscriptEntry], None]] = []

    @property
    def context(self) -> SessionContext:
        return self._context

    def bind(self, context: SessionContext) -> None:
        """Point at a fresh context after a session reset."""
        self._context = context

    def on_append(self, listener: Callable[[TranscriptEntry], None]) -> None:
        """Listener runs after each append (auto-trigger policy, persistence)."""
        self._listeners.append(listener)

    @property
    def entries(self) -> list[TranscriptEntry]:
        return self._context.live_transcript

    def __len__(self) -> int:
        return len(self._context.live_transcript)

    def append(
        self,
        text: str,
        speaker: str | None = None,
        confidence: float | None = None,
        is_auto_detected: bool | None = None,
    ) -> TranscriptEntry:
        """
        Append one entry. speaker=None -> attributed by the engine; the stored confidence
        is then the attribution tier score, capped by any recognizer confidence given.
        """
        text = (text or "").strip()
        if speaker is None or not speaker.strip():
            attribution = self._engine.classify(text)
            speaker = attribution.speaker
            confidence = (
                attribution.confidence if confidence is None else min(float(confidence), attribution.confidence)
            )
            auto = True if is_auto_detected is None else is_auto_detected
        else:
            speaker = speaker.strip()
            auto = False if is_auto_detected is None else is_auto_detected
        entry = TranscriptEntry(
            id=generate_id("transcript", self._clock),
            timestamp=now_datetime(self._clock),
            speaker=speaker,
            text=text,
            confidence=clamp_confidence(confidence),
            is_auto_detected=auto,
        )
        self._context.live_transcript.append(entry)
        logger.debug("Transcript entry %s appended: %s (%d total)", entry.id, speaker, len(self))
        for listener in list(self._listeners):
            listener(entry)
        return entry

    def import_bulk(self, raw_text: str) -> list[TranscriptEntry]:
        """
        One entry per non-empty line, in line order. "<speaker>: <text>" uses the speaker
        (literal "auto" re-classifies); anything else is kept under "Unknown Speaker".
        """
        added: list[TranscriptEntry] = []
        for line in (raw_text or "").splitlines():
            line = line.strip()
            if not line:
                continue
            match = _BULK_LINE.match(line)
            if match is None:
                added.append(self.append(line, speaker=UNKNOWN_SPEAKER, confidence=MANUAL_CONFIDENCE))
                continue
            speaker, text = match.group(1).strip(), match.group(2).strip()
            if speaker.lower() == _AUTO_SPEAKER:
                added.append(self.append(text, is_auto_detected=True))
            else:
                added.append(self.append(text, speaker=speaker, confidence=MANUAL_CONFIDENCE))
        logger.info("Bulk import added %d entries", len(added))
        return added

    def slice_since(self, n: int) -> list[TranscriptEntry]:
        """Entries after the first n (copy)."""
        return list(self._context.live_transcript[max(0, n):])

    def slice_last(self, k: int) -> list[TranscriptEntry]:
        if k <= 0:
            return []
        return list(self._context.live_transcript[-k:])

    def apply_corrections(self, corrections: dict[str, str]) -> int:
        """Rewrite `speaker` of entries whose id is in corrections. Returns number changed."""
        changed = 0
        for entry in self._context.live_transcript:
            new_speaker = corrections.get(entry.id)
            if new_speaker is None or not new_speaker.strip():
                continue
            new_speaker = new_speaker.strip()
            if entry.speaker != new_speaker:
                entry.speaker = new_speaker
                changed += 1
        if changed:
            logger.info("Speaker correction rewrote %d entries", changed)
        return changed


def count_participants(entries: list[TranscriptEntry]) -> int:
    """Distinct speaker labels, ignoring empty and placeholder labels."""
    speakers = {
        e.speaker.strip().lower()
        for e in entries
        if e.speaker and e.speaker.strip() and e.speaker.strip().lower() not in PLACEHOLDER_SPEAKERS
    }
    return len(speakers)


def format_lines(entries: list[TranscriptEntry], with_speakers: bool = True) -> str:
    """Prompt text: one 'Speaker: text' line per entry."""
    if with_speakers:
        return "\n".join(f"{e.speaker}: {e.text}" for e in entries)
    return "\n".join(e.text for e in entries)
