"""
Session aggregate and its parts.

SessionContext is the single owned value for one running session. Every component
(store, state machine, orchestrator, codec) reads and mutates it by reference; there
is exactly one writer, the event loop the session runs on.

Timestamps are timezone-aware UTC datetimes truncated to whole milliseconds so that a
snapshot (epoch ms) round-trips without loss.
"""
from __future__ import annotations

import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Literal

Clock = Callable[[], float]  # epoch seconds, e.g. time.time

SessionState = Literal["idle", "intro", "discussion", "summary", "completed"]
SESSION_STATES: tuple[str, ...] = ("idle", "intro", "discussion", "summary", "completed")

InsightType = Literal["insights", "followup", "synthesis", "executive", "error", "info"]
INSIGHT_TYPES: tuple[str, ...] = ("insights", "followup", "synthesis", "executive", "error", "info")
# Types a caller may request from the analysis endpoints
REQUESTABLE_TYPES: tuple[str, ...] = ("insights", "followup", "synthesis", "executive")

ConfidenceTier = Literal["high", "medium", "low"]

FACILITATOR = "Facilitator"
PARTICIPANT = "Participant"
UNKNOWN_SPEAKER = "Unknown Speaker"

_ID_ALPHABET = string.ascii_lowercase + string.digits


def ms_to_datetime(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)


def datetime_to_ms(value: datetime) -> int:
    return int(round(value.timestamp() * 1000))


def now_ms(clock: Clock = time.time) -> int:
    return int(clock() * 1000)


def now_datetime(clock: Clock = time.time) -> datetime:
    """Current time at millisecond precision."""
    return ms_to_datetime(now_ms(clock))


def generate_id(prefix: str, clock: Clock = time.time) -> str:
    """'<prefix>_<epoch ms>_<9 random base36 chars>' (unique per session)."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"{prefix}_{now_ms(clock)}_{suffix}"


def clamp_confidence(value: float | None) -> float | None:
    if value is None:
        return None
    return min(1.0, max(0.0, float(value)))


@dataclass
class TranscriptEntry:
    """One attributed unit of captured speech or manual text. Only `speaker` may change after append."""

    id: str
    timestamp: datetime
    speaker: str
    text: str
    confidence: float | None = None
    is_auto_detected: bool = False


@dataclass
class AIInsight:
    """
    One AI analysis artifact. is_loading entries are transient placeholders:
    replaced or removed when the request resolves, never persisted.
    """

    id: str
    type: str
    content: str
    timestamp: datetime
    confidence: float = 0.0
    suggestions: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    is_legacy: bool = False
    is_error: bool = False
    is_loading: bool = False
    transcript_entry_count: int | None = None


@dataclass
class SpeakerSuggestion:
    """Model-suggested label for one entry, pending until the facilitator accepts it."""

    entry_id: str
    speaker: str
    confidence: float = 0.0
    reasoning: str = ""


@dataclass
class AgendaProgress:
    completed: bool = False
    time_spent_ms: int = 0
    insight_count: int = 0


@dataclass
class SessionContext:
    """Aggregate root for one session. Reset replaces it with a fresh instance."""

    state: str = "intro"
    facilitator: str = "facilitator"
    topic: str = ""
    start_time: datetime | None = None
    duration_ms: int | None = None
    live_transcript: list[TranscriptEntry] = field(default_factory=list)
    ai_insights: list[AIInsight] = field(default_factory=list)
    current_question_index: int = 0
    question_start_time: datetime | None = None
    agenda_progress: dict[str, AgendaProgress] = field(default_factory=dict)
    key_themes: list[str] = field(default_factory=list)

    def loading_insight(self, insight_type: str) -> AIInsight | None:
        for insight in self.ai_insights:
            if insight.is_loading and insight.type == insight_type:
                return insight
        return None


@dataclass
class SpeakerContinuityState:
    """Last attribution decision; process-local, never persisted."""

    speaker: str
    timestamp_ms: int
    confidence_tier: str
