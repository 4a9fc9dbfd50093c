"""
SnapshotCodec: SessionContext <-> flat JSON-serializable dict.

Datetimes are epoch-ms integers. Keys are camelCase. Loading placeholders are never
encoded. participantCount is derived and recomputed from the transcript on encode.

Decoding tolerates older snapshot shapes: absent fields take defaults, and the
legacy keys sessionState, currentTopic and agenda progress timeSpent/insights are read.
"""
from __future__ import annotations

import logging
import time
from typing import Any

from roundtable.errors import SnapshotError
from roundtable.models import (
    SESSION_STATES,
    AgendaProgress,
    AIInsight,
    Clock,
    SessionContext,
    TranscriptEntry,
    clamp_confidence,
    datetime_to_ms,
    ms_to_datetime,
    now_ms,
)
from roundtable.transcript import count_participants

logger = logging.getLogger(__name__)

DEFAULT_STATE = "idle"
DEFAULT_FACILITATOR = "facilitator"


def _ms(value) -> int | None:
    return None if value is None else datetime_to_ms(value)


def entry_to_dict(entry: TranscriptEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "timestamp": datetime_to_ms(entry.timestamp),
        "speaker": entry.speaker,
        "text": entry.text,
        "confidence": entry.confidence,
        "isAutoDetected": entry.is_auto_detected,
    }


def insight_to_dict(insight: AIInsight) -> dict[str, Any]:
    return {
        "id": insight.id,
        "type": insight.type,
        "content": insight.content,
        "timestamp": datetime_to_ms(insight.timestamp),
        "confidence": insight.confidence,
        "suggestions": list(insight.suggestions),
        "metadata": dict(insight.metadata),
        "isLegacy": insight.is_legacy,
        "isError": insight.is_error,
        "transcriptEntryCount": insight.transcript_entry_count,
    }


def to_snapshot(context: SessionContext, clock: Clock = time.time) -> dict[str, Any]:
    """Encode the aggregate. `timestamp` is the encode time (used for expiry)."""
    return {
        "timestamp": now_ms(clock),
        "state": context.state,
        "facilitator": context.facilitator,
        "topic": context.topic,
        "startTime": _ms(context.start_time),
        "duration": context.duration_ms,
        "participantCount": count_participants(context.live_transcript),
        "liveTranscript": [entry_to_dict(e) for e in context.live_transcript],
        "aiInsights": [insight_to_dict(i) for i in context.ai_insights if not i.is_loading],
        "currentQuestionIndex": context.current_question_index,
        "questionStartTime": _ms(context.question_start_time),
        "agendaProgress": {
            qid: {
                "completed": p.completed,
                "timeSpentMs": p.time_spent_ms,
                "insightCount": p.insight_count,
            }
            for qid, p in context.agenda_progress.items()
        },
        "keyThemes": list(context.key_themes),
    }


def is_valid_entry(raw: Any) -> bool:
    return (
        isinstance(raw, dict)
        and isinstance(raw.get("id"), str)
        and isinstance(raw.get("speaker"), str)
        and isinstance(raw.get("text"), str)
        and isinstance(raw.get("timestamp"), (int, float))
    )


def is_valid_insight(raw: Any) -> bool:
    return (
        isinstance(raw, dict)
        and isinstance(raw.get("id"), str)
        and isinstance(raw.get("type"), str)
        and isinstance(raw.get("content"), str)
        and isinstance(raw.get("timestamp"), (int, float))
    )


def entry_from_dict(raw: dict[str, Any]) -> TranscriptEntry:
    return TranscriptEntry(
        id=raw["id"],
        timestamp=ms_to_datetime(int(raw["timestamp"])),
        speaker=raw["speaker"],
        text=raw["text"],
        confidence=clamp_confidence(raw.get("confidence")),
        is_auto_detected=bool(raw.get("isAutoDetected", False)),
    )


def insight_from_dict(raw: dict[str, Any]) -> AIInsight:
    count = raw.get("transcriptEntryCount")
    return AIInsight(
        id=raw["id"],
        type=raw["type"],
        content=raw["content"],
        timestamp=ms_to_datetime(int(raw["timestamp"])),
        confidence=clamp_confidence(raw.get("confidence")) or 0.0,
        suggestions=list(raw.get("suggestions") or []),
        metadata=dict(raw.get("metadata") or {}),
        is_legacy=bool(raw.get("isLegacy", False)),
        is_error=bool(raw.get("isError", False)),
        transcript_entry_count=None if count is None else int(count),
    )


def _progress_from_dict(raw: Any) -> AgendaProgress:
    if not isinstance(raw, dict):
        return AgendaProgress()
    spent = raw.get("timeSpentMs", raw.get("timeSpent", 0)) or 0
    count = raw.get("insightCount", raw.get("insights", 0)) or 0
    return AgendaProgress(
        completed=bool(raw.get("completed", False)),
        time_spent_ms=max(0, int(spent)),
        insight_count=max(0, int(count)),
    )


def _optional_datetime(value: Any):
    if value is None:
        return None
    if not isinstance(value, (int, float)):
        raise SnapshotError(f"Expected epoch ms, got {value!r}")
    return ms_to_datetime(int(value))


def from_snapshot(snapshot: dict[str, Any]) -> SessionContext:
    """
    Decode a snapshot into a fresh SessionContext. Invalid entries and insights are
    skipped with a warning; a non-dict snapshot raises SnapshotError.
    """
    if not isinstance(snapshot, dict):
        raise SnapshotError("Invalid snapshot: not an object")

    state = snapshot.get("state", snapshot.get("sessionState")) or DEFAULT_STATE
    if state not in SESSION_STATES:
        logger.warning("Unknown session state %r in snapshot; using %s", state, DEFAULT_STATE)
        state = DEFAULT_STATE

    raw_entries = snapshot.get("liveTranscript") or []
    raw_insights = snapshot.get("aiInsights") or []
    entries = [entry_from_dict(e) for e in raw_entries if is_valid_entry(e)]
    if len(entries) != len(raw_entries):
        logger.warning("Snapshot: %d invalid transcript entries skipped", len(raw_entries) - len(entries))
    insights = [
        insight_from_dict(i) for i in raw_insights if is_valid_insight(i) and not i.get("isLoading")
    ]
    if len(insights) != len(raw_insights):
        logger.warning("Snapshot: %d invalid or loading insights skipped", len(raw_insights) - len(insights))
    # a trimmed transcript leaves counts pointing past its end; incremental analysis reads from them
    for insight in insights:
        if insight.transcript_entry_count is not None and insight.transcript_entry_count > len(entries):
            insight.transcript_entry_count = len(entries)

    progress = snapshot.get("agendaProgress") or {}
    if not isinstance(progress, dict):
        logger.warning("Snapshot: agendaProgress is not a mapping; ignored")
        progress = {}

    try:
        index = int(snapshot.get("currentQuestionIndex") or 0)
    except (TypeError, ValueError) as e:
        raise SnapshotError(f"Invalid currentQuestionIndex: {snapshot.get('currentQuestionIndex')!r}") from e

    duration = snapshot.get("duration")
    return SessionContext(
        state=state,
        facilitator=snapshot.get("facilitator") or DEFAULT_FACILITATOR,
        topic=snapshot.get("topic", snapshot.get("currentTopic")) or "",
        start_time=_optional_datetime(snapshot.get("startTime")),
        duration_ms=None if duration is None else max(0, int(duration)),
        live_transcript=entries,
        ai_insights=insights,
        current_question_index=max(0, index),
        question_start_time=_optional_datetime(snapshot.get("questionStartTime")),
        agenda_progress={str(qid): _progress_from_dict(p) for qid, p in progress.items()},
        key_themes=list(snapshot.get("keyThemes") or []),
    )
