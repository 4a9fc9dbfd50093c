"""
Schemas for the session API.

Session state itself is returned as the snapshot dict (camelCase, epoch ms), the same
shape that is persisted and exported.
"""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class CreateSessionResponse(BaseModel):
    """Response body for POST /api/sessions."""

    session_id: str = Field(..., description="Backend-generated id; used in every other session route")
    state: str = Field(..., description="Lifecycle state of the new session")
    total_questions: int = Field(..., description="Number of agenda phases")


class SessionView(BaseModel):
    """Session snapshot plus live-only fields that are never persisted."""

    session_id: str
    snapshot: dict[str, Any] = Field(..., description="Persisted session shape (camelCase, epoch ms)")
    manual_only: bool = Field(False, description="True when speech capture is unavailable")
    partial_text: str = Field("", description="Latest partial recognizer text (not in the transcript)")
    current_question: dict[str, Any] | None = Field(None, description="Agenda phase at currentQuestionIndex")
    in_flight: list[str] = Field(default_factory=list, description="Insight types with a request in flight")


class PhaseRequest(BaseModel):
    """Request body for POST /api/sessions/{id}/phase."""

    direction: Literal["next", "previous"] = Field("next", description="Move one phase forward or back")


class PhaseResponse(BaseModel):
    moved: bool = Field(..., description="False when already at the first/last phase")
    current_question_index: int


class EntryRequest(BaseModel):
    """Request body for POST /api/sessions/{id}/entries."""

    text: str = Field(..., min_length=1, description="Entry text")
    speaker: str | None = Field(None, description="Speaker label; absent = attributed automatically")


class EntryResponse(BaseModel):
    id: str
    speaker: str
    text: str
    confidence: float | None = None
    is_auto_detected: bool = False
    timestamp: int = Field(..., description="Epoch ms")


class BulkImportRequest(BaseModel):
    """Request body for POST /api/sessions/{id}/entries/bulk. One 'Speaker: text' per line."""

    text: str = Field(..., description="Pasted transcript; speaker 'auto' re-attributes the line")


class BulkImportResponse(BaseModel):
    added: int
    entries: list[EntryResponse] = Field(default_factory=list)


class CorrectionsRequest(BaseModel):
    """Request body for POST /api/sessions/{id}/corrections."""

    corrections: dict[str, str] = Field(..., description="entry id -> corrected speaker label")


class CorrectionsResponse(BaseModel):
    changed: int


class InsightRequestBody(BaseModel):
    """Request body for POST /api/sessions/{id}/insights."""

    type: Literal["insights", "followup", "synthesis", "executive"] = Field(..., description="Insight type")
    supersede: bool = Field(False, description="Cancel in-flight requests of other types first")
    wait: bool = Field(True, description="Wait for the request to finish before responding")


class InsightRequestResponse(BaseModel):
    request_id: str
    type: str
    stage: str = Field(..., description="pending | resolved | failed | rejected | cancelled | ...")
    reason: str = ""
    insight: dict[str, Any] | None = Field(None, description="Stored insight (snapshot shape) when resolved or failed")


class ImportRequest(BaseModel):
    """Request body for POST /api/sessions/import."""

    data: str = Field(..., description="JSON text produced by GET /api/sessions/{id}/export")


class TranscriptEventMessage(BaseModel):
    """One recognizer event sent over /ws/sessions/{id}/transcript."""

    type: Literal["partial", "final", "error"] = Field(..., description="Recognizer event kind")
    text: str | None = Field("", description="Recognized text (partial or final)")
    confidence: float | None = Field(None, ge=0.0, le=1.0, description="Recognizer confidence estimate")
    timestamp: int = Field(0, ge=0, description="Epoch ms when the recognizer produced the event")
    code: str | None = Field(None, description="Recognizer error code for type=error, e.g. 'not-allowed'")


class AcceptSuggestionsRequest(BaseModel):
    """Request body for POST /api/sessions/{id}/speaker-suggestions/accept."""

    entry_ids: list[str] | None = Field(None, description="Suggestions to accept; absent = every pending one")
    min_confidence: float = Field(0.0, ge=0.0, le=1.0, description="Skip suggestions below this confidence")


class AcceptSuggestionsResponse(BaseModel):
    changed: int = Field(..., description="Entries whose speaker label was rewritten")
    pending: int = Field(..., description="Suggestions still waiting for review")
