"""
Schemas for the analysis endpoints.

/api/analyze-live (primary): strict JSON in, strict JSON out.
/api/analyze (fallback, legacy): reduced request; response is free-form JSON or text,
content taken from `insights` / `analysis` / `result` or the raw body.
/api/identify-speakers: speaker-name suggestions for transcript entries (review before applying).
/api/generate-summary: end-of-session report built from per-question sections.
"""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

LiveAnalysisType = Literal["insights", "followup", "synthesis", "executive", "facilitation"]


class LiveAnalyzeRequest(BaseModel):
    """Request body for POST /api/analyze-live."""

    sessionTopic: str = Field(..., min_length=1, description="Topic of the session")
    liveTranscript: str = Field(
        "No conversation content captured yet.",
        description="Transcript slice as 'Speaker: text' lines",
    )
    analysisType: LiveAnalysisType = Field(..., description="Kind of analysis requested")
    participantCount: int = Field(1, ge=0, description="Distinct speakers seen so far")
    sessionContext: dict[str, Any] | None = Field(
        None, description="Phase/agenda metadata: question index, title, prompt context, previous insights"
    )
    clientId: str = Field("anonymous", description="Caller id used for rate limiting")


class LiveAnalyzeResponse(BaseModel):
    """Response body for POST /api/analyze-live."""

    success: bool
    content: str = ""
    analysisType: str | None = None
    confidence: float | None = Field(None, description="0-1; caller defaults when absent")
    suggestions: list[str] | None = None
    metadata: dict[str, Any] | None = None
    error: str | None = Field(None, description="Set when success is false")


class LegacyAnalyzeRequest(BaseModel):
    """Request body for POST /api/analyze (fallback)."""

    questionContext: str = Field(..., min_length=1, description="What the current discussion is about")
    currentTranscript: str = Field("", description="Transcript text")
    analysisType: str = Field("insights", description="insights | followup | synthesis | executive")


class LegacyAnalyzeResponse(BaseModel):
    """Response body for POST /api/analyze. Older clients read `insights`."""

    insights: str
    analysisType: str
    timestamp: str


class SpeakerEntryInput(BaseModel):
    id: str = Field(..., description="Transcript entry id")
    text: str
    speaker: str = Field(..., description="Current speaker label")
    timestamp: str = Field("", description="ISO-8601 time of the entry")


class IdentifySpeakersRequest(BaseModel):
    """Request body for POST /api/identify-speakers."""

    transcript: list[SpeakerEntryInput] = Field(..., min_length=1, description="Entries in transcript order")


class IdentifiedSpeaker(BaseModel):
    name: str
    organization: str | None = None
    role: str | None = None
    firstMentionIndex: int | None = Field(None, description="Index of the entry where they introduce themselves")
    speakingCharacteristics: str | None = None


class SpeakerSuggestionOut(BaseModel):
    index: int = Field(..., description="Position in the submitted transcript")
    entryId: str
    currentSpeaker: str
    suggestedSpeaker: str
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    reasoning: str = ""


class IdentifySpeakersResponse(BaseModel):
    """Response body for POST /api/identify-speakers. Only entries whose label would change are listed."""

    success: bool = True
    identifiedSpeakers: list[IdentifiedSpeaker] = Field(default_factory=list)
    attributions: list[SpeakerSuggestionOut] = Field(default_factory=list)
    message: str = "Speaker identification complete. Review and confirm attributions."


class SummaryEntryInput(BaseModel):
    speaker: str = "Participant"
    text: str


class SummarySectionInput(BaseModel):
    """One agenda question and what was said and generated while it was open."""

    questionId: str
    title: str
    question: str = ""
    facilitatorGuidance: str = ""
    entries: list[SummaryEntryInput] = Field(default_factory=list)
    insights: list[str] = Field(default_factory=list, description="Insight texts generated for this question")


class GenerateSummaryRequest(BaseModel):
    """Request body for POST /api/generate-summary."""

    topic: str = ""
    sections: list[SummarySectionInput] = Field(..., min_length=1)
    startTime: int | None = Field(None, description="Session start, epoch ms")
    questionsCompleted: int | None = Field(None, ge=0, description="Defaults to the number of sections")


class SessionOverview(BaseModel):
    totalParticipants: int
    questionsCompleted: int
    sessionDuration: str = Field(..., description="'1h 5m' or '12m'")
    overallEngagement: Literal["High", "Moderate", "Light"]


class QuestionSummary(BaseModel):
    questionId: str
    questionTitle: str
    questionText: str = ""
    participantCount: int = 0
    keyThemes: list[str] = Field(default_factory=list)
    narrativeSummary: str = ""
    criticalInsights: list[str] = Field(default_factory=list)
    emergingConcerns: list[str] = Field(default_factory=list)
    strategicImplications: list[str] = Field(default_factory=list)
    isFallback: bool = Field(False, description="True when the model call failed and placeholder text was used")


class ExecutiveSummary(BaseModel):
    keyFindings: list[str] = Field(default_factory=list)
    strategicRecommendations: list[str] = Field(default_factory=list)
    nextSteps: list[str] = Field(default_factory=list)
    riskFactors: list[str] = Field(default_factory=list)
    isFallback: bool = False


class GenerateSummaryResponse(BaseModel):
    """Response body for POST /api/generate-summary."""

    sessionOverview: SessionOverview
    questionSummaries: list[QuestionSummary]
    executiveSummary: ExecutiveSummary
    fullNarrativeConclusion: str
