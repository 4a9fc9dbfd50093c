"""
FastAPI app: live roundtable sessions and the analysis endpoints.

Sessions: create, lifecycle commands, phase navigation, manual/bulk entries, speaker
corrections and model speaker suggestions, insight requests, end-of-session summary,
export/import and recovery from snapshots.
WebSocket /ws/sessions/{id}/transcript: client sends recognizer events as JSON
{ "type": "partial" | "final" | "error", "text": "...", "confidence": 0.0-1.0, "code": "..." };
events go through the session capture channel; the server answers each final with the
attributed entry and each bad message with an error reply.

Analysis: POST /api/analyze-live (primary, strict JSON), POST /api/analyze (legacy),
POST /api/identify-speakers and POST /api/generate-summary.
"""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from roundtable.capture import TranscriptEvent
from roundtable.config import configure_logging, get_settings
from roundtable.errors import (
    AnalysisError,
    InvalidTransitionError,
    RateLimitExceededError,
    SessionNotFoundError,
    SnapshotError,
)
from roundtable.live_session import CaptureNotice, LiveSession
from roundtable.models import SpeakerSuggestion, TranscriptEntry, datetime_to_ms
from roundtable.schemas.analysis import (
    GenerateSummaryRequest,
    GenerateSummaryResponse,
    IdentifySpeakersRequest,
    IdentifySpeakersResponse,
    LegacyAnalyzeRequest,
    LegacyAnalyzeResponse,
    LiveAnalyzeRequest,
    LiveAnalyzeResponse,
    SpeakerEntryInput,
    SummaryEntryInput,
    SummarySectionInput,
)
from roundtable.schemas.session import (
    AcceptSuggestionsRequest,
    AcceptSuggestionsResponse,
    BulkImportRequest,
    BulkImportResponse,
    CorrectionsRequest,
    CorrectionsResponse,
    CreateSessionResponse,
    EntryRequest,
    EntryResponse,
    ImportRequest,
    InsightRequestBody,
    InsightRequestResponse,
    PhaseRequest,
    PhaseResponse,
    SessionView,
    TranscriptEventMessage,
)
from roundtable.services.analysis_service import AnalysisService
from roundtable.services.insight_orchestrator import InsightRequest
from roundtable.session_store import (
    create_session,
    get_snapshot_store,
    recover_session,
    recoverable_session_ids,
    require_session,
    session_store,
)
from roundtable.snapshot.codec import insight_to_dict

logger = logging.getLogger(__name__)

_analysis_service: AnalysisService | None = None


def get_analysis_service() -> AnalysisService:
    """One service per process so the rate limit is shared by all requests."""
    global _analysis_service
    if _analysis_service is None:
        _analysis_service = AnalysisService()
    return _analysis_service


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(get_settings())
    logger.info("Roundtable service starting")
    yield
    for session in list(session_store().values()):
        try:
            await session.close()
        except Exception as e:
            logger.warning("Closing session %s failed: %s", session.session_id, e)


app = FastAPI(
    title="Live Roundtable Co-Facilitator",
    description="Live transcript, speaker attribution and AI insights for facilitated sessions",
    lifespan=lifespan,
)


def _session(session_id: str) -> LiveSession:
    try:
        return require_session(session_id)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


def _entry_response(entry: TranscriptEntry) -> EntryResponse:
    return EntryResponse(
        id=entry.id,
        speaker=entry.speaker,
        text=entry.text,
        confidence=entry.confidence,
        is_auto_detected=entry.is_auto_detected,
        timestamp=datetime_to_ms(entry.timestamp),
    )


def _session_view(session: LiveSession) -> SessionView:
    question = session.state_machine.current_question
    return SessionView(
        session_id=session.session_id,
        snapshot=session.snapshot(),
        manual_only=session.manual_only,
        partial_text=session.partial_text,
        current_question={
            "id": question.id,
            "title": question.title,
            "description": question.description,
            "timeLimit": question.time_limit_min,
            "guidePrompts": question.guide_prompts,
        },
        in_flight=sorted(session.orchestrator.in_flight),
    )


def _client_id(http_request: Request, x_client_id: str | None) -> str:
    return x_client_id or (http_request.client.host if http_request.client else "anonymous")


def _summary_request(session: LiveSession) -> GenerateSummaryRequest:
    """
    One section for the whole discussion: entries carry no phase, so the section lists the
    agenda questions covered so far instead of splitting the transcript per question.
    """
    ctx = session.context
    covered = session.agenda[: ctx.current_question_index + 1]
    section = SummarySectionInput(
        questionId="session",
        title=ctx.topic or "Session discussion",
        question="; ".join(q.title for q in covered),
        entries=[SummaryEntryInput(speaker=e.speaker, text=e.text) for e in ctx.live_transcript],
        insights=[
            i.content for i in ctx.ai_insights if not i.is_error and not i.is_loading and i.type != "info"
        ],
    )
    return GenerateSummaryRequest(
        topic=ctx.topic,
        sections=[section],
        startTime=datetime_to_ms(ctx.start_time) if ctx.start_time is not None else None,
        questionsCompleted=len(covered),
    )


def _request_response(req: InsightRequest) -> InsightRequestResponse:
    return InsightRequestResponse(
        request_id=req.id,
        type=req.type,
        stage=req.stage.value,
        reason=req.reason,
        insight=insight_to_dict(req.insight) if req.insight is not None else None,
    )


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


# --- Sessions ---


@app.post("/api/sessions", response_model=CreateSessionResponse)
async def create_session_route() -> CreateSessionResponse:
    session = create_session()
    await session.open()
    session.persist()
    return CreateSessionResponse(
        session_id=session.session_id,
        state=session.context.state,
        total_questions=session.state_machine.total_questions,
    )


@app.get("/api/sessions")
async def list_sessions() -> dict:
    return {"live": sorted(session_store()), "recoverable": recoverable_session_ids()}


@app.get("/api/sessions/{session_id}", response_model=SessionView)
async def get_session_route(session_id: str) -> SessionView:
    return _session_view(_session(session_id))


async def _lifecycle(session_id: str, command: str) -> SessionView:
    session = _session(session_id)
    try:
        if command == "start":
            await session.start()
        elif command == "end":
            await session.end()
        elif command == "complete":
            session.complete()
        else:
            session.reset()
    except InvalidTransitionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _session_view(session)


@app.post("/api/sessions/{session_id}/start", response_model=SessionView)
async def start_session(session_id: str) -> SessionView:
    return await _lifecycle(session_id, "start")


@app.post("/api/sessions/{session_id}/end", response_model=SessionView)
async def end_session(session_id: str) -> SessionView:
    return await _lifecycle(session_id, "end")


@app.post("/api/sessions/{session_id}/complete", response_model=SessionView)
async def complete_session(session_id: str) -> SessionView:
    return await _lifecycle(session_id, "complete")


@app.post("/api/sessions/{session_id}/reset", response_model=SessionView)
async def reset_session(session_id: str) -> SessionView:
    return await _lifecycle(session_id, "reset")


@app.post("/api/sessions/{session_id}/phase", response_model=PhaseResponse)
async def advance_phase(session_id: str, request: PhaseRequest) -> PhaseResponse:
    session = _session(session_id)
    moved = session.advance_phase(request.direction)
    return PhaseResponse(moved=moved, current_question_index=session.context.current_question_index)


@app.post("/api/sessions/{session_id}/entries", response_model=EntryResponse)
async def add_entry(session_id: str, request: EntryRequest) -> EntryResponse:
    session = _session(session_id)
    try:
        entry = session.add_manual_entry(request.text, speaker=request.speaker)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _entry_response(entry)


@app.post("/api/sessions/{session_id}/entries/bulk", response_model=BulkImportResponse)
async def bulk_import(session_id: str, request: BulkImportRequest) -> BulkImportResponse:
    session = _session(session_id)
    entries = session.import_bulk(request.text)
    return BulkImportResponse(added=len(entries), entries=[_entry_response(e) for e in entries])


@app.post("/api/sessions/{session_id}/corrections", response_model=CorrectionsResponse)
async def apply_corrections(session_id: str, request: CorrectionsRequest) -> CorrectionsResponse:
    session = _session(session_id)
    return CorrectionsResponse(changed=session.apply_corrections(request.corrections))


@app.post("/api/sessions/{session_id}/speaker-suggestions", response_model=IdentifySpeakersResponse)
async def suggest_speakers(
    session_id: str,
    http_request: Request,
    x_client_id: str | None = Header(None),
) -> IdentifySpeakersResponse:
    """
    Ask the model who said what. Suggestions replace the session's pending set and change
    nothing until accepted.
    """
    session = _session(session_id)
    entries = session.context.live_transcript
    if not entries:
        raise HTTPException(status_code=400, detail="Transcript is empty")
    request = IdentifySpeakersRequest(
        transcript=[
            SpeakerEntryInput(id=e.id, text=e.text, speaker=e.speaker, timestamp=e.timestamp.isoformat())
            for e in entries
        ]
    )
    service = get_analysis_service()
    try:
        result = await service.identify_speakers(request, client_id=_client_id(http_request, x_client_id))
    except RateLimitExceededError as e:
        raise HTTPException(status_code=429, detail=str(e))
    except AnalysisError as e:
        logger.warning("Speaker identification failed for session %s: %s", session_id, e)
        raise HTTPException(status_code=502, detail="Speaker identification failed")
    session.set_speaker_suggestions(
        [
            SpeakerSuggestion(a.entryId, a.suggestedSpeaker, confidence=a.confidence, reasoning=a.reasoning)
            for a in result.attributions
        ]
    )
    return result


@app.post("/api/sessions/{session_id}/speaker-suggestions/accept", response_model=AcceptSuggestionsResponse)
async def accept_speaker_suggestions(session_id: str, request: AcceptSuggestionsRequest) -> AcceptSuggestionsResponse:
    session = _session(session_id)
    changed = session.accept_speaker_suggestions(request.entry_ids, min_confidence=request.min_confidence)
    return AcceptSuggestionsResponse(changed=changed, pending=len(session.speaker_suggestions))


@app.post("/api/sessions/{session_id}/summary", response_model=GenerateSummaryResponse)
async def summarize_session(
    session_id: str,
    http_request: Request,
    x_client_id: str | None = Header(None),
) -> GenerateSummaryResponse:
    """End-of-session report over the whole transcript. Its key themes are stored on the session."""
    session = _session(session_id)
    service = get_analysis_service()
    try:
        summary = await service.generate_summary(
            _summary_request(session), client_id=_client_id(http_request, x_client_id)
        )
    except RateLimitExceededError as e:
        raise HTTPException(status_code=429, detail=str(e))
    except AnalysisError as e:
        logger.warning("Summary failed for session %s: %s", session_id, e)
        raise HTTPException(status_code=502, detail="Summary generation failed")
    session.record_key_themes([theme for q in summary.questionSummaries for theme in q.keyThemes])
    return summary


@app.post("/api/sessions/{session_id}/insights", response_model=InsightRequestResponse)
async def request_insight(session_id: str, request: InsightRequestBody) -> InsightRequestResponse:
    """
    Manual insight request. wait=true returns the finished request (resolved, rejected or
    failed with an error insight); wait=false returns as soon as the placeholder is in place.
    Network failures never surface here as HTTP errors; they end as an error insight.
    """
    session = _session(session_id)
    if request.wait:
        req = await session.generate_insight(request.type, supersede=request.supersede)
    else:
        req = session.request_insight(request.type, supersede=request.supersede)
    return _request_response(req)


@app.get("/api/sessions/{session_id}/export")
async def export_session(session_id: str) -> dict:
    session = _session(session_id)
    return json.loads(get_snapshot_store().export_session(session.snapshot()))


@app.post("/api/sessions/import", response_model=SessionView)
async def import_session(request: ImportRequest) -> SessionView:
    try:
        snapshot = get_snapshot_store().import_session(request.data)
    except SnapshotError as e:
        raise HTTPException(status_code=400, detail=str(e))
    session = create_session()
    await session.open()
    try:
        session.restore(snapshot)
    except SnapshotError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _session_view(session)


@app.post("/api/sessions/{session_id}/recover", response_model=SessionView)
async def recover_session_route(session_id: str) -> SessionView:
    try:
        session = recover_session(session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="No recoverable snapshot for this session")
    except SnapshotError as e:
        raise HTTPException(status_code=400, detail=str(e))
    await session.open()
    return _session_view(session)


async def _forward_notices(websocket: WebSocket, notices: asyncio.Queue[CaptureNotice]) -> None:
    """Send what the capture consumer did with each event back to the client."""
    while True:
        notice = await notices.get()
        if notice.kind == "entry" and notice.entry is not None:
            await websocket.send_json({"type": "entry", "entry": _entry_response(notice.entry).model_dump()})
        elif notice.kind == "capture_error":
            await websocket.send_json({"type": "capture_error", "code": notice.code, "manual_only": notice.manual_only})


@app.websocket("/ws/sessions/{session_id}/transcript")
async def transcript_socket(websocket: WebSocket, session_id: str) -> None:
    """
    Recognizer events for one session. Each message is one JSON event, pushed into the
    session's capture channel; the capture consumer attributes finals, updates the live
    caption on partials and records errors. Malformed messages get an error reply and
    the socket stays open.
    """
    await websocket.accept()
    try:
        session = require_session(session_id)
    except SessionNotFoundError as e:
        await websocket.send_json({"type": "error", "error": str(e)})
        await websocket.close(code=4404)
        return
    notices = session.subscribe()
    sender = asyncio.create_task(_forward_notices(websocket, notices))
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                msg = TranscriptEventMessage.model_validate_json(raw)
            except ValidationError as e:
                await websocket.send_json({"type": "error", "error": _validation_summary(e)})
                continue
            event = TranscriptEvent(
                kind=msg.type,
                text=msg.text or "",
                confidence=msg.confidence,
                timestamp=msg.timestamp,
                code=msg.code,
            )
            if not session.push_event(event):
                await websocket.send_json(
                    {"type": "error", "error": "capture is not listening", "state": session.context.state}
                )
    except WebSocketDisconnect:
        pass
    finally:
        session.unsubscribe(notices)
        sender.cancel()
        try:
            await sender
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug("Transcript socket %s sender stopped: %s", session_id, e)


def _validation_summary(error: ValidationError) -> str:
    first = error.errors()[0]
    where = ".".join(str(p) for p in first.get("loc", ())) or "message"
    return f"{where}: {first.get('msg', 'invalid')}"


# --- Analysis endpoints ---


@app.post("/api/analyze-live", response_model=LiveAnalyzeResponse)
async def analyze_live(request: LiveAnalyzeRequest) -> LiveAnalyzeResponse:
    service = get_analysis_service()
    try:
        return await service.analyze_live(request)
    except RateLimitExceededError as e:
        raise HTTPException(status_code=429, detail=str(e))
    except AnalysisError as e:
        logger.warning("Live analysis failed: %s", e)
        raise HTTPException(status_code=502, detail="AI analysis failed")


@app.post("/api/analyze", response_model=LegacyAnalyzeResponse)
async def analyze_legacy(
    request: LegacyAnalyzeRequest,
    http_request: Request,
    x_client_id: str | None = Header(None),
) -> LegacyAnalyzeResponse:
    service = get_analysis_service()
    try:
        return await service.analyze_legacy(request, client_id=_client_id(http_request, x_client_id))
    except RateLimitExceededError as e:
        raise HTTPException(status_code=429, detail=str(e))
    except AnalysisError as e:
        logger.warning("Legacy analysis failed: %s", e)
        raise HTTPException(status_code=502, detail="AI analysis failed")


@app.post("/api/identify-speakers", response_model=IdentifySpeakersResponse)
async def identify_speakers(
    request: IdentifySpeakersRequest,
    http_request: Request,
    x_client_id: str | None = Header(None),
) -> IdentifySpeakersResponse:
    service = get_analysis_service()
    try:
        return await service.identify_speakers(request, client_id=_client_id(http_request, x_client_id))
    except RateLimitExceededError as e:
        raise HTTPException(status_code=429, detail=str(e))
    except AnalysisError as e:
        logger.warning("Speaker identification failed: %s", e)
        raise HTTPException(status_code=502, detail="Speaker identification failed")


@app.post("/api/generate-summary", response_model=GenerateSummaryResponse)
async def generate_summary(
    request: GenerateSummaryRequest,
    http_request: Request,
    x_client_id: str | None = Header(None),
) -> GenerateSummaryResponse:
    service = get_analysis_service()
    try:
        return await service.generate_summary(request, client_id=_client_id(http_request, x_client_id))
    except RateLimitExceededError as e:
        raise HTTPException(status_code=429, detail=str(e))
    except AnalysisError as e:
        logger.warning("Summary generation failed: %s", e)
        raise HTTPException(status_code=502, detail="Summary generation failed")
