"""
InsightOrchestrator: AI insights from the live transcript through an unreliable service.

Request pipeline (one InsightRequest per call):

    PENDING ── ok ──────────────────────────────> RESOLVED
       │  └─ invalid content ───────────────────> REJECTED
       └─ error ─> PRIMARY_FAILED ─> FALLBACK_ATTEMPTED ── ok ──> RESOLVED
                                                       └─ error ─> FAILED (error insight)

Guarantees:
- At most one in-flight request per insight type; a second request of the same type
  is REJECTED before any network call.
- A loading placeholder is inserted synchronously before the network call, and is
  always replaced or removed when the request ends (including cancellation).
- Empty, too-short or near-duplicate content is dropped silently.
- A cancelled (superseded) request never writes its response into the session.
"""
from __future__ import annotations

import asyncio
import enum
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx
from pydantic import ValidationError

from roundtable.agenda import AgendaQuestion
from roundtable.config import Settings, get_settings
from roundtable.models import (
    REQUESTABLE_TYPES,
    AIInsight,
    Clock,
    SessionContext,
    clamp_confidence,
    datetime_to_ms,
    generate_id,
    now_datetime,
    now_ms,
)
from roundtable.schemas.analysis import LegacyAnalyzeRequest, LiveAnalyzeRequest, LiveAnalyzeResponse
from roundtable.transcript import TranscriptStore, count_participants, format_lines

logger = logging.getLogger(__name__)

ERROR_MESSAGE = (
    "AI analysis temporarily unavailable. Please try again or continue with manual facilitation."
)
NO_CONTENT_YET = "No conversation content has been captured yet in this live session."
NO_NEW_CONTENT = "No new conversation content has been added since the last insight generation."


class RequestStage(str, enum.Enum):
    PENDING = "pending"
    PRIMARY_FAILED = "primary-failed"
    FALLBACK_ATTEMPTED = "fallback-attempted"
    RESOLVED = "resolved"
    FAILED = "failed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


TERMINAL_STAGES = frozenset(
    {RequestStage.RESOLVED, RequestStage.FAILED, RequestStage.REJECTED, RequestStage.CANCELLED}
)


class EndpointError(Exception):
    """Endpoint unreachable, non-OK, or returned an unusable payload."""


@dataclass
class InsightRequest:
    id: str
    type: str
    stage: RequestStage = RequestStage.PENDING
    placeholder_id: str | None = None
    insight: AIInsight | None = None
    reason: str = ""
    task: asyncio.Task | None = field(default=None, repr=False)
    cancelled: bool = False

    @property
    def done(self) -> bool:
        return self.stage in TERMINAL_STAGES


def _dedup_key(content: str, prefix_chars: int) -> str:
    return re.sub(r"\s+", " ", content.strip()).lower()[:prefix_chars]


def extract_legacy_content(body: str) -> str:
    """Fallback response: JSON with insights/analysis/result, a JSON string, or raw text."""
    body = (body or "").strip()
    if not body:
        return ""
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return body
    if isinstance(data, str):
        return data.strip()
    if isinstance(data, dict):
        for key in ("insights", "analysis", "result"):
            value = data.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return body


class InsightOrchestrator:
    def __init__(
        self,
        context: SessionContext,
        store: TranscriptStore,
        agenda: list[AgendaQuestion],
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Clock = time.time,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self._context = context
        self._store = store
        self._agenda = agenda
        self._settings = settings or get_settings()
        self._client = client
        self._clock = clock
        self._on_change = on_change
        self._in_flight: dict[str, InsightRequest] = {}

    def bind(self, context: SessionContext) -> None:
        """Point at a fresh context after reset. In-flight requests of the old session are cancelled."""
        self.cancel_all()
        self._context = context

    @property
    def in_flight(self) -> dict[str, InsightRequest]:
        return dict(self._in_flight)

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

    # --- Request construction ---

    def _insights_watermark(self) -> int:
        """Highest transcript_entry_count on any non-error `insights` insight."""
        counts = [
            i.transcript_entry_count or 0
            for i in self._context.ai_insights
            if i.type == "insights" and not i.is_error and not i.is_loading
        ]
        return max(counts, default=0)

    def transcript_for(self, insight_type: str) -> str:
        """`insights` is incremental (entries since the last insights); other types see everything."""
        if insight_type == "insights":
            entries = self._store.slice_since(self._insights_watermark())
            if not entries:
                return NO_NEW_CONTENT if len(self._store) else NO_CONTENT_YET
        else:
            entries = self._store.entries
            if not entries:
                return NO_CONTENT_YET
        return format_lines(entries)

    def _session_metadata(self) -> dict[str, Any]:
        ctx = self._context
        index = ctx.current_question_index
        question = self._agenda[index] if 0 <= index < len(self._agenda) else None
        duration_min = 0
        if ctx.start_time is not None:
            duration_min = max(0, now_ms(self._clock) - datetime_to_ms(ctx.start_time)) // 60000
        return {
            "questionIndex": index,
            "totalQuestions": len(self._agenda),
            "question": (
                {
                    "id": question.id,
                    "title": question.title,
                    "description": question.description,
                    "aiPromptContext": question.ai_prompt_context,
                }
                if question
                else None
            ),
            "sessionDurationMin": duration_min,
            "previousInsights": [
                i.content[:200]
                for i in ctx.ai_insights
                if i.type == "insights" and not i.is_error and not i.is_loading
            ][-3:],
        }

    def build_primary_payload(self, insight_type: str) -> dict[str, Any]:
        ctx = self._context
        request = LiveAnalyzeRequest(
            sessionTopic=ctx.topic or "Strategic Planning Session",
            liveTranscript=self.transcript_for(insight_type),
            analysisType=insight_type,
            participantCount=max(1, count_participants(self._store.entries)),
            sessionContext=self._session_metadata(),
            clientId=self._settings.ANALYZE_CLIENT_ID,
        )
        return request.model_dump()

    def build_fallback_payload(self, insight_type: str) -> dict[str, Any]:
        request = LegacyAnalyzeRequest(
            questionContext=f"Live Discussion Session - {self._context.topic or 'Strategic Planning'}",
            currentTranscript=self.transcript_for(insight_type),
            analysisType=insight_type,
        )
        return request.model_dump()

    # --- Dispatch ---

    def request(self, insight_type: str, supersede: bool = False) -> InsightRequest:
        """
        Start one request and return it immediately. The placeholder is in the session
        before this returns; the network work runs as a task on the running loop.
        supersede=True cancels in-flight requests of other types first.
        Raises RuntimeError when called outside a running event loop; the session is left untouched.
        """
        if insight_type not in REQUESTABLE_TYPES:
            raise ValueError(f"Unknown insight type: {insight_type}")
        # raises before anything is recorded when there is no running loop
        loop = asyncio.get_running_loop()
        req = InsightRequest(id=generate_id("request", self._clock), type=insight_type)
        if insight_type in self._in_flight or self._context.loading_insight(insight_type) is not None:
            req.stage = RequestStage.REJECTED
            req.reason = "in-flight"
            logger.info("Insight request %s rejected: %s already in flight", req.id, insight_type)
            return req
        if supersede:
            for other in list(self._in_flight.values()):
                self.cancel(other)

        primary_payload = self.build_primary_payload(insight_type)
        fallback_payload = self.build_fallback_payload(insight_type)
        placeholder = AIInsight(
            id=generate_id("loading", self._clock),
            type=insight_type,
            content="",
            timestamp=now_datetime(self._clock),
            confidence=0.0,
            is_loading=True,
        )
        self._context.ai_insights.append(placeholder)
        req.placeholder_id = placeholder.id
        self._in_flight[insight_type] = req
        logger.info(
            "Insight request %s (%s): %d transcript entries",
            req.id, insight_type, len(self._store),
        )
        self._changed()
        req.task = loop.create_task(self._run(req, primary_payload, fallback_payload))
        return req

    async def generate(self, insight_type: str, supersede: bool = False) -> InsightRequest:
        """request() and wait until it reaches a terminal stage."""
        req = self.request(insight_type, supersede=supersede)
        if req.task is not None:
            try:
                await req.task
            except asyncio.CancelledError:
                if not req.cancelled:
                    raise
        return req

    def cancel(self, req: InsightRequest) -> None:
        """Abort an in-flight request; its response will never be applied."""
        if req.done:
            return
        req.cancelled = True
        self._finish(req, RequestStage.CANCELLED, "superseded")
        if req.task is not None and not req.task.done():
            req.task.cancel()
        logger.info("Insight request %s (%s) cancelled", req.id, req.type)

    def cancel_all(self) -> None:
        for req in list(self._in_flight.values()):
            self.cancel(req)

    def _remove_placeholder(self, req: InsightRequest) -> None:
        if req.placeholder_id is None:
            return
        before = len(self._context.ai_insights)
        self._context.ai_insights[:] = [i for i in self._context.ai_insights if i.id != req.placeholder_id]
        req.placeholder_id = None
        if len(self._context.ai_insights) != before:
            self._changed()

    def _finish(self, req: InsightRequest, stage: RequestStage, reason: str = "") -> None:
        self._remove_placeholder(req)
        req.stage = stage
        req.reason = reason
        if self._in_flight.get(req.type) is req:
            del self._in_flight[req.type]

    async def _run(self, req: InsightRequest, primary_payload: dict, fallback_payload: dict) -> None:
        try:
            try:
                response = await self._call_primary(primary_payload)
            except EndpointError as e:
                if req.cancelled:
                    return
                req.stage = RequestStage.PRIMARY_FAILED
                logger.warning("Primary analysis failed for %s (%s): %s", req.id, req.type, e)
                self._remove_placeholder(req)
            else:
                if req.cancelled:
                    return
                self._apply_primary(req, response)
                return

            req.stage = RequestStage.FALLBACK_ATTEMPTED
            try:
                content = await self._call_fallback(fallback_payload)
            except EndpointError as e:
                if req.cancelled:
                    return
                logger.error("Both analysis endpoints failed for %s (%s): %s", req.id, req.type, e)
                self._apply_failure(req)
                return
            if req.cancelled:
                return
            self._apply_fallback(req, content)
        except asyncio.CancelledError:
            if not req.done:
                req.cancelled = True
                self._finish(req, RequestStage.CANCELLED, "cancelled")
            raise
        except Exception as e:
            # never leave a placeholder behind, whatever went wrong
            logger.exception("Insight request %s crashed: %s", req.id, e)
            if not req.done:
                self._apply_failure(req)

    # --- Endpoints ---

    async def _post(self, url: str, payload: dict) -> httpx.Response:
        timeout = self._settings.ANALYZE_TIMEOUT_SEC
        try:
            if self._client is not None:
                resp = await self._client.post(url, json=payload, timeout=timeout)
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    resp = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            raise EndpointError(f"{url}: {e}") from e
        if resp.status_code >= 400:
            raise EndpointError(f"{url}: HTTP {resp.status_code}")
        return resp

    async def _call_primary(self, payload: dict) -> LiveAnalyzeResponse:
        resp = await self._post(self._settings.ANALYZE_LIVE_URL, payload)
        try:
            data = LiveAnalyzeResponse.model_validate(resp.json())
        except (ValueError, ValidationError) as e:
            raise EndpointError(f"malformed primary response: {e}") from e
        if not data.success or not (data.content or "").strip():
            raise EndpointError(data.error or "primary returned no content")
        return data

    async def _call_fallback(self, payload: dict) -> str:
        resp = await self._post(self._settings.ANALYZE_FALLBACK_URL, payload)
        content = extract_legacy_content(resp.text)
        if not content:
            raise EndpointError("fallback returned no content")
        return content

    # --- Results ---

    def validation_problem(self, insight_type: str, content: str) -> str | None:
        """Why content must be dropped, or None when it can be stored."""
        text = (content or "").strip()
        if len(text) < self._settings.INSIGHT_MIN_CONTENT_CHARS:
            return "too-short"
        key = _dedup_key(text, self._settings.INSIGHT_DEDUP_PREFIX_CHARS)
        for existing in self._context.ai_insights:
            if existing.type != insight_type or existing.is_error or existing.is_loading:
                continue
            if _dedup_key(existing.content, self._settings.INSIGHT_DEDUP_PREFIX_CHARS) == key:
                return "duplicate"
        return None

    def _apply_primary(self, req: InsightRequest, data: LiveAnalyzeResponse) -> None:
        problem = self.validation_problem(req.type, data.content)
        if problem:
            logger.info("Insight %s (%s) dropped: %s", req.id, req.type, problem)
            self._finish(req, RequestStage.REJECTED, problem)
            return
        confidence = clamp_confidence(data.confidence)
        insight = AIInsight(
            id=generate_id("insight", self._clock),
            type=req.type,
            content=data.content.strip(),
            timestamp=now_datetime(self._clock),
            confidence=self._settings.INSIGHT_DEFAULT_CONFIDENCE if confidence is None else confidence,
            suggestions=list(data.suggestions or []),
            metadata=dict(data.metadata or {}),
            transcript_entry_count=len(self._store),
        )
        self._replace_placeholder(req, insight)
        self._finish(req, RequestStage.RESOLVED)
        logger.info("Insight %s (%s) stored from primary endpoint", insight.id, req.type)

    def _apply_fallback(self, req: InsightRequest, content: str) -> None:
        problem = self.validation_problem(req.type, content)
        if problem:
            logger.info("Legacy insight %s (%s) dropped: %s", req.id, req.type, problem)
            self._finish(req, RequestStage.REJECTED, problem)
            return
        insight = AIInsight(
            id=generate_id("insight", self._clock),
            type=req.type,
            content=content,
            timestamp=now_datetime(self._clock),
            confidence=self._settings.INSIGHT_LEGACY_CONFIDENCE,
            transcript_entry_count=len(self._store),
            is_legacy=True,
        )
        self._context.ai_insights.append(insight)
        req.insight = insight
        self._finish(req, RequestStage.RESOLVED)
        self._changed()
        logger.info("Insight %s (%s) stored from fallback endpoint", insight.id, req.type)

    def _apply_failure(self, req: InsightRequest) -> None:
        self._remove_placeholder(req)
        insight = AIInsight(
            id=generate_id("error", self._clock),
            type="error",
            content=ERROR_MESSAGE,
            timestamp=now_datetime(self._clock),
            confidence=0.0,
            metadata={"requestedType": req.type},
            is_error=True,
        )
        self._context.ai_insights.append(insight)
        req.insight = insight
        self._finish(req, RequestStage.FAILED, "endpoints-unavailable")
        self._changed()

    def _replace_placeholder(self, req: InsightRequest, insight: AIInsight) -> None:
        insights = self._context.ai_insights
        for idx, existing in enumerate(insights):
            if existing.id == req.placeholder_id:
                insights[idx] = insight
                break
        else:
            insights.append(insight)
        req.placeholder_id = None
        req.insight = insight
        self._changed()
