import asyncio
import json

import httpx
import pytest

from roundtable.agenda import DEFAULT_AGENDA, SessionProfile
from roundtable.attribution import SpeakerAttributionEngine
from roundtable.models import AIInsight, SessionContext, now_datetime
from roundtable.services.insight_orchestrator import (
    ERROR_MESSAGE,
    NO_NEW_CONTENT,
    InsightOrchestrator,
    RequestStage,
    extract_legacy_content,
)
from roundtable.transcript import TranscriptStore

LONG_INSIGHT = "1. Key theme: onboarding is the bottleneck across every team in the room."


class Recorder:
    """MockTransport handler: per-path canned responses, records request bodies."""

    def __init__(self, live=None, legacy=None, gate=None):
        self.live = live
        self.legacy = legacy
        self.gate = gate
        self.calls = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content or b"{}")
        self.calls.append((request.url.path, body))
        if self.gate is not None:
            await self.gate.wait()
        responder = self.live if request.url.path.endswith("analyze-live") else self.legacy
        if responder is None:
            return httpx.Response(500, json={"error": "down"})
        if callable(responder):
            return responder(body)
        return responder


def live_ok(content=LONG_INSIGHT, **extra):
    return httpx.Response(200, json={"success": True, "content": content, **extra})


def make_orchestrator(clock, settings, handler, entries=3):
    ctx = SessionContext(state="discussion", topic="AI Strategy")
    engine = SpeakerAttributionEngine(SessionProfile(), DEFAULT_AGENDA, continuity_window_sec=30, clock=clock)
    store = TranscriptStore(ctx, engine, clock=clock)
    for i in range(entries):
        store.append(f"statement {i} about onboarding", speaker="Alice")
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    changes = []
    orchestrator = InsightOrchestrator(
        ctx, store, DEFAULT_AGENDA, settings=settings, client=client, clock=clock,
        on_change=lambda: changes.append(len(ctx.ai_insights)),
    )
    return orchestrator, ctx, store, changes


def test_placeholder_inserted_before_network_call(clock, settings):
    recorder = Recorder(live=live_ok())

    async def scenario():
        orchestrator, ctx, _, _ = make_orchestrator(clock, settings, recorder)
        req = orchestrator.request("insights")
        loading = ctx.loading_insight("insights")
        assert loading is not None and loading.id == req.placeholder_id
        assert recorder.calls == []
        await req.task
        return req, ctx

    req, ctx = asyncio.run(scenario())
    assert req.stage == RequestStage.RESOLVED
    assert [i.type for i in ctx.ai_insights] == ["insights"]
    assert not any(i.is_loading for i in ctx.ai_insights)


def test_primary_success_stores_insight(clock, settings):
    recorder = Recorder(live=live_ok(suggestions=["ask about cost"], metadata={"tokensUsed": 12}))

    async def scenario():
        orchestrator, ctx, store, changes = make_orchestrator(clock, settings, recorder)
        req = await orchestrator.generate("followup")
        return req, ctx, store, changes

    req, ctx, store, changes = asyncio.run(scenario())
    insight = req.insight
    assert insight.content == LONG_INSIGHT
    assert insight.confidence == 0.85
    assert insight.suggestions == ["ask about cost"]
    assert insight.metadata == {"tokensUsed": 12}
    assert insight.transcript_entry_count == len(store)
    assert insight.is_legacy is False
    assert changes  # persistence hook ran

    path, body = recorder.calls[0]
    assert path == "/api/analyze-live"
    assert body["analysisType"] == "followup"
    assert body["sessionTopic"] == "AI Strategy"
    assert body["participantCount"] == 1
    assert body["liveTranscript"].splitlines()[0] == "Alice: statement 0 about onboarding"
    assert body["sessionContext"]["question"]["id"] == DEFAULT_AGENDA[0].id


def test_response_confidence_is_clamped(clock, settings):
    recorder = Recorder(live=live_ok(confidence=1.7))

    async def scenario():
        orchestrator, _, _, _ = make_orchestrator(clock, settings, recorder)
        return await orchestrator.generate("synthesis")

    assert asyncio.run(scenario()).insight.confidence == 1.0


def test_same_type_in_flight_is_rejected(clock, settings):
    recorder = Recorder(live=live_ok())

    async def scenario():
        orchestrator, ctx, _, _ = make_orchestrator(clock, settings, recorder)
        first, second = await asyncio.gather(orchestrator.generate("insights"), orchestrator.generate("insights"))
        return first, second, ctx

    first, second, ctx = asyncio.run(scenario())
    assert first.stage == RequestStage.RESOLVED
    assert second.stage == RequestStage.REJECTED
    assert len(recorder.calls) == 1
    assert len([i for i in ctx.ai_insights if i.type == "insights"]) == 1


def test_duplicate_content_is_dropped(clock, settings):
    recorder = Recorder(live=lambda body: live_ok(LONG_INSIGHT + " " + body["analysisType"] * 50))

    async def scenario():
        orchestrator, ctx, _, _ = make_orchestrator(clock, settings, recorder)
        first = await orchestrator.generate("followup")
        second = await orchestrator.generate("followup")
        return first, second, ctx

    first, second, ctx = asyncio.run(scenario())
    assert first.stage == RequestStage.RESOLVED
    assert second.stage == RequestStage.REJECTED
    assert second.reason == "duplicate"
    assert len(ctx.ai_insights) == 1


def test_short_content_is_dropped(clock, settings):
    recorder = Recorder(live=live_ok("Too short."))

    async def scenario():
        orchestrator, ctx, _, _ = make_orchestrator(clock, settings, recorder)
        return await orchestrator.generate("insights"), ctx

    req, ctx = asyncio.run(scenario())
    assert req.stage == RequestStage.REJECTED
    assert req.reason == "too-short"
    assert ctx.ai_insights == []


def test_primary_failure_falls_back_to_legacy(clock, settings):
    recorder = Recorder(live=None, legacy=httpx.Response(200, json={"insights": LONG_INSIGHT}))

    async def scenario():
        orchestrator, ctx, _, _ = make_orchestrator(clock, settings, recorder)
        return await orchestrator.generate("insights"), ctx

    req, ctx = asyncio.run(scenario())
    assert req.stage == RequestStage.RESOLVED
    assert [c[0] for c in recorder.calls] == ["/api/analyze-live", "/api/analyze"]
    fallback_body = recorder.calls[1][1]
    assert fallback_body["questionContext"] == "Live Discussion Session - AI Strategy"
    assert fallback_body["analysisType"] == "insights"
    assert "Alice: statement 2 about onboarding" in fallback_body["currentTranscript"]
    insight = ctx.ai_insights[0]
    assert insight.is_legacy is True
    assert insight.confidence == 0.8
    assert insight.content == LONG_INSIGHT


def test_unsuccessful_primary_payload_counts_as_failure(clock, settings):
    recorder = Recorder(
        live=httpx.Response(200, json={"success": False, "error": "model overloaded"}),
        legacy=httpx.Response(200, text=LONG_INSIGHT),
    )

    async def scenario():
        orchestrator, ctx, _, _ = make_orchestrator(clock, settings, recorder)
        return await orchestrator.generate("executive"), ctx

    req, ctx = asyncio.run(scenario())
    assert req.stage == RequestStage.RESOLVED
    assert ctx.ai_insights[0].is_legacy is True


def test_total_failure_appends_error_insight(clock, settings):
    recorder = Recorder(live=None, legacy=None)

    async def scenario():
        orchestrator, ctx, _, _ = make_orchestrator(clock, settings, recorder)
        return await orchestrator.generate("synthesis"), ctx, orchestrator

    req, ctx, orchestrator = asyncio.run(scenario())
    assert req.stage == RequestStage.FAILED
    assert len(ctx.ai_insights) == 1
    error = ctx.ai_insights[0]
    assert error.is_error is True
    assert error.type == "error"
    assert error.content == ERROR_MESSAGE
    assert error.metadata == {"requestedType": "synthesis"}
    assert orchestrator.in_flight == {}


def test_network_error_falls_back(clock, settings):
    def live(body):
        raise httpx.ConnectError("connection refused")

    recorder = Recorder(live=live, legacy=httpx.Response(200, json={"analysis": LONG_INSIGHT}))

    async def scenario():
        orchestrator, ctx, _, _ = make_orchestrator(clock, settings, recorder)
        return await orchestrator.generate("followup"), ctx

    req, ctx = asyncio.run(scenario())
    assert req.stage == RequestStage.RESOLVED
    assert ctx.ai_insights[0].is_legacy is True


def test_insights_payload_is_incremental(clock, settings):
    recorder = Recorder(live=lambda body: live_ok(LONG_INSIGHT + body["liveTranscript"]))

    async def scenario():
        orchestrator, ctx, store, _ = make_orchestrator(clock, settings, recorder, entries=2)
        await orchestrator.generate("insights")
        store.append("a brand new remark about pricing", speaker="Bob")
        await orchestrator.generate("insights")
        third = orchestrator.transcript_for("insights")
        return third

    third = asyncio.run(scenario())
    first_body = recorder.calls[0][1]
    second_body = recorder.calls[1][1]
    assert first_body["liveTranscript"].count("\n") == 1
    assert second_body["liveTranscript"] == "Bob: a brand new remark about pricing"
    assert third == NO_NEW_CONTENT


def test_non_insights_types_send_full_transcript(clock, settings):
    recorder = Recorder(live=lambda body: live_ok(LONG_INSIGHT + body["analysisType"]))

    async def scenario():
        orchestrator, ctx, store, _ = make_orchestrator(clock, settings, recorder, entries=2)
        await orchestrator.generate("insights")
        store.append("a brand new remark about pricing", speaker="Bob")
        await orchestrator.generate("synthesis")

    asyncio.run(scenario())
    assert recorder.calls[1][1]["liveTranscript"].count("\n") == 2


def test_superseded_request_never_applies_response(clock, settings):
    async def scenario():
        gate = asyncio.Event()
        recorder = Recorder(live=lambda body: live_ok(LONG_INSIGHT + body["analysisType"]), gate=gate)
        orchestrator, ctx, _, _ = make_orchestrator(clock, settings, recorder)
        old = orchestrator.request("insights")
        await asyncio.sleep(0)
        new = orchestrator.request("followup", supersede=True)
        assert old.stage == RequestStage.CANCELLED
        assert ctx.loading_insight("insights") is None
        gate.set()
        await new.task
        await asyncio.sleep(0)
        return old, new, ctx

    old, new, ctx = asyncio.run(scenario())
    assert old.insight is None
    assert new.stage == RequestStage.RESOLVED
    assert [i.type for i in ctx.ai_insights] == ["followup"]


def test_manual_retry_after_failure(clock, settings):
    responses = iter([None, live_ok()])

    def live(body):
        response = next(responses)
        if response is None:
            return httpx.Response(503)
        return response

    recorder = Recorder(live=live, legacy=None)

    async def scenario():
        orchestrator, ctx, _, _ = make_orchestrator(clock, settings, recorder)
        first = await orchestrator.generate("insights")
        second = await orchestrator.generate("insights")
        return first, second, ctx

    first, second, ctx = asyncio.run(scenario())
    assert first.stage == RequestStage.FAILED
    assert second.stage == RequestStage.RESOLVED
    assert [i.type for i in ctx.ai_insights] == ["error", "insights"]


def test_dedup_ignores_error_insights(clock, settings):
    async def scenario():
        orchestrator, ctx, _, _ = make_orchestrator(clock, settings, Recorder(live=live_ok()))
        ctx.ai_insights.append(
            AIInsight(id="e", type="insights", content=LONG_INSIGHT, timestamp=now_datetime(clock), is_error=True)
        )
        return orchestrator.validation_problem("insights", LONG_INSIGHT)

    assert asyncio.run(scenario()) is None


def test_extract_legacy_content():
    assert extract_legacy_content('{"insights": "a"}') == "a"
    assert extract_legacy_content('{"result": "b"}') == "b"
    assert extract_legacy_content('"quoted"') == "quoted"
    assert extract_legacy_content("plain text") == "plain text"
    assert extract_legacy_content("   ") == ""


def test_request_outside_event_loop_leaves_no_placeholder(clock, settings):
    recorder = Recorder(live=live_ok())
    orchestrator, ctx, _, _ = make_orchestrator(clock, settings, recorder)
    with pytest.raises(RuntimeError):
        orchestrator.request("insights")
    assert ctx.ai_insights == []
    assert orchestrator.in_flight == {}

    async def retry():
        return await orchestrator.generate("insights")

    assert asyncio.run(retry()).stage == RequestStage.RESOLVED
    assert recorder.calls and recorder.calls[0][0] == "/api/analyze-live"
