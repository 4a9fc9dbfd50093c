import json

import httpx
import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from roundtable import main
from roundtable.config import Settings
from roundtable.models import SessionContext
from roundtable.services.analysis_service import AnalysisService
from roundtable.session_store import clear_sessions, get_snapshot_store, set_snapshot_store
from roundtable.snapshot import SnapshotStore, to_snapshot


@pytest.fixture
def client(tmp_path, monkeypatch):
    # Nothing listens on port 9: insight requests fail fast and end as error insights
    monkeypatch.setenv("ANALYZE_LIVE_URL", "http://127.0.0.1:9/api/analyze-live")
    monkeypatch.setenv("ANALYZE_FALLBACK_URL", "http://127.0.0.1:9/api/analyze")
    monkeypatch.setenv("ANALYZE_TIMEOUT_SEC", "2")
    monkeypatch.setenv("CLOUDFLARE_ACCOUNT_ID", "")
    monkeypatch.setenv("CLOUDFLARE_API_TOKEN", "")
    monkeypatch.setattr(main, "_analysis_service", None)
    set_snapshot_store(SnapshotStore(str(tmp_path / "sessions")))
    clear_sessions()
    with TestClient(main.app) as c:
        yield c
    clear_sessions()
    set_snapshot_store(None)


def new_session(client) -> str:
    resp = client.post("/api/sessions")
    assert resp.status_code == 200
    return resp.json()["session_id"]


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_session_lifecycle(client):
    resp = client.post("/api/sessions")
    body = resp.json()
    assert body["state"] == "intro"
    assert body["total_questions"] == 5
    sid = body["session_id"]

    assert client.post(f"/api/sessions/{sid}/end").status_code == 400
    started = client.post(f"/api/sessions/{sid}/start").json()
    assert started["snapshot"]["state"] == "discussion"
    assert started["manual_only"] is False
    assert started["current_question"]["id"] == "phase-1-provocation"

    assert client.post(f"/api/sessions/{sid}/end").json()["snapshot"]["state"] == "summary"
    assert client.post(f"/api/sessions/{sid}/complete").json()["snapshot"]["state"] == "completed"
    reset = client.post(f"/api/sessions/{sid}/reset").json()
    assert reset["snapshot"]["state"] == "intro"
    assert reset["snapshot"]["liveTranscript"] == []


def test_unknown_session_is_404(client):
    assert client.get("/api/sessions/nope").status_code == 404
    assert client.post("/api/sessions/nope/start").status_code == 404
    assert client.post("/api/sessions/nope/recover").status_code == 404


def test_entries_bulk_and_corrections(client):
    sid = new_session(client)
    entry = client.post(f"/api/sessions/{sid}/entries", json={"text": "We budget quarterly", "speaker": "Alice"}).json()
    assert entry["speaker"] == "Alice"
    assert entry["confidence"] == 1.0

    auto = client.post(f"/api/sessions/{sid}/entries", json={"text": "Hi everyone, welcome to today's session"}).json()
    assert auto["speaker"] == "Facilitator"
    assert auto["is_auto_detected"] is True

    assert client.post(f"/api/sessions/{sid}/entries", json={"text": "   "}).status_code == 400

    bulk = client.post(
        f"/api/sessions/{sid}/entries/bulk",
        json={"text": "Bob: costs went up\n\nno speaker here\nauto: At our company, we handle onboarding differently"},
    ).json()
    assert bulk["added"] == 3
    assert [e["speaker"] for e in bulk["entries"]] == ["Bob", "Unknown Speaker", "Participant"]

    changed = client.post(f"/api/sessions/{sid}/corrections", json={"corrections": {entry["id"]: "Carol"}}).json()
    assert changed == {"changed": 1}

    snapshot = client.get(f"/api/sessions/{sid}").json()["snapshot"]
    assert [e["speaker"] for e in snapshot["liveTranscript"]][0] == "Carol"
    assert snapshot["participantCount"] == 4


def test_phase_navigation(client):
    sid = new_session(client)
    assert client.post(f"/api/sessions/{sid}/phase", json={"direction": "previous"}).json() == {
        "moved": False,
        "current_question_index": 0,
    }
    assert client.post(f"/api/sessions/{sid}/phase", json={"direction": "next"}).json()["current_question_index"] == 1
    assert client.post(f"/api/sessions/{sid}/phase", json={"direction": "sideways"}).status_code == 422


def test_insight_request_failure_becomes_error_insight(client):
    sid = new_session(client)
    client.post(f"/api/sessions/{sid}/start")
    client.post(f"/api/sessions/{sid}/entries", json={"text": "We budget quarterly", "speaker": "Alice"})

    body = client.post(f"/api/sessions/{sid}/insights", json={"type": "synthesis"}).json()
    assert body["stage"] == "failed"
    assert body["insight"]["type"] == "error"
    assert body["insight"]["isError"] is True
    assert body["insight"]["metadata"] == {"requestedType": "synthesis"}

    view = client.get(f"/api/sessions/{sid}").json()
    assert view["in_flight"] == []
    assert [i["type"] for i in view["snapshot"]["aiInsights"]] == ["error"]


def test_transcript_websocket(client):
    sid = new_session(client)
    client.post(f"/api/sessions/{sid}/start")
    with client.websocket_connect(f"/ws/sessions/{sid}/transcript") as ws:
        ws.send_json({"type": "partial", "text": "hi every"})
        ws.send_json({"type": "final", "text": "Hi everyone, welcome to today's session", "confidence": 0.95})
        msg = ws.receive_json()
        assert msg["type"] == "entry"
        assert msg["entry"]["speaker"] == "Facilitator"

        ws.send_text("not json")
        assert ws.receive_json()["type"] == "error"

        ws.send_json({"type": "error", "code": "not-allowed"})
        assert ws.receive_json() == {"type": "capture_error", "code": "not-allowed", "manual_only": True}

    assert len(client.get(f"/api/sessions/{sid}").json()["snapshot"]["liveTranscript"]) == 1


def test_websocket_unknown_session(client):
    with client.websocket_connect("/ws/sessions/nope/transcript") as ws:
        assert ws.receive_json()["type"] == "error"
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_json()
        assert exc.value.code == 4404


def test_export_then_import(client):
    sid = new_session(client)
    client.post(f"/api/sessions/{sid}/entries", json={"text": "We budget quarterly", "speaker": "Alice"})
    exported = client.get(f"/api/sessions/{sid}/export").json()
    assert exported["statistics"]["transcriptEntries"] == 1

    imported = client.post("/api/sessions/import", json={"data": json.dumps(exported)}).json()
    assert imported["session_id"] != sid
    assert imported["snapshot"]["liveTranscript"][0]["text"] == "We budget quarterly"

    assert client.post("/api/sessions/import", json={"data": "{broken"}).status_code == 400


def test_recover_from_snapshot(client):
    context = SessionContext(state="discussion", topic="Recovered topic", current_question_index=2)
    get_snapshot_store().save("lost-session", to_snapshot(context))
    assert "lost-session" in client.get("/api/sessions").json()["recoverable"]

    view = client.post("/api/sessions/lost-session/recover").json()
    assert view["session_id"] == "lost-session"
    assert view["snapshot"]["topic"] == "Recovered topic"
    assert view["snapshot"]["currentQuestionIndex"] == 2
    assert "lost-session" in client.get("/api/sessions").json()["live"]


def test_analyze_live_without_credentials(client):
    resp = client.post(
        "/api/analyze-live",
        json={"sessionTopic": "AI Strategy", "liveTranscript": "Alice: hi", "analysisType": "insights"},
    )
    assert resp.status_code == 502


def test_analyze_rate_limit(client, monkeypatch):
    def handler(request):
        return httpx.Response(200, json={"result": {"response": "Two grounded insights."}})

    service = AnalysisService(
        settings=Settings(
            _env_file=None, CLOUDFLARE_ACCOUNT_ID="acct", CLOUDFLARE_API_TOKEN="token", ANALYZE_RATE_LIMIT_PER_HOUR=1
        ),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    monkeypatch.setattr(main, "_analysis_service", service)

    payload = {"questionContext": "Pricing", "currentTranscript": "Bob: costs went up"}
    first = client.post("/api/analyze", json=payload, headers={"X-Client-Id": "room-1"})
    assert first.status_code == 200
    assert first.json()["insights"] == "Two grounded insights."
    assert client.post("/api/analyze", json=payload, headers={"X-Client-Id": "room-1"}).status_code == 429
    assert client.post("/api/analyze", json=payload, headers={"X-Client-Id": "room-2"}).status_code == 200


def test_websocket_rejects_malformed_event_and_keeps_going(client):
    sid = new_session(client)
    client.post(f"/api/sessions/{sid}/start")
    with client.websocket_connect(f"/ws/sessions/{sid}/transcript") as ws:
        ws.send_json({"type": "final", "text": "hello there", "confidence": "high"})
        reply = ws.receive_json()
        assert reply["type"] == "error"
        assert reply["error"].startswith("confidence")

        ws.send_json({"type": "final", "text": "hello there", "timestamp": "noon"})
        assert ws.receive_json()["type"] == "error"

        ws.send_json({"type": "shout", "text": "hello there"})
        assert ws.receive_json()["type"] == "error"

        ws.send_json({"type": "final", "text": "At our company, we handle onboarding differently", "confidence": 0.8})
        msg = ws.receive_json()
        assert msg["type"] == "entry"
        assert msg["entry"]["speaker"] == "Participant"

    assert len(client.get(f"/api/sessions/{sid}").json()["snapshot"]["liveTranscript"]) == 1


def test_websocket_events_before_start_are_refused(client):
    sid = new_session(client)
    with client.websocket_connect(f"/ws/sessions/{sid}/transcript") as ws:
        ws.send_json({"type": "final", "text": "Too early to count"})
        assert ws.receive_json() == {"type": "error", "error": "capture is not listening", "state": "intro"}
    assert client.get(f"/api/sessions/{sid}").json()["snapshot"]["liveTranscript"] == []


def workers_ai_service(answer_for):
    """AnalysisService whose Workers AI answers come from answer_for(system_prompt, user_prompt)."""

    def handler(request):
        messages = json.loads(request.content)["messages"]
        answer = answer_for(messages[0]["content"], messages[1]["content"])
        return httpx.Response(200, json={"result": {"response": answer}})

    return AnalysisService(
        settings=Settings(_env_file=None, CLOUDFLARE_ACCOUNT_ID="acct", CLOUDFLARE_API_TOKEN="token"),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


def test_speaker_suggestions_are_reviewed_then_accepted(client, monkeypatch):
    def answer(system, user):
        if "identifiedSpeakers" in user:
            return json.dumps({"identifiedSpeakers": [{"name": "Priya", "organization": "Globex"}]})
        return json.dumps(
            {
                "attributions": [
                    {"index": 0, "suggestedSpeaker": "Priya", "confidence": 0.9, "reasoning": "introduces herself"},
                    {"index": 1, "suggestedSpeaker": "Priya", "confidence": 0.5},
                ]
            }
        )

    monkeypatch.setattr(main, "_analysis_service", workers_ai_service(answer))
    sid = new_session(client)
    assert client.post(f"/api/sessions/{sid}/speaker-suggestions").status_code == 400

    client.post(f"/api/sessions/{sid}/entries", json={"text": "Hi, I'm Priya and I lead product at Globex"})
    client.post(f"/api/sessions/{sid}/entries", json={"text": "Our rollout slipped a quarter"})

    suggested = client.post(f"/api/sessions/{sid}/speaker-suggestions").json()
    assert [s["name"] for s in suggested["identifiedSpeakers"]] == ["Priya"]
    assert [a["suggestedSpeaker"] for a in suggested["attributions"]] == ["Priya", "Priya"]
    speakers = [e["speaker"] for e in client.get(f"/api/sessions/{sid}").json()["snapshot"]["liveTranscript"]]
    assert "Priya" not in speakers

    accepted = client.post(f"/api/sessions/{sid}/speaker-suggestions/accept", json={"min_confidence": 0.8}).json()
    assert accepted == {"changed": 1, "pending": 1}
    speakers = [e["speaker"] for e in client.get(f"/api/sessions/{sid}").json()["snapshot"]["liveTranscript"]]
    assert speakers[0] == "Priya"
    assert speakers[1] != "Priya"


def test_identify_speakers_endpoint(client, monkeypatch):
    def answer(system, user):
        if "identifiedSpeakers" in user:
            return json.dumps({"identifiedSpeakers": []})
        return json.dumps({"attributions": [{"index": 0, "suggestedSpeaker": "Dana", "confidence": 0.8}]})

    monkeypatch.setattr(main, "_analysis_service", workers_ai_service(answer))
    resp = client.post(
        "/api/identify-speakers",
        json={"transcript": [{"id": "e1", "text": "My name is Dana, welcome", "speaker": "Facilitator", "timestamp": ""}]},
    )
    assert resp.status_code == 200
    assert resp.json()["attributions"][0]["entryId"] == "e1"
    assert client.post("/api/identify-speakers", json={"transcript": []}).status_code == 422


def test_generate_summary_without_credentials(client):
    resp = client.post(
        "/api/generate-summary",
        json={"topic": "AI Strategy", "sections": [{"questionId": "q1", "title": "Vision"}]},
    )
    assert resp.status_code == 502


def test_session_summary_stores_key_themes(client, monkeypatch):
    def answer(system, user):
        if "narrative summaries" in system:
            return json.dumps({"keyThemes": ["Budget cadence", "budget cadence", "Ownership"], "narrativeSummary": "x"})
        if "executive strategy consultant" in system:
            return json.dumps({"keyFindings": ["Quarterly budgets"]})
        return "A focused conversation."

    monkeypatch.setattr(main, "_analysis_service", workers_ai_service(answer))
    sid = new_session(client)
    client.post(f"/api/sessions/{sid}/entries", json={"text": "We budget quarterly", "speaker": "Alice"})

    summary = client.post(f"/api/sessions/{sid}/summary").json()
    assert summary["sessionOverview"]["totalParticipants"] == 1
    assert summary["sessionOverview"]["questionsCompleted"] == 1
    assert summary["questionSummaries"][0]["keyThemes"] == ["Budget cadence", "budget cadence", "Ownership"]
    assert summary["executiveSummary"]["keyFindings"] == ["Quarterly budgets"]
    assert summary["fullNarrativeConclusion"] == "A focused conversation."
    assert client.get(f"/api/sessions/{sid}").json()["snapshot"]["keyThemes"] == ["Budget cadence", "Ownership"]
