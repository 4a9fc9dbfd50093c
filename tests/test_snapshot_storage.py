import asyncio
import json
import os

import pytest

from roundtable.config import Settings
from roundtable.errors import SnapshotError
from roundtable.snapshot import STORAGE_VERSION, SnapshotStore, SnapshotWriter, create_snapshot_writer
from roundtable.snapshot.storage import NoOpSnapshotWriter

T0 = 1_700_000_000_000


def snapshot(entries=2, insights=1, text="something was said"):
    return {
        "timestamp": T0,
        "state": "discussion",
        "topic": "AI Strategy",
        "startTime": T0 - 60_000,
        "liveTranscript": [
            {"id": f"t{i}", "timestamp": T0 + i, "speaker": "Alice", "text": text, "isAutoDetected": False}
            for i in range(entries)
        ],
        "aiInsights": [
            {"id": f"i{i}", "type": "insights", "content": "an insight", "timestamp": T0 + i}
            for i in range(insights)
        ],
        "currentQuestionIndex": 1,
    }


def test_save_and_load(tmp_path, settings, clock):
    store = SnapshotStore(str(tmp_path), settings=settings, clock=clock)
    assert store.save("abc", snapshot()) is True
    loaded = store.load("abc")
    assert loaded == snapshot()

    with open(tmp_path / "abc.json", encoding="utf-8") as f:
        envelope = json.load(f)
    assert envelope["version"] == STORAGE_VERSION
    assert envelope["metadata"]["entryCount"] == {"transcript": 2, "insights": 1}
    assert envelope["metadata"]["size"] > 0


def test_missing_and_corrupt_snapshots_load_as_none(tmp_path, settings, clock):
    store = SnapshotStore(str(tmp_path), settings=settings, clock=clock)
    assert store.load("nope") is None
    (tmp_path / "bad.json").write_text("{not json", encoding="utf-8")
    assert store.load("bad") is None


def test_expired_snapshot_is_cleared(tmp_path, settings, clock):
    store = SnapshotStore(str(tmp_path), settings=settings, clock=clock)
    store.save("old", snapshot())
    clock.advance(25 * 3600)
    assert store.load("old") is None
    assert not os.path.exists(tmp_path / "old.json")


def test_unknown_version_is_rejected(tmp_path, settings, clock):
    store = SnapshotStore(str(tmp_path), settings=settings, clock=clock)
    envelope = {"version": "9.9", "timestamp": int(clock() * 1000), "data": snapshot()}
    (tmp_path / "future.json").write_text(json.dumps(envelope), encoding="utf-8")
    assert store.load("future") is None


def test_oversized_snapshot_is_compacted(tmp_path, clock):
    settings = Settings(_env_file=None, SNAPSHOT_MAX_BYTES=40_000)
    store = SnapshotStore(str(tmp_path), settings=settings, clock=clock)
    big = snapshot(entries=300, insights=40, text="x" * 120)
    assert store.save("big", big) is True
    loaded = store.load("big")
    assert len(loaded["liveTranscript"]) == 50
    assert loaded["liveTranscript"][-1]["id"] == "t299"
    assert len(loaded["aiInsights"]) == 20


def test_snapshot_too_large_even_after_compaction_is_not_written(tmp_path, clock):
    settings = Settings(_env_file=None, SNAPSHOT_MAX_BYTES=2_000)
    store = SnapshotStore(str(tmp_path), settings=settings, clock=clock)
    assert store.save("huge", snapshot(entries=60, text="y" * 200)) is False
    assert store.load("huge") is None


def test_invalid_records_are_filtered_on_save(tmp_path, settings, clock):
    store = SnapshotStore(str(tmp_path), settings=settings, clock=clock)
    data = snapshot()
    data["liveTranscript"].append({"id": 1})
    data["aiInsights"].append({"id": "p", "type": "followup", "content": "", "timestamp": T0, "isLoading": True})
    store.save("k", data)
    loaded = store.load("k")
    assert len(loaded["liveTranscript"]) == 2
    assert len(loaded["aiInsights"]) == 1


def test_keys_are_sanitized_and_listed(tmp_path, settings, clock):
    store = SnapshotStore(str(tmp_path), settings=settings, clock=clock)
    store.save("../escape", snapshot())
    assert os.listdir(tmp_path) == [".._escape.json"]
    assert store.list_keys() == [".._escape"]
    store.clear("../escape")
    assert store.list_keys() == []


def test_export_import_round_trip(tmp_path, settings, clock):
    store = SnapshotStore(str(tmp_path), settings=settings, clock=clock)
    exported = store.export_session(snapshot())
    parsed = json.loads(exported)
    assert parsed["statistics"] == {"transcriptEntries": 2, "aiInsights": 1, "duration": 60_000}
    assert store.import_session(exported) == snapshot()


def test_import_older_export_shape(tmp_path, settings, clock):
    store = SnapshotStore(str(tmp_path), settings=settings, clock=clock)
    legacy = json.dumps(
        {
            "version": "1.0",
            "session": {
                "sessionState": "summary",
                "transcript": [{"id": "a", "timestamp": T0, "speaker": "Bob", "text": "hi"}],
                "insights": [],
                "questionIndex": 3,
            },
        }
    )
    imported = store.import_session(legacy)
    assert imported["liveTranscript"][0]["id"] == "a"
    assert imported["aiInsights"] == []
    assert imported["currentQuestionIndex"] == 3


def test_import_rejects_non_sessions(tmp_path, settings, clock):
    store = SnapshotStore(str(tmp_path), settings=settings, clock=clock)
    with pytest.raises(SnapshotError):
        store.import_session("not json at all")
    with pytest.raises(SnapshotError):
        store.import_session(json.dumps({"hello": "world"}))


def test_writer_flushes_latest_snapshot_on_close(tmp_path, settings, clock):
    store = SnapshotStore(str(tmp_path), settings=settings, clock=clock)

    async def scenario():
        writer = SnapshotWriter(store, "live")
        await writer.start()
        for n in range(1, 4):
            writer.submit(snapshot(entries=n))
        await writer.close()
        return writer

    writer = asyncio.run(scenario())
    assert writer.saved >= 1
    assert len(store.load("live")["liveTranscript"]) == 3


def test_writer_without_worker_saves_inline(tmp_path, settings, clock):
    store = SnapshotStore(str(tmp_path), settings=settings, clock=clock)
    SnapshotWriter(store, "inline").submit(snapshot())
    assert store.load("inline") is not None


def test_disabled_snapshots_use_noop_writer(settings):
    disabled = settings.model_copy(update={"SNAPSHOT_ENABLED": False})
    assert isinstance(create_snapshot_writer("k", settings=disabled), NoOpSnapshotWriter)


def test_trimmed_transcript_rebases_insight_entry_counts(tmp_path, clock):
    settings = Settings(_env_file=None, SNAPSHOT_MAX_TRANSCRIPT_ENTRIES=10)
    store = SnapshotStore(str(tmp_path), settings=settings, clock=clock)
    data = snapshot(entries=14, insights=2)
    data["aiInsights"][0]["transcriptEntryCount"] = 12
    data["aiInsights"][1]["transcriptEntryCount"] = 2
    store.save("k", data)
    loaded = store.load("k")
    assert [e["id"] for e in loaded["liveTranscript"]][0] == "t4"
    assert [i["transcriptEntryCount"] for i in loaded["aiInsights"]] == [8, 0]
