import pytest

from roundtable.errors import SessionNotFoundError, SnapshotError
from roundtable.session_store import (
    clear_sessions,
    create_session,
    delete_session,
    get_session,
    recover_session,
    recoverable_session_ids,
    require_session,
    set_snapshot_store,
)
from roundtable.snapshot import SnapshotStore


@pytest.fixture
def snapshots(tmp_path, settings):
    store = SnapshotStore(str(tmp_path / "sessions"), settings=settings)
    set_snapshot_store(store)
    clear_sessions()
    yield store
    clear_sessions()
    set_snapshot_store(None)


def test_create_get_delete(settings, snapshots):
    session = create_session(settings=settings)
    assert len(session.session_id) == 12
    assert get_session(session.session_id) is session
    assert require_session(session.session_id) is session

    assert delete_session(session.session_id) is True
    assert delete_session(session.session_id) is False
    assert get_session(session.session_id) is None
    with pytest.raises(SessionNotFoundError):
        require_session(session.session_id)


def test_recover_returns_live_session_unchanged(settings, snapshots):
    session = create_session(settings=settings, session_id="room-1")
    assert recover_session("room-1", settings=settings) is session


def test_recover_requires_snapshot(settings, snapshots):
    with pytest.raises(SessionNotFoundError):
        recover_session("missing", settings=settings)


def test_recover_rejects_undecodable_snapshot(settings, snapshots):
    snapshots.save("broken", {"liveTranscript": [], "startTime": "yesterday"})
    assert recoverable_session_ids() == ["broken"]
    with pytest.raises(SnapshotError):
        recover_session("broken", settings=settings)
    assert get_session("broken") is None


def test_persisted_session_is_recoverable_after_restart(settings, snapshots):
    session = create_session(settings=settings, session_id="room-2")
    session.add_manual_entry("We budget quarterly", speaker="Alice")
    clear_sessions()

    assert recoverable_session_ids() == ["room-2"]
    recovered = recover_session("room-2", settings=settings)
    assert recovered is not session
    assert [e.text for e in recovered.context.live_transcript] == ["We budget quarterly"]
