"""
In-memory registry of live sessions. session_id is generated on the backend.
Snapshots written by each session live in the SnapshotStore under the same id, so a
session lost on restart can be recovered by id.
"""
from __future__ import annotations

import logging
import uuid

import httpx

from roundtable.capture import ChannelSpeechCapture, SpeechCapture
from roundtable.config import Settings, get_settings
from roundtable.errors import SessionNotFoundError, SnapshotError
from roundtable.live_session import LiveSession
from roundtable.snapshot import SnapshotStore, create_snapshot_writer

logger = logging.getLogger(__name__)

# session_id -> LiveSession
_session_store: dict[str, LiveSession] = {}
_snapshot_store: SnapshotStore | None = None


def generate_session_id() -> str:
    """Generate a new session_id (UUID hex, 12 chars). Backend only."""
    return uuid.uuid4().hex[:12]


def get_snapshot_store() -> SnapshotStore:
    global _snapshot_store
    if _snapshot_store is None:
        _snapshot_store = SnapshotStore()
    return _snapshot_store


def set_snapshot_store(store: SnapshotStore | None) -> None:
    """Swap the snapshot store (tests, alternative directory). None = default on next use."""
    global _snapshot_store
    _snapshot_store = store


def create_session(
    settings: Settings | None = None,
    capture: SpeechCapture | None = None,
    client: httpx.AsyncClient | None = None,
    session_id: str | None = None,
) -> LiveSession:
    """New session with a channel capture (fed by the transcript WebSocket) and snapshot writer."""
    settings = settings or get_settings()
    session_id = session_id or generate_session_id()
    session = LiveSession(
        session_id,
        settings=settings,
        capture=capture or ChannelSpeechCapture(),
        writer=create_snapshot_writer(session_id, store=get_snapshot_store(), settings=settings),
        client=client,
    )
    _session_store[session_id] = session
    logger.info("Session %s created", session_id)
    return session


def get_session(session_id: str) -> LiveSession | None:
    """Return session or None if not found."""
    return _session_store.get(session_id)


def require_session(session_id: str) -> LiveSession:
    session = _session_store.get(session_id)
    if session is None:
        raise SessionNotFoundError(session_id)
    return session


def delete_session(session_id: str) -> bool:
    """Remove session from registry. Return True if it existed. Its snapshot is kept."""
    if session_id in _session_store:
        del _session_store[session_id]
        return True
    return False


def recoverable_session_ids() -> list[str]:
    """Ids with a snapshot on disk that are not live in memory."""
    return [key for key in get_snapshot_store().list_keys() if key not in _session_store]


def recover_session(session_id: str, settings: Settings | None = None) -> LiveSession:
    """
    Rehydrate a session from its persisted snapshot. A live session with the same id is
    returned unchanged. Raises SessionNotFoundError when there is no usable snapshot.
    """
    existing = _session_store.get(session_id)
    if existing is not None:
        return existing
    snapshot = get_snapshot_store().load(session_id)
    if snapshot is None:
        raise SessionNotFoundError(session_id)
    session = create_session(settings=settings, session_id=session_id)
    try:
        session.restore(snapshot)
    except SnapshotError:
        delete_session(session_id)
        raise
    logger.info("Session %s recovered from snapshot", session_id)
    return session


def clear_sessions() -> None:
    _session_store.clear()


def session_store() -> dict[str, LiveSession]:
    """Return the underlying registry (read-only view for debugging)."""
    return _session_store
