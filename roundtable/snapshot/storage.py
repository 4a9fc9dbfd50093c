"""
Snapshot persistence: one JSON file per session key under SNAPSHOT_DIR.

File layout (envelope):
    {"version": "2.0", "timestamp": <ms>, "data": <snapshot>,
     "metadata": {"size": <bytes>, "entryCount": {"transcript": n, "insights": n}}}

Best effort only:
- Every I/O or decode problem is logged and reported as False/None; the session
  keeps running in memory.
- Snapshots older than SNAPSHOT_MAX_AGE_HOURS are cleared on load.
- Oversized snapshots are compacted to the most recent entries before writing.

SnapshotWriter queues saves on an asyncio worker so callers never block on disk.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

from roundtable.config import Settings, get_settings
from roundtable.errors import SnapshotError
from roundtable.models import Clock, now_ms
from roundtable.snapshot.codec import is_valid_entry, is_valid_insight

logger = logging.getLogger(__name__)

STORAGE_VERSION = "2.0"
LEGACY_VERSIONS = frozenset({"1.0"})
COMPACT_RATIO = 0.8
COMPACT_TRANSCRIPT_ENTRIES = 50
COMPACT_INSIGHTS = 20

_KEY_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


def _serialized_size(obj: Any) -> int:
    return len(json.dumps(obj, ensure_ascii=False).encode("utf-8"))


def _rebase_entry_counts(insights: list[dict[str, Any]], dropped: int) -> list[dict[str, Any]]:
    """Shift transcriptEntryCount down by the number of entries trimmed from the front."""
    if dropped <= 0:
        return insights
    rebased = []
    for insight in insights:
        count = insight.get("transcriptEntryCount")
        if isinstance(count, int) and not isinstance(count, bool):
            insight = {**insight, "transcriptEntryCount": max(0, count - dropped)}
        rebased.append(insight)
    return rebased


class SnapshotStore:
    def __init__(
        self,
        directory: str | None = None,
        settings: Settings | None = None,
        clock: Clock = time.time,
    ) -> None:
        self._settings = settings or get_settings()
        self._dir = directory or self._settings.SNAPSHOT_DIR
        self._clock = clock

    @property
    def directory(self) -> str:
        return self._dir

    def _path(self, key: str) -> str:
        safe = _KEY_UNSAFE.sub("_", key) or "session"
        return os.path.join(self._dir, f"{safe}.json")

    def _sanitize(self, snapshot: dict[str, Any]) -> dict[str, Any]:
        """Drop invalid records, cap list sizes, compact when close to the byte limit."""
        s = self._settings
        data = dict(snapshot)
        raw_entries = data.get("liveTranscript") or []
        raw_insights = data.get("aiInsights") or []
        entries = [e for e in raw_entries if is_valid_entry(e)]
        insights = [i for i in raw_insights if is_valid_insight(i) and not i.get("isLoading")]
        if len(entries) != len(raw_entries) or len(insights) != len(raw_insights):
            logger.warning(
                "Snapshot: filtered %d invalid entries, %d invalid insights",
                len(raw_entries) - len(entries), len(raw_insights) - len(insights),
            )
        kept = entries[-s.SNAPSHOT_MAX_TRANSCRIPT_ENTRIES:]
        insights = insights[-s.SNAPSHOT_MAX_INSIGHTS:]
        data["liveTranscript"] = kept
        data["aiInsights"] = insights
        if _serialized_size(data) > s.SNAPSHOT_MAX_BYTES * COMPACT_RATIO:
            logger.warning("Snapshot near size limit; keeping last %d entries and %d insights",
                           COMPACT_TRANSCRIPT_ENTRIES, COMPACT_INSIGHTS)
            kept = kept[-COMPACT_TRANSCRIPT_ENTRIES:]
            insights = insights[-COMPACT_INSIGHTS:]
            data["liveTranscript"] = kept
            data["aiInsights"] = insights
        data["aiInsights"] = _rebase_entry_counts(insights, len(entries) - len(kept))
        return data

    def save(self, key: str, snapshot: dict[str, Any]) -> bool:
        data = self._sanitize(snapshot)
        envelope = {
            "version": STORAGE_VERSION,
            "timestamp": now_ms(self._clock),
            "data": data,
            "metadata": {
                "size": 0,
                "entryCount": {
                    "transcript": len(data["liveTranscript"]),
                    "insights": len(data["aiInsights"]),
                },
            },
        }
        size = _serialized_size(envelope)
        envelope["metadata"]["size"] = size
        if size > self._settings.SNAPSHOT_MAX_BYTES:
            logger.error("Snapshot %s exceeds size limit even after compaction (%d bytes)", key, size)
            return False
        path = self._path(key)
        tmp = path + ".tmp"
        try:
            os.makedirs(self._dir, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(envelope, f, ensure_ascii=False)
            os.replace(tmp, path)
        except OSError as e:
            logger.warning("Snapshot save failed for %s: %s", path, e)
            return False
        logger.debug("Snapshot %s saved (%d bytes)", key, size)
        return True

    def load(self, key: str) -> dict[str, Any] | None:
        """Snapshot dict for key, or None (missing, corrupt, wrong version or expired)."""
        path = self._path(key)
        if not os.path.isfile(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                envelope = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Snapshot load failed for %s: %s", path, e)
            return None
        if not isinstance(envelope, dict) or not isinstance(envelope.get("data"), dict):
            logger.warning("Snapshot %s is not a valid envelope", key)
            return None
        version = envelope.get("version")
        if version != STORAGE_VERSION and version not in LEGACY_VERSIONS:
            logger.warning("Snapshot %s version mismatch (%s vs %s)", key, version, STORAGE_VERSION)
            return None
        saved_at = envelope.get("timestamp")
        if not isinstance(saved_at, (int, float)):
            saved_at = envelope["data"].get("timestamp")
        max_age_ms = self._settings.SNAPSHOT_MAX_AGE_HOURS * 3600 * 1000
        if isinstance(saved_at, (int, float)) and now_ms(self._clock) - saved_at > max_age_ms:
            logger.info("Snapshot %s expired, clearing", key)
            self.clear(key)
            return None
        return envelope["data"]

    def clear(self, key: str) -> None:
        path = self._path(key)
        try:
            if os.path.isfile(path):
                os.remove(path)
        except OSError as e:
            logger.warning("Snapshot clear failed for %s: %s", path, e)

    def list_keys(self) -> list[str]:
        try:
            names = os.listdir(self._dir)
        except OSError:
            return []
        return sorted(n[: -len(".json")] for n in names if n.endswith(".json"))

    def export_session(self, snapshot: dict[str, Any]) -> str:
        """Human-readable export: snapshot plus statistics."""
        timestamp = snapshot.get("timestamp") or now_ms(self._clock)
        start = snapshot.get("startTime") or timestamp
        export = {
            "version": STORAGE_VERSION,
            "exportedAt": datetime.now(timezone.utc).isoformat(),
            "session": snapshot,
            "statistics": {
                "transcriptEntries": len(snapshot.get("liveTranscript") or []),
                "aiInsights": len(snapshot.get("aiInsights") or []),
                "duration": max(0, timestamp - start),
            },
        }
        return json.dumps(export, indent=2, ensure_ascii=False)

    def import_session(self, raw: str) -> dict[str, Any]:
        """
        Parse an export (or a stored envelope, or a bare snapshot) back into a snapshot dict.
        Older exports with transcript/insights/questionIndex keys are mapped.
        Raises SnapshotError when the payload is not a session.
        """
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise SnapshotError(f"Import is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise SnapshotError("Import is not a JSON object")
        if isinstance(data.get("session"), dict):
            session = dict(data["session"])
            if "liveTranscript" not in session and "transcript" in session:
                session["liveTranscript"] = session.pop("transcript")
            if "aiInsights" not in session and "insights" in session:
                session["aiInsights"] = session.pop("insights")
            if "currentQuestionIndex" not in session and "questionIndex" in session:
                session["currentQuestionIndex"] = session.pop("questionIndex")
            return session
        if isinstance(data.get("data"), dict):
            return data["data"]
        if "liveTranscript" in data or "aiInsights" in data:
            return data
        raise SnapshotError("Import does not contain a session")


class SnapshotWriterBase(ABC):
    """Fire-and-forget snapshot saving for one session key."""

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    def submit(self, snapshot: dict[str, Any]) -> None:
        """Queue one snapshot. Non-blocking."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class NoOpSnapshotWriter(SnapshotWriterBase):
    """When snapshots are disabled. No file I/O."""

    async def start(self) -> None:
        pass

    def submit(self, snapshot: dict[str, Any]) -> None:
        pass

    async def close(self) -> None:
        pass


class SnapshotWriter(SnapshotWriterBase):
    """
    Worker task drains the queue and saves. When several snapshots are queued only
    the newest is written; each one replaces the whole file anyway.
    """

    def __init__(self, store: SnapshotStore, key: str) -> None:
        self._store = store
        self._key = key
        self._queue: asyncio.Queue[Optional[dict[str, Any]]] = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None
        self.saved = 0

    async def _worker(self) -> None:
        """Drain queue; None = close. Log errors, never crash."""
        while True:
            snapshot = await self._queue.get()
            closing = snapshot is None
            while not self._queue.empty():
                newer = self._queue.get_nowait()
                if newer is None:
                    closing = True
                else:
                    snapshot = newer
            if snapshot is not None:
                try:
                    if self._store.save(self._key, snapshot):
                        self.saved += 1
                except Exception as e:
                    logger.warning("Snapshot worker failed for %s: %s", self._key, e)
            if closing:
                break

    async def start(self) -> None:
        if self._worker_task is None:
            self._worker_task = asyncio.create_task(self._worker())

    def submit(self, snapshot: dict[str, Any]) -> None:
        if self._worker_task is None:
            # no loop worker yet: write inline
            self._store.save(self._key, snapshot)
            return
        try:
            self._queue.put_nowait(snapshot)
        except asyncio.QueueFull:
            logger.warning("Snapshot queue full for %s, dropping snapshot", self._key)

    async def close(self) -> None:
        """Flush queued snapshots and stop the worker."""
        if self._worker_task is None:
            return
        try:
            self._queue.put_nowait(None)
            await asyncio.wait_for(self._worker_task, timeout=5.0)
        except asyncio.TimeoutError:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
        self._worker_task = None


def create_snapshot_writer(
    key: str, store: SnapshotStore | None = None, settings: Settings | None = None
) -> SnapshotWriterBase:
    """SnapshotWriter when SNAPSHOT_ENABLED is true; else no-op."""
    settings = settings or get_settings()
    if not settings.SNAPSHOT_ENABLED:
        return NoOpSnapshotWriter()
    return SnapshotWriter(store or SnapshotStore(settings=settings), key)
