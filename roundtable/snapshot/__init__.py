"""Session snapshots: codec and best-effort file persistence."""
from .codec import from_snapshot, to_snapshot
from .storage import (
    STORAGE_VERSION,
    NoOpSnapshotWriter,
    SnapshotStore,
    SnapshotWriter,
    SnapshotWriterBase,
    create_snapshot_writer,
)

__all__ = [
    "NoOpSnapshotWriter",
    "STORAGE_VERSION",
    "SnapshotStore",
    "SnapshotWriter",
    "SnapshotWriterBase",
    "create_snapshot_writer",
    "from_snapshot",
    "to_snapshot",
]
