"""Local advisory database: snapshot files and snapshot fetching."""

from .fetch import SnapshotFetcher, SnapshotInfo, ensure_fresh, fetch_snapshot, snapshot_age
from .sources import load_directory

__all__ = [
    "SnapshotFetcher",
    "SnapshotInfo",
    "ensure_fresh",
    "fetch_snapshot",
    "snapshot_age",
    "load_directory",
]
