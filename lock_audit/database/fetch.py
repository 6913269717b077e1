"""Download and install advisory database snapshots."""

import asyncio
import hashlib
import json
import os
import shutil
import ssl
import tarfile
import tempfile
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import aiohttp
import certifi
from aiohttp import ClientTimeout

from ..errors import FetchError
from ..utils.logging import get_logger
from ..utils.performance import PerformanceMonitor

DEFAULT_URL = "https://github.com/rustsec/advisory-db/archive/refs/heads/main.tar.gz"
SNAPSHOT_METADATA = ".lockaudit-snapshot.json"
DEFAULT_LOCK_TIMEOUT = 300.0
DEFAULT_STALE_AFTER_DAYS = 90

logger = get_logger("SnapshotFetcher")


@dataclass
class SnapshotInfo:
    """Provenance of an installed snapshot."""

    url: str
    sha256: str
    fetched_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["fetched_at"] = self.fetched_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SnapshotInfo":
        try:
            fetched_at = datetime.fromisoformat(data["fetched_at"])
            return cls(url=str(data["url"]), sha256=str(data["sha256"]), fetched_at=fetched_at)
        except (KeyError, TypeError, ValueError) as e:
            raise FetchError(f"invalid snapshot metadata: {e}") from e


def read_snapshot_info(path: Path) -> Optional[SnapshotInfo]:
    """Read the provenance record of a snapshot, or None when there is none."""
    metadata = Path(path) / SNAPSHOT_METADATA
    if not metadata.is_file():
        return None
    try:
        data = json.loads(metadata.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise FetchError(f"cannot read snapshot metadata {metadata}: {e}") from e
    return SnapshotInfo.from_dict(data)


def snapshot_age(path: Path, now: Optional[datetime] = None) -> timedelta:
    """Age of the snapshot at ``path``.

    Uses the recorded fetch time, falling back to the directory mtime for
    snapshots that were not installed by lockaudit.

    Raises:
        FetchError: If there is no snapshot at ``path``
    """
    path = Path(path)
    if not path.is_dir():
        raise FetchError(f"no advisory database at {path}")

    now = now or datetime.now(timezone.utc)
    info = read_snapshot_info(path)
    if info is not None:
        fetched_at = info.fetched_at
        if fetched_at.tzinfo is None:
            fetched_at = fetched_at.replace(tzinfo=timezone.utc)
    else:
        fetched_at = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
    return now - fetched_at


def ensure_fresh(path: Path, stale_after_days: int = DEFAULT_STALE_AFTER_DAYS, now: Optional[datetime] = None) -> None:
    """Fail when the snapshot is older than ``stale_after_days``.

    Raises:
        FetchError: If the snapshot is missing or stale
    """
    age = snapshot_age(path, now)
    if age > timedelta(days=stale_after_days):
        raise FetchError(
            f"advisory database at {path} is stale ({age.days} days old, limit {stale_after_days})"
        )


class SnapshotLock:
    """Exclusive lock file guarding a snapshot directory.

    A ``timeout`` of 0 fails immediately when the lock is held.
    """

    POLL_INTERVAL = 0.1
    MAX_POLL_INTERVAL = 2.0

    def __init__(self, path: Path, timeout: float = DEFAULT_LOCK_TIMEOUT) -> None:
        self.path = Path(path)
        self.timeout = timeout
        self._held = False

    def acquire(self) -> None:
        """Create the lock file, waiting with backoff up to ``timeout`` seconds.

        Raises:
            FetchError: If the lock is still held when the timeout expires
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self.timeout
        delay = self.POLL_INTERVAL

        while True:
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise FetchError(
                        f"could not acquire lock {self.path} within {self.timeout:g} seconds"
                    ) from None
                time.sleep(min(delay, remaining))
                delay = min(delay * 2, self.MAX_POLL_INTERVAL)
                continue

            with os.fdopen(fd, "w") as handle:
                handle.write(str(os.getpid()))
            self._held = True
            logger.debug(f"Acquired lock {self.path}")
            return

    def release(self) -> None:
        if self._held:
            self.path.unlink(missing_ok=True)
            self._held = False

    def __enter__(self) -> "SnapshotLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


def install_archive(archive: Path, path: Path, url: str, sha256: str) -> SnapshotInfo:
    """Extract a snapshot archive and swap it into place at ``path``.

    The archive must contain a single top-level directory. Extraction uses the
    tarfile ``data`` filter, and the old snapshot is only removed after the new
    one has been moved into place.

    Args:
        archive: Path of the gzipped tar archive
        path: Snapshot directory to create or replace
        url: Where the archive came from
        sha256: Hex digest of the archive

    Returns:
        Provenance record written into the snapshot

    Raises:
        FetchError: If the archive is unreadable or has an unexpected layout
    """
    path = Path(path)
    if path.exists() and not path.is_dir():
        raise FetchError(f"{path} exists and is not a directory")
    path.parent.mkdir(parents=True, exist_ok=True)

    staging = Path(tempfile.mkdtemp(prefix=f".{path.name}-", dir=path.parent))
    try:
        try:
            with tarfile.open(archive, "r:*") as tar:
                tar.extractall(staging, filter="data")
        except (tarfile.TarError, OSError) as e:
            raise FetchError(f"cannot extract snapshot archive: {e}") from e

        top_level = list(staging.iterdir())
        if len(top_level) != 1 or not top_level[0].is_dir():
            raise FetchError("snapshot archive must contain a single top-level directory")
        root = top_level[0]

        info = SnapshotInfo(url=url, sha256=sha256, fetched_at=datetime.now(timezone.utc))
        (root / SNAPSHOT_METADATA).write_text(json.dumps(info.to_dict(), indent=2), encoding="utf-8")

        if path.exists():
            retired = path.with_name(f".{path.name}-old-{uuid.uuid4().hex}")
            os.replace(path, retired)
            try:
                os.replace(root, path)
            except OSError as e:
                os.replace(retired, path)
                raise FetchError(f"cannot install snapshot at {path}: {e}") from e
            shutil.rmtree(retired)
        else:
            os.replace(root, path)
    finally:
        shutil.rmtree(staging, ignore_errors=True)

    logger.info(f"Installed advisory database at {path}")
    return info


class SnapshotFetcher:
    """Async client that downloads and installs advisory snapshots."""

    TIMEOUT = ClientTimeout(total=300)
    CHUNK_SIZE = 64 * 1024

    def __init__(
        self,
        url: str = DEFAULT_URL,
        expected_sha256: Optional[str] = None,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        """Initialize the snapshot fetcher.

        Args:
            url: Archive URL
            expected_sha256: Hex digest the archive must have, if known
            lock_timeout: Seconds to wait for the snapshot lock
            session: Optional aiohttp session for connection reuse
        """
        self.url = url
        self.expected_sha256 = expected_sha256.lower() if expected_sha256 else None
        self.lock_timeout = lock_timeout
        self.performance_monitor = PerformanceMonitor()
        self._session = session
        self._owns_session = session is None
        self._ssl_context = ssl.create_default_context(cafile=certifi.where())

    async def __aenter__(self) -> "SnapshotFetcher":
        if not self._session:
            self._session = aiohttp.ClientSession(timeout=self.TIMEOUT)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def download(self, destination: Path) -> str:
        """Stream the archive to ``destination`` and return its SHA-256 digest.

        Raises:
            FetchError: On HTTP or network failure, or a digest mismatch
        """
        if self._session is None:
            raise FetchError("SnapshotFetcher must be used as an async context manager")

        digest = hashlib.sha256()
        with self.performance_monitor.measure("download"):
            try:
                async with self._session.get(self.url, ssl=self._ssl_context) as response:
                    if response.status != 200:
                        raise FetchError(f"download of {self.url} failed: HTTP {response.status}")
                    with open(destination, "wb") as handle:
                        async for chunk in response.content.iter_chunked(self.CHUNK_SIZE):
                            digest.update(chunk)
                            await asyncio.to_thread(handle.write, chunk)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise FetchError(f"download of {self.url} failed: {e}") from e

        sha256 = digest.hexdigest()
        if self.expected_sha256 and sha256 != self.expected_sha256:
            raise FetchError(
                f"snapshot integrity check failed: expected sha256 {self.expected_sha256}, got {sha256}"
            )
        logger.debug(f"Downloaded {self.url} (sha256 {sha256})")
        return sha256

    async def fetch(self, path: Path) -> SnapshotInfo:
        """Download, verify and atomically install a snapshot at ``path``.

        Raises:
            FetchError: On lock timeout, download, integrity or install failure
        """
        path = Path(path)
        lock = SnapshotLock(path.with_name(f"{path.name}.lock"), self.lock_timeout)
        await asyncio.to_thread(lock.acquire)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.TemporaryDirectory(dir=path.parent, prefix=f".{path.name}-download-") as workdir:
                archive = Path(workdir) / "snapshot.tar.gz"
                sha256 = await self.download(archive)
                with self.performance_monitor.measure("install"):
                    return await asyncio.to_thread(install_archive, archive, path, self.url, sha256)
        finally:
            lock.release()


def fetch_snapshot(
    path: Path,
    url: str = DEFAULT_URL,
    expected_sha256: Optional[str] = None,
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
) -> SnapshotInfo:
    """Synchronous entry point used by the CLI."""
    async def run() -> SnapshotInfo:
        async with SnapshotFetcher(url, expected_sha256, lock_timeout) as fetcher:
            return await fetcher.fetch(path)

    return asyncio.run(run())
