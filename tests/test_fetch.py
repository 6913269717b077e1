"""Tests for snapshot installation, freshness and locking."""

import asyncio
import hashlib
import io
import json
import os
import tarfile
from datetime import datetime, timedelta, timezone

import pytest
from aiohttp import test_utils, web

from lock_audit.database.fetch import (
    SNAPSHOT_METADATA,
    SnapshotFetcher,
    SnapshotInfo,
    SnapshotLock,
    ensure_fresh,
    install_archive,
    read_snapshot_info,
    snapshot_age,
)
from lock_audit.database.sources import load_directory
from lock_audit.errors import FetchError

URL = "https://example.org/advisory-db.tar.gz"
ADVISORY = '```toml\n[advisory]\nid = "RUSTSEC-2019-0001"\npackage = "{package}"\n```\n\n# Title\n'


def make_archive(path, files, top="advisory-db-main"):
    """Write a gzipped tar archive with ``files`` under a top-level directory."""
    with tarfile.open(path, "w:gz") as tar:
        for name, content in files.items():
            data = content.encode()
            info = tarfile.TarInfo(f"{top}/{name}" if top else name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return path


class TestInstallArchive:
    """Test extracting and swapping snapshots into place."""

    def test_install_fresh_snapshot(self, tmp_path):
        archive = make_archive(tmp_path / "db.tar.gz", {"crates/foo/RUSTSEC-2019-0001.md": ADVISORY.format(package="foo")})
        target = tmp_path / "cache" / "advisory-db"

        info = install_archive(archive, target, URL, "abc")

        assert (target / "crates" / "foo" / "RUSTSEC-2019-0001.md").is_file()
        assert read_snapshot_info(target) == info
        assert info.url == URL
        assert load_directory(target).store.get("RUSTSEC-2019-0001").package == "foo"

    def test_replace_existing_snapshot(self, tmp_path):
        """Test that a reinstall replaces the old contents."""
        target = tmp_path / "advisory-db"
        install_archive(make_archive(tmp_path / "old.tar.gz", {"crates/foo/A.md": ADVISORY.format(package="foo")}), target, URL, "old")
        install_archive(make_archive(tmp_path / "new.tar.gz", {"crates/bar/B.md": ADVISORY.format(package="bar")}), target, URL, "new")

        assert not (target / "crates" / "foo").exists()
        assert (target / "crates" / "bar" / "B.md").is_file()
        assert read_snapshot_info(target).sha256 == "new"
        assert [p.name for p in tmp_path.iterdir() if p.name.startswith(".")] == []

    def test_failed_swap_restores_old_snapshot(self, tmp_path, monkeypatch):
        """Test that the old snapshot is moved back when the new one cannot be moved in."""
        target = tmp_path / "advisory-db"
        install_archive(make_archive(tmp_path / "old.tar.gz", {"crates/foo/A.md": ADVISORY.format(package="foo")}), target, URL, "old")

        real_replace = os.replace
        calls = []

        def flaky_replace(src, dst):
            calls.append((src, dst))
            if len(calls) == 2:
                raise OSError("disk full")
            return real_replace(src, dst)

        monkeypatch.setattr(os, "replace", flaky_replace)
        with pytest.raises(FetchError, match="disk full"):
            install_archive(make_archive(tmp_path / "new.tar.gz", {"crates/bar/B.md": ADVISORY.format(package="bar")}), target, URL, "new")
        monkeypatch.undo()

        assert (target / "crates" / "foo" / "A.md").is_file()
        assert read_snapshot_info(target).sha256 == "old"
        assert [p.name for p in tmp_path.iterdir() if p.name.startswith(".")] == []

    def test_archive_needs_single_top_level_directory(self, tmp_path):
        archive = make_archive(tmp_path / "flat.tar.gz", {"a.md": "", "b.md": ""}, top=None)

        with pytest.raises(FetchError):
            install_archive(archive, tmp_path / "advisory-db", URL, "abc")
        assert not (tmp_path / "advisory-db").exists()

    def test_unreadable_archive(self, tmp_path):
        archive = tmp_path / "junk.tar.gz"
        archive.write_bytes(b"not a tarball")

        with pytest.raises(FetchError):
            install_archive(archive, tmp_path / "advisory-db", URL, "abc")


class TestFreshness:
    """Test snapshot age and staleness checks."""

    def test_age_from_metadata(self, tmp_path):
        fetched_at = datetime(2024, 1, 1, tzinfo=timezone.utc)
        (tmp_path / SNAPSHOT_METADATA).write_text(json.dumps(SnapshotInfo(URL, "abc", fetched_at).to_dict()))

        age = snapshot_age(tmp_path, now=fetched_at + timedelta(days=10))
        assert age == timedelta(days=10)

    def test_ensure_fresh(self, tmp_path):
        fetched_at = datetime(2024, 1, 1, tzinfo=timezone.utc)
        (tmp_path / SNAPSHOT_METADATA).write_text(json.dumps(SnapshotInfo(URL, "abc", fetched_at).to_dict()))

        ensure_fresh(tmp_path, stale_after_days=30, now=fetched_at + timedelta(days=30))
        with pytest.raises(FetchError, match="stale"):
            ensure_fresh(tmp_path, stale_after_days=30, now=fetched_at + timedelta(days=31))

    def test_age_falls_back_to_mtime(self, tmp_path):
        assert read_snapshot_info(tmp_path) is None
        assert snapshot_age(tmp_path) < timedelta(hours=1)

    def test_missing_snapshot(self, tmp_path):
        with pytest.raises(FetchError):
            snapshot_age(tmp_path / "missing")

    def test_corrupt_metadata(self, tmp_path):
        (tmp_path / SNAPSHOT_METADATA).write_text('{"url": "x"}')

        with pytest.raises(FetchError):
            read_snapshot_info(tmp_path)


class TestSnapshotLock:
    """Test the lock file guarding snapshot updates."""

    def test_lock_is_exclusive(self, tmp_path):
        lock_path = tmp_path / "advisory-db.lock"

        with SnapshotLock(lock_path, timeout=0):
            assert lock_path.exists()
            with pytest.raises(FetchError):
                SnapshotLock(lock_path, timeout=0).acquire()

        assert not lock_path.exists()

    def test_released_on_error(self, tmp_path):
        lock_path = tmp_path / "advisory-db.lock"

        with pytest.raises(RuntimeError):
            with SnapshotLock(lock_path, timeout=0):
                raise RuntimeError("boom")
        assert not lock_path.exists()


def run_with_server(handler, coroutine_factory):
    """Serve ``handler`` on a local test server and run a fetcher coroutine against it."""
    async def run():
        app = web.Application()
        app.router.add_get("/db.tar.gz", handler)
        async with test_utils.TestServer(app) as server:
            return await coroutine_factory(str(server.make_url("/db.tar.gz")))

    return asyncio.run(run())


class TestSnapshotFetcher:
    """Test downloading against a local HTTP server."""

    def test_fetch_installs_snapshot(self, tmp_path):
        payload = make_archive(tmp_path / "served.tar.gz", {"crates/foo/A.md": ADVISORY.format(package="foo")}).read_bytes()
        digest = hashlib.sha256(payload).hexdigest()
        target = tmp_path / "cache" / "advisory-db"

        async def handler(request):
            return web.Response(body=payload)

        async def fetch(url):
            async with SnapshotFetcher(url, expected_sha256=digest.upper(), lock_timeout=0) as fetcher:
                return await fetcher.fetch(target)

        info = run_with_server(handler, fetch)

        assert info.sha256 == digest
        assert (target / "crates" / "foo" / "A.md").is_file()
        assert not (tmp_path / "cache" / "advisory-db.lock").exists()

    def test_digest_mismatch(self, tmp_path):
        payload = make_archive(tmp_path / "served.tar.gz", {"crates/foo/A.md": ""}).read_bytes()
        target = tmp_path / "advisory-db"

        async def handler(request):
            return web.Response(body=payload)

        async def fetch(url):
            async with SnapshotFetcher(url, expected_sha256="0" * 64, lock_timeout=0) as fetcher:
                return await fetcher.fetch(target)

        with pytest.raises(FetchError, match="integrity"):
            run_with_server(handler, fetch)
        assert not target.exists()

    def test_http_error(self, tmp_path):
        async def handler(request):
            return web.Response(status=404)

        async def fetch(url):
            async with SnapshotFetcher(url, lock_timeout=0) as fetcher:
                return await fetcher.fetch(tmp_path / "advisory-db")

        with pytest.raises(FetchError, match="HTTP 404"):
            run_with_server(handler, fetch)

    def test_requires_context_manager(self, tmp_path):
        with pytest.raises(FetchError):
            asyncio.run(SnapshotFetcher("http://localhost/db.tar.gz").download(tmp_path / "x"))
