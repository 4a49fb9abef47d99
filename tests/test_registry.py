"""Tests for tablesync.registry: archive tracking, watching and waiting."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING

import pytest

from tablesync.archives.memory import MemoryArchive
from tablesync.database import Database
from tablesync.infrastructure.db import IndexMeta, get_index_meta, put_index_meta
from tablesync.registry import default_archive_factory

if TYPE_CHECKING:
    from pathlib import Path


def _post(text: str) -> str:
    return json.dumps({"text": text, "createdAt": 1})


class TestAddArchive:
    @pytest.mark.asyncio
    async def test_indexes_and_tracks(self, db: Database, archive: MemoryArchive) -> None:
        archive.write_file("/posts/1.json", _post("hello"))
        await db.add_archive(archive, watch=False)

        assert archive.url in db.registry
        assert db.archives[archive.url] is archive
        assert get_index_meta(db.conn, archive.url) == IndexMeta(
            url=archive.url, version=1, is_writable=True
        )
        assert db.table("posts").store.count() == 1

    @pytest.mark.asyncio
    async def test_writability_from_ownership(self, db: Database) -> None:
        archive = MemoryArchive(is_owner=False)
        await db.add_archive(archive, watch=False)
        assert archive.is_writable is False
        meta = get_index_meta(db.conn, archive.url)
        assert meta is not None
        assert meta.is_writable is False

    @pytest.mark.asyncio
    async def test_re_adding_reindexes_from_scratch(self, db: Database, archive: MemoryArchive) -> None:
        archive.write_file("/posts/1.json", _post("hello"))
        await db.add_archive(archive, watch=False)
        db.table("posts").store.clear()

        await db.add_archive(archive, watch=False)
        assert db.table("posts").store.count() == 1


class TestRemoveArchive:
    @pytest.mark.asyncio
    async def test_unwatches_and_unindexes(self, db: Database, archive: MemoryArchive) -> None:
        archive.write_file("/posts/1.json", _post("hello"))
        await db.add_archive(archive)
        assert archive.file_events is not None

        await db.remove_archive(archive)
        assert archive.file_events is None
        assert archive.url not in db.registry
        assert get_index_meta(db.conn, archive.url) is None
        assert db.table("posts").store.count() == 0

    @pytest.mark.asyncio
    async def test_changes_after_remove_are_ignored(self, db: Database, archive: MemoryArchive) -> None:
        await db.add_archive(archive)
        await db.remove_archive(archive)

        archive.write_file("/posts/1.json", _post("late"))
        await db.registry.drain()
        assert db.table("posts").store.count() == 0

    @pytest.mark.asyncio
    async def test_pass_queued_before_remove_does_not_retrack(
        self,
        db: Database,
        archive: MemoryArchive,
    ) -> None:
        await db.add_archive(archive)
        archive.write_file("/posts/1.json", _post("racing"))
        await db.remove_archive(archive)
        await db.registry.drain()

        assert get_index_meta(db.conn, archive.url) is None
        assert db.table("posts").store.count() == 0
        assert await db.registry.load_archives(watch=False) == []


class TestWatch:
    @pytest.mark.asyncio
    async def test_change_triggers_reindex(self, db: Database, archive: MemoryArchive) -> None:
        await db.add_archive(archive)
        archive.write_file("/posts/1.json", _post("live"))
        await db.registry.drain()

        assert db.table("posts").store.get(archive.url + "/posts/1.json")["text"] == "live"  # type: ignore[index]
        meta = get_index_meta(db.conn, archive.url)
        assert meta is not None
        assert meta.version == 1

    @pytest.mark.asyncio
    async def test_burst_of_changes(self, db: Database, archive: MemoryArchive) -> None:
        await db.add_archive(archive)
        for n in range(5):
            archive.write_file(f"/posts/{n}.json", _post(str(n)))
        await db.registry.drain()

        assert db.table("posts").store.count() == 5
        meta = get_index_meta(db.conn, archive.url)
        assert meta is not None
        assert meta.version == 5

    @pytest.mark.asyncio
    async def test_only_table_paths_are_watched(self, db: Database, archive: MemoryArchive) -> None:
        await db.add_archive(archive)
        assert archive.file_events is not None
        assert set(archive.file_events.patterns) == {"/posts/*.json", "/profile.json"}

        archive.write_file("/notes.txt", "ignored")
        assert not db.registry._tasks

    @pytest.mark.asyncio
    async def test_invalidated_triggers_download(self, db: Database, archive: MemoryArchive) -> None:
        await db.add_archive(archive)
        archive.invalidate("/posts/1.json")
        await db.registry.drain()
        assert archive.downloads == ["/posts/1.json"]

    @pytest.mark.asyncio
    async def test_watch_twice_warns(
        self,
        db: Database,
        archive: MemoryArchive,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        await db.add_archive(archive)
        stream = archive.file_events
        with caplog.at_level(logging.WARNING, logger="tablesync.registry"):
            db.registry.watch_archive(archive)
        assert "already being watched" in caplog.text
        assert archive.file_events is stream

    @pytest.mark.asyncio
    async def test_close_stops_watching(self, db: Database, archive: MemoryArchive) -> None:
        await db.add_archive(archive)
        db.close()
        assert archive.file_events is None
        archive.write_file("/posts/1.json", _post("after close"))
        assert not db.registry._tasks


class TestWaitTillIndexed:
    @pytest.mark.asyncio
    async def test_returns_immediately_when_current(self, db: Database, archive: MemoryArchive) -> None:
        archive.write_file("/posts/1.json", _post("hello"))
        await db.add_archive(archive, watch=False)
        await asyncio.wait_for(db.wait_till_indexed(archive), timeout=1)
        assert db.events.listener_count("indexes-updated") == 0

    @pytest.mark.asyncio
    async def test_waits_for_pending_pass(self, db: Database, archive: MemoryArchive) -> None:
        await db.add_archive(archive, watch=False)
        archive.write_file("/posts/1.json", _post("hello"))

        waiter = asyncio.create_task(db.wait_till_indexed(archive))
        await asyncio.sleep(0.01)
        assert not waiter.done()

        await db.index_archive(archive)
        await asyncio.wait_for(waiter, timeout=1)
        assert db.events.listener_count("indexes-updated") == 0

    @pytest.mark.asyncio
    async def test_ignores_other_archives(self, db: Database, archive: MemoryArchive) -> None:
        other = MemoryArchive()
        await db.add_archive(archive, watch=False)
        await db.add_archive(other, watch=False)
        archive.write_file("/posts/1.json", _post("a"))
        other.write_file("/posts/1.json", _post("b"))

        waiter = asyncio.create_task(db.wait_till_indexed(archive))
        await asyncio.sleep(0)
        await db.index_archive(other)
        await asyncio.sleep(0)
        assert not waiter.done()

        await db.index_archive(archive)
        await asyncio.wait_for(waiter, timeout=1)

    @pytest.mark.asyncio
    async def test_untracked_archive_counts_as_version_zero(self, db: Database) -> None:
        empty = MemoryArchive()
        await asyncio.wait_for(db.wait_till_indexed(empty), timeout=1)


class TestLoadArchives:
    @pytest.mark.asyncio
    async def test_reopens_and_catches_up(self, tmp_path: Path, schemas: list[dict[str, object]]) -> None:
        archive = MemoryArchive()
        archive.write_file("/posts/1.json", _post("before"))

        first = Database(tmp_path / "store.db", schemas)
        await first.add_archive(archive, watch=False)
        first.close()

        archive.write_file("/posts/2.json", _post("offline"))

        second = Database(tmp_path / "store.db", schemas, archive_factory=lambda url: archive)
        try:
            tasks = await second.open(watch=False)
            assert await asyncio.gather(*tasks) == [2]
            assert second.table("posts").store.count() == 2
            assert archive.url in second.registry
        finally:
            second.close()

    @pytest.mark.asyncio
    async def test_restores_writability(self, db: Database) -> None:
        archive = MemoryArchive()
        put_index_meta(db.conn, IndexMeta(url=archive.url, version=0, is_writable=True))
        db.registry._factory = lambda url: archive

        tasks = await db.registry.load_archives(watch=False)
        await asyncio.gather(*tasks)
        assert archive.is_writable is True

    @pytest.mark.asyncio
    async def test_watches_loaded_archives(self, db: Database) -> None:
        archive = MemoryArchive()
        put_index_meta(db.conn, IndexMeta(url=archive.url))
        db.registry._factory = lambda url: archive

        tasks = await db.registry.load_archives()
        await asyncio.gather(*tasks)
        assert archive.file_events is not None

    @pytest.mark.asyncio
    async def test_unloadable_archive_skipped(
        self,
        db: Database,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        put_index_meta(db.conn, IndexMeta(url="mem://unknown"))
        with caplog.at_level(logging.WARNING, logger="tablesync.registry"):
            tasks = await db.registry.load_archives(watch=False)
        assert tasks == []
        assert "Cannot load archive mem://unknown" in caplog.text


class TestDefaultFactory:
    def test_file_url(self, tmp_path: Path) -> None:
        archive = default_archive_factory(tmp_path.resolve().as_uri())
        assert archive.url == tmp_path.resolve().as_uri()

    def test_unknown_scheme(self) -> None:
        with pytest.raises(ValueError, match="No archive factory"):
            default_archive_factory("dat://abc")
