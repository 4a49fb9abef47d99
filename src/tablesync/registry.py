"""Archive registry: load, add, remove and watch archives."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from tablesync.archives.base import CHANGED, INVALIDATED
from tablesync.archives.folder import FolderArchive
from tablesync.indexer import INDEXES_UPDATED, index_archive, unindex_archive
from tablesync.infrastructure.db import IndexMeta, get_index_meta, list_index_meta, put_index_meta

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine, Iterator

    from tablesync.archives.base import Archive, FileActivity
    from tablesync.database import Database

logger = logging.getLogger(__name__)


def default_archive_factory(url: str) -> Archive:
    """Open ``file://`` URLs as :class:`FolderArchive`."""
    if url.startswith("file://"):
        return FolderArchive.from_url(url)
    msg = f"No archive factory for URL: {url}"
    raise ValueError(msg)


class ArchiveRegistry:
    """Live archive handles of one database, keyed by URL."""

    def __init__(
        self,
        db: Database,
        archive_factory: Callable[[str], Archive] | None = None,
    ) -> None:
        self.db = db
        self.archives: dict[str, Archive] = {}
        self._factory = archive_factory or default_archive_factory
        self._tasks: set[asyncio.Task[Any]] = set()

    def __contains__(self, url: object) -> bool:
        return url in self.archives

    def __iter__(self) -> Iterator[Archive]:
        return iter(list(self.archives.values()))

    def __len__(self) -> int:
        return len(self.archives)

    def get(self, url: str) -> Archive | None:
        return self.archives.get(url)

    # -- background tasks ---------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background archive task failed: %s", exc, exc_info=exc)

    async def drain(self) -> None:
        """Wait for every in-flight background index/download task."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -- lifecycle ----------------------------------------------------------

    async def load_archives(
        self,
        needs_rebuild: bool = False,
        *,
        watch: bool = True,
    ) -> list[asyncio.Task[int | None]]:
        """Open every archive with stored index meta, index and watch it.

        Indexing runs concurrently in background tasks; they are returned so
        callers can await completion.
        """
        logger.debug("load_archives needs_rebuild=%s", needs_rebuild)
        tasks: list[asyncio.Task[int | None]] = []
        for index_meta in list_index_meta(self.db.conn):
            logger.debug("loading archive %s", index_meta.url)
            try:
                archive = self._factory(index_meta.url)
            except (ValueError, OSError) as exc:
                logger.warning("Cannot load archive %s: %s", index_meta.url, exc)
                continue
            archive.is_writable = index_meta.is_writable
            self.archives[archive.url] = archive

            tasks.append(
                self._spawn(index_archive(self.db, archive, needs_rebuild, tracked_only=True))
            )
            if watch:
                self.watch_archive(archive)
        logger.debug("load_archives scheduled %d archive(s)", len(tasks))
        return tasks

    async def add_archive(self, archive: Archive, *, watch: bool = True) -> None:
        """Start tracking *archive*: store fresh index meta, index fully, watch."""
        logger.info("Adding archive %s", archive.url)
        info = await archive.get_info()
        archive.is_writable = info.is_owner
        put_index_meta(
            self.db.conn,
            IndexMeta(url=archive.url, version=0, is_writable=archive.is_writable),
        )
        self.archives[archive.url] = archive

        await index_archive(self.db, archive)
        if watch:
            self.watch_archive(archive)

    async def remove_archive(self, archive: Archive) -> None:
        """Stop watching *archive* and delete everything it contributed."""
        logger.info("Removing archive %s", archive.url)
        self.unwatch_archive(archive)
        self.archives.pop(archive.url, None)
        await unindex_archive(self.db, archive)

    def watch_archive(self, archive: Archive) -> None:
        """Reindex *archive* whenever one of its table files changes.

        Every ``changed`` notification schedules its own pass; passes for
        the same archive queue behind the archive lock. A queued pass that
        finds the archive removed does nothing.
        """
        if archive.file_events is not None:
            logger.warning("watch_archive called on archive already being watched: %s", archive.url)
            return
        logger.debug("watching %s", archive.url)
        stream = archive.create_file_activity_stream(self.db.table_path_patterns)

        def on_invalidated(activity: FileActivity) -> None:
            self._spawn(archive.download(activity.path))

        def on_changed(activity: FileActivity) -> None:
            logger.debug("%s changed in %s", activity.path, archive.url)
            self._spawn(index_archive(self.db, archive, tracked_only=True))

        stream.add_listener(INVALIDATED, on_invalidated)
        stream.add_listener(CHANGED, on_changed)
        archive.file_events = stream

    def unwatch_archive(self, archive: Archive) -> None:
        if archive.file_events is not None:
            logger.debug("unwatching %s", archive.url)
            archive.file_events.close()
            archive.file_events = None

    def unwatch_all(self) -> None:
        for archive in self:
            self.unwatch_archive(archive)

    async def wait_till_indexed(self, archive: Archive) -> None:
        """Return once the indexed version of *archive* reaches its current version.

        No timeout: if the archive never gets indexed this waits forever.
        """
        logger.debug("wait_till_indexed %s", archive.url)
        done: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        target: int | None = None

        def on_indexed(indexed: Archive, version: int) -> None:
            if target is None or done.done():
                return
            if indexed.url == archive.url and version >= target:
                done.set_result(None)

        unsubscribe = self.db.events.on(INDEXES_UPDATED, on_indexed)
        try:
            info = await archive.get_info()
            target = info.version
            index_meta = get_index_meta(self.db.conn, archive.url) or IndexMeta(url=archive.url)
            if index_meta.version >= target:
                logger.debug("wait_till_indexed: %s already indexed", archive.url)
                return
            await done
        finally:
            unsubscribe()
