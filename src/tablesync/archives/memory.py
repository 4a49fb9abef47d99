"""In-memory archive with an append-only history."""

from __future__ import annotations

import itertools
from typing import TYPE_CHECKING

from tablesync.archives.base import (
    CHANGED,
    INVALIDATED,
    ActivityStream,
    ArchiveInfo,
    ChangeType,
    HistoryEntry,
)
from tablesync.schema.tables import matches_any

if TYPE_CHECKING:
    from collections.abc import Iterable

_counter = itertools.count(1)


class MemoryArchive:
    """Archive held entirely in memory.

    Every :meth:`write_file` / :meth:`unlink` appends one history entry and
    bumps the version by one; open activity streams receive ``changed`` for
    paths matching their patterns.
    """

    def __init__(self, url: str | None = None, *, is_owner: bool = True) -> None:
        self.url = url or f"mem://archive-{next(_counter)}"
        self.is_owner = is_owner
        self.is_writable = False
        self.file_events: ActivityStream | None = None
        self.files: dict[str, str] = {}
        self.entries: list[HistoryEntry] = []
        self.downloads: list[str] = []
        self._streams: list[ActivityStream] = []

    def __repr__(self) -> str:
        return f"MemoryArchive({self.url!r}, version={self.version})"

    @property
    def version(self) -> int:
        return len(self.entries)

    # -- mutation -----------------------------------------------------------

    def write_file(self, path: str, content: str) -> int:
        """Write *content* at *path*; returns the new version."""
        self.files[path] = content
        return self._append(path, "put")

    def unlink(self, path: str) -> int:
        if path not in self.files:
            raise FileNotFoundError(path)
        del self.files[path]
        return self._append(path, "del")

    def invalidate(self, path: str) -> None:
        """Signal that the local copy of *path* is stale."""
        self._notify(INVALIDATED, path)

    def _append(self, path: str, change: ChangeType) -> int:
        entry = HistoryEntry(path=path, type=change, version=self.version + 1)
        self.entries.append(entry)
        self._notify(CHANGED, path)
        return entry.version

    def _notify(self, event: str, path: str) -> None:
        for stream in list(self._streams):
            if matches_any(stream.patterns, path):
                stream.emit(event, path)

    # -- archive contract ---------------------------------------------------

    async def get_info(self) -> ArchiveInfo:
        return ArchiveInfo(version=self.version, is_owner=self.is_owner)

    async def read_file(self, path: str) -> str:
        try:
            return self.files[path]
        except KeyError:
            raise FileNotFoundError(f"{self.url}{path}") from None

    async def history(self, start: int, end: int) -> list[HistoryEntry]:
        return [entry for entry in self.entries if start <= entry.version < end]

    async def list_files(self) -> list[str]:
        return sorted(self.files)

    def create_file_activity_stream(self, patterns: Iterable[str]) -> ActivityStream:
        stream = ActivityStream(patterns, on_close=self._streams.remove)
        self._streams.append(stream)
        return stream

    async def download(self, path: str) -> None:
        self.downloads.append(path)
