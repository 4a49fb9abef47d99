"""Directory-backed archive: a SHA-256 journal over a local folder.

The folder's change history is an append-only JSONL journal stored in
``<root>/.archive/journal.jsonl``.  :meth:`FolderArchive.sync` hashes every
file, compares against the state replayed from the journal and appends one
entry per added, changed or deleted file.  Activity streams use
``watchfiles`` to sync and notify as files change on disk.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import unquote, urlparse

from tablesync.archives.base import CHANGED, ActivityStream, ArchiveInfo, HistoryEntry
from tablesync.schema.tables import matches_any

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_MS = 500

JOURNAL_DIR = ".archive"
JOURNAL_FILE = "journal.jsonl"


def _compute_file_hash(path: Path) -> str:
    """Compute SHA-256 hash of a file."""
    return hashlib.sha256(path.read_bytes()).hexdigest()


def _is_ignored(rel: Path) -> bool:
    """Hidden directories/files and editor temp files are not archive content."""
    if rel.name.startswith("~") or rel.name.endswith(".tmp"):
        return True
    return any(part.startswith(".") for part in rel.parts)


def _archive_path(rel: Path) -> str:
    return "/" + rel.as_posix()


def _scan_files(root: Path) -> dict[str, str]:
    """Scan *root* and return ``{archive_path: sha256}``."""
    files: dict[str, str] = {}
    for f in sorted(root.rglob("*")):
        if not f.is_file():
            continue
        rel = f.relative_to(root)
        if _is_ignored(rel):
            continue
        files[_archive_path(rel)] = _compute_file_hash(f)
    return files


def _filter_relevant(
    changes: Iterable[tuple[object, str]],
    root: Path,
) -> list[str]:
    """Map raw watcher changes to archive paths, dropping ignored files."""
    result: list[str] = []
    for _change_type, path_str in changes:
        try:
            rel = Path(path_str).relative_to(root)
        except ValueError:
            continue
        if _is_ignored(rel):
            continue
        result.append(_archive_path(rel))
    return sorted(set(result))


def path_from_url(url: str) -> Path:
    """Convert a ``file://`` archive URL back to a directory path."""
    parsed = urlparse(url)
    if parsed.scheme != "file":
        msg = f"Not a file:// URL: {url}"
        raise ValueError(msg)
    return Path(unquote(parsed.path))


class FolderArchive:
    """Archive over a local directory, identified by its ``file://`` URL."""

    def __init__(self, root: Path, *, debounce_ms: int = DEFAULT_DEBOUNCE_MS) -> None:
        self.root = root.resolve()
        self.url = self.root.as_uri()
        self.debounce_ms = debounce_ms
        self.is_writable = False
        self.file_events: ActivityStream | None = None
        self._journal_path = self.root / JOURNAL_DIR / JOURNAL_FILE
        self._entries: list[dict[str, str | int]] | None = None
        self._watchers: dict[int, tuple[asyncio.Task[None], asyncio.Event]] = {}

    @classmethod
    def from_url(cls, url: str, **kwargs: int) -> FolderArchive:
        return cls(path_from_url(url), **kwargs)

    def __repr__(self) -> str:
        return f"FolderArchive({self.url!r})"

    # -- journal ------------------------------------------------------------

    def _load_entries(self) -> list[dict[str, str | int]]:
        if self._entries is None:
            entries: list[dict[str, str | int]] = []
            if self._journal_path.is_file():
                for line in self._journal_path.read_text(encoding="utf-8").splitlines():
                    if line.strip():
                        entries.append(json.loads(line))
            self._entries = entries
        return self._entries

    def _state(self) -> dict[str, str]:
        """Replay the journal into ``{path: hash}`` of live files."""
        state: dict[str, str] = {}
        for entry in self._load_entries():
            path = str(entry["path"])
            if entry["type"] == "del":
                state.pop(path, None)
            else:
                state[path] = str(entry["hash"])
        return state

    @property
    def version(self) -> int:
        return len(self._load_entries())

    def sync(self) -> list[HistoryEntry]:
        """Append journal entries for every file that differs from the journal.

        Returns the newly appended entries.
        """
        entries = self._load_entries()
        stored = self._state()
        current = _scan_files(self.root)

        appended: list[dict[str, str | int]] = []
        for path in sorted(stored.keys() - current.keys()):
            appended.append({"path": path, "type": "del", "hash": "", "version": 0})
        for path, hash_ in current.items():
            if stored.get(path) != hash_:
                appended.append({"path": path, "type": "put", "hash": hash_, "version": 0})
        if not appended:
            return []

        for offset, entry in enumerate(appended, start=1):
            entry["version"] = len(entries) + offset

        self._journal_path.parent.mkdir(parents=True, exist_ok=True)
        with self._journal_path.open("a", encoding="utf-8") as fh:
            for entry in appended:
                fh.write(json.dumps(entry) + "\n")
        entries.extend(appended)
        logger.debug("%s: journaled %d change(s), now at version %d", self.url, len(appended), len(entries))
        return [_to_history_entry(entry) for entry in appended]

    # -- archive contract ---------------------------------------------------

    async def get_info(self) -> ArchiveInfo:
        self.sync()
        return ArchiveInfo(version=self.version, is_owner=os.access(self.root, os.W_OK))

    async def read_file(self, path: str) -> str:
        return (self.root / path.lstrip("/")).read_text(encoding="utf-8")

    async def history(self, start: int, end: int) -> list[HistoryEntry]:
        return [
            _to_history_entry(entry)
            for entry in self._load_entries()
            if start <= int(entry["version"]) < end
        ]

    async def list_files(self) -> list[str]:
        return sorted(self._state())

    async def download(self, path: str) -> None:
        """Local files are always present."""

    def create_file_activity_stream(self, patterns: Iterable[str]) -> ActivityStream:
        """Watch the folder with ``watchfiles`` and notify ``changed`` per matching path.

        Must be called from a running event loop.
        """
        stream = ActivityStream(patterns, on_close=self._stop_watching)
        stop_event = asyncio.Event()
        task = asyncio.get_running_loop().create_task(self._watch_loop(stream, stop_event))
        task.add_done_callback(self._watch_done)
        self._watchers[id(stream)] = (task, stop_event)
        return stream

    def _watch_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Watching %s failed: %s", self.root, exc, exc_info=exc)

    async def _watch_loop(self, stream: ActivityStream, stop_event: asyncio.Event) -> None:
        from watchfiles import awatch

        logger.info("Watching %s", self.root)
        async for batch in awatch(self.root, debounce=self.debounce_ms, stop_event=stop_event):
            relevant = _filter_relevant(batch, self.root)
            if not relevant:
                continue
            self.sync()
            for path in relevant:
                if matches_any(stream.patterns, path):
                    stream.emit(CHANGED, path)

    def _stop_watching(self, stream: ActivityStream) -> None:
        watcher = self._watchers.pop(id(stream), None)
        if watcher is None:
            return
        task, stop_event = watcher
        stop_event.set()
        task.cancel()


def _to_history_entry(entry: dict[str, str | int]) -> HistoryEntry:
    return HistoryEntry(
        path=str(entry["path"]),
        type="del" if entry["type"] == "del" else "put",
        version=int(entry["version"]),
    )
