"""Archive contract consumed by the indexer."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal, Protocol

from tablesync.infrastructure.events import EventBus

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

ChangeType = Literal["put", "del"]

# Activity stream event names.
INVALIDATED = "invalidated"
CHANGED = "changed"


@dataclass(frozen=True)
class ArchiveInfo:
    """Remote state of an archive."""

    version: int
    is_owner: bool = False


@dataclass(frozen=True)
class HistoryEntry:
    """One entry of an archive's append-only change history."""

    path: str
    type: ChangeType
    version: int


@dataclass(frozen=True)
class FileActivity:
    """Payload of an activity stream notification."""

    path: str


class ActivityStream:
    """Subscription to an archive's ``invalidated`` / ``changed`` notifications."""

    def __init__(
        self,
        patterns: Iterable[str],
        on_close: Callable[[ActivityStream], None] | None = None,
    ) -> None:
        self.patterns = tuple(patterns)
        self.closed = False
        self._events = EventBus()
        self._on_close = on_close

    def add_listener(self, event: str, callback: Callable[[FileActivity], object]) -> Callable[[], None]:
        return self._events.on(event, callback)

    def emit(self, event: str, path: str) -> None:
        if not self.closed:
            self._events.emit(event, FileActivity(path))

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._events.clear()
        if self._on_close is not None:
            self._on_close(self)


class Archive(Protocol):
    """A URL-identified, versioned source of files."""

    url: str
    is_writable: bool
    file_events: ActivityStream | None

    async def get_info(self) -> ArchiveInfo: ...

    async def read_file(self, path: str) -> str: ...

    async def history(self, start: int, end: int) -> list[HistoryEntry]:
        """Entries with ``start <= version < end``, in history order."""
        ...

    async def list_files(self) -> list[str]: ...

    def create_file_activity_stream(self, patterns: Iterable[str]) -> ActivityStream: ...

    async def download(self, path: str) -> None: ...
