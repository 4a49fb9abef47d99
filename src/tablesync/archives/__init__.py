"""Archive implementations and the archive contract."""

from tablesync.archives.base import (
    CHANGED,
    INVALIDATED,
    ActivityStream,
    Archive,
    ArchiveInfo,
    FileActivity,
    HistoryEntry,
)
from tablesync.archives.folder import FolderArchive
from tablesync.archives.memory import MemoryArchive

__all__ = [
    "CHANGED",
    "INVALIDATED",
    "ActivityStream",
    "Archive",
    "ArchiveInfo",
    "FileActivity",
    "FolderArchive",
    "HistoryEntry",
    "MemoryArchive",
]
