"""Declared tables: path predicate, validation and record storage."""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from tablesync.errors import RecordValidationError
from tablesync.infrastructure.events import EventBus

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping

    from tablesync.archives.base import Archive
    from tablesync.infrastructure.db import TableStore


@dataclass(frozen=True)
class RecordFile:
    """A file of an archive that produces a record in *table*."""

    table: Table
    record_url: str


class Table:
    """One declared destination table.

    Tables are dispatched in declaration order: the first table whose
    :meth:`matches` returns true for a path owns that path.  Overlapping
    ``path`` patterns across tables are not detected.
    """

    def __init__(self, name: str, definition: Mapping[str, Any], store: TableStore) -> None:
        self.name = name
        self.definition = definition
        self.path_patterns: tuple[str, ...] = tuple(definition.get("path") or ())
        self.index: tuple[str, ...] = tuple(definition.get("index") or ())
        self.validator: Callable[[Any], Any] | None = definition.get("validator")
        self.store = store
        self.events = EventBus()

    def __repr__(self) -> str:
        return f"Table({self.name!r}, path={list(self.path_patterns)!r})"

    def matches(self, path: str) -> bool:
        """Return True if the archive file at *path* belongs to this table."""
        return any(fnmatch.fnmatchcase(path, pattern) for pattern in self.path_patterns)

    def validate(self, record: Any) -> dict[str, Any]:
        """Run the declared validator over deserialized content.

        A validator returns the (possibly transformed) record, or ``None`` to
        accept it unchanged, and raises to reject it.
        """
        if self.validator is not None:
            result = self.validator(record)
            if result is not None:
                record = result
        if not isinstance(record, dict):
            msg = f"Record for table {self.name!r} must be an object, got {type(record).__name__}"
            raise RecordValidationError(msg)
        return record

    def apply(self, record: Any, *, record_url: str, origin: str) -> dict[str, Any]:
        """Validate *record*, attach provenance fields and upsert it."""
        validated = self.validate(record)
        validated["_url"] = record_url
        validated["_origin"] = origin
        self.store.put(validated)
        return validated

    def remove(self, record_url: str) -> None:
        self.store.delete(record_url)

    async def list_record_files(self, archive: Archive) -> list[RecordFile]:
        """Every file *archive* currently holds that matches this table."""
        paths = await archive.list_files()
        return [RecordFile(self, archive.url + path) for path in paths if self.matches(path)]


def first_matching_table(tables: Iterable[Table], path: str) -> Table | None:
    """Dispatch *path* to the first table (in declaration order) that matches it."""
    for table in tables:
        if table.matches(path):
            return table
    return None


def path_patterns(tables: Iterable[Table]) -> list[str]:
    """Union of every table's path patterns, first occurrence order."""
    return list(dict.fromkeys(pattern for table in tables for pattern in table.path_patterns))


def matches_any(patterns: Iterable[str], path: str) -> bool:
    return any(fnmatch.fnmatchcase(path, pattern) for pattern in patterns)
