"""The table store instance: schema registration, tables and archive tracking."""

from __future__ import annotations

import logging
import sqlite3
from typing import TYPE_CHECKING, Any

from tablesync import __version__
from tablesync.errors import SchemaError
from tablesync.indexer import index_archive, reset_outdated_indexes, unindex_archive
from tablesync.infrastructure.db import (
    STORE_VERSION,
    TableStore,
    create_schema,
    get_meta,
    open_db,
    set_meta,
)
from tablesync.infrastructure.events import EventBus
from tablesync.infrastructure.locks import KeyedLock
from tablesync.registry import ArchiveRegistry
from tablesync.schema.differ import (
    Schema,
    apply_diff,
    diff,
    merge_schemas,
    sort_schemas,
    table_names,
)
from tablesync.schema.tables import Table, path_patterns

if TYPE_CHECKING:
    import asyncio
    from collections.abc import Callable, Iterable, Mapping
    from pathlib import Path

    from tablesync.archives.base import Archive

logger = logging.getLogger(__name__)


class Database:
    """A SQLite table store kept in sync with a set of archives.

    Construction validates the declared schema history, upgrades the store
    structure to the latest version and records which tables need a full
    rebuild.  :meth:`open` then resets outdated indexes and loads every
    tracked archive.

    Args:
        db_path: SQLite database file.
        schemas: Schema history; each entry is a mapping with a ``version``
            and table declarations.  A version lists only the tables it adds
            or changes (``None`` removes one); omitted tables carry over.
        archive_factory: Opens an archive handle from its URL when loading
            tracked archives.  Defaults to ``file://`` folder archives.

    Raises:
        SchemaError: On a malformed schema, duplicate versions, or a store
            that was built by a newer schema version.
    """

    def __init__(
        self,
        db_path: Path | str,
        schemas: Iterable[Mapping[str, Any]],
        *,
        archive_factory: Callable[[str], Archive] | None = None,
    ) -> None:
        self.schemas = sort_schemas(schemas)
        self.db_path = db_path
        self.conn = open_db(db_path)
        create_schema(self.conn)
        self.events = EventBus()
        self.locks = KeyedLock()
        self.tables_to_rebuild: list[str] = []
        self._closed = False

        try:
            self.schema = self._upgrade()
        except Exception:
            self.conn.close()
            raise
        self.tables = [
            Table(name, self.schema[name], TableStore(self.conn, name))
            for name in table_names(self.schema)
        ]
        self.registry = ArchiveRegistry(self, archive_factory)

    def __repr__(self) -> str:
        return f"Database({str(self.db_path)!r}, version={self.schema['version']})"

    # -- schema -------------------------------------------------------------

    @property
    def version(self) -> int:
        return int(self.schema["version"])

    def _upgrade(self) -> Schema:
        """Apply every schema version newer than the stored one."""
        stored = int(get_meta(self.conn, "schema_version", "0") or 0)
        latest = self.schemas[-1]["version"]
        if stored > latest:
            msg = f"Database schema version {stored} is newer than the latest declared version {latest}"
            raise SchemaError(msg)

        effective: Schema | None = None
        for schema in self.schemas:
            merged = merge_schemas(effective, schema)
            if schema["version"] > stored:
                schema_diff = diff(effective, merged)
                apply_diff(self.conn, schema_diff)
                for name in schema_diff.tables_to_rebuild:
                    if name not in self.tables_to_rebuild:
                        self.tables_to_rebuild.append(name)
            effective = merged

        if effective is None:
            msg = "At least one schema version is required"
            raise SchemaError(msg)
        self.tables_to_rebuild = [name for name in self.tables_to_rebuild if name in effective]
        if stored != latest:
            logger.info("Upgraded schema from version %d to %d", stored, latest)
        set_meta(self.conn, "schema_version", str(latest))
        set_meta(self.conn, "store_version", STORE_VERSION)
        set_meta(self.conn, "tablesync_version", __version__)
        return effective

    @property
    def table_path_patterns(self) -> list[str]:
        return path_patterns(self.tables)

    def table(self, name: str) -> Table:
        for table in self.tables:
            if table.name == name:
                return table
        raise KeyError(name)

    # -- state --------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return not self._closed

    def is_usable(self) -> bool:
        """Probe the connection; False when closed or unreadable."""
        if self._closed:
            return False
        try:
            self.conn.execute("SELECT 1 FROM index_meta LIMIT 1").fetchall()
        except sqlite3.Error as exc:
            logger.warning("Database probe failed: %s", exc)
            return False
        return True

    async def open(self, *, watch: bool = True) -> list[asyncio.Task[int | None]]:
        """Reset outdated indexes, then load, index and (optionally) watch archives."""
        needs_rebuild = reset_outdated_indexes(self)
        return await self.registry.load_archives(needs_rebuild, watch=watch)

    def close(self) -> None:
        if self._closed:
            return
        self.registry.unwatch_all()
        self.conn.close()
        self._closed = True

    # -- archives -----------------------------------------------------------

    @property
    def archives(self) -> dict[str, Archive]:
        return self.registry.archives

    async def add_archive(self, archive: Archive, *, watch: bool = True) -> None:
        await self.registry.add_archive(archive, watch=watch)

    async def remove_archive(self, archive: Archive) -> None:
        await self.registry.remove_archive(archive)

    async def wait_till_indexed(self, archive: Archive) -> None:
        await self.registry.wait_till_indexed(archive)

    async def index_archive(self, archive: Archive, needs_rebuild: bool = False) -> int | None:
        return await index_archive(self, archive, needs_rebuild)

    async def unindex_archive(self, archive: Archive) -> int:
        return await unindex_archive(self, archive)
