"""Incremental indexer: history scan, update apply and rebuild reset.

Every pass over one archive runs under the ``index:<url>`` key of the
database's :class:`~tablesync.infrastructure.locks.KeyedLock`, so index and
unindex passes for the same archive never overlap.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING

from tablesync.infrastructure.db import (
    IndexMeta,
    delete_index_meta,
    get_index_meta,
    reset_index_versions,
    set_indexed_version,
)
from tablesync.schema.tables import RecordFile, first_matching_table, matches_any

if TYPE_CHECKING:
    from tablesync.archives.base import Archive, HistoryEntry
    from tablesync.database import Database

logger = logging.getLogger(__name__)

# Emitted on a table's bus for every table touched by a pass.
INDEX_UPDATED = "index-updated"
# Emitted on the database bus once per completed pass.
INDEXES_UPDATED = "indexes-updated"


def lock_key(archive: Archive) -> str:
    return f"index:{archive.url}"


async def index_archive(
    db: Database,
    archive: Archive,
    needs_rebuild: bool = False,
    *,
    tracked_only: bool = False,
) -> int | None:
    """Bring the tables up to date with *archive*'s current version.

    Args:
        db: Database holding the tables and index meta.
        archive: Archive to index.
        needs_rebuild: Logged only; rebuilds are prepared by
            :func:`reset_outdated_indexes`.
        tracked_only: Skip the pass when *archive* has no index meta, i.e.
            it was removed while this pass waited for the archive lock.

    Returns:
        The version indexed by this pass, or ``None`` when nothing was done
        (already up to date, untracked, or the store is unusable).
    """
    logger.debug("index_archive %s needs_rebuild=%s", archive.url, needs_rebuild)
    async with db.locks.hold(lock_key(archive)):
        if not db.is_open:
            logger.warning("index_archive called on closed db: %s", archive.url)
            return None
        if not db.is_usable():
            logger.warning("index_archive called on corrupted db: %s", archive.url)
            return None

        index_meta = get_index_meta(db.conn, archive.url)
        if index_meta is None:
            if tracked_only:
                logger.debug("skipping %s: no longer tracked", archive.url)
                return None
            index_meta = IndexMeta(url=archive.url)
        info = await archive.get_info()

        if index_meta.version >= info.version:
            logger.debug("no index needed for %s (at version %d)", archive.url, index_meta.version)
            return None
        logger.debug("indexing %s from %d to %d", archive.url, index_meta.version, info.version)

        updates = await scan_archive_history_for_updates(
            db,
            archive,
            start=index_meta.version + 1,
            end=info.version + 1,
        )
        results = await apply_updates(db, archive, updates)
        logger.debug("applied %d update(s) from %s", len(results), archive.url)

        set_indexed_version(db.conn, archive.url, info.version)

        for table_name in dict.fromkeys(name for name in results if name):
            db.table(table_name).events.emit(INDEX_UPDATED, archive, info.version)
        db.events.emit(INDEXES_UPDATED, archive, info.version)
        return info.version


async def unindex_archive(db: Database, archive: Archive) -> int:
    """Delete every record generated from *archive* and its index meta.

    Returns the number of record files matched in the archive.
    """
    async with db.locks.hold(lock_key(archive)):
        record_files = await scan_archive_for_records(db, archive)
        for record_file in record_files:
            record_file.table.remove(record_file.record_url)
        # Records whose files are gone from the archive but were never unindexed.
        for table in db.tables:
            table.store.delete_origin(archive.url)
        delete_index_meta(db.conn, archive.url)
        logger.debug("unindexed %d record file(s) of %s", len(record_files), archive.url)
        return len(record_files)


def reset_outdated_indexes(db: Database) -> bool:
    """Clear the tables flagged for rebuild and reset every archive to version 0.

    Returns ``False`` when no table is flagged.
    """
    if not db.tables_to_rebuild:
        return False
    logger.info("rebuilding %d table(s): %s", len(db.tables_to_rebuild), ", ".join(db.tables_to_rebuild))

    live = {table.name: table for table in db.tables}
    for name in db.tables_to_rebuild:
        table = live.get(name)
        if table is None:
            continue
        logger.debug("clearing %s", name)
        table.store.clear()

    reset = reset_index_versions(db.conn)
    logger.debug("reset index meta of %d archive(s)", reset)
    db.tables_to_rebuild.clear()
    return True


# ---------------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------------


async def scan_archive_history_for_updates(
    db: Database,
    archive: Archive,
    *,
    start: int,
    end: int,
) -> dict[str, HistoryEntry]:
    """Return the latest change per table-relevant path within ``[start, end)``."""
    history = await archive.history(start, end)
    patterns = db.table_path_patterns
    updates: dict[str, HistoryEntry] = {}
    for entry in history:
        if matches_any(patterns, entry.path):
            updates[entry.path] = entry
    return updates


async def scan_archive_for_records(db: Database, archive: Archive) -> list[RecordFile]:
    """List every file in *archive* that produces a record in some table."""
    per_table = await asyncio.gather(*(table.list_record_files(archive) for table in db.tables))
    return [record_file for record_files in per_table for record_file in record_files]


async def apply_updates(
    db: Database,
    archive: Archive,
    updates: dict[str, HistoryEntry],
) -> list[str | None]:
    """Apply every update concurrently; returns the affected table name per path."""
    return list(
        await asyncio.gather(
            *(
                unindex_file(db, archive, entry.path)
                if entry.type == "del"
                else read_and_index_file(db, archive, entry.path)
                for entry in updates.values()
            )
        )
    )


async def read_and_index_file(db: Database, archive: Archive, path: str) -> str | None:
    """Read, validate and store the record at *path* in its first matching table."""
    record_url = archive.url + path
    try:
        record = json.loads(await archive.read_file(path))
        table = first_matching_table(db.tables, path)
        if table is None:
            return None
        table.apply(record, record_url=record_url, origin=archive.url)
        return table.name
    except Exception as exc:
        logger.warning("Failed to index %s: %s", record_url, exc)
    return None


async def unindex_file(db: Database, archive: Archive, path: str) -> str | None:
    """Delete the record for *path* from its first matching table."""
    record_url = archive.url + path
    try:
        table = first_matching_table(db.tables, path)
        if table is None:
            return None
        table.remove(record_url)
        return table.name
    except Exception as exc:
        logger.warning("Failed to unindex %s: %s", record_url, exc)
    return None
