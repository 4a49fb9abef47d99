"""SQLite database layer: connection management, schema, meta and record tables."""

from __future__ import annotations

import json
import re
import sqlite3
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from pathlib import Path

# Schema version of the bookkeeping tables, bumped on breaking changes
STORE_VERSION = "1"

# Prefix for record tables so user table names never collide with bookkeeping.
TABLE_PREFIX = "tbl_"

_SCHEMA_SQL = """\
-- Per-archive indexing progress
CREATE TABLE IF NOT EXISTS index_meta (
    url         TEXT PRIMARY KEY,
    version     INTEGER NOT NULL DEFAULT 0,
    is_writable INTEGER NOT NULL DEFAULT 0
);

-- Store metadata (schema_version, store_version, ...)
CREATE TABLE IF NOT EXISTS meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")


def open_db(db_path: Path | str) -> sqlite3.Connection:
    """Open (or create) a SQLite database with proper PRAGMAs.

    Sets WAL journal mode (persistent per-file).

    Returns a connection with ``sqlite3.Row`` row factory.
    """
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def create_schema(conn: sqlite3.Connection) -> None:
    """Create the bookkeeping tables if they don't exist.

    Safe to call multiple times (uses IF NOT EXISTS).
    """
    conn.executescript(_SCHEMA_SQL)


def get_meta(conn: sqlite3.Connection, key: str, default: str | None = None) -> str | None:
    """Read a value from the ``meta`` table.

    Returns *default* (``None``) if the key doesn't exist.
    """
    row = conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
    if row is None:
        return default
    return str(row[0])


def set_meta(conn: sqlite3.Connection, key: str, value: str) -> None:
    """Insert or update a key in the ``meta`` table."""
    conn.execute(
        "INSERT INTO meta (key, value) VALUES (?, ?) "
        "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
        (key, value),
    )
    conn.commit()


# ---------------------------------------------------------------------------
# Index meta
# ---------------------------------------------------------------------------


@dataclass
class IndexMeta:
    """Indexing progress of one archive."""

    url: str
    version: int = 0
    is_writable: bool = False


def _row_to_index_meta(row: sqlite3.Row) -> IndexMeta:
    return IndexMeta(url=row["url"], version=int(row["version"]), is_writable=bool(row["is_writable"]))


def get_index_meta(conn: sqlite3.Connection, url: str) -> IndexMeta | None:
    """Return the stored :class:`IndexMeta` for *url*, or ``None``."""
    row = conn.execute(
        "SELECT url, version, is_writable FROM index_meta WHERE url = ?", (url,)
    ).fetchone()
    if row is None:
        return None
    return _row_to_index_meta(row)


def list_index_meta(conn: sqlite3.Connection) -> list[IndexMeta]:
    """Return every stored :class:`IndexMeta`, ordered by URL."""
    rows = conn.execute("SELECT url, version, is_writable FROM index_meta ORDER BY url").fetchall()
    return [_row_to_index_meta(row) for row in rows]


def put_index_meta(conn: sqlite3.Connection, meta: IndexMeta) -> None:
    """Insert or replace the whole :class:`IndexMeta` record."""
    conn.execute(
        "INSERT INTO index_meta (url, version, is_writable) VALUES (?, ?, ?) "
        "ON CONFLICT(url) DO UPDATE SET version = excluded.version, "
        "is_writable = excluded.is_writable",
        (meta.url, meta.version, int(meta.is_writable)),
    )
    conn.commit()


def set_indexed_version(conn: sqlite3.Connection, url: str, version: int) -> None:
    """Record *version* as indexed for *url*, keeping the writability snapshot."""
    conn.execute(
        "INSERT INTO index_meta (url, version) VALUES (?, ?) "
        "ON CONFLICT(url) DO UPDATE SET version = excluded.version",
        (url, version),
    )
    conn.commit()


def delete_index_meta(conn: sqlite3.Connection, url: str) -> None:
    conn.execute("DELETE FROM index_meta WHERE url = ?", (url,))
    conn.commit()


def reset_index_versions(conn: sqlite3.Connection) -> int:
    """Set every stored indexed version back to 0. Returns rows touched."""
    cur = conn.execute("UPDATE index_meta SET version = 0")
    conn.commit()
    return cur.rowcount


# ---------------------------------------------------------------------------
# Record tables
# ---------------------------------------------------------------------------


def index_fields(spec: str) -> list[str]:
    """Split an index specifier into its field list (``a+b`` is compound)."""
    return spec.split("+")


def is_valid_field(name: str) -> bool:
    return bool(_FIELD_RE.match(name))


class TableStore:
    """Record storage for one declared table.

    Records are JSON objects keyed by their ``_url`` field.  Declared indexes
    are SQLite expression indexes over ``json_extract`` of the record body.
    """

    def __init__(self, conn: sqlite3.Connection, name: str) -> None:
        self.conn = conn
        self.name = name
        self.sql_name = TABLE_PREFIX + name

    # -- structure ----------------------------------------------------------

    def create(self) -> None:
        self.conn.execute(
            f'CREATE TABLE IF NOT EXISTS "{self.sql_name}" ('
            "url TEXT PRIMARY KEY, origin TEXT NOT NULL, record TEXT NOT NULL)"
        )
        self.conn.execute(
            f'CREATE INDEX IF NOT EXISTS "idx_{self.sql_name}_origin" ON "{self.sql_name}" (origin)'
        )
        self.conn.commit()

    def drop(self) -> None:
        self.conn.execute(f'DROP TABLE IF EXISTS "{self.sql_name}"')
        self.conn.commit()

    def exists(self) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (self.sql_name,)
        ).fetchone()
        return row is not None

    def _index_name(self, spec: str) -> str:
        return f"{self.sql_name}__{spec.replace('+', '__').replace('.', '_')}"

    def create_index(self, spec: str) -> None:
        """Create the index described by *spec* (``field`` or ``a+b``)."""
        columns = ", ".join(f"json_extract(record, '$.{field}')" for field in index_fields(spec))
        self.conn.execute(
            f'CREATE INDEX IF NOT EXISTS "{self._index_name(spec)}" '
            f'ON "{self.sql_name}" ({columns})'
        )
        self.conn.commit()

    def drop_index(self, spec: str) -> None:
        self.conn.execute(f'DROP INDEX IF EXISTS "{self._index_name(spec)}"')
        self.conn.commit()

    def index_names(self) -> set[str]:
        rows = self.conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'index' AND tbl_name = ?",
            (self.sql_name,),
        ).fetchall()
        return {row[0] for row in rows}

    # -- records ------------------------------------------------------------

    def put(self, record: dict[str, Any]) -> None:
        """Insert or replace *record* under its ``_url`` key."""
        self.conn.execute(
            f'INSERT INTO "{self.sql_name}" (url, origin, record) VALUES (?, ?, ?) '
            "ON CONFLICT(url) DO UPDATE SET origin = excluded.origin, record = excluded.record",
            (record["_url"], record["_origin"], json.dumps(record, ensure_ascii=False)),
        )
        self.conn.commit()

    def get(self, url: str) -> dict[str, Any] | None:
        row = self.conn.execute(
            f'SELECT record FROM "{self.sql_name}" WHERE url = ?', (url,)
        ).fetchone()
        if row is None:
            return None
        record: dict[str, Any] = json.loads(row[0])
        return record

    def delete(self, url: str) -> None:
        """Delete the record keyed by *url*. Missing records are ignored."""
        self.conn.execute(f'DELETE FROM "{self.sql_name}" WHERE url = ?', (url,))
        self.conn.commit()

    def delete_origin(self, origin: str) -> int:
        """Delete every record contributed by *origin*. Returns rows deleted."""
        cur = self.conn.execute(f'DELETE FROM "{self.sql_name}" WHERE origin = ?', (origin,))
        self.conn.commit()
        return cur.rowcount

    def clear(self) -> None:
        self.conn.execute(f'DELETE FROM "{self.sql_name}"')
        self.conn.commit()

    def count(self) -> int:
        return int(self.conn.execute(f'SELECT count(*) FROM "{self.sql_name}"').fetchone()[0])

    def records(self, *, origin: str | None = None) -> Iterator[dict[str, Any]]:
        """Iterate stored records in key order, optionally for one origin."""
        if origin is None:
            rows = self.conn.execute(f'SELECT record FROM "{self.sql_name}" ORDER BY url')
        else:
            rows = self.conn.execute(
                f'SELECT record FROM "{self.sql_name}" WHERE origin = ? ORDER BY url', (origin,)
            )
        for row in rows.fetchall():
            yield json.loads(row[0])

    def each(self, callback: Callable[[dict[str, Any]], object]) -> None:
        for record in self.records():
            callback(record)

    def find(self, field: str, value: object) -> list[dict[str, Any]]:
        """Return records whose *field* equals *value*."""
        if not is_valid_field(field):
            msg = f"Invalid field name: {field!r}"
            raise ValueError(msg)
        rows = self.conn.execute(
            f'SELECT record FROM "{self.sql_name}" '
            f"WHERE json_extract(record, '$.{field}') = ? ORDER BY url",
            (value,),
        ).fetchall()
        return [json.loads(row[0]) for row in rows]
