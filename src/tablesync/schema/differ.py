"""Schema validation and structural delta between two schema versions."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from tablesync.errors import SchemaError
from tablesync.infrastructure.db import TableStore, index_fields, is_valid_field

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Iterable, Mapping

logger = logging.getLogger(__name__)

Schema = dict[str, Any]

_TABLE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class IndexDiff:
    """Index specifiers to create and to drop on one table."""

    add: tuple[str, ...] = ()
    remove: tuple[str, ...] = ()


@dataclass(frozen=True)
class TableChange:
    """Structural change of a table present in both schemas."""

    index_diff: IndexDiff | None
    needs_rebuild: bool


@dataclass
class SchemaDiff:
    """Result of :func:`diff`.

    - ``add``: ``(name, table_def)`` pairs for new tables
    - ``change``: ``(name, TableChange)`` pairs for tables whose indexes changed
    - ``remove``: names of dropped tables
    - ``tables_to_rebuild``: tables that must be cleared and re-ingested
    """

    add: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    change: list[tuple[str, TableChange]] = field(default_factory=list)
    remove: list[str] = field(default_factory=list)
    tables_to_rebuild: list[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.add or self.change or self.remove or self.tables_to_rebuild)

    def to_dict(self) -> dict[str, Any]:
        return {
            "add": [name for name, _table in self.add],
            "change": [
                {
                    "table": name,
                    "index_add": list(change.index_diff.add) if change.index_diff else [],
                    "index_remove": list(change.index_diff.remove) if change.index_diff else [],
                }
                for name, change in self.change
            ],
            "remove": list(self.remove),
            "tables_to_rebuild": list(self.tables_to_rebuild),
        }


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def table_names(schema: Mapping[str, Any] | None) -> list[str]:
    """All keys of *schema* except ``version``, in declaration order."""
    if not schema:
        return []
    return [key for key in schema if key != "version"]


def _is_list_of_strings(value: object) -> bool:
    return isinstance(value, list) and all(isinstance(v, str) for v in value)


def _as_list(value: object) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)  # type: ignore[call-overload]


def validate_and_sanitize(schema: object) -> Schema:
    """Check a schema declaration and return a normalized copy.

    ``index`` and ``path`` are normalized to lists of strings.

    Raises:
        SchemaError: If the schema is not a mapping, its ``version`` is not a positive
            integer, or a table declaration is malformed.
    """
    if not isinstance(schema, dict):
        msg = f"Must pass a schema mapping, got {schema!r}"
        raise SchemaError(msg)
    version = schema.get("version")
    if isinstance(version, bool) or not isinstance(version, int) or version <= 0:
        msg = f"The 'version' field is required and must be a positive integer, got {version!r}"
        raise SchemaError(msg)

    sanitized: Schema = {"version": version}
    for name in table_names(schema):
        table = schema[name]
        if table is None:
            sanitized[name] = None  # table removed in this version
            continue
        if not _TABLE_NAME_RE.match(name):
            msg = f"Invalid table name {name!r}"
            raise SchemaError(msg)
        if not isinstance(table, dict):
            msg = f"Table {name!r} must be a mapping or null, got {table!r}"
            raise SchemaError(msg)

        index = table.get("index")
        if index is not None and not isinstance(index, str) and not _is_list_of_strings(index):
            msg = f"The 'index' field of table {name!r} must be a string or a list of strings, got {index!r}"
            raise SchemaError(msg)
        for spec in _as_list(index):
            if not all(is_valid_field(f) for f in index_fields(spec)):
                msg = f"Malformed index specifier {spec!r} on table {name!r}"
                raise SchemaError(msg)

        path = table.get("path")
        if path is not None and not isinstance(path, str) and not _is_list_of_strings(path):
            msg = f"The 'path' field of table {name!r} must be a string or a list of strings, got {path!r}"
            raise SchemaError(msg)

        validator = table.get("validator")
        if validator is not None and not callable(validator):
            msg = f"The 'validator' of table {name!r} must be callable, got {validator!r}"
            raise SchemaError(msg)

        sanitized[name] = {
            **table,
            "index": _as_list(index),
            "path": _as_list(path),
            "validator": validator,
        }
    return sanitized


def sort_schemas(schemas: Iterable[Mapping[str, Any]]) -> list[Schema]:
    """Validate a schema history and return it sorted by version."""
    sanitized = [validate_and_sanitize(schema) for schema in schemas]
    if not sanitized:
        msg = "At least one schema version is required"
        raise SchemaError(msg)
    versions = [schema["version"] for schema in sanitized]
    if len(set(versions)) != len(versions):
        msg = f"Duplicate schema versions: {sorted(versions)}"
        raise SchemaError(msg)
    return sorted(sanitized, key=lambda schema: schema["version"])


def merge_schemas(base: Mapping[str, Any] | None, delta: Mapping[str, Any]) -> Schema:
    """Fold schema *delta* over the effective schema *base*.

    Tables omitted from *delta* carry over unchanged; ``None`` drops a table.
    """
    merged: Schema = {name: base[name] for name in table_names(base)}
    for name in table_names(delta):
        if delta[name] is None:
            merged.pop(name, None)
        else:
            merged[name] = delta[name]
    merged["version"] = delta["version"]
    return merged


def effective_schema(schemas: Iterable[Mapping[str, Any]], version: int) -> Schema | None:
    """Fold every schema up to and including *version*; ``None`` before the first."""
    effective: Schema | None = None
    for schema in schemas:
        if schema["version"] > version:
            break
        effective = merge_schemas(effective, schema)
    return effective


# ---------------------------------------------------------------------------
# Diff
# ---------------------------------------------------------------------------


def _diff_indexes(old: list[str], new: list[str]) -> IndexDiff | None:
    add = tuple(spec for spec in new if spec not in old)
    remove = tuple(spec for spec in old if spec not in new)
    if not add and not remove:
        return None
    return IndexDiff(add=add, remove=remove)


def diff_tables(old_def: Mapping[str, Any], new_def: Mapping[str, Any]) -> TableChange:
    """Compare two declarations of the same table."""
    new_path = new_def.get("path") or []
    old_path = old_def.get("path") or []
    return TableChange(
        index_diff=_diff_indexes(list(old_def.get("index") or []), list(new_def.get("index") or [])),
        # existing records were selected by the old predicate
        needs_rebuild=bool(new_path) and list(old_path) != list(new_path),
    )


def diff(old_schema: Mapping[str, Any] | None, new_schema: Mapping[str, Any]) -> SchemaDiff:
    """Compute the changes that turn a store built for *old_schema* into *new_schema*.

    A ``None`` table entry on either side counts as absent.
    """
    if old_schema is None:
        logger.debug("creating diff for first version")
    else:
        logger.debug("diffing %s against %s", old_schema.get("version"), new_schema.get("version"))

    result = SchemaDiff()
    all_names = dict.fromkeys(table_names(old_schema) + table_names(new_schema))
    for name in all_names:
        old_def = old_schema.get(name) if old_schema else None
        new_def = new_schema.get(name)
        if old_def is not None and new_def is None:
            result.remove.append(name)
        elif old_def is None and new_def is not None:
            result.add.append((name, new_def))
            result.tables_to_rebuild.append(name)
        elif old_def is not None and new_def is not None:
            change = diff_tables(old_def, new_def)
            if change.index_diff is not None:
                result.change.append((name, change))
            if change.needs_rebuild:
                result.tables_to_rebuild.append(name)

    logger.debug(
        "diff result: add=%s change=%s remove=%s rebuild=%s",
        [name for name, _ in result.add],
        [name for name, _ in result.change],
        result.remove,
        result.tables_to_rebuild,
    )
    return result


def diff_versions(
    schemas: Iterable[Mapping[str, Any]],
    from_version: int,
    to_version: int,
) -> SchemaDiff:
    """Diff the effective schemas at two versions of a sorted schema history."""
    schemas = list(schemas)
    new_schema = effective_schema(schemas, to_version)
    if new_schema is None:
        msg = f"No schema declared at or below version {to_version}"
        raise SchemaError(msg)
    return diff(effective_schema(schemas, from_version), new_schema)


def apply_diff(conn: sqlite3.Connection, schema_diff: SchemaDiff) -> None:
    """Create, alter and drop record tables as described by *schema_diff*."""
    for name in schema_diff.remove:
        TableStore(conn, name).drop()
    for name, table_def in schema_diff.add:
        store = TableStore(conn, name)
        store.create()
        for spec in table_def.get("index") or []:
            store.create_index(spec)
    for name, change in schema_diff.change:
        if change.index_diff is None:
            continue
        store = TableStore(conn, name)
        for spec in change.index_diff.remove:
            store.drop_index(spec)
        for spec in change.index_diff.add:
            store.create_index(spec)
