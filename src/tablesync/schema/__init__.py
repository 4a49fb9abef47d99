"""Schema domain: declaration validation, diffing and table dispatch."""

from tablesync.schema.differ import (
    IndexDiff,
    SchemaDiff,
    TableChange,
    apply_diff,
    diff,
    diff_versions,
    effective_schema,
    merge_schemas,
    sort_schemas,
    validate_and_sanitize,
)
from tablesync.schema.loader import load_schema_file, parse_schemas
from tablesync.schema.tables import RecordFile, Table, first_matching_table

__all__ = [
    "IndexDiff",
    "RecordFile",
    "SchemaDiff",
    "Table",
    "TableChange",
    "apply_diff",
    "diff",
    "diff_versions",
    "effective_schema",
    "first_matching_table",
    "load_schema_file",
    "merge_schemas",
    "parse_schemas",
    "sort_schemas",
    "validate_and_sanitize",
]
