"""Load schema declarations from YAML."""

from __future__ import annotations

import importlib
from typing import TYPE_CHECKING, Any

import yaml

from tablesync.errors import SchemaError
from tablesync.schema.differ import Schema, sort_schemas, table_names

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path


def resolve_validator(ref: str) -> Callable[[Any], Any]:
    """Import a validator from a ``package.module:function`` reference."""
    module_name, sep, attr = ref.partition(":")
    if not sep or not module_name or not attr:
        msg = f"Validator reference must look like 'module:function', got {ref!r}"
        raise SchemaError(msg)
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        msg = f"Cannot import validator module {module_name!r}: {exc}"
        raise SchemaError(msg) from exc
    target: Any = module
    for part in attr.split("."):
        target = getattr(target, part, None)
        if target is None:
            msg = f"Validator {ref!r} not found"
            raise SchemaError(msg)
    if not callable(target):
        msg = f"Validator {ref!r} is not callable"
        raise SchemaError(msg)
    return target  # type: ignore[no-any-return]


def parse_schemas(data: object) -> list[Schema]:
    """Turn parsed YAML (``{"schemas": [...]}``) into validated schemas.

    Returns schemas sorted by version.
    """
    if not isinstance(data, dict) or not isinstance(data.get("schemas"), list):
        msg = "Schema file must contain a 'schemas' list"
        raise SchemaError(msg)

    raw_schemas: list[object] = []
    for raw in data["schemas"]:
        if isinstance(raw, dict):
            raw = dict(raw)
            for name in table_names(raw):
                table = raw[name]
                if isinstance(table, dict) and isinstance(table.get("validator"), str):
                    raw[name] = {**table, "validator": resolve_validator(table["validator"])}
        raw_schemas.append(raw)
    return sort_schemas(raw_schemas)  # type: ignore[arg-type]


def load_schema_file(path: Path) -> list[Schema]:
    """Read and validate the schema YAML at *path*."""
    if not path.is_file():
        msg = f"Schema file not found: {path}"
        raise SchemaError(msg)
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    return parse_schemas(data)
