"""Project configuration: ``.tablesync/config.yml``."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import yaml

from tablesync.archives.folder import DEFAULT_DEBOUNCE_MS

if TYPE_CHECKING:
    from pathlib import Path

CONFIG_DIR = ".tablesync"
CONFIG_FILE = "config.yml"
_DEFAULT_DB = "tablesync.db"
_DEFAULT_SCHEMA = "schema.yml"


@dataclass(frozen=True)
class ProjectConfig:
    """Resolved settings of one tablesync project."""

    project_root: Path
    db_path: Path
    schema_path: Path
    debounce_ms: int = DEFAULT_DEBOUNCE_MS


def load_config(project_root: Path) -> ProjectConfig:
    """Resolve settings from ``.tablesync/config.yml`` or use defaults.

    Relative ``db_path`` / ``schemas`` values are resolved against
    *project_root*.  Missing or malformed keys fall back to
    ``.tablesync/tablesync.db`` and ``.tablesync/schema.yml``.
    """
    config_dir = project_root / CONFIG_DIR
    config_path = config_dir / CONFIG_FILE
    config: dict[str, object] = {}
    if config_path.exists():
        loaded = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        if isinstance(loaded, dict):
            config = loaded

    db_path = config.get("db_path")
    schema_path = config.get("schemas")
    debounce = config.get("debounce_ms")
    return ProjectConfig(
        project_root=project_root,
        db_path=project_root / db_path if isinstance(db_path, str) and db_path else config_dir / _DEFAULT_DB,
        schema_path=(
            project_root / schema_path
            if isinstance(schema_path, str) and schema_path
            else config_dir / _DEFAULT_SCHEMA
        ),
        debounce_ms=debounce if isinstance(debounce, int) and debounce >= 0 else DEFAULT_DEBOUNCE_MS,
    )
