"""Shared test fixtures for tablesync."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import pytest

from tablesync.archives.memory import MemoryArchive
from tablesync.database import Database

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


def _post(text: str, created_at: int = 1) -> str:
    """Serialized content of a ``posts`` record file."""
    return json.dumps({"text": text, "createdAt": created_at})


@pytest.fixture()
def schemas() -> list[dict[str, Any]]:
    """A single-version schema with a ``posts`` and a ``profile`` table."""
    return [
        {
            "version": 1,
            "posts": {"path": "/posts/*.json", "index": ["createdAt"]},
            "profile": {"path": "/profile.json"},
        },
    ]


@pytest.fixture()
def db(tmp_path: Path, schemas: list[dict[str, Any]]) -> Iterator[Database]:
    database = Database(tmp_path / "tablesync.db", schemas)
    yield database
    database.close()


@pytest.fixture()
def archive() -> MemoryArchive:
    return MemoryArchive()


@pytest.fixture()
def tmp_project(tmp_path: Path) -> Path:
    """Create a minimal project: schema file plus a folder of records."""
    config_dir = tmp_path / ".tablesync"
    config_dir.mkdir()
    (config_dir / "schema.yml").write_text(
        "schemas:\n"
        "  - version: 1\n"
        "    posts:\n"
        "      path: /posts/*.json\n"
        "      index: createdAt\n"
        "    profile:\n"
        "      path: /profile.json\n"
    )
    data = tmp_path / "data"
    (data / "posts").mkdir(parents=True)
    (data / "posts" / "1.json").write_text(_post("first", 1))
    (data / "posts" / "2.json").write_text(_post("second", 2))
    (data / "profile.json").write_text(json.dumps({"name": "alice"}))
    return tmp_path
