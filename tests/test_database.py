"""Tests for tablesync.database: schema upgrades, rebuild flags and lifecycle."""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any

import pytest

from tablesync import __version__
from tablesync.archives.memory import MemoryArchive
from tablesync.database import Database
from tablesync.errors import SchemaError
from tablesync.infrastructure.db import STORE_VERSION, TableStore, get_meta

if TYPE_CHECKING:
    from pathlib import Path

V1: dict[str, Any] = {
    "version": 1,
    "posts": {"path": "/microblog/*.json"},
    "profile": {"path": "/profile.json"},
}


def _post(text: str) -> str:
    return json.dumps({"text": text, "createdAt": 1})


class TestConstruction:
    def test_creates_tables_and_meta(self, db: Database) -> None:
        assert [table.name for table in db.tables] == ["posts", "profile"]
        assert TableStore(db.conn, "posts").exists()
        assert "tbl_posts__createdAt" in TableStore(db.conn, "posts").index_names()
        assert get_meta(db.conn, "schema_version") == "1"
        assert get_meta(db.conn, "store_version") == STORE_VERSION
        assert get_meta(db.conn, "tablesync_version") == __version__

    def test_fresh_store_flags_every_table(self, db: Database) -> None:
        assert db.tables_to_rebuild == ["posts", "profile"]

    def test_unsorted_schemas_accepted(self, tmp_path: Path) -> None:
        db = Database(tmp_path / "t.db", [{"version": 2, "likes": {}}, {"version": 1, "posts": {}}])
        try:
            assert db.version == 2
            assert [table.name for table in db.tables] == ["posts", "likes"]
        finally:
            db.close()

    def test_empty_history_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(SchemaError, match="At least one schema version"):
            Database(tmp_path / "t.db", [])

    def test_duplicate_versions_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(SchemaError, match="Duplicate"):
            Database(tmp_path / "t.db", [{"version": 1}, {"version": 1}])

    def test_malformed_schema_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(SchemaError):
            Database(tmp_path / "t.db", [{"version": "one"}])

    def test_newer_store_rejected(self, tmp_path: Path) -> None:
        Database(tmp_path / "t.db", [V1, {"version": 2, "likes": {}}]).close()
        with pytest.raises(SchemaError, match="newer"):
            Database(tmp_path / "t.db", [V1])

    def test_table_lookup(self, db: Database) -> None:
        assert db.table("posts").name == "posts"
        with pytest.raises(KeyError):
            db.table("nope")

    def test_path_patterns(self, db: Database) -> None:
        assert db.table_path_patterns == ["/posts/*.json", "/profile.json"]


class TestUpgrade:
    def test_reopen_same_version_flags_nothing(self, tmp_path: Path) -> None:
        Database(tmp_path / "t.db", [V1]).close()
        db = Database(tmp_path / "t.db", [V1])
        try:
            assert db.tables_to_rebuild == []
        finally:
            db.close()

    def test_index_change_applied_without_rebuild(self, tmp_path: Path) -> None:
        Database(tmp_path / "t.db", [V1]).close()
        v2 = {"version": 2, "posts": {"path": "/microblog/*.json", "index": ["createdAt"]}}
        db = Database(tmp_path / "t.db", [V1, v2])
        try:
            assert db.tables_to_rebuild == []
            assert "tbl_posts__createdAt" in db.table("posts").store.index_names()
        finally:
            db.close()

    def test_removed_table_dropped(self, tmp_path: Path) -> None:
        Database(tmp_path / "t.db", [V1]).close()
        db = Database(tmp_path / "t.db", [V1, {"version": 2, "profile": None}])
        try:
            assert [table.name for table in db.tables] == ["posts"]
            assert not TableStore(db.conn, "profile").exists()
        finally:
            db.close()

    def test_added_then_removed_not_flagged(self, tmp_path: Path) -> None:
        Database(tmp_path / "t.db", [V1]).close()
        db = Database(
            tmp_path / "t.db",
            [V1, {"version": 2, "likes": {"path": "/likes/*"}}, {"version": 3, "likes": None}],
        )
        try:
            assert db.tables_to_rebuild == []
            assert not TableStore(db.conn, "likes").exists()
        finally:
            db.close()

    @pytest.mark.asyncio
    async def test_path_change_rebuilds_table(self, tmp_path: Path) -> None:
        archive = MemoryArchive()
        archive.write_file("/microblog/1.json", _post("old location"))
        archive.write_file("/posts/1.json", _post("new location"))
        archive.write_file("/profile.json", json.dumps({"name": "alice"}))

        first = Database(tmp_path / "t.db", [V1])
        await first.add_archive(archive, watch=False)
        assert [r["text"] for r in first.table("posts").store.records()] == ["old location"]
        first.close()

        v2 = {"version": 2, "posts": {"path": "/posts/*.json"}}
        second = Database(tmp_path / "t.db", [V1, v2], archive_factory=lambda url: archive)
        try:
            assert second.tables_to_rebuild == ["posts"]
            tasks = await second.open(watch=False)
            await asyncio.gather(*tasks)
            assert second.tables_to_rebuild == []
            assert [r["text"] for r in second.table("posts").store.records()] == ["new location"]
            assert second.table("profile").store.count() == 1
        finally:
            second.close()


class TestLifecycle:
    def test_close_is_idempotent(self, db: Database) -> None:
        db.close()
        db.close()
        assert not db.is_open
        assert not db.is_usable()

    def test_usable_when_open(self, db: Database) -> None:
        assert db.is_open
        assert db.is_usable()

    def test_repr(self, db: Database) -> None:
        assert "version=1" in repr(db)
