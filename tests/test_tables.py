"""Tests for tablesync.schema.tables: path dispatch and record validation."""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING, Any

import pytest

from tablesync.archives.memory import MemoryArchive
from tablesync.errors import RecordValidationError
from tablesync.infrastructure.db import TableStore, create_schema, open_db
from tablesync.schema.tables import Table, first_matching_table, matches_any, path_patterns

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture()
def conn(tmp_path: Path) -> Iterator[sqlite3.Connection]:
    connection = open_db(tmp_path / "test.db")
    create_schema(connection)
    yield connection
    connection.close()


def _table(conn: sqlite3.Connection, name: str, **definition: Any) -> Table:
    store = TableStore(conn, name)
    store.create()
    return Table(name, definition, store)


class TestMatches:
    def test_glob(self, conn: sqlite3.Connection) -> None:
        table = _table(conn, "posts", path=["/posts/*.json"])
        assert table.matches("/posts/1.json")
        assert not table.matches("/posts/1.txt")
        assert not table.matches("/profile.json")

    def test_case_sensitive(self, conn: sqlite3.Connection) -> None:
        table = _table(conn, "posts", path=["/posts/*.json"])
        assert not table.matches("/Posts/1.json")

    def test_no_path_matches_nothing(self, conn: sqlite3.Connection) -> None:
        assert not _table(conn, "posts").matches("/posts/1.json")

    def test_matches_any(self) -> None:
        assert matches_any(["/a/*", "/b.json"], "/b.json")
        assert not matches_any([], "/b.json")


class TestDispatch:
    def test_first_match_wins(self, conn: sqlite3.Connection) -> None:
        first = _table(conn, "first", path=["/items/*.json"])
        second = _table(conn, "second", path=["/items/*"])
        assert first_matching_table([first, second], "/items/a.json") is first
        assert first_matching_table([first, second], "/items/a.txt") is second
        assert first_matching_table([first, second], "/other") is None

    def test_path_patterns_union(self, conn: sqlite3.Connection) -> None:
        a = _table(conn, "a", path=["/x/*", "/y"])
        b = _table(conn, "b", path=["/y", "/z"])
        assert path_patterns([a, b]) == ["/x/*", "/y", "/z"]


class TestValidate:
    def test_no_validator_accepts_objects(self, conn: sqlite3.Connection) -> None:
        table = _table(conn, "posts")
        assert table.validate({"a": 1}) == {"a": 1}

    def test_rejects_non_object(self, conn: sqlite3.Connection) -> None:
        with pytest.raises(RecordValidationError, match="must be an object"):
            _table(conn, "posts").validate([1, 2])

    def test_validator_can_transform(self, conn: sqlite3.Connection) -> None:
        table = _table(conn, "posts", validator=lambda r: {**r, "checked": True})
        assert table.validate({"a": 1}) == {"a": 1, "checked": True}

    def test_validator_returning_none_keeps_record(self, conn: sqlite3.Connection) -> None:
        table = _table(conn, "posts", validator=lambda r: None)
        assert table.validate({"a": 1}) == {"a": 1}

    def test_validator_rejection_propagates(self, conn: sqlite3.Connection) -> None:
        def require_text(record: dict[str, Any]) -> None:
            if "text" not in record:
                raise ValueError("text is required")

        table = _table(conn, "posts", validator=require_text)
        with pytest.raises(ValueError, match="text is required"):
            table.validate({})


class TestApply:
    def test_attaches_provenance(self, conn: sqlite3.Connection) -> None:
        table = _table(conn, "posts")
        stored = table.apply({"text": "hi"}, record_url="mem://a/posts/1.json", origin="mem://a")
        assert stored == {"text": "hi", "_url": "mem://a/posts/1.json", "_origin": "mem://a"}
        assert table.store.get("mem://a/posts/1.json") == stored

    def test_remove(self, conn: sqlite3.Connection) -> None:
        table = _table(conn, "posts")
        table.apply({"text": "hi"}, record_url="mem://a/1", origin="mem://a")
        table.remove("mem://a/1")
        assert table.store.count() == 0

    @pytest.mark.asyncio
    async def test_list_record_files(self, conn: sqlite3.Connection) -> None:
        archive = MemoryArchive("mem://a")
        archive.write_file("/posts/2.json", "{}")
        archive.write_file("/posts/1.json", "{}")
        archive.write_file("/profile.json", "{}")
        table = _table(conn, "posts", path=["/posts/*.json"])

        record_files = await table.list_record_files(archive)
        assert [f.record_url for f in record_files] == ["mem://a/posts/1.json", "mem://a/posts/2.json"]
        assert all(f.table is table for f in record_files)
