"""tablesync CLI entry point."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, NoReturn

import click

from tablesync import __version__
from tablesync.errors import SchemaError

if TYPE_CHECKING:
    from tablesync.archives.base import Archive
    from tablesync.config import ProjectConfig
    from tablesync.database import Database


@click.group()
@click.version_option(version=__version__, prog_name="tablesync")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Minimal output (errors only).")
@click.pass_context
def main(ctx: click.Context, *, verbose: bool, quiet: bool) -> None:
    """tablesync - keep SQLite tables in sync with versioned file archives."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    level = logging.DEBUG if verbose else logging.ERROR if quiet else logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


_project_option = click.option(
    "--project",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Project root (default: current directory).",
)


def _fail(message: str) -> NoReturn:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _open_database(project_root: Path) -> tuple[Database, ProjectConfig]:
    """Load config + schemas and open the database, exiting on schema errors."""
    from tablesync.archives.folder import FolderArchive
    from tablesync.config import load_config
    from tablesync.database import Database
    from tablesync.schema.loader import load_schema_file

    config = load_config(project_root)

    def factory(url: str) -> Archive:
        return FolderArchive.from_url(url, debounce_ms=config.debounce_ms)

    try:
        schemas = load_schema_file(config.schema_path)
        config.db_path.parent.mkdir(parents=True, exist_ok=True)
        db = Database(config.db_path, schemas, archive_factory=factory)
    except SchemaError as exc:
        _fail(str(exc))
    return db, config


async def _open_and_index(db: Database) -> None:
    tasks = await db.open(watch=False)
    await asyncio.gather(*tasks)


@main.command()
@click.argument("folder", type=click.Path(exists=True, file_okay=False, path_type=Path))
@_project_option
def add(*, folder: Path, project: Path | None) -> None:
    """Track FOLDER as an archive and index it."""
    from tablesync.archives.folder import FolderArchive
    from tablesync.infrastructure.db import get_index_meta

    db, config = _open_database(project or Path.cwd())
    archive = FolderArchive(folder, debounce_ms=config.debounce_ms)

    async def _run() -> None:
        await _open_and_index(db)
        await db.add_archive(archive, watch=False)

    try:
        asyncio.run(_run())
        meta = get_index_meta(db.conn, archive.url)
        version = meta.version if meta else 0
    finally:
        db.close()
    click.echo(f"Added {archive.url} (indexed version {version})")


@main.command()
@click.argument("folder", type=click.Path(file_okay=False, path_type=Path))
@_project_option
def remove(*, folder: Path, project: Path | None) -> None:
    """Stop tracking FOLDER and delete its records."""
    from tablesync.archives.folder import FolderArchive
    from tablesync.infrastructure.db import get_index_meta

    db, config = _open_database(project or Path.cwd())
    try:
        archive = FolderArchive(folder, debounce_ms=config.debounce_ms)
        if get_index_meta(db.conn, archive.url) is None:
            _fail(f"archive not tracked: {archive.url}")
        removed = asyncio.run(db.unindex_archive(archive))
    finally:
        db.close()
    click.echo(f"Removed {archive.url} ({removed} record file(s))")


@main.command()
@_project_option
def index(*, project: Path | None) -> None:
    """Bring every tracked archive up to date, then exit."""
    from tablesync.infrastructure.db import list_index_meta

    db, _config = _open_database(project or Path.cwd())
    try:
        asyncio.run(_open_and_index(db))
        metas = list_index_meta(db.conn)
    finally:
        db.close()
    if not metas:
        click.echo("No archives tracked. Use `tablesync add FOLDER` first.")
        return
    for meta in metas:
        click.echo(f"{meta.url}  v{meta.version}")


@main.command()
@_project_option
@click.option("--json", "output_json", is_flag=True, help="Output as JSON.")
def status(*, project: Path | None, output_json: bool) -> None:
    """Show tracked archives and record counts."""
    from tablesync.config import load_config
    from tablesync.infrastructure.db import TABLE_PREFIX, get_meta, list_index_meta, open_db

    config = load_config(project or Path.cwd())
    if not config.db_path.exists():
        _fail("database not found. Run `tablesync add FOLDER` first.")

    conn = open_db(config.db_path)
    try:
        metas = list_index_meta(conn)
        schema_version = get_meta(conn, "schema_version", "unknown")
        table_rows = conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name LIKE ? ORDER BY name",
            (TABLE_PREFIX + "%",),
        ).fetchall()
        counts = {
            row[0][len(TABLE_PREFIX) :]: conn.execute(f'SELECT count(*) FROM "{row[0]}"').fetchone()[0]
            for row in table_rows
        }
    finally:
        conn.close()

    if output_json:
        data = {
            "schema_version": schema_version,
            "archives": [
                {"url": m.url, "version": m.version, "is_writable": m.is_writable} for m in metas
            ],
            "tables": counts,
        }
        click.echo(json.dumps(data, indent=2))
        return

    from rich.console import Console
    from rich.table import Table as RichTable

    console = Console()
    console.print(f"[bold]tablesync[/bold] schema v{schema_version}")

    archives_table = RichTable(title="Archives")
    archives_table.add_column("URL")
    archives_table.add_column("Indexed", justify="right")
    archives_table.add_column("Writable")
    for meta in metas:
        archives_table.add_row(meta.url, str(meta.version), "yes" if meta.is_writable else "no")
    console.print(archives_table)

    records_table = RichTable(title="Tables")
    records_table.add_column("Table")
    records_table.add_column("Records", justify="right")
    for name, count in counts.items():
        records_table.add_row(name, str(count))
    console.print(records_table)


@main.command()
@_project_option
def watch(*, project: Path | None) -> None:
    """Index tracked archives and keep them in sync as files change."""
    from rich.console import Console

    from tablesync.indexer import INDEXES_UPDATED

    console = Console()
    db, _config = _open_database(project or Path.cwd())

    def on_indexed(archive: Archive, version: int) -> None:
        timestamp = datetime.now(tz=timezone.utc).strftime("%H:%M:%S")
        console.print(f"[dim]{timestamp}[/dim] [green]indexed[/green] {archive.url} v{version}")

    async def _run() -> None:
        db.events.on(INDEXES_UPDATED, on_indexed)
        await db.open(watch=True)
        if not db.archives:
            console.print("[red]No archives tracked.[/red]")
            return
        console.print(f"[bold blue]Watching:[/bold blue] {len(db.archives)} archive(s)")
        console.print("[dim]Press Ctrl+C to stop[/dim]")
        await asyncio.Event().wait()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Watch stopped.[/yellow]")
    finally:
        db.close()


@main.command("schema-diff")
@_project_option
@click.option("--from", "from_version", type=int, default=None, help="Base version (default: stored).")
@click.option("--to", "to_version", type=int, default=None, help="Target version (default: latest).")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON.")
def schema_diff(
    *,
    project: Path | None,
    from_version: int | None,
    to_version: int | None,
    output_json: bool,
) -> None:
    """Show structural changes between two schema versions."""
    from tablesync.config import load_config
    from tablesync.infrastructure.db import get_meta, open_db
    from tablesync.schema.differ import diff_versions
    from tablesync.schema.loader import load_schema_file

    config = load_config(project or Path.cwd())
    try:
        schemas = load_schema_file(config.schema_path)
    except SchemaError as exc:
        _fail(str(exc))
        return

    if from_version is None:
        from_version = 0
        if config.db_path.exists():
            conn = open_db(config.db_path)
            try:
                from_version = int(get_meta(conn, "schema_version", "0") or 0)
            finally:
                conn.close()
    if to_version is None:
        to_version = schemas[-1]["version"]

    try:
        result = diff_versions(schemas, from_version, to_version)
    except SchemaError as exc:
        _fail(str(exc))
        return

    if output_json:
        click.echo(json.dumps({"from": from_version, "to": to_version, **result.to_dict()}, indent=2))
        return

    click.echo(f"Schema v{from_version} -> v{to_version}")
    if not result.has_changes:
        click.echo("No changes.")
        return
    for name, _table in result.add:
        click.echo(f"  + {name}")
    for name in result.remove:
        click.echo(f"  - {name}")
    for name, change in result.change:
        if change.index_diff is None:
            continue
        added = ", ".join(change.index_diff.add) or "-"
        removed = ", ".join(change.index_diff.remove) or "-"
        click.echo(f"  ~ {name} (index +[{added}] -[{removed}])")
    if result.tables_to_rebuild:
        click.echo(f"Rebuild: {', '.join(result.tables_to_rebuild)}")


@main.command()
@_project_option
@click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
def reset(*, project: Path | None, yes: bool) -> None:
    """Clear all tables and force a full reindex on the next run."""
    from tablesync.indexer import reset_outdated_indexes

    if not yes:
        click.confirm("Clear every table and reindex all archives from scratch?", abort=True)
    db, _config = _open_database(project or Path.cwd())
    try:
        db.tables_to_rebuild = [table.name for table in db.tables]
        reset_outdated_indexes(db)
    finally:
        db.close()
    click.echo("All tables cleared; archives will be reindexed from version 0.")


if __name__ == "__main__":
    main()
