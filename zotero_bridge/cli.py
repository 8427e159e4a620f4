"""
CLI interface for zotero-bridge.

Usage:
    zotero-bridge serve                     # MCP stdio server
    zotero-bridge info
    zotero-bridge search "attention"
    zotero-bridge duplicates --field doi
    zotero-bridge orphans --delete
    zotero-bridge merge 12 34 56
"""

import json
import os
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .config import BridgeConfig, config_file_path, load_config, save_config
from .database import ZoteroDatabase
from .errors import BridgeError
from .logging_config import configure_quiet_mode, enable_debug_mode
from .maintenance import delete_orphan_attachments, merge_items
from .similarity import DUPLICATE_FIELDS, find_duplicates
from .types import to_dict

# Configure quiet mode by default (suppress verbose library output)
# Set ZOTERO_BRIDGE_VERBOSE=1 to enable debug mode via environment
if os.environ.get("ZOTERO_BRIDGE_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"zotero-bridge {version('zotero-bridge')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_db_override: Optional[Path] = None
_readonly_override: Optional[bool] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _db_callback(value: Optional[Path]):
    global _db_override
    _db_override = value


def _readonly_callback(value: bool):
    global _readonly_override
    _readonly_override = True if value else None


app = typer.Typer(
    name="zotero-bridge",
    help="Safely read and modify a local Zotero database.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    db: Annotated[Optional[Path], typer.Option(
        "--db",
        envvar="ZOTERO_DB_PATH",
        help="Path to zotero.sqlite",
        callback=_db_callback,
        is_eager=True,
    )] = None,
    readonly: Annotated[bool, typer.Option(
        "--readonly",
        help="Never write to the database",
        callback=_readonly_callback,
        is_eager=True,
    )] = False,
):
    """Safely read and modify a local Zotero database."""


def _open_db(readonly: Optional[bool] = None) -> ZoteroDatabase:
    """Open a session using global options, exiting cleanly on failure."""
    if readonly is None:
        readonly = _readonly_override
    db = ZoteroDatabase(db_path=_db_override, readonly=readonly)
    try:
        db.connect()
    except BridgeError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    return db


def _emit(data, lines: list[str]) -> None:
    if _json_output:
        typer.echo(json.dumps(to_dict(data), indent=2, ensure_ascii=False, default=str))
    elif lines:
        typer.echo("\n".join(lines))


@app.command()
def serve():
    """Run the MCP stdio server."""
    from .mcp import main as mcp_main
    mcp_main(db_path=_db_override, readonly=_readonly_override)


@app.command()
def info():
    """Show database location, mode and row counts."""
    with _open_db() as db:
        data = db.get_database_info()
    _emit(data, [f"{k}: {v}" for k, v in data.items()])


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Text contained in the title")],
    limit: Annotated[int, typer.Option("--limit", "-n", help="Max results")] = 20,
):
    """Search items by title."""
    with _open_db(readonly=True) as db:
        results = [db.get_item_summary(item.id) for item in db.search_items(query, limit)]
    lines = [
        f"{s.id:>6}  {s.key}  {s.title or '(untitled)'}"
        + (f"  [{'; '.join(s.creators)}]" if s.creators else "")
        for s in results
    ]
    _emit(results, lines or ["No items found."])


@app.command()
def duplicates(
    field: Annotated[str, typer.Option(
        "--field", "-f",
        help=f"Field to compare: {', '.join(DUPLICATE_FIELDS)}",
    )] = "title",
):
    """List groups of items sharing a title, DOI or ISBN."""
    with _open_db(readonly=True) as db:
        try:
            groups = find_duplicates(db, field)
        except ValueError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1)
    lines = [f"{g.count}x {g.value}: {', '.join(str(i) for i in g.item_ids)}" for g in groups]
    _emit(groups, lines or ["No duplicates found."])


@app.command()
def orphans(
    delete: Annotated[bool, typer.Option(
        "--delete",
        help="Delete the orphan attachment items (default: list only)",
    )] = False,
):
    """Find attachments whose stored file is missing."""
    with _open_db(readonly=None if delete else True) as db:
        result = delete_orphan_attachments(db, dry_run=not delete)
    lines = [f"{o.attachment_id:>6}  {o.problem}  {o.path}" for o in result.orphans]
    if delete:
        lines.append(f"Deleted {result.deleted} of {len(result.orphans)} orphans")
        lines.extend(f"  failed {e.item_id}: {e.message}" for e in result.errors)
    elif not lines:
        lines.append("No orphan attachments.")
    _emit(result, lines)
    if result.errors:
        raise typer.Exit(1)


@app.command()
def merge(
    target: Annotated[int, typer.Argument(help="Item that receives notes and tags")],
    sources: Annotated[list[int], typer.Argument(help="Items whose notes and tags are copied")],
):
    """Copy notes and tags from SOURCES onto TARGET. Sources are kept."""
    with _open_db() as db:
        result = merge_items(db, target, sources)
    lines = [
        f"Merged into {result.target_item_id}: "
        f"{result.transferred.notes} notes, {result.transferred.tags} tags"
    ]
    lines.extend(f"  {e.item_id} ({e.stage}): {e.message}" for e in result.errors)
    _emit(result, lines)
    if not result.success:
        raise typer.Exit(1)


@app.command("config-init")
def config_init(
    force: Annotated[bool, typer.Option("--force", help="Overwrite an existing config file")] = False,
):
    """Write a config file with the detected database path."""
    path = config_file_path()
    if path.exists() and not force:
        typer.echo(f"Config already exists: {path} (use --force to overwrite)", err=True)
        raise typer.Exit(1)
    config = load_config() if path.exists() else BridgeConfig()
    if _db_override is not None:
        config.db_path = _db_override.expanduser()
    if _readonly_override:
        config.readonly = True
    written = save_config(config, path)
    _emit({"config": str(written), "db_path": str(config.db_path)}, [
        f"Wrote {written}",
        f"Database: {config.db_path}" + ("" if config.db_path.exists() else " (not found)"),
    ])


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="zotero-bridge CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
