"""
CLI interface for the reconciliation and annotation engine.

Usage:
    marginalia resolve records.json
    marginalia annotate post.html --document-id 30023:abc:my-post --text "a phrase"
    marginalia highlight post.html --document-id 30023:abc:my-post
    marginalia cache stats
"""

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any, Optional

import typer
from typing_extensions import Annotated

from .anchors import Selection
from .errors import log_exception
from .logging_config import configure_quiet_mode, enable_debug_mode
from .session import Session
from .types import Record

# Configure quiet mode by default (suppress verbose library output)
# Set MARGINALIA_VERBOSE=1 to enable debug mode via environment
if os.environ.get("MARGINALIA_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"marginalia {version('marginalia')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _store_callback(value: Optional[Path]):
    global _store_override
    if value is not None:
        _store_override = value


app = typer.Typer(
    name="marginalia",
    help="Reconcile revised documents, cache lookups, and anchor highlights.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v", help="Enable debug-level logging to stderr",
        callback=_verbose_callback, is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j", help="Output as JSON",
        callback=_json_callback, is_eager=True,
    )] = False,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s", envvar="MARGINALIA_STORE_PATH",
        help="Path to the store directory",
        callback=_store_callback,
    )] = None,
    version: Annotated[Optional[bool], typer.Option(
        "--version", help="Show version and exit",
        callback=_version_callback, is_eager=True,
    )] = None,
):
    """Reconciliation and annotation engine."""


def _get_session() -> Session:
    """Open a session for the selected store, with clean error reporting."""
    try:
        return Session(_store_override)
    except Exception as e:
        log_path = log_exception(e, "open store")
        typer.echo(f"Error: cannot open store: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise typer.Exit(1)


def _read_json(source: str) -> Any:
    if source == "-":
        return json.loads(sys.stdin.read())
    path = Path(source)
    if not path.exists():
        typer.echo(f"Error: file not found: {source}", err=True)
        raise typer.Exit(1)
    return json.loads(path.read_text(encoding="utf-8"))


def _read_records(source: str) -> list[Any]:
    try:
        data = _read_json(source)
    except json.JSONDecodeError as e:
        typer.echo(f"Error: {source} is not valid JSON: {e}", err=True)
        raise typer.Exit(1)
    if isinstance(data, dict):
        data = data.get("records", [])
    if not isinstance(data, list):
        typer.echo("Error: expected a JSON array of records", err=True)
        raise typer.Exit(1)
    return data


def _read_text(source: str) -> str:
    if source == "-":
        return sys.stdin.read()
    path = Path(source)
    if not path.exists():
        typer.echo(f"Error: file not found: {source}", err=True)
        raise typer.Exit(1)
    return path.read_text(encoding="utf-8")


def _format_record(record: Record) -> str:
    title = record.payload.get("title") or ""
    key = record.logical_key or "-"
    line = f"{record.id[:12]}  {record.kind:<10} {key}  {record.created_at}"
    return f"{line}  {title}" if title else line


# -----------------------------------------------------------------------------
# Reconciliation
# -----------------------------------------------------------------------------


@app.command()
def resolve(
    file: Annotated[str, typer.Argument(help="JSON file of records ('-' for stdin)")],
    kind: Annotated[Optional[list[str]], typer.Option(
        "--kind", "-k", help="Only consider these content kinds",
    )] = None,
    cache: Annotated[bool, typer.Option(
        "--cache/--no-cache", help="Store current revisions in the local cache",
    )] = True,
):
    """
    Resolve records to the current version of each document.

    Tombstoned records are dropped; superseded revisions are hidden.
    """
    records = _read_records(file)
    if cache:
        with _get_session() as session:
            resolution = session.reconcile(records)
            if kind:
                resolution = session.resolver.resolve(records, kinds=kind)
    else:
        from .versions import VersionResolver
        resolution = VersionResolver().resolve(records, kinds=kind)

    if _get_json_output():
        typer.echo(json.dumps([r.to_dict() for r in resolution.current], indent=2))
    else:
        for record in resolution.current:
            typer.echo(_format_record(record))
    typer.echo(
        f"{len(resolution.current)} current, {resolution.superseded} superseded, "
        f"{resolution.tombstoned} tombstoned, {resolution.malformed} malformed",
        err=True,
    )


@app.command()
def history(
    file: Annotated[str, typer.Argument(help="JSON file of records ('-' for stdin)")],
    logical_key: Annotated[str, typer.Argument(help="Logical key of the document")],
):
    """Show the surviving revisions of one document, newest first."""
    from .versions import VersionResolver
    revisions = VersionResolver().history(_read_records(file), logical_key)
    if not revisions:
        typer.echo(f"No revisions for {logical_key}", err=True)
        raise typer.Exit(1)
    if _get_json_output():
        typer.echo(json.dumps([r.to_dict() for r in revisions], indent=2))
    else:
        for offset, record in enumerate(revisions):
            typer.echo(f"@V{{{offset}}}  {_format_record(record)}")


# -----------------------------------------------------------------------------
# Annotations
# -----------------------------------------------------------------------------


@app.command()
def annotate(
    file: Annotated[str, typer.Argument(help="Rendered HTML file ('-' for stdin)")],
    document_id: Annotated[str, typer.Option("--document-id", "-d", help="Document id")],
    text: Annotated[str, typer.Option("--text", "-t", help="Selected text")],
):
    """Anchor a text selection and save it as an annotation."""
    html = _read_text(file)
    with _get_session() as session:
        tree = session.anchor.tree_for(html)
        annotation = session.annotate(document_id, tree.text(), Selection(text=text), tree)
        if annotation is None:
            typer.echo("Error: selection not found in document text", err=True)
            raise typer.Exit(1)
        if session.annotations.degraded:
            typer.echo("Warning: annotation cache is full", err=True)

    if _get_json_output():
        typer.echo(json.dumps(annotation.to_dict(), indent=2))
    else:
        typer.echo(f"Annotated [{annotation.start_offset}:{annotation.end_offset}] {annotation.id[:12]}")


@app.command()
def highlight(
    file: Annotated[str, typer.Argument(help="Rendered HTML file ('-' for stdin)")],
    document_id: Annotated[str, typer.Option("--document-id", "-d", help="Document id")],
):
    """Print the HTML with cached annotations marked."""
    html = _read_text(file)
    with _get_session() as session:
        rendered, applied = session.render_annotated(document_id, html)
    typer.echo(str(rendered))
    typer.echo(f"{applied} annotations applied", err=True)


@app.command("annotations")
def list_annotations(
    document_id: Annotated[str, typer.Argument(help="Document id")],
):
    """List cached annotations for a document."""
    with _get_session() as session:
        annotations = session.annotations.get(document_id)
    if _get_json_output():
        typer.echo(json.dumps([a.to_dict() for a in annotations], indent=2))
        return
    for a in annotations:
        span = f"[{a.start_offset}:{a.end_offset}]" if a.start_offset is not None else "[?]"
        typer.echo(f"{a.id[:12]}  {span}  {a.anchor_text[:60]}")


# -----------------------------------------------------------------------------
# Metadata
# -----------------------------------------------------------------------------


@app.command()
def lookup(
    key: Annotated[str, typer.Argument(help="Identity key to resolve")],
):
    """Resolve metadata for a key through the coalescing cache."""
    async def run() -> Optional[dict]:
        async with _get_session() as session:
            return await session.lookup(key)

    metadata = asyncio.run(run())
    if metadata is None:
        typer.echo(f"No metadata for {key}", err=True)
        raise typer.Exit(1)
    typer.echo(json.dumps(metadata, indent=2, ensure_ascii=False))


# -----------------------------------------------------------------------------
# Cache management
# -----------------------------------------------------------------------------

cache_app = typer.Typer(
    name="cache",
    help="Inspect and manage the local cache.",
    rich_markup_mode=None,
)
app.add_typer(cache_app)


@cache_app.command("stats")
def cache_stats():
    """Show cache usage per namespace."""
    with _get_session() as session:
        stats = session.store.stats()
    if _get_json_output():
        typer.echo(json.dumps(stats, indent=2))
        return
    pct = 100.0 * stats["used"] / stats["capacity"]
    typer.echo(f"Used: {stats['used']} / {stats['capacity']} chars ({pct:.1f}%)")
    for namespace, count in stats["namespaces"].items():
        typer.echo(f"  {namespace}: {count}")


@cache_app.command("sweep")
def cache_sweep():
    """Evict oldest entries down to the low-water mark."""
    with _get_session() as session:
        evicted = session.store.sweep()
    typer.echo(f"Evicted {evicted} entries")


@cache_app.command("clear")
def cache_clear(
    namespace: Annotated[Optional[str], typer.Argument(help="Namespace to clear (default: all)")] = None,
):
    """Delete cached entries."""
    with _get_session() as session:
        removed = session.store.clear(namespace)
    typer.echo(f"Removed {removed} entries")


@cache_app.command("get")
def cache_get(
    namespace: Annotated[str, typer.Argument(help="Namespace")],
    key: Annotated[str, typer.Argument(help="Key")],
):
    """Print one cached value."""
    with _get_session() as session:
        value = session.store.get(namespace, key)
    if value is None:
        typer.echo(f"Not cached: {namespace}/{key}", err=True)
        raise typer.Exit(1)
    typer.echo(json.dumps(value, indent=2, ensure_ascii=False))


# -----------------------------------------------------------------------------
# Entry point
# -----------------------------------------------------------------------------


def run():
    """Entry point for the console script."""
    app()


if __name__ == "__main__":
    run()
