"""Bubble Mirror CLI - Main entry point."""

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from . import database
from .config import settings
from .schemas.sync import as_payload
from .sync.errors import CancelToken, MappingError
from .sync.field_mapper import parse_timestamp, resolve_entity_type
from .sync.progress import SqlProgressStore, get_progress, new_session_id

app = typer.Typer(
    name="bubble-mirror",
    help="Bubble Mirror - mirror a Bubble Data API into a relational store",
    no_args_is_help=True,
)
console = Console()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Configure logging for every command."""
    level = logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _output_result(result: dict[str, Any], json_output: bool = False) -> None:
    """Output result as JSON or formatted."""
    if json_output:
        console.print_json(json.dumps(result, default=str))
        return

    table = Table(show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")
    for key, value in result.items():
        if key == "errors":
            continue
        if isinstance(value, (dict, list)):
            value = json.dumps(value, default=str)
        table.add_row(key, str(value))
    console.print(table)

    errors = result.get("errors") or []
    if errors:
        console.print(f"[yellow]{len(errors)} errors[/yellow]")
        for error in errors[:10]:
            target = error.get("remote_id") or ""
            console.print(f"  [red]{error.get('kind')}[/red] {error.get('entity_type')} {target}: {error.get('message')}")
    if result.get("success") is False:
        console.print("[red]Sync finished with failures[/red]")


def _parse_date(value: str | None, name: str) -> datetime | None:
    if value is None:
        return None
    parsed = parse_timestamp(value)
    if parsed is None:
        console.print(f"[red]Invalid {name} date: {value}[/red]")
        raise typer.Exit(1)
    return parsed


def _require_remote() -> None:
    if not settings.remote_configured:
        console.print("[red]Remote API not configured. Set BUBBLE_MIRROR_REMOTE_API_KEY.[/red]")
        raise typer.Exit(1)


async def _with_orchestrator(flow):
    """Run ``flow(orchestrator)`` with a fresh session and remote client."""
    from .sync.orchestrator import SyncOrchestrator
    from .sync.remote_client import RemoteClient

    factory = database.async_session_factory
    cancel = CancelToken()
    async with factory() as db, RemoteClient.from_settings(cancel) as remote:
        orchestrator = SyncOrchestrator(db, remote, progress=SqlProgressStore(factory), cancel=cancel)
        return await flow(orchestrator)


def _run(flow) -> Any:
    try:
        return asyncio.run(_with_orchestrator(flow))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        raise typer.Exit(130)


# ============================================================================
# Setup Commands
# ============================================================================


@app.command("init-db")
def init_db():
    """Create all mirror tables."""
    asyncio.run(database.create_tables())
    console.print("[green]Tables created.[/green]")


@app.command("serve")
def serve(
    port: int = typer.Option(8030, "--port", "-p", help="Port to run on"),
    host: str = typer.Option("127.0.0.1", "--host", help="Host to bind to"),
):
    """Launch the sync API."""
    import uvicorn

    console.print(f"[bold cyan]Starting Bubble Mirror at http://{host}:{port}[/bold cyan]")
    uvicorn.run("bubble_mirror.app:app", host=host, port=port)


# ============================================================================
# Sync Commands
# ============================================================================


@app.command("full")
def sync_full(
    files: str = typer.Option(None, "--files", "-f", help="Comma-separated file categories"),
    session: str = typer.Option(None, "--session", "-s", help="Progress session id"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
):
    """Sync every entity type in dependency order."""
    _require_remote()
    categories = [c.strip() for c in files.split(",") if c.strip()] if files else []
    session_id = session or new_session_id()
    console.print(f"[dim]Progress session: {session_id}[/dim]")

    result = _run(lambda o: o.run_full_sync(session_id, categories))
    _output_result(as_payload(result), json_output)


@app.command("invoices")
def sync_invoices(
    date_from: str = typer.Option(..., "--from", help="Start of Modified Date window (ISO-8601)"),
    date_to: str = typer.Option(None, "--to", help="End of window (defaults to now)"),
    session: str = typer.Option(None, "--session", "-s", help="Progress session id"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
):
    """Sync invoices modified in a window with all their relations."""
    start = _parse_date(date_from, "--from")
    end = _parse_date(date_to, "--to")
    _require_remote()
    session_id = session or new_session_id()
    console.print(f"[dim]Progress session: {session_id}[/dim]")

    result = _run(lambda o: o.sync_invoice_package(start, end, session_id))
    _output_result(as_payload(result), json_output)


@app.command("invoice")
def sync_invoice(
    invoice_id: str = typer.Argument(..., help="Remote invoice id"),
    force: bool = typer.Option(False, "--force", help="Sync even when the local copy is current"),
    skip_users: bool = typer.Option(False, "--skip-users", help="Do not sync the creator user"),
    skip_agents: bool = typer.Option(False, "--skip-agents", help="Do not sync the agent"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
):
    """Sync one invoice and everything it references."""
    _require_remote()
    result = _run(
        lambda o: o.sync_invoice_with_integrity(
            invoice_id, force=force, skip_users=skip_users, skip_agents=skip_agents
        )
    )
    _output_result(as_payload(result), json_output)
    if not result.success:
        raise typer.Exit(1)


@app.command("ids")
def sync_ids(
    csv_file: Path = typer.Argument(..., exists=True, readable=True, help="CSV of type,id,modified rows"),
    batch_size: int = typer.Option(None, "--batch-size", "-b", help="Ids per fetch batch"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
):
    """Sync invoices and registrations listed in a CSV export."""
    from .sync.idlist import parse_id_list_csv, sync_by_ids

    candidates = parse_id_list_csv(csv_file.read_text())
    if not candidates:
        console.print("[yellow]No valid rows found.[/yellow]")
        raise typer.Exit(1)
    _require_remote()
    console.print(f"Checking {len(candidates)} candidates...")

    result = _run(lambda o: sync_by_ids(o, candidates, batch_size=batch_size))
    _output_result(as_payload(result), json_output)


@app.command("payments")
def sync_payments(
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
):
    """Sync payments, drop verified submitted payments, refresh affected invoices."""
    _require_remote()
    result = _run(lambda o: o.sync_payments_with_reconciliation())
    _output_result(as_payload(result), json_output)


@app.command("reconcile")
def reconcile_deletions(
    entity_type: str = typer.Argument(..., help="Entity type to reconcile"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
):
    """Delete local rows that no longer exist remotely."""
    from .sync.reconciler import RECONCILABLE, reconcile

    try:
        resolved = resolve_entity_type(entity_type)
    except MappingError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)
    if resolved not in RECONCILABLE:
        console.print(f"[red]Error: {resolved} cannot be reconciled[/red]")
        raise typer.Exit(1)
    _require_remote()

    result = _run(lambda o: reconcile(o.db, o.remote, resolved))
    _output_result(as_payload(result), json_output)


@app.command("upload")
def upload(
    entity_type: str = typer.Argument(..., help="Entity type of the records"),
    json_file: Path = typer.Argument(..., exists=True, readable=True, help="JSON array of records"),
    no_patch: bool = typer.Option(False, "--no-patch", help="Skip adding columns for new fields"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
):
    """Upload an exported JSON batch with validation."""
    from .sync.batch_upload import sync_with_validation

    try:
        records = json.loads(json_file.read_text())
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid JSON: {e}[/red]")
        raise typer.Exit(1)

    async def _upload():
        async with database.async_session_factory() as db:
            return await sync_with_validation(db, entity_type, records, patch_schema=not no_patch)

    result = asyncio.run(_upload())
    _output_result(result.model_dump(mode="json"), json_output)
    if not result.success:
        raise typer.Exit(1)


@app.command("progress")
def progress(
    session_id: str = typer.Argument(..., help="Progress session id"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
):
    """Show the progress snapshot of a sync session."""

    async def _get():
        return await get_progress(SqlProgressStore(database.async_session_factory), session_id)

    snapshot = asyncio.run(_get())
    if snapshot is None:
        console.print(f"[red]No progress session {session_id}[/red]")
        raise typer.Exit(1)
    _output_result(snapshot.model_dump(mode="json"), json_output)


@app.command("cleanup")
def cleanup(
    hours: float = typer.Option(None, "--hours", help="Retention window (defaults to the configured one)"),
):
    """Delete expired progress sessions."""
    from datetime import timedelta

    older_than = timedelta(hours=hours) if hours is not None else None

    async def _cleanup():
        return await SqlProgressStore(database.async_session_factory).cleanup(older_than)

    removed = asyncio.run(_cleanup())
    console.print(f"[green]Removed {removed} progress sessions.[/green]")


if __name__ == "__main__":
    app()
