"""Sync maintenance commands for the local record store.

Commands:
1. sync: Run one reconciliation cycle (promote, pull, push) against the remote.
2. status: Show record counts per sync status.
3. conflicts: List records waiting for a conflict decision.
4. resolve: Apply keep-local or take-remote to a conflicted record.
"""

import asyncio

import typer
from rich.console import Console
from rich.table import Table

from etnopapers.service import create_service
from etnopapers.storage.schemas import SyncStatus
from etnopapers.sync.reconciler import ConflictDecision
from etnopapers.utils.config import load_config
from etnopapers.utils.logging_setup import setup_logging

app = typer.Typer()
console = Console()


def _service(config_path: str, verbose: bool = False):
    config = load_config(config_path)
    setup_logging(config.logging, verbose=verbose)
    return create_service(config)


@app.command()
def sync(config_path: str = "config/config.yaml", verbose: bool = False):
    """Run one sync cycle now."""
    service = _service(config_path, verbose)

    async def _run():
        try:
            return await service.sync_now()
        finally:
            await service.stop()

    report = asyncio.run(_run())
    console.print(
        f"[bold green]Pushed:[/bold green] {report.pushed}  "
        f"[bold blue]Pulled:[/bold blue] {report.pulled}  "
        f"[bold yellow]Conflicts:[/bold yellow] {report.conflicts}  "
        f"[bold red]Failed:[/bold red] {report.failed}"
    )
    if report.pull_error:
        console.print(f"[red]Pull failed:[/red] {report.pull_error}")


@app.command()
def status(config_path: str = "config/config.yaml"):
    """Show record counts per sync status."""
    summary = _service(config_path).status_summary()

    table = Table(title="Sync Status")
    table.add_column("Status")
    table.add_column("Records", justify="right")
    for sync_status in SyncStatus:
        table.add_row(sync_status.value, str(summary.count(sync_status)))
    table.add_row("[bold]total[/bold]", f"[bold]{summary.total_records}[/bold]")
    console.print(table)


@app.command()
def conflicts(config_path: str = "config/config.yaml"):
    """List records in conflict with their local and remote revisions."""
    pending = _service(config_path).pending_conflicts()
    if not pending:
        console.print("[green]No pending conflicts.[/green]")
        return

    table = Table(title="Pending Conflicts")
    table.add_column("Record")
    table.add_column("Species")
    table.add_column("Local rev", justify="right")
    table.add_column("Remote rev", justify="right")
    table.add_column("Common rev", justify="right")
    for stored in pending:
        remote_revision = stored.conflict.revision if stored.conflict else "-"
        table.add_row(
            stored.record_id,
            ", ".join(s.scientific_name for s in stored.record.species) or "-",
            str(stored.local_revision),
            str(remote_revision),
            str(stored.common_revision if stored.common_revision is not None else "-"),
        )
    console.print(table)


@app.command()
def resolve(
    record_id: str,
    decision: str = typer.Option(..., help="keep_local or take_remote"),
    config_path: str = "config/config.yaml",
):
    """Resolve a conflict by keeping the local copy or taking the remote one."""
    try:
        choice = ConflictDecision(decision)
    except ValueError:
        console.print(f"[red]Unknown decision:[/red] {decision}")
        raise typer.Exit(code=1)
    if choice == ConflictDecision.MERGE:
        console.print("[red]Merging needs the record editor; use keep_local or take_remote.[/red]")
        raise typer.Exit(code=1)

    service = _service(config_path)

    async def _run():
        try:
            return await service.resolve_conflict(record_id, choice)
        finally:
            await service.stop()

    stored = asyncio.run(_run())
    console.print(f"[bold green]Resolved[/bold green] {record_id}: now {stored.status.value}")


if __name__ == "__main__":
    app()
