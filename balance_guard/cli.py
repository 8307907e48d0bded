"""Command-line interface for Balance Guard."""

import asyncio
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from balance_guard.audit import configure_logging
from balance_guard.config import get_settings, validate_all_settings
from balance_guard.models.backup import MergeMode
from balance_guard.orchestrator import BackupOrchestrator, create_app_components
from balance_guard.scheduler import BackgroundScheduler
from balance_guard.services.storage import StorageError

app = typer.Typer(
    name="balance-guard",
    help="Backup, restore and integrity tooling for a personal finance ledger",
    no_args_is_help=True,
)
console = Console()

LocalOnly = Annotated[
    bool,
    typer.Option("--local-only", help="Use an in-memory ledger instead of Google Sheets"),
]


def get_orchestrator(local_only: bool = False) -> BackupOrchestrator:
    """Build the application components for one command."""
    configure_logging(get_settings().app.log_level)
    orchestrator, _ = create_app_components(use_storage=not local_only)
    return orchestrator


def _finish(success: bool, message: str) -> None:
    if success:
        console.print(f"[green]{message}[/green]")
    else:
        console.print(f"[red]Error:[/red] {message}")
        raise typer.Exit(1)


@app.command()
def check(local_only: LocalOnly = False) -> None:
    """Run an integrity check on the live ledger."""
    orchestrator = get_orchestrator(local_only)
    report = asyncio.run(orchestrator.run_integrity_check())

    console.print(f"Transactions: {report.transaction_count}")
    if not report.date_range.is_empty:
        console.print(f"Date range:   {report.date_range.start} .. {report.date_range.end}")
    console.print(f"Checksum:     {report.checksum}")
    for issue in report.issues:
        console.print(f"[yellow]- {issue}[/yellow]")

    _finish(report.passed, "Integrity check passed" if report.passed else "Integrity check failed")


@app.command()
def backup(
    description: Annotated[
        Optional[str], typer.Option("--description", "-d", help="Backup description")
    ] = None,
    local_only: LocalOnly = False,
) -> None:
    """Create a backup of the whole ledger."""
    orchestrator = get_orchestrator(local_only)
    result = asyncio.run(orchestrator.create_backup(description))

    for issue in result.integrity_issues:
        console.print(f"[yellow]- {issue}[/yellow]")
    if result.info:
        console.print(f"Backup id: {result.info.id}")
    _finish(result.success, result.message)


@app.command()
def backups(local_only: LocalOnly = False) -> None:
    """List stored backups, newest first."""
    orchestrator = get_orchestrator(local_only)
    infos = asyncio.run(orchestrator.list_backups())

    if not infos:
        console.print("No backups found")
        return

    table = Table(title="Backups")
    table.add_column("ID")
    table.add_column("Created (UTC)")
    table.add_column("Transactions", justify="right")
    table.add_column("Date range")
    table.add_column("Size", justify="right")
    table.add_column("Source")
    table.add_column("Description")

    for info in infos:
        date_range = "" if info.date_range.is_empty else f"{info.date_range.start} .. {info.date_range.end}"
        table.add_row(
            info.id,
            info.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            str(info.transaction_count),
            date_range,
            f"{info.size:,} B",
            info.source.value,
            info.description,
        )
    console.print(table)


@app.command()
def verify(
    backup_id: Annotated[str, typer.Argument(help="Backup to verify")],
    local_only: LocalOnly = False,
) -> None:
    """Verify that a backup is complete and unmodified."""
    orchestrator = get_orchestrator(local_only)
    result = asyncio.run(orchestrator.verify_backup(backup_id))
    _finish(result.valid, result.message)


@app.command()
def restore(
    backup_id: Annotated[str, typer.Argument(help="Backup to restore")],
    mode: Annotated[MergeMode, typer.Option(help="Conflict resolution policy")] = MergeMode.MERGE,
    safety_backup: Annotated[
        bool,
        typer.Option("--safety-backup/--no-safety-backup", help="Back up the current ledger first"),
    ] = True,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip the confirmation prompt")] = False,
    local_only: LocalOnly = False,
) -> None:
    """Restore the ledger from a backup."""
    if mode == MergeMode.REPLACE and not yes:
        typer.confirm("Replace mode deletes every current transaction. Continue?", abort=True)

    orchestrator = get_orchestrator(local_only)
    result = asyncio.run(orchestrator.restore_from_backup(
        backup_id,
        mode=mode,
        create_backup_before_restore=safety_backup,
    ))

    if result.pre_restore_backup_id:
        console.print(f"Pre-restore backup: {result.pre_restore_backup_id}")
    console.print(f"Restored: {result.transactions_restored}, conflicts skipped: {result.conflicts_resolved}")
    _finish(result.success, result.message)


@app.command()
def cleanup(local_only: LocalOnly = False) -> None:
    """Remove duplicate transactions (same content, different id)."""
    orchestrator = get_orchestrator(local_only)
    result = asyncio.run(orchestrator.cleanup_duplicates())
    _finish(result.success, result.message)


@app.command()
def export(
    output: Annotated[Path, typer.Argument(help="File to write")],
    local_only: LocalOnly = False,
) -> None:
    """Export the ledger as a JSON file."""
    orchestrator = get_orchestrator(local_only)
    try:
        data = asyncio.run(orchestrator.export_ledger())
    except StorageError as e:
        _finish(False, f"Export failed: {e}")
        return

    output.write_text(data, encoding="utf-8")
    _finish(True, f"Exported ledger to {output}")


@app.command("import")
def import_file(
    input_file: Annotated[Path, typer.Argument(help="Export file to import")],
    mode: Annotated[MergeMode, typer.Option(help="Conflict resolution policy")] = MergeMode.MERGE,
    local_only: LocalOnly = False,
) -> None:
    """Import transactions from an export file."""
    if not input_file.exists():
        _finish(False, f"File not found: {input_file}")

    text = input_file.read_text(encoding="utf-8")
    orchestrator = get_orchestrator(local_only)
    result = asyncio.run(orchestrator.import_transactions(text, mode=mode))

    console.print(f"Imported: {result.transactions_restored}, conflicts skipped: {result.conflicts_resolved}")
    _finish(result.success, result.message)


@app.command()
def status() -> None:
    """Show which configuration groups load from the environment."""
    results = validate_all_settings()

    for name, ok in results.items():
        if name.endswith("_error"):
            continue
        if ok:
            console.print(f"{name:<14} [green]ok[/green]")
        else:
            console.print(f"{name:<14} [red]not configured[/red] ({results.get(f'{name}_error', '')})")

    if not results.get("google_sheets", False):
        console.print("Google Sheets is not configured; commands will use an in-memory ledger")


@app.command()
def run(local_only: LocalOnly = False) -> None:
    """Run the background scheduler until interrupted."""
    orchestrator = get_orchestrator(local_only)
    scheduler = BackgroundScheduler(orchestrator)

    console.print(f"[cyan]Scheduler running:[/cyan] {', '.join(scheduler.jobs)}")
    try:
        asyncio.run(scheduler.run_forever())
    except KeyboardInterrupt:
        console.print("Stopped")


if __name__ == "__main__":
    app()
