"""CLI for creating, inspecting and restoring database backups.

Usage:
    DB_VAULT_HMAC_SECRET=... DB_VAULT_PROFILE=local db-vault backup
    db-vault backup --sql
    db-vault list
    db-vault validate backup_2025-01-15_10-30-00.dbvault
    db-vault restore backup_2025-01-15_10-30-00.dbvault --yes
    db-vault restore backup_2025-01-15_10-30-00.dbvault --strict --yes
    db-vault delete backup_2025-01-15_10-30-00.dbvault --yes
    db-vault import ~/Downloads/backup_2025-01-15_10-30-00.dbvault

Commands:
    backup    - Create a signed backup (or a legacy SQL dump with --sql)
    list      - List stored backups, newest first
    validate  - Verify checksums and signature of a stored backup
    restore   - Replace catalog tables with the contents of a backup
    delete    - Delete a stored backup
    import    - Copy an external backup file into the store
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Awaitable, Callable

from rich.console import Console
from rich.logging import RichHandler
from rich.prompt import Confirm
from rich.table import Table

from db_vault.adapters.sql import AsyncSQLAdapter
from db_vault.backup.container import BackupStore
from db_vault.backup.models import (
    RestoreSummary,
    SaveResult,
    SqlAnalysisReport,
    ValidationReport,
)
from db_vault.backup.service import BackupService
from db_vault.config.loader import load_settings, resolve_database_url
from db_vault.config.models import BackupSettings
from db_vault.errors import DBVaultError, RestoreAbortedError, RestoreValidationRequired

console = Console()

_MAX_ERRORS_SHOWN = 20


# ============================================================================
# Setup helpers
# ============================================================================


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _settings(args: argparse.Namespace) -> BackupSettings:
    return load_settings(
        args.config,
        profile=args.profile,
        database_url=args.database_url,
    )


def _store(args: argparse.Namespace) -> BackupStore:
    settings = _settings(args)
    return BackupStore(settings.backup_dir, settings.max_backups)


async def _with_service(
    args: argparse.Namespace,
    action: Callable[[BackupService], Awaitable[int]],
) -> int:
    """Build adapter + service for the active profile, run ``action``, close."""
    settings = _settings(args)
    url = resolve_database_url(settings, args.config)
    adapter = AsyncSQLAdapter(url, database_name=settings.database_name or None)
    try:
        return await action(BackupService(adapter, settings))
    finally:
        await adapter.close()


def _human_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


# ============================================================================
# Output
# ============================================================================


def _print_save_result(result: SaveResult) -> None:
    console.print(
        f"[bold green]v[/bold green] Saved [bold cyan]{result.filename}[/bold cyan] "
        f"({_human_size(result.size)}"
        + (f", {result.compression_ratio}% smaller" if result.format == "dbvault" else "")
        + ")"
    )
    if result.deleted_oldest:
        console.print(
            f"  [yellow]Retention limit reached; deleted {result.deleted_oldest}[/yellow]"
        )
    elif result.is_at_limit:
        console.print(
            "  [yellow]Backup store is at its limit; the next backup deletes the oldest[/yellow]"
        )


def _print_validation(report: ValidationReport | SqlAnalysisReport) -> None:
    if isinstance(report, ValidationReport):
        table = Table(title="Tables", show_header=True, header_style="bold")
        table.add_column("Table")
        table.add_column("Rows", justify="right")
        table.add_column("Checksum")
        for name, entry in report.tables.items():
            status = "[green]ok[/green]" if entry.checksum_valid else "[red]mismatch[/red]"
            table.add_row(name, str(entry.row_count), status)
        if report.tables:
            console.print(table)
        console.print(report.format_report())
        return

    console.print(
        f"SQL backup: {report.statements} statements across {len(report.tables)} tables"
    )
    for error in report.errors:
        console.print(f"  [red]- {error}[/red]")
    for warning in report.warnings:
        console.print(f"  [yellow]- {warning}[/yellow]")


def _print_restore_summary(summary: RestoreSummary) -> None:
    table = Table(title="Restore Summary", show_header=True, header_style="bold")
    table.add_column("Table")
    table.add_column("Inserted", justify="right")
    table.add_column("Replaced", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Failed", justify="right")
    for name, stats in summary.tables.items():
        failed = f"[red]{stats.failed}[/red]" if stats.failed else "0"
        table.add_row(
            name, str(stats.inserted), str(stats.replaced), str(stats.skipped), failed
        )
    console.print(table)

    for warning in summary.warnings:
        console.print(f"  [yellow]! {warning}[/yellow]")

    if summary.errors:
        console.print(f"\n[bold red]{len(summary.errors)} errors:[/bold red]")
        for error in summary.errors[:_MAX_ERRORS_SHOWN]:
            console.print(f"  - {error.table} ({error.row}): {error.message}")
        if len(summary.errors) > _MAX_ERRORS_SHOWN:
            console.print(f"  ... and {len(summary.errors) - _MAX_ERRORS_SHOWN} more")

    console.print(f"\n[dim]Completed in {summary.duration_seconds}s[/dim]")


# ============================================================================
# Command implementations
# ============================================================================


async def _async_backup(args: argparse.Namespace) -> int:
    """Async implementation for backup command."""

    async def action(service: BackupService) -> int:
        console.print(f"Backing up [bold cyan]{service.database}[/bold cyan]...", style="dim")
        if args.sql:
            result = await service.create_sql_backup()
        else:
            result = await service.create_backup()
        _print_save_result(result)
        return 0

    return await _with_service(args, action)


async def _async_validate(args: argparse.Namespace) -> int:
    """Async implementation for validate command."""

    async def action(service: BackupService) -> int:
        report = service.validate_backup(args.name)
        _print_validation(report)
        return 0 if report.valid else 1

    return await _with_service(args, action)


async def _async_restore(args: argparse.Namespace) -> int:
    """Async implementation for restore command.

    Returns:
        0 when every row was applied, 1 on row errors or abort.
    """

    async def action(service: BackupService) -> int:
        console.print(
            f"Restoring [bold cyan]{args.name}[/bold cyan] into "
            f"[bold]{service.database}[/bold]..."
        )
        try:
            summary = await service.restore_backup(
                args.name, force=args.force, strict=args.strict
            )
        except RestoreValidationRequired as e:
            console.print("[bold red]x[/bold red] Backup failed validation; nothing restored")
            _print_validation(e.report)
            console.print("[dim]Use[/dim] [cyan]--force[/cyan] [dim]to restore anyway.[/dim]")
            return 1
        except RestoreAbortedError as e:
            console.print(f"[bold red]x[/bold red] {e}")
            console.print("[dim]Strict mode: all changes were rolled back.[/dim]")
            return 1

        _print_restore_summary(summary)
        return 1 if summary.errors else 0

    return await _with_service(args, action)


async def _async_import(args: argparse.Namespace) -> int:
    """Async implementation for import command."""
    path = Path(args.file)
    if not path.is_file():
        console.print(f"[red]Error: file not found: {path}[/red]")
        return 1

    async def action(service: BackupService) -> int:
        result = service.import_backup(path.name, path.read_bytes())
        _print_save_result(result)
        return 0

    return await _with_service(args, action)


def cmd_backup(args: argparse.Namespace) -> int:
    """Create a backup of the active profile's database."""
    return asyncio.run(_async_backup(args))


def cmd_list(args: argparse.Namespace) -> int:
    """List stored backups.  Reads only the backup directory."""
    infos = _store(args).list_backups()
    if not infos:
        console.print("[yellow]No backups found.[/yellow]")
        return 0

    table = Table(title="Backups", show_header=True, header_style="bold")
    table.add_column("Name")
    table.add_column("Format")
    table.add_column("Created")
    table.add_column("Size", justify="right")
    table.add_column("Tables", justify="right")
    table.add_column("Records", justify="right")

    for info in infos:
        error = info.metadata.get("error")
        table.add_row(
            info.filename,
            info.format,
            info.created.strftime("%Y-%m-%d %H:%M:%S"),
            _human_size(info.size),
            "" if info.table_count is None else str(info.table_count),
            "[red]unreadable[/red]" if error else (
                "" if info.total_records is None else str(info.total_records)
            ),
        )

    console.print(table)
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate a stored backup."""
    return asyncio.run(_async_validate(args))


def cmd_restore(args: argparse.Namespace) -> int:
    """Restore a stored backup (destructive)."""
    if not args.yes:
        console.print(
            "[bold yellow]This deletes all rows in the catalog tables and "
            "replaces them with the backup contents.[/bold yellow]"
        )
        if not Confirm.ask(f"Restore {args.name}?", default=False):
            console.print("Cancelled.")
            return 0
    return asyncio.run(_async_restore(args))


def cmd_delete(args: argparse.Namespace) -> int:
    """Delete a stored backup."""
    if not args.yes and not Confirm.ask(f"Delete {args.name}?", default=False):
        console.print("Cancelled.")
        return 0
    deleted = _store(args).delete(args.name)
    console.print(f"[bold green]v[/bold green] Deleted {deleted}")
    return 0


def cmd_import(args: argparse.Namespace) -> int:
    """Import an external backup file."""
    return asyncio.run(_async_import(args))


# ============================================================================
# Main entry point
# ============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="db-vault",
        description="Signed database backups and dependency-ordered restore",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to db.toml (default: ./db.toml if present)",
    )
    parser.add_argument(
        "--profile",
        default=None,
        help="Database profile from db.toml (default: DB_VAULT_PROFILE)",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Database URL, used when no profile is selected",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # backup command
    p_backup = subparsers.add_parser("backup", help="Create a backup")
    p_backup.add_argument(
        "--sql",
        action="store_true",
        help="Write a legacy SQL dump instead of a signed document",
    )
    p_backup.set_defaults(func=cmd_backup)

    # list command
    p_list = subparsers.add_parser("list", help="List stored backups")
    p_list.set_defaults(func=cmd_list)

    # validate command
    p_validate = subparsers.add_parser("validate", help="Validate a stored backup")
    p_validate.add_argument("name", help="Backup file name")
    p_validate.set_defaults(func=cmd_validate)

    # restore command
    p_restore = subparsers.add_parser("restore", help="Restore a stored backup")
    p_restore.add_argument("name", help="Backup file name")
    p_restore.add_argument(
        "--force",
        action="store_true",
        help="Restore even if validation fails",
    )
    p_restore.add_argument(
        "--strict",
        action="store_true",
        help="Roll back everything on the first row error",
    )
    p_restore.add_argument(
        "--yes",
        "-y",
        action="store_true",
        help="Skip confirmation prompt",
    )
    p_restore.set_defaults(func=cmd_restore)

    # delete command
    p_delete = subparsers.add_parser("delete", help="Delete a stored backup")
    p_delete.add_argument("name", help="Backup file name")
    p_delete.add_argument(
        "--yes",
        "-y",
        action="store_true",
        help="Skip confirmation prompt",
    )
    p_delete.set_defaults(func=cmd_delete)

    # import command
    p_import = subparsers.add_parser("import", help="Import an external backup file")
    p_import.add_argument("file", help="Path to a .dbvault or .sql file")
    p_import.set_defaults(func=cmd_import)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)

    try:
        return args.func(args)
    except (DBVaultError, FileNotFoundError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
