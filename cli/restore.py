"""restore command: list, select and restore a remote backup"""
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from InquirerPy.base.control import Choice
from rich.table import Table

from cli import console, get_settings, log_level, partial_settings, state
from config import Settings, load_settings
from core.backup_utils import human_size
from core.errors import CampusVaultError, ConfigError, SelectionAmbiguous, SelectionError
from core.healthcheck import HealthSignal, format_failure_report
from core.restore import (
    RestoreReport,
    RestoreState,
    Selection,
    build_restore,
    resolve_selection,
)
from core.s3_storage import ArchiveRef, ArchiveStore
from core.services import ServiceController
from core.tiers import TIERS, format_timestamp
from utils.logger import run_log_path, setup_logger
from utils.ui import (
    ask_choice,
    ask_confirm,
    ask_text,
    ask_typed_confirmation,
    print_error,
    print_info,
    print_section,
    print_success,
    print_warning,
)

LIST_LIMIT = 10


def show_backups(store: ArchiveStore) -> None:
    """Print the newest archives of every tier."""
    print_section("Available Backups")
    for tier, archives in store.list_all().items():
        if not archives:
            console.print(f"[blue]{tier.capitalize()} Backups:[/blue] No {tier} backups found")
            continue
        table = Table(title=f"{tier.capitalize()} Backups")
        table.add_column("Archive", style="cyan")
        table.add_column("Taken", style="magenta")
        table.add_column("Size", justify="right", style="green")
        for archive in archives[:LIST_LIMIT]:
            table.add_row(
                archive.filename,
                archive.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
                human_size(archive.size),
            )
        console.print(table)


def prompt_selection(store: ArchiveStore) -> Selection:
    """Interactive mode: list everything, then ask for a tier and a date."""
    show_backups(store)
    tier = ask_choice("Backup type", [Choice(t, t) for t in TIERS])
    when = ask_text("Backup date (YYYYMMDD) or 'latest':", "latest").strip()
    if when == "latest":
        return Selection(tier=tier, latest=True)
    return Selection(date=when)


def pick_candidate(error: SelectionAmbiguous, interactive: bool) -> ArchiveRef:
    print_warning(error.message + ":")
    for candidate in error.candidates:
        console.print(f"  {candidate}")
    if not interactive:
        print_info("Pick one explicitly (e.g. --date with the full timestamp)")
        raise error
    return ask_choice(
        "Select backup", [Choice(c, c.archive_id) for c in error.candidates]
    )


def warn_running_services(services: ServiceController, names) -> None:
    for service in names:
        if services.is_active(service):
            print_warning(f"Service {service} is running. It will be stopped during restore.")
        else:
            print_info(f"Service {service} is already stopped")


def confirm_restore(archive: ArchiveRef) -> bool:
    console.print(f"\nSelected backup: [bold]{archive}[/bold]")
    console.print("[bold red]WARNING: This will restore your Moodle and Koha data![/bold red]")
    console.print("[bold red]Current data will be backed up but may be overwritten.[/bold red]\n")
    return ask_typed_confirmation("Are you sure you want to continue?")


def print_report(report: RestoreReport) -> None:
    if report.checks:
        table = Table(title="Restore Verification")
        table.add_column("Check", style="cyan")
        table.add_column("Result")
        for name, passed in report.checks.items():
            table.add_row(name, "[green]ok[/green]" if passed else "[red]failed[/red]")
        console.print(table)
    for warning in report.warnings:
        print_warning(warning)
    if report.emergency_dir:
        print_info(f"Emergency backup location: {report.emergency_dir}")
    if report.workspace:
        print_info(f"Restore files location: {report.workspace}")


def report_failure(settings: Settings, message: str, log_file: Optional[Path] = None) -> None:
    """Fail ping for a restore that stopped before the orchestrator ran."""
    HealthSignal(settings.restore_healthcheck_url).notify_fail(
        format_failure_report(message, log_file, title="Restore Failed")
    )


def restore(
    latest: Optional[str] = typer.Option(
        None, "--latest", metavar="TYPE", help="Restore latest backup of TYPE (daily/weekly/monthly)"
    ),
    date: Optional[str] = typer.Option(
        None, "--date", metavar="DATE", help="Restore backup from specific date (YYYYMMDD)"
    ),
    list_only: bool = typer.Option(False, "--list", help="List available backups"),
    yes: bool = typer.Option(False, "--yes", help="Acknowledge the destructive restore without prompting"),
    restore_config: Optional[bool] = typer.Option(
        None,
        "--restore-config/--no-restore-config",
        help="Also restore configuration files (asked interactively when omitted)",
    ),
):
    """Restore Moodle and Koha from a remote backup."""
    if latest and date:
        print_error("Use either --latest or --date, not both")
        raise typer.Exit(code=2)
    if latest and latest not in TIERS:
        print_error(f"Invalid backup type: {latest} (expected one of {', '.join(TIERS)})")
        raise typer.Exit(code=2)
    interactive = sys.stdin.isatty()
    if not (latest or date or list_only or interactive):
        print_error("No terminal for interactive mode, use --latest or --date")
        raise typer.Exit(code=2)

    if list_only:
        settings = get_settings()
        try:
            show_backups(ArchiveStore(settings.remote))
        except CampusVaultError as e:
            print_error(str(e))
            raise typer.Exit(code=1)
        return

    try:
        settings = load_settings(state["config_file"])
    except ConfigError as e:
        print_error(str(e))
        partial = partial_settings()
        if partial is not None:
            report_failure(partial, f"Failed to load restore settings: {e.message}")
        raise typer.Exit(code=1)

    log_file = run_log_path(settings.restore_log_dir, "restore", format_timestamp(datetime.now()))
    setup_logger(level=log_level(), log_file=log_file)

    store = ArchiveStore(settings.remote)
    try:
        if latest:
            selection = Selection(tier=latest, latest=True)
        elif date:
            selection = Selection(date=date)
        else:
            selection = prompt_selection(store)
        try:
            archive = resolve_selection(store, selection)
        except SelectionAmbiguous as e:
            archive = pick_candidate(e, interactive and not yes)
    except SelectionError as e:
        print_error(e.message)
        report_failure(settings, e.message, log_file)
        raise typer.Exit(code=1)
    except CampusVaultError as e:
        print_error(str(e))
        report_failure(settings, str(e), log_file)
        raise typer.Exit(code=1)

    orchestrator = build_restore(settings, log_file=log_file)
    warn_running_services(orchestrator.services, settings.required_services)

    if yes:
        confirmed = True
    elif interactive:
        confirmed = confirm_restore(archive)
    else:
        print_warning("No terminal to confirm on, pass --yes to restore unattended")
        confirmed = False
    if restore_config is None:
        restore_config = False if yes or not confirmed else ask_confirm(
            "Do you want to restore configuration files?", default=False
        )

    report = orchestrator.run(archive, confirmed=confirmed, restore_config=restore_config)
    print_report(report)
    if not report.ok:
        print_error(f"Restore failed: {report.error}")
        raise typer.Exit(code=1)
    if report.state == RestoreState.CANCELLED:
        print_info("Restore cancelled")
    elif report.all_checks_passed:
        print_success("Restore completed successfully")
    else:
        print_warning("Restore completed with warnings - please check the issues above")
