"""Scheduling and emergency snapshot housekeeping"""
from datetime import datetime
from typing import Optional

import typer
from rich.table import Table

from cli import console, get_settings
from core.backup_utils import directory_size, human_size
from core.cron import DEFAULT_SCHEDULE, CronManager
from core.restore import list_emergency_snapshots, prune_emergency_snapshots
from core.tiers import parse_timestamp
from utils.ui import ask_confirm, print_error, print_info, print_success


def list_jobs(cron_manager: CronManager) -> None:
    jobs = cron_manager.list_jobs()
    if not jobs:
        print_info("No active scheduled jobs.")
        return
    table = Table(title="Scheduled Backups")
    table.add_column("Schedule", style="magenta")
    table.add_column("Status", style="green")
    table.add_column("Command", style="cyan")
    for job in jobs:
        table.add_row(job["schedule"], "Enabled" if job["enabled"] else "Disabled", job["command"])
    console.print(table)


def schedule(
    install: bool = typer.Option(False, "--install", help="Install (or replace) the nightly backup job"),
    remove: bool = typer.Option(False, "--remove", help="Remove the backup job"),
    at: str = typer.Option(DEFAULT_SCHEDULE, "--at", help="Cron expression for --install"),
):
    """Manage the cron job that runs the nightly backup."""
    if install and remove:
        print_error("Use either --install or --remove")
        raise typer.Exit(code=2)

    cron_manager = CronManager()
    if install:
        settings = get_settings(require_credentials=False)
        try:
            cron_manager.add_backup_job(at, log_file=settings.log_dir / "cron.log")
        except ValueError as e:
            print_error(str(e))
            raise typer.Exit(code=2)
        print_success(f"Backup scheduled: {at}")
    elif remove:
        cron_manager.remove_job()
        print_success("Backup job removed")
    list_jobs(cron_manager)


def prune_safety(
    older_than: Optional[int] = typer.Option(
        None, "--older-than", metavar="DAYS", help="Delete emergency snapshots older than DAYS"
    ),
    yes: bool = typer.Option(False, "--yes", help="Do not ask for confirmation"),
):
    """List emergency snapshots taken before restores, or delete old ones."""
    settings = get_settings(require_credentials=False)
    snapshots = list_emergency_snapshots(settings.emergency_root)
    if not snapshots:
        print_info(f"No emergency snapshots in {settings.emergency_root}")
        return

    now = datetime.now()
    table = Table(title="Emergency Snapshots")
    table.add_column("Snapshot", style="cyan")
    table.add_column("Age (days)", justify="right", style="magenta")
    table.add_column("Size", justify="right", style="green")
    for snapshot in snapshots:
        age = (now - parse_timestamp(snapshot.name)).days
        table.add_row(snapshot.name, str(age), human_size(directory_size(snapshot)))
    console.print(table)

    if older_than is None:
        return
    if older_than < 0:
        print_error("--older-than must not be negative")
        raise typer.Exit(code=2)
    if not yes and not ask_confirm(
        f"Delete emergency snapshots older than {older_than} days?", default=False
    ):
        print_info("Nothing deleted")
        return

    removed = prune_emergency_snapshots(settings.emergency_root, older_than, now=now)
    if removed:
        print_success(f"Deleted {len(removed)} emergency snapshot(s)")
    else:
        print_info("No snapshots old enough to delete")
