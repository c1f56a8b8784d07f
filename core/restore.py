"""
Restore lifecycle: selection, safety snapshot, fetch, component restore and
post-restore verification.
"""
import logging
import shutil
import tarfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from config import Settings

from .archiver import FileSetArchiver, safe_extract
from .backup_utils import missing_groups, verify_package
from .errors import (
    CampusVaultError,
    CommandFailed,
    ComponentCaptureFailure,
    ComponentRestoreFailure,
    CorruptArchive,
    NotFound,
    PreflightFailure,
    SelectionAmbiguous,
    SelectionError,
)
from .healthcheck import HealthSignal, format_failure_report
from .lock import RunLock
from .metadata import BackupMetadata
from .providers.koha import KohaDumper
from .providers.mariadb import MariaDBDumper, MoodleDumper
from .runner import CommandRunner
from .s3_storage import ArchiveRef, ArchiveStore
from .services import ServiceController
from .system import free_space_mb
from .tiers import TIERS, format_timestamp, parse_timestamp

logger = logging.getLogger("campusvault.restore")

EMERGENCY_MARKER = ".emergency_backup_location"


class RestoreState(str, Enum):
    SELECT = "select"
    CONFIRM = "confirm"
    EMERGENCY_SNAPSHOT = "emergency_snapshot"
    FETCH = "fetch"
    VERIFY = "verify"
    EXTRACT = "extract"
    STOP_SERVICES = "stop_services"
    RESTORE_COMPONENTS = "restore_components"
    START_SERVICES = "start_services"
    POST_TASKS = "post_tasks"
    VERIFY_RESULT = "verify_result"
    DONE = "done"
    CANCELLED = "cancelled"
    FAIL = "fail"


# ----------------------------------------------------------------------
# Selection
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class Selection:
    """
    What to restore: the newest archive of ``tier`` (``latest=True``), the
    archives whose timestamp contains ``date``, or an explicit
    ``archive_id`` ("tier/filename").
    """

    tier: Optional[str] = None
    latest: bool = False
    date: Optional[str] = None
    archive_id: Optional[str] = None


def find_latest(store: ArchiveStore, tier: str) -> ArchiveRef:
    if tier not in TIERS:
        raise SelectionError(
            f"Invalid backup type: {tier}", {"valid": list(TIERS)}
        )
    archives = store.list(tier)
    if not archives:
        raise NotFound(f"No {tier} backups found!")
    return archives[0]


def find_by_date(store: ArchiveStore, pattern: str) -> List[ArchiveRef]:
    """All archives, across tiers, whose embedded timestamp contains ``pattern``."""
    matches = []
    for tier in TIERS:
        for archive in store.list(tier):
            if pattern in format_timestamp(archive.timestamp):
                matches.append(archive)
    return matches


def resolve_selection(store: ArchiveStore, selection: Selection) -> ArchiveRef:
    """
    Resolve a selection to exactly one archive. Never guesses.

    Raises:
        NotFound: If nothing matches
        SelectionAmbiguous: If a date matches more than one archive
        SelectionError: If the selection itself is invalid
    """
    if selection.archive_id:
        try:
            return store.find(selection.archive_id)
        except KeyError:
            raise NotFound(f"Backup not found: {selection.archive_id}")

    if selection.latest:
        if not selection.tier:
            raise SelectionError("Backup type required for --latest mode")
        return find_latest(store, selection.tier)

    if selection.date:
        matches = find_by_date(store, selection.date)
        if not matches:
            raise NotFound(f"No backups found for date: {selection.date}")
        if len(matches) > 1:
            raise SelectionAmbiguous(
                f"Multiple backups found for date {selection.date}", matches
            )
        return matches[0]

    raise SelectionError("No backup selected")


# ----------------------------------------------------------------------
# Run state
# ----------------------------------------------------------------------


@dataclass
class RestoreSession:
    archive: ArchiveRef
    workspace: Path
    bundle: Optional[Path] = None
    emergency_dir: Optional[Path] = None
    config_backup: Optional[Path] = None

    @property
    def databases_dir(self) -> Path:
        return self.workspace / "databases"

    @property
    def files_dir(self) -> Path:
        return self.workspace / "files"

    @property
    def config_dir(self) -> Path:
        return self.workspace / "config"


@dataclass
class RestoreReport:
    state: RestoreState = RestoreState.SELECT
    archive: Optional[ArchiveRef] = None
    workspace: Optional[Path] = None
    emergency_dir: Optional[Path] = None
    config_restored: bool = False
    checks: Dict[str, bool] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None
    failed_at: Optional[RestoreState] = None

    @property
    def ok(self) -> bool:
        return self.state in (RestoreState.DONE, RestoreState.CANCELLED)

    @property
    def all_checks_passed(self) -> bool:
        return all(self.checks.values())


class RestoreOrchestrator:
    """
    Runs one restore. Confirmation and the configuration opt-in are decided
    by the caller before :meth:`run`; nothing here prompts.
    """

    def __init__(
        self,
        settings: Settings,
        store: ArchiveStore,
        runner: Optional[CommandRunner] = None,
        services: Optional[ServiceController] = None,
        lms: Optional[MariaDBDumper] = None,
        ils: Optional[KohaDumper] = None,
        archiver: Optional[FileSetArchiver] = None,
        health: Optional[HealthSignal] = None,
        lock: Optional[RunLock] = None,
        clock: Callable[[], datetime] = datetime.now,
        log_file: Optional[Path] = None,
    ):
        self.settings = settings
        self.store = store
        self.runner = runner or CommandRunner()
        self.services = services or ServiceController(settings, self.runner)
        self.lms = lms or MoodleDumper(settings, self.runner)
        self.ils = ils or KohaDumper(settings, self.runner)
        self.archiver = archiver or FileSetArchiver(owner=settings.web_user)
        self.health = health or HealthSignal(settings.restore_healthcheck_url)
        self.lock = lock or RunLock(settings.lock_file)
        self.clock = clock
        self.log_file = log_file
        self.state = RestoreState.SELECT
        self._report: Optional[RestoreReport] = None

    def _enter(self, state: RestoreState) -> None:
        logger.debug("Restore state: %s -> %s", self.state.value, state.value)
        self.state = state
        if self._report is not None:
            self._report.state = state

    def _warn(self, message: str, *args) -> None:
        text = message % args if args else message
        logger.warning(text)
        if self._report is not None:
            self._report.warnings.append(text)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def emergency_snapshot(self, stamp: str) -> Path:
        """
        Capture the current databases and configs before anything is touched.

        Each failure is a warning; the snapshot is never deleted by a run.
        """
        logger.info("Creating emergency backup of current state...")
        emergency_dir = self.settings.emergency_root / stamp
        emergency_dir.mkdir(parents=True, exist_ok=True)

        logger.info("Backing up current databases...")
        for dumper in (self.lms, self.ils):
            target = emergency_dir / f"{dumper.prefix}-current.sql.gz"
            try:
                dumper.dump_to_file(target)
            except ComponentCaptureFailure as e:
                self._warn("Failed to backup current %s DB: %s", dumper.prefix, e)

        logger.info("Backing up current configurations...")
        try:
            _, skipped = self.archiver.capture_paths(
                self.settings.emergency_config_paths,
                emergency_dir / "configs-current.tar.gz",
            )
            if skipped:
                self._warn("Some config files not found")
        except (OSError, tarfile.TarError) as e:
            self._warn("Failed to backup current configs: %s", e)

        logger.info("Emergency backup saved to: %s", emergency_dir)
        return emergency_dir

    def fetch(self, session: RestoreSession) -> Path:
        """
        Raises:
            PreflightFailure: If the restore root lacks free space
            TransferFailure / CorruptArchive: From the download
        """
        available = free_space_mb(self.settings.restore_root)
        required = self.settings.restore_min_free_space_mb
        if available < required:
            raise PreflightFailure(
                "Insufficient disk space for restore",
                {"required_mb": required, "available_mb": available},
            )
        logger.info("Downloading backup: %s", session.archive.filename)
        return self.store.download(session.archive, session.workspace)

    def verify(self, bundle: Path) -> None:
        try:
            names = verify_package(bundle)
        except (tarfile.TarError, OSError, EOFError) as e:
            raise CorruptArchive("Backup file is corrupted!", {"error": str(e)})
        missing = missing_groups(names)
        if missing:
            raise CorruptArchive(
                f"Backup missing expected directory: {missing[0]}",
                {"missing": missing},
            )

    def extract(self, session: RestoreSession) -> None:
        logger.info("Extracting backup...")
        try:
            with tarfile.open(session.bundle, "r:gz") as tf:
                safe_extract(tf, session.workspace)
        except (tarfile.TarError, OSError) as e:
            raise CorruptArchive("Backup extraction failed", {"error": str(e)})
        logger.info("Backup extracted successfully")
        self.read_metadata(session)

    def read_metadata(self, session: RestoreSession) -> Optional[BackupMetadata]:
        """Log where and when the backup was taken. A missing descriptor is only a warning."""
        matches = sorted(session.workspace.glob("backup-metadata-*.json"))
        if not matches:
            self._warn("Backup metadata not found in archive")
            return None
        try:
            metadata = BackupMetadata.load(matches[-1])
        except (OSError, ValueError, KeyError, TypeError) as e:
            self._warn("Cannot read backup metadata: %s", e)
            return None
        logger.info(
            "Backup taken on %s at %s (%s)", metadata.hostname, metadata.timestamp, metadata.tier
        )
        if metadata.hostname != self.settings.hostname:
            self._warn(
                "Backup was taken on %s, restoring onto %s", metadata.hostname, self.settings.hostname
            )
        return metadata

    def stop_services(self) -> None:
        logger.info("Stopping services...")
        self.lock.acquire()
        self.services.enter_maintenance()
        for service in self.services.stop_services(self.settings.web_services):
            self._warn("Failed to stop %s", service)
        logger.info("Services stopped")

    def restore_files(self, session: RestoreSession) -> None:
        logger.info("Restoring Moodle data files...")
        matches = sorted(session.files_dir.glob("moodledata-*.tar.gz"))
        if not matches:
            raise ComponentRestoreFailure("Moodle data files backup not found!")
        try:
            self.archiver.restore(matches[-1], self.settings.moodledata_dir)
        except (OSError, tarfile.TarError) as e:
            raise ComponentRestoreFailure("Moodle data files restore failed", {"error": str(e)})
        logger.info("Moodle data files restored")

    def restore_configs(self, session: RestoreSession, stamp: str) -> bool:
        matches = sorted(session.config_dir.glob("configs-*.tar.gz"))
        if not matches:
            logger.info("No configuration backup found, skipping...")
            return False
        logger.info("Restoring configuration files...")
        keep_dir = self.settings.emergency_root.parent / f"configs-pre-restore-{stamp}"
        try:
            self.archiver.restore_paths(
                matches[-1], self.settings.config_restore_root, keep_dir=keep_dir
            )
        except (OSError, tarfile.TarError) as e:
            raise ComponentRestoreFailure("Configuration restore failed", {"error": str(e)})
        session.config_backup = keep_dir
        logger.info("Configuration files restored")
        return True

    def restore_components(self, session: RestoreSession, restore_config: bool, stamp: str) -> bool:
        """
        Raises:
            ComponentRestoreFailure: If a mandatory component cannot be restored
        """
        logger.info("Restoring Moodle database...")
        self.lms.restore(session.databases_dir)
        self.ils.restore(session.databases_dir)
        self.restore_files(session)
        if not restore_config:
            logger.info("Skipping configuration restore")
            return False
        return self.restore_configs(session, stamp)

    def start_services(self) -> None:
        """
        Raises:
            ServiceStartFailure: If the database service does not start
        """
        logger.info("Starting services...")
        order = (
            self.settings.database_service,
            *self.settings.web_services,
            *self.settings.optional_services,
        )
        for service in self.services.start_services(order):
            self._warn("Failed to start %s", service)
        self.services.exit_maintenance()
        logger.info("Services started")

    def _cli_script(self, name: str) -> Path:
        return self.settings.moodle_dir / "admin" / "cli" / name

    def post_tasks(self) -> None:
        """Cache purge, search index rebuild, upgrade check, ownership. All best-effort."""
        logger.info("Performing post-restore tasks...")

        purge = self._cli_script("purge_caches.php")
        if purge.exists():
            logger.info("Clearing Moodle cache...")
            try:
                self.services.run_as_web_user(["php", str(purge)])
            except CommandFailed as e:
                self._warn("Moodle cache purge failed: %s", e)

        logger.info("Rebuilding Koha search index...")
        try:
            self.runner.run(["koha-rebuild-zebra", "-f", "-v", self.settings.ils.instance])
        except CommandFailed as e:
            self._warn("Koha zebra rebuild failed: %s", e)

        upgrade = self._cli_script("upgrade.php")
        if upgrade.exists():
            logger.info("Checking for Moodle database updates...")
            try:
                self.services.run_as_web_user(["php", str(upgrade), "--non-interactive"])
            except CommandFailed as e:
                self._warn("Moodle upgrade check failed: %s", e)

        logger.info("Resetting file permissions...")
        for path in (self.settings.moodle_dir, self.settings.moodledata_dir):
            if not path.exists():
                continue
            try:
                self.archiver.chown_tree(path)
            except (OSError, LookupError) as e:
                self._warn("Cannot reset ownership of %s: %s", path, e)

        logger.info("Post-restore tasks completed")

    def verify_result(self) -> Dict[str, bool]:
        """Post-restore checks. Reported only; they never fail the run."""
        logger.info("Verifying restore...")
        checks = {}
        checks["moodle_database"] = self.lms.count_rows() is not None
        checks["koha_database"] = self.ils.is_accessible()
        for service in self.settings.required_services:
            checks[f"service:{service}"] = self.services.is_active(service)
        result = self.runner.run(
            ["test", "-r", str(self.settings.moodle_config)],
            user=self.settings.web_user,
            check=False,
        )
        checks["moodle_config"] = result.returncode == 0

        for name, passed in checks.items():
            if passed:
                logger.info("✓ %s", name)
            else:
                self._warn("✗ %s check failed", name)
        if all(checks.values()):
            logger.info("All checks passed!")
        else:
            logger.warning("Some checks failed - manual intervention may be needed")
        return checks

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(
        self,
        selection: Union[Selection, ArchiveRef],
        confirmed: bool,
        restore_config: bool = False,
    ) -> RestoreReport:
        """
        Execute one restore.

        Args:
            selection: A Selection to resolve, or an already chosen archive
            confirmed: Operator acknowledgment; False cancels before any change
            restore_config: Also restore configuration files (opt-in)

        Never raises for run failures: the report ends in FAIL with the error.
        """
        report = RestoreReport()
        self._report = report
        self.state = RestoreState.SELECT
        stamp = format_timestamp(self.clock())

        logger.info("=== Starting Moodle + Koha Restore Process ===")
        try:
            self._enter(RestoreState.SELECT)
            if isinstance(selection, ArchiveRef):
                archive = selection
            else:
                archive = resolve_selection(self.store, selection)
            report.archive = archive
            logger.info("Selected backup: %s", archive)

            self._enter(RestoreState.CONFIRM)
            if not confirmed:
                report.state = RestoreState.CANCELLED
                self.state = RestoreState.CANCELLED
                logger.info("Restore cancelled by user")
                return report

            self.health.notify_start()
            session = RestoreSession(
                archive=archive, workspace=self.settings.restore_root / stamp
            )
            session.workspace.mkdir(parents=True, exist_ok=True)
            report.workspace = session.workspace

            self._enter(RestoreState.EMERGENCY_SNAPSHOT)
            session.emergency_dir = self.emergency_snapshot(stamp)
            report.emergency_dir = session.emergency_dir
            (session.workspace / EMERGENCY_MARKER).write_text(f"{session.emergency_dir}\n")

            self._enter(RestoreState.FETCH)
            session.bundle = self.fetch(session)

            self._enter(RestoreState.VERIFY)
            logger.info("Verifying backup integrity...")
            self.verify(session.bundle)

            self._enter(RestoreState.EXTRACT)
            self.extract(session)

            self._enter(RestoreState.STOP_SERVICES)
            self.stop_services()

            self._enter(RestoreState.RESTORE_COMPONENTS)
            report.config_restored = self.restore_components(session, restore_config, stamp)

            self._enter(RestoreState.START_SERVICES)
            self.start_services()

            self._enter(RestoreState.POST_TASKS)
            self.post_tasks()

            self._enter(RestoreState.VERIFY_RESULT)
            report.checks = self.verify_result()

            self._enter(RestoreState.DONE)
            self.health.notify_success(self.summary(report))
            logger.info("=== Restore Completed Successfully! ===")
            logger.info("Emergency backup location: %s", session.emergency_dir)
            logger.info("Restore files location: %s", session.workspace)
            logger.info("If everything works correctly, you can remove the emergency backup.")
        except Exception as e:
            report.failed_at = self.state
            report.state = RestoreState.FAIL
            report.error = str(e)
            self.state = RestoreState.FAIL
            if isinstance(e, CampusVaultError):
                logger.error("Restore failed during %s: %s", report.failed_at.value, e)
            else:
                logger.exception("Unexpected error during %s", report.failed_at.value)
            self.health.notify_fail(
                format_failure_report(str(e), self.log_file, title="Restore Failed")
            )
        finally:
            self.lock.release()
        return report

    def summary(self, report: RestoreReport) -> str:
        passed = sum(1 for ok in report.checks.values() if ok)
        return (
            f"Restore completed\n"
            f"Host: {self.settings.hostname}\n"
            f"Archive: {report.archive}\n"
            f"Checks: {passed}/{len(report.checks)} passed\n"
            f"Warnings: {len(report.warnings)}"
        )


def build_restore(settings: Settings, log_file: Optional[Path] = None) -> RestoreOrchestrator:
    """Orchestrator wired to the real tools and the configured remote store."""
    return RestoreOrchestrator(
        settings,
        store=ArchiveStore(settings.remote),
        log_file=log_file,
    )


def list_emergency_snapshots(root: Path) -> List[Path]:
    if not root.is_dir():
        return []
    snapshots = []
    for entry in root.iterdir():
        if not entry.is_dir():
            continue
        try:
            parse_timestamp(entry.name)
        except ValueError:
            continue
        snapshots.append(entry)
    return sorted(snapshots)


def prune_emergency_snapshots(
    root: Path, older_than_days: int, now: Optional[datetime] = None
) -> List[Path]:
    """
    Delete emergency snapshots whose timestamp is more than
    ``older_than_days`` days old. Only ever called on explicit request.
    """
    if older_than_days < 0:
        raise ValueError("older_than_days must not be negative")
    now = now or datetime.now()
    threshold = timedelta(days=older_than_days)
    removed = []
    for snapshot in list_emergency_snapshots(root):
        if now - parse_timestamp(snapshot.name) > threshold:
            shutil.rmtree(snapshot)
            logger.info("Removed emergency snapshot %s", snapshot)
            removed.append(snapshot)
    return removed
