"""
Backup lifecycle: precheck, component dumps, packaging, upload and retention.
"""
import logging
import shutil
import tarfile
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from config import Settings

from .archiver import FileSetArchiver
from .backup_utils import human_size
from .errors import CampusVaultError, CommandFailed, ComponentCaptureFailure, PreflightFailure
from .healthcheck import HealthSignal, format_failure_report
from .lock import RunLock
from .metadata import BackupMetadata, ComponentInfo
from .providers.koha import KohaDumper
from .providers.mariadb import MariaDBDumper, MoodleDumper
from .runner import CommandRunner
from .s3_storage import ArchiveRef, ArchiveStore
from .services import ServiceController
from .system import capture_package_manifest, free_space_mb, system_stats
from .tiers import (
    TIERS,
    archive_name,
    format_timestamp,
    parse_archive_name,
    parse_timestamp,
    select_tier,
)

logger = logging.getLogger("campusvault.backup")

GROUPS = ("databases", "files", "config")

# Local leftovers (staging dirs, bundles kept after a failed upload) older
# than this are removed after a successful run
LOCAL_MAX_AGE = timedelta(days=1)


class BackupState(str, Enum):
    START = "start"
    PRECHECK = "precheck"
    DUMP_COMPONENTS = "dump_components"
    PACKAGE = "package"
    UPLOAD = "upload"
    RETENTION_CLEANUP = "retention_cleanup"
    DONE = "done"
    FAIL = "fail"


@dataclass
class BackupReport:
    tier: str
    timestamp: str
    state: BackupState = BackupState.START
    archive: Optional[ArchiveRef] = None
    bundle: Optional[Path] = None
    size: int = 0
    duration: float = 0.0
    deleted: List[ArchiveRef] = field(default_factory=list)
    error: Optional[str] = None
    failed_at: Optional[BackupState] = None

    @property
    def ok(self) -> bool:
        return self.state == BackupState.DONE


class BackupOrchestrator:
    """
    Runs one backup. Every collaborator can be injected; defaults are built
    from the settings.
    """

    def __init__(
        self,
        settings: Settings,
        store: ArchiveStore,
        runner: Optional[CommandRunner] = None,
        services: Optional[ServiceController] = None,
        lms: Optional[MariaDBDumper] = None,
        ils: Optional[MariaDBDumper] = None,
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
        self.health = health or HealthSignal(settings.healthcheck_url)
        self.lock = lock or RunLock(settings.lock_file)
        self.clock = clock
        self.log_file = log_file
        self.state = BackupState.START

    def _enter(self, state: BackupState) -> None:
        logger.debug("Backup state: %s -> %s", self.state.value, state.value)
        self.state = state

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def precheck(self) -> None:
        """
        Raises:
            PreflightFailure: If the host is not ready (RunLockBusy included)
        """
        logger.info("Performing pre-backup health check...")
        self.lock.acquire()

        problems = []
        for service in self.services.inactive(self.settings.required_services):
            logger.error("Service %s is not running!", service)
            problems.append(f"service {service} is not running")

        if not self.lms.check_connection():
            logger.error("Cannot connect to MariaDB!")
            problems.append("cannot connect to MariaDB")

        if self.settings.moodle_config.exists():
            logger.info("Moodle config found")
        else:
            logger.error("Moodle config.php not found!")
            problems.append(f"{self.settings.moodle_config} not found")

        if problems:
            raise PreflightFailure("System not ready for backup", {"problems": problems})
        logger.info("All systems healthy")

        available = free_space_mb(self.settings.backup_dir)
        required = self.settings.min_free_space_mb
        if available < required:
            raise PreflightFailure(
                "Insufficient disk space for backup",
                {"required_mb": required, "available_mb": available},
            )
        logger.info("Disk space check passed. Available: %sMB", available)

    def dump_lms_database(self, dest_dir: Path, timestamp: str) -> Path:
        """LMS dump inside maintenance mode; maintenance is always left."""
        self.services.enter_maintenance()
        try:
            return self.lms.dump(dest_dir, timestamp)
        finally:
            self.services.exit_maintenance()

    def dump_components(self, staging: Path, timestamp: str) -> Dict[str, ComponentInfo]:
        """
        Capture every component into the staging directory, in order.

        Raises:
            ComponentCaptureFailure: On the first component that cannot be captured
        """
        databases = staging / "databases"
        files = staging / "files"
        config = staging / "config"
        for directory in (databases, files, config):
            directory.mkdir(parents=True, exist_ok=True)

        components = {}

        path = self.dump_lms_database(databases, timestamp)
        components["moodle_db"] = ComponentInfo.from_file(path, records=self.lms.count_rows())

        path = self.ils.dump(databases, timestamp)
        components["koha_db"] = ComponentInfo.from_file(path)

        logger.info("Backing up Moodle data files...")
        try:
            path = self.archiver.capture(
                self.settings.moodledata_dir, files / f"moodledata-{timestamp}.tar.gz"
            )
        except (OSError, tarfile.TarError) as e:
            raise ComponentCaptureFailure("Moodle files backup failed", {"error": str(e)})
        components["moodle_files"] = ComponentInfo.from_file(path)
        logger.info("Moodle data files backup completed")

        logger.info("Backing up configuration files...")
        try:
            path, _ = self.archiver.capture_paths(
                self.settings.config_paths, config / f"configs-{timestamp}.tar.gz"
            )
        except (OSError, tarfile.TarError) as e:
            raise ComponentCaptureFailure("Configuration backup failed", {"error": str(e)})
        components["configs"] = ComponentInfo.from_file(path)
        logger.info("Configuration files backup completed")

        logger.info("Backing up system package list...")
        try:
            capture_package_manifest(self.runner, config, timestamp)
        except (CommandFailed, OSError) as e:
            raise ComponentCaptureFailure("System package list backup failed", {"error": str(e)})
        logger.info("System package list saved")

        return components

    def package(
        self,
        staging: Path,
        tier: str,
        timestamp: str,
        components: Dict[str, ComponentInfo],
    ) -> Path:
        """Write the metadata descriptor and the single upload bundle."""
        metadata = BackupMetadata(
            timestamp=timestamp,
            hostname=self.settings.hostname,
            tier=tier,
            components=components,
            services=self.services.snapshot(self.settings.snapshot_services),
            system=system_stats(),
        )
        metadata_file = metadata.write(staging)

        logger.info("Creating backup archive...")
        bundle = self.settings.backup_dir / archive_name(tier, timestamp)
        with tarfile.open(bundle, "w:gz") as tf:
            for group in GROUPS:
                tf.add(str(staging / group), arcname=group)
            tf.add(str(metadata_file), arcname=metadata_file.name)
        logger.info("Backup archive created: %s (%s)", bundle.name, human_size(bundle.stat().st_size))
        return bundle

    def upload(self, bundle: Path, tier: str, staging: Path) -> ArchiveRef:
        """
        Upload the bundle; local artifacts are removed only after success.

        Raises:
            TransferFailure: If the upload fails (local artifacts are kept)
        """
        logger.info("Uploading to %s/%s/ ...", self.store.location, tier)
        archive = self.store.upload(bundle, tier)
        logger.info("Upload completed successfully")
        bundle.unlink(missing_ok=True)
        shutil.rmtree(staging, ignore_errors=True)
        return archive

    def enforce_retention(self, now: datetime) -> List[ArchiveRef]:
        logger.info("Managing backup retention...")
        deleted = []
        for tier in TIERS:
            threshold = self.settings.retention.threshold(tier)
            logger.info("Cleaning %s backups (older than %s days)...", tier, threshold.days)
            deleted.extend(self.store.delete_older_than(tier, threshold, now=now))
        logger.info("Retention management completed")
        return deleted

    def cleanup_local(self, now: datetime) -> List[Path]:
        """Remove staging directories and bundles left by earlier runs."""
        removed = []
        backup_dir = self.settings.backup_dir
        if not backup_dir.is_dir():
            return removed
        for entry in backup_dir.iterdir():
            stamp = None
            if entry.is_dir():
                try:
                    stamp = parse_timestamp(entry.name)
                except ValueError:
                    continue
            else:
                parsed = parse_archive_name(entry.name)
                if parsed:
                    stamp = parsed[1]
            if stamp is None or now - stamp <= LOCAL_MAX_AGE:
                continue
            if entry.is_dir():
                shutil.rmtree(entry, ignore_errors=True)
            else:
                entry.unlink(missing_ok=True)
            removed.append(entry)
        if removed:
            logger.info("Removed %d stale local backup entries", len(removed))
        return removed

    def summary(self, report: BackupReport) -> str:
        return (
            f"Backup completed successfully\n"
            f"Host: {self.settings.hostname}\n"
            f"Type: {report.tier}\n"
            f"Duration: {int(report.duration)} seconds\n"
            f"Size: {human_size(report.size)}"
        )

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self) -> BackupReport:
        """
        Execute one full backup.

        Never raises for run failures: the error is logged, a single fail
        ping is sent and the returned report is in the FAIL state.
        """
        started = time.monotonic()
        now = self.clock()
        timestamp = format_timestamp(now)
        tier = select_tier(now.date())
        report = BackupReport(tier=tier, timestamp=timestamp)

        self.health.notify_start()
        logger.info("=== Starting backup process (%s, %s) ===", tier, timestamp)

        staging = self.settings.backup_dir / timestamp
        try:
            self._enter(BackupState.PRECHECK)
            self.precheck()

            self._enter(BackupState.DUMP_COMPONENTS)
            components = self.dump_components(staging, timestamp)

            self._enter(BackupState.PACKAGE)
            bundle = self.package(staging, tier, timestamp, components)
            report.bundle = bundle
            report.size = bundle.stat().st_size

            self._enter(BackupState.UPLOAD)
            report.archive = self.upload(bundle, tier, staging)
            report.bundle = None

            self._enter(BackupState.RETENTION_CLEANUP)
            report.deleted = self.enforce_retention(now)
            self.cleanup_local(now)

            self._enter(BackupState.DONE)
            report.state = BackupState.DONE
            report.duration = time.monotonic() - started
            self.health.notify_success(self.summary(report))
            logger.info("=== Backup completed successfully ===")
            logger.info("Backup summary:")
            logger.info("- Archive: %s", report.archive)
            logger.info("- Total size: %s", human_size(report.size))
            logger.info("- Duration: %d seconds", int(report.duration))
            if self.log_file:
                logger.info("- Log file: %s", self.log_file)
            logger.info("- Remote location: %s", self.store.location)
        except Exception as e:
            report.failed_at = self.state
            report.state = BackupState.FAIL
            report.error = str(e)
            report.duration = time.monotonic() - started
            self.state = BackupState.FAIL
            if isinstance(e, CampusVaultError):
                logger.error("Backup failed during %s: %s", report.failed_at.value, e)
            else:
                logger.exception("Unexpected error during %s", report.failed_at.value)
            self.health.notify_fail(format_failure_report(str(e), self.log_file))
        finally:
            self.lock.release()

        record_status(self.settings.log_dir, report, self.clock())
        return report


def record_status(log_dir: Path, report: BackupReport, when: datetime) -> None:
    """Append the run outcome to backup-status.log for external monitoring."""
    status = "SUCCESS" if report.ok else "FAILED"
    message = "Backup completed successfully" if report.ok else report.error
    line = f"[{when.strftime('%Y-%m-%d %H:%M:%S')}] [{status}] {message}\n"
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        with open(log_dir / "backup-status.log", "a") as f:
            f.write(line)
    except OSError as e:
        logger.warning("Cannot write backup status log: %s", e)


def build_backup(settings: Settings, log_file: Optional[Path] = None) -> BackupOrchestrator:
    """Orchestrator wired to the real tools and the configured remote store."""
    return BackupOrchestrator(
        settings,
        store=ArchiveStore(settings.remote),
        log_file=log_file,
    )
