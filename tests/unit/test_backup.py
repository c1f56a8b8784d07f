import json
import tarfile
from dataclasses import replace
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from core.backup import BackupOrchestrator, BackupState, record_status
from core.errors import PreflightFailure
from core.lock import RunLock
from core.s3_storage import ArchiveStore

PREFIX = "backups/moodle-koha-testhost"


@pytest.fixture
def store(settings, s3_client):
    return ArchiveStore(settings.remote, client=s3_client)


@pytest.fixture
def make_orchestrator(settings, store, runner, fake_db):
    def _make(when=datetime(2024, 1, 16, 2, 0, 0), **kwargs):
        kwargs.setdefault("health", MagicMock())
        return BackupOrchestrator(
            settings, store=store, runner=runner, clock=lambda: when, **kwargs
        )

    return _make


def test_first_of_month_run_lands_in_monthly(settings, s3_client, make_orchestrator):
    orchestrator = make_orchestrator(datetime(2024, 3, 1, 2, 0, 0))

    report = orchestrator.run()

    assert report.ok, report.error
    assert report.tier == "monthly"
    assert s3_client.uploads == [f"{PREFIX}/monthly/backup-monthly-20240301-020000.tar.gz"]
    assert not (settings.backup_dir / "backup-monthly-20240301-020000.tar.gz").exists()
    assert not (settings.backup_dir / "20240301-020000").exists()
    orchestrator.health.notify_start.assert_called_once()
    orchestrator.health.notify_success.assert_called_once()
    orchestrator.health.notify_fail.assert_not_called()
    summary = orchestrator.health.notify_success.call_args[0][0]
    assert summary.startswith("Backup completed successfully\nHost: testhost\nType: monthly")


def test_bundle_layout_and_metadata(settings, s3_client, runner, make_orchestrator):
    runner.dumps["moodle"] = b"-- moodle\n"
    report = make_orchestrator(datetime(2024, 1, 14, 2, 0, 0)).run()
    assert report.tier == "weekly"

    key = f"{PREFIX}/weekly/backup-weekly-20240114-020000.tar.gz"
    bundle = settings.backup_dir.parent / "check.tar.gz"
    bundle.write_bytes(s3_client.objects[key])
    with tarfile.open(bundle, "r:gz") as tf:
        names = tf.getnames()
        metadata = json.load(tf.extractfile("backup-metadata-20240114-020000.json"))

    assert "databases/moodle-20240114-020000.sql.gz" in names
    assert "databases/koha-20240114-020000.sql.gz" in names
    assert "files/moodledata-20240114-020000.tar.gz" in names
    assert "config/configs-20240114-020000.tar.gz" in names
    assert "config/packages-20240114-020000.list" in names
    assert "config/packages-manual-20240114-020000.list" in names

    assert metadata["hostname"] == "testhost"
    assert metadata["tier"] == "weekly"
    assert metadata["backup_version"] == "1.0"
    assert metadata["components"]["moodle_db"]["records"] == 42
    assert "records" not in metadata["components"]["koha_db"]
    assert len(metadata["components"]["moodle_files"]["sha256"]) == 64
    assert metadata["services"]["mariadb"] == "active"


def test_lms_dump_failure_stops_before_upload(settings, s3_client, runner, make_orchestrator):
    script = settings.moodle_dir / "admin" / "cli" / "maintenance.php"
    script.write_text("<?php")
    runner.fail("mysqldump")
    orchestrator = make_orchestrator()

    report = orchestrator.run()

    assert report.state == BackupState.FAIL
    assert report.failed_at == BackupState.DUMP_COMPONENTS
    assert s3_client.uploads == []
    orchestrator.health.notify_fail.assert_called_once()
    orchestrator.health.notify_success.assert_not_called()
    assert ["php", str(script), "--disable"] in runner.calls


def test_inactive_service_fails_precheck(runner, s3_client, make_orchestrator):
    runner.inactive.add("apache2")
    orchestrator = make_orchestrator()

    report = orchestrator.run()

    assert report.failed_at == BackupState.PRECHECK
    assert "System not ready for backup" in report.error
    assert runner.commands("mysqldump") == []
    orchestrator.health.notify_fail.assert_called_once()


def test_precheck_reports_missing_config(settings, runner, make_orchestrator):
    settings.moodle_config.unlink()
    orchestrator = make_orchestrator()
    try:
        with pytest.raises(PreflightFailure) as excinfo:
            orchestrator.precheck()
    finally:
        orchestrator.lock.release()
    assert any("config.php" in p for p in excinfo.value.details["problems"])


def test_insufficient_disk_space(settings, store, runner, fake_db, monkeypatch):
    monkeypatch.setattr("core.backup.free_space_mb", lambda path: 10)
    orchestrator = BackupOrchestrator(
        replace(settings, min_free_space_mb=5000),
        store=store,
        runner=runner,
        health=MagicMock(),
    )
    try:
        with pytest.raises(PreflightFailure, match="Insufficient disk space"):
            orchestrator.precheck()
    finally:
        orchestrator.lock.release()


def test_upload_failure_keeps_local_bundle(settings, s3_client, make_orchestrator):
    s3_client.fail_uploads = True
    orchestrator = make_orchestrator()

    report = orchestrator.run()

    assert report.failed_at == BackupState.UPLOAD
    assert report.bundle.exists()
    assert (settings.backup_dir / "20240116-020000").is_dir()
    orchestrator.health.notify_fail.assert_called_once()


def test_retention_per_tier(s3_client, make_orchestrator):
    now = datetime(2024, 3, 5, 2, 0, 0)
    old_daily = f"{PREFIX}/daily/backup-daily-20240226-020000.tar.gz"
    fresh_daily = f"{PREFIX}/daily/backup-daily-20240301-020000.tar.gz"
    old_weekly = f"{PREFIX}/weekly/backup-weekly-20240204-020000.tar.gz"
    kept_weekly = f"{PREFIX}/weekly/backup-weekly-20240211-020000.tar.gz"
    kept_monthly = f"{PREFIX}/monthly/backup-monthly-20231001-020000.tar.gz"
    for key in (old_daily, fresh_daily, old_weekly, kept_weekly, kept_monthly):
        s3_client.put(key, b"x")

    report = make_orchestrator(now).run()

    assert report.ok, report.error
    assert {d.archive_id for d in report.deleted} == {
        "daily/backup-daily-20240226-020000.tar.gz",
        "weekly/backup-weekly-20240204-020000.tar.gz",
    }
    assert fresh_daily in s3_client.objects
    assert kept_weekly in s3_client.objects
    assert kept_monthly in s3_client.objects


def test_retention_failure_fails_run(s3_client, make_orchestrator):
    s3_client.put(f"{PREFIX}/daily/backup-daily-20230101-020000.tar.gz", b"x")
    s3_client.fail_deletes = True
    orchestrator = make_orchestrator()

    report = orchestrator.run()

    assert report.failed_at == BackupState.RETENTION_CLEANUP
    assert report.archive is not None
    orchestrator.health.notify_fail.assert_called_once()


def test_stale_local_artifacts_are_removed(settings, make_orchestrator):
    settings.backup_dir.mkdir(parents=True)
    stale_dir = settings.backup_dir / "20240110-020000"
    stale_dir.mkdir()
    stale_bundle = settings.backup_dir / "backup-daily-20240110-020000.tar.gz"
    stale_bundle.write_bytes(b"x")
    recent = settings.backup_dir / "20240115-230000"
    recent.mkdir()
    unrelated = settings.backup_dir / "notes.txt"
    unrelated.write_text("keep")

    report = make_orchestrator().run()

    assert report.ok, report.error
    assert not stale_dir.exists()
    assert not stale_bundle.exists()
    assert recent.exists()
    assert unrelated.exists()


def test_busy_lock_fails_without_dumping(settings, runner, make_orchestrator):
    holder = RunLock(settings.lock_file)
    holder.acquire()
    try:
        orchestrator = make_orchestrator()
        report = orchestrator.run()
    finally:
        holder.release()

    assert report.failed_at == BackupState.PRECHECK
    assert "already running" in report.error
    assert runner.commands("mysqldump") == []
    orchestrator.health.notify_fail.assert_called_once()


def test_status_log(settings, make_orchestrator, runner):
    make_orchestrator().run()
    runner.fail("mysqldump")
    make_orchestrator(datetime(2024, 1, 17, 2, 0, 0)).run()

    lines = (settings.log_dir / "backup-status.log").read_text().splitlines()
    assert lines[0] == "[2024-01-16 02:00:00] [SUCCESS] Backup completed successfully"
    assert lines[1].startswith("[2024-01-17 02:00:00] [FAILED] ")


def test_record_status_without_writable_dir(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("")
    report = MagicMock(ok=True)
    # A status log that cannot be written never raises
    record_status(blocker / "logs", report, datetime(2024, 1, 16, 2, 0, 0))
