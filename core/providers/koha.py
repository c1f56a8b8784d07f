"""Koha (ILS) database: koha-dump packages with a mysqldump fallback."""

import gzip
import logging
import shutil
import tarfile
import tempfile
from pathlib import Path
from typing import Optional

from config import Settings

from ..archiver import safe_extract
from ..errors import (
    CommandFailed,
    ComponentCaptureFailure,
    ComponentRestoreFailure,
    ToolAssistFailure,
)
from ..runner import CommandRunner
from .mariadb import MariaDBDumper

logger = logging.getLogger("campusvault.providers.koha")


class KohaDumper(MariaDBDumper):
    """
    Prefers the tool-native ``koha-dump`` tarball. When the tool is missing
    or fails, the generic logical dump is used instead and the run goes on.
    """

    def __init__(self, settings: Settings, runner: CommandRunner) -> None:
        super().__init__(
            settings,
            runner,
            database=settings.ils.database,
            prefix="koha",
        )
        self.instance = settings.ils.instance
        self.spool_dir = settings.ils.spool_dir / self.instance

    # ------------------------------------------------------------------
    # Dump
    # ------------------------------------------------------------------

    def native_dump(self, dest: Path) -> Path:
        """
        Run koha-dump and move its tarball to ``dest``.

        Raises:
            ToolAssistFailure: If koha-dump fails or leaves no tarball
        """
        if not self.runner.is_available("koha-dump"):
            raise ToolAssistFailure("koha-dump is not installed")
        try:
            self.runner.run(["koha-dump", self.instance])
        except CommandFailed as e:
            raise ToolAssistFailure("koha-dump failed", {"error": str(e)})

        tarballs = sorted(
            self.spool_dir.glob("*.tar.gz"), key=lambda p: p.stat().st_mtime
        )
        if not tarballs:
            raise ToolAssistFailure(
                f"koha-dump succeeded but no output found in {self.spool_dir}"
            )
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(tarballs[-1]), str(dest))
        return dest

    def dump(self, dest_dir: Path, timestamp: str) -> Path:
        logger.info("Backing up Koha database...")
        try:
            path = self.native_dump(dest_dir / f"{self.prefix}-{timestamp}.tar.gz")
            logger.info("Koha database backup completed")
            return path
        except ToolAssistFailure as e:
            logger.warning("%s, falling back to manual mysqldump", e)

        try:
            path = self.dump_to_file(dest_dir / f"{self.prefix}-{timestamp}.sql.gz")
        except ComponentCaptureFailure as e:
            raise ComponentCaptureFailure("Koha database backup failed", e.details)
        logger.info("Koha database backup completed (manual dump)")
        return path

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def find_native(self, databases_dir: Path) -> Optional[Path]:
        matches = sorted(databases_dir.glob(f"{self.prefix}-*.tar.gz"))
        return matches[-1] if matches else None

    def find_dump(self, databases_dir: Path) -> Optional[Path]:
        return self.find_native(databases_dir) or super().find_dump(databases_dir)

    def _run_tool(self, cmd) -> None:
        try:
            self.runner.run(cmd)
        except CommandFailed as e:
            logger.warning("%s failed: %s", cmd[0], e)

    def restore_native(self, tarball: Path) -> Path:
        logger.info("Found Koha tarball backup")
        with tempfile.TemporaryDirectory(prefix="koha-restore-") as temp_dir:
            try:
                with tarfile.open(tarball, "r:gz") as tf:
                    safe_extract(tf, Path(temp_dir))
            except (tarfile.TarError, OSError) as e:
                raise ComponentRestoreFailure(
                    f"Cannot extract Koha backup {tarball.name}", {"error": str(e)}
                )

            candidates = sorted(Path(temp_dir).rglob("*.sql.gz")) + sorted(
                Path(temp_dir).rglob("*.sql")
            )
            if not candidates:
                raise ComponentRestoreFailure("No SQL file found in Koha backup!")
            sql_file = candidates[0]

            self._run_tool(["koha-remove", "--keep-mysql", self.instance])
            self._run_tool(["koha-create", "--create-db", self.instance])

            opener = gzip.open if sql_file.suffix == ".gz" else open
            try:
                with opener(sql_file, "rb") as src:
                    self.runner.feed_from(["koha-mysql", self.instance], src)
            except CommandFailed as e:
                raise ComponentRestoreFailure(
                    "koha-mysql replay failed; database state is unknown",
                    {"error": str(e)},
                )
        logger.info("Koha database restored")
        return tarball

    def restore(self, databases_dir: Path) -> Path:
        logger.info("Restoring Koha database...")
        tarball = self.find_native(databases_dir)
        if tarball is not None:
            return self.restore_native(tarball)

        dump_file = super().find_dump(databases_dir)
        if dump_file is None:
            raise ComponentRestoreFailure("No Koha database backup found!")
        logger.info("Found Koha SQL backup")
        return self.restore_file(dump_file)
