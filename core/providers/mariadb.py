"""MariaDB logical dumps (the LMS store and the generic fallback path)."""

import gzip
import logging
from pathlib import Path
from typing import Any, BinaryIO, Dict, List, Optional, Tuple

import pymysql

from config import Settings

from ..errors import CommandFailed, ComponentCaptureFailure, ComponentRestoreFailure
from ..runner import CommandRunner
from .base import BaseDumper

logger = logging.getLogger("campusvault.providers.mariadb")


class MariaDBDumper(BaseDumper):
    """
    Generic mysqldump / mysql based dumper for one database.

    Dumps are transaction-consistent (--single-transaction) and gzip
    compressed. A restore drops and recreates the schema first; the replay
    is not transactional, so a failure midway leaves the database partially
    loaded.
    """

    def __init__(
        self,
        settings: Settings,
        runner: CommandRunner,
        database: str,
        prefix: str,
        app_user: Optional[str] = None,
        sanity_table: Optional[str] = None,
        app_password: Optional[str] = None,
    ) -> None:
        super().__init__(settings, runner)
        self.database = database
        self.prefix = prefix
        self.app_user = app_user
        self.app_password = app_password
        self.sanity_table = sanity_table

    @property
    def _env(self) -> Dict[str, str]:
        return {"MYSQL_PWD": self.settings.db_root_password}

    def _client_args(self) -> List[str]:
        return [
            "-h", self.settings.db_host,
            "-P", str(self.settings.db_port),
            "-u", self.settings.db_user,
        ]

    def _connect(self, database: Optional[str] = None) -> Any:
        return pymysql.connect(
            host=self.settings.db_host,
            port=self.settings.db_port,
            user=self.settings.db_user,
            password=self.settings.db_root_password,
            database=database,
            connect_timeout=5,
        )

    def check_connection(self) -> bool:
        try:
            conn = self._connect()
            try:
                with conn.cursor() as cursor:
                    cursor.execute("SELECT 1")
            finally:
                conn.close()
            return True
        except pymysql.MySQLError:
            return False

    def count_rows(self, table: Optional[str] = None) -> Optional[int]:
        """Row count of the sanity table, or None if it cannot be read."""
        table = table or self.sanity_table
        if not table:
            return None
        try:
            conn = self._connect(self.database)
            try:
                with conn.cursor() as cursor:
                    cursor.execute(f"SELECT COUNT(*) FROM `{table}`")
                    row = cursor.fetchone()
            finally:
                conn.close()
            return int(row[0]) if row else None
        except pymysql.MySQLError as e:
            logger.warning("Cannot count rows in %s.%s: %s", self.database, table, e)
            return None

    def is_accessible(self) -> bool:
        """True if the database can be opened and lists its tables."""
        try:
            conn = self._connect(self.database)
            try:
                with conn.cursor() as cursor:
                    cursor.execute("SHOW TABLES")
                    cursor.fetchall()
            finally:
                conn.close()
            return True
        except pymysql.MySQLError:
            return False

    # ------------------------------------------------------------------
    # Dump
    # ------------------------------------------------------------------

    def dump_command(self) -> List[str]:
        return [
            "mysqldump",
            *self._client_args(),
            "--single-transaction",  # Consistent snapshot without locking tables
            "--quick",  # Stream rows instead of buffering whole tables
            "--lock-tables=false",
            "--routines",
            "--triggers",
            "--databases",
            self.database,
        ]

    def dump_to_file(self, path: Path) -> Path:
        """Dump the database into a gzip file at ``path``."""
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with gzip.open(path, "wb") as out:
                self.runner.dump_to(self.dump_command(), out, env=self._env)
        except (CommandFailed, OSError) as e:
            path.unlink(missing_ok=True)
            raise ComponentCaptureFailure(
                f"{self.prefix} database dump failed", {"error": str(e)}
            )
        if not path.exists() or path.stat().st_size == 0:
            raise ComponentCaptureFailure(
                f"{self.prefix} dump was not created or is empty: {path}"
            )
        return path

    def dump(self, dest_dir: Path, timestamp: str) -> Path:
        logger.info("Backing up %s database...", self.database)
        path = self.dump_to_file(dest_dir / f"{self.prefix}-{timestamp}.sql.gz")
        logger.info("%s database backup completed", self.database)
        return path

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def find_dump(self, databases_dir: Path) -> Optional[Path]:
        matches = sorted(databases_dir.glob(f"{self.prefix}-*.sql.gz"))
        return matches[-1] if matches else None

    def recreate_database(self) -> None:
        """
        DROP and CREATE the database, re-granting the application user.

        When the application password is known the user is created first if
        missing, so a restore onto a fresh server leaves a working login.
        An existing user keeps its password.
        """
        statements: List[Tuple[str, Optional[tuple]]] = [
            (f"DROP DATABASE IF EXISTS `{self.database}`", None),
            (
                f"CREATE DATABASE `{self.database}` "
                f"DEFAULT CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci",
                None,
            ),
        ]
        if self.app_user:
            if self.app_password:
                statements.append(
                    (
                        "CREATE USER IF NOT EXISTS %s@'localhost' IDENTIFIED BY %s",
                        (self.app_user, self.app_password),
                    )
                )
            statements.append(
                (
                    f"GRANT ALL PRIVILEGES ON `{self.database}`.* "
                    f"TO '{self.app_user}'@'localhost'",
                    None,
                )
            )
            statements.append(("FLUSH PRIVILEGES", None))
        try:
            conn = self._connect()
            try:
                with conn.cursor() as cursor:
                    for statement, args in statements:
                        cursor.execute(statement, args)
                conn.commit()
            finally:
                conn.close()
        except pymysql.MySQLError as e:
            raise ComponentRestoreFailure(
                f"Cannot recreate database {self.database}", {"error": str(e)}
            )

    def replay(self, src: BinaryIO) -> None:
        cmd = ["mysql", *self._client_args(), self.database]
        try:
            self.runner.feed_from(cmd, src, env=self._env)
        except CommandFailed as e:
            raise ComponentRestoreFailure(
                f"Replay into {self.database} failed; database state is unknown",
                {"error": str(e)},
            )

    def restore_file(self, dump_file: Path) -> Path:
        logger.info("Restoring %s from %s", self.database, dump_file.name)
        self.recreate_database()
        opener = gzip.open if dump_file.suffix == ".gz" else open
        with opener(dump_file, "rb") as src:
            self.replay(src)
        logger.info("%s database restored", self.database)
        return dump_file

    def restore(self, databases_dir: Path) -> Path:
        dump_file = self.find_dump(databases_dir)
        if dump_file is None:
            raise ComponentRestoreFailure(
                f"{self.prefix} database backup not found in {databases_dir}"
            )
        return self.restore_file(dump_file)


class MoodleDumper(MariaDBDumper):
    """LMS database: plain logical dump, maintenance handled by the caller."""

    def __init__(self, settings: Settings, runner: CommandRunner) -> None:
        super().__init__(
            settings,
            runner,
            database=settings.lms.database,
            prefix="moodle",
            app_user=settings.lms.user,
            sanity_table=settings.lms.sanity_table,
            app_password=settings.lms_db_password,
        )
