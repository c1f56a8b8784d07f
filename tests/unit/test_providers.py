import dataclasses
import gzip
import io
import tarfile

import pytest

from core.errors import ComponentCaptureFailure, ComponentRestoreFailure
from core.providers.koha import KohaDumper
from core.providers.mariadb import MoodleDumper


def test_moodle_dump_is_gzipped_mysqldump(tmp_path, settings, runner):
    runner.dumps["moodle"] = b"CREATE TABLE mdl_user (id int);\n"
    path = MoodleDumper(settings, runner).dump(tmp_path, "20240115-020000")

    assert path.name == "moodle-20240115-020000.sql.gz"
    assert gzip.decompress(path.read_bytes()) == b"CREATE TABLE mdl_user (id int);\n"
    cmd = runner.calls[-1]
    assert cmd[0] == "mysqldump"
    assert "--single-transaction" in cmd
    assert cmd[-2:] == ["--databases", "moodle"]


def test_dump_failure_leaves_no_file(tmp_path, settings, runner):
    runner.fail("mysqldump")
    with pytest.raises(ComponentCaptureFailure):
        MoodleDumper(settings, runner).dump(tmp_path, "20240115-020000")
    assert list(tmp_path.glob("*.sql.gz")) == []


def test_connection_and_row_count(settings, runner, fake_db):
    dumper = MoodleDumper(settings, runner)
    assert dumper.check_connection() is True
    assert dumper.count_rows() == 42
    fake_db.cursor.execute.assert_any_call("SELECT COUNT(*) FROM `mdl_user`")


def test_restore_recreates_then_replays(tmp_path, settings, runner, fake_db):
    databases = tmp_path / "databases"
    databases.mkdir()
    (databases / "moodle-20240115-020000.sql.gz").write_bytes(gzip.compress(b"INSERT 1;\n"))

    MoodleDumper(settings, runner).restore(databases)

    executed = [c[0][0] for c in fake_db.cursor.execute.call_args_list]
    assert executed[0] == "DROP DATABASE IF EXISTS `moodle`"
    assert executed[1].startswith("CREATE DATABASE `moodle`")
    assert "GRANT ALL PRIVILEGES ON `moodle`.* TO 'moodle'@'localhost'" in executed
    assert runner.fed["moodle"] == b"INSERT 1;\n"


def test_recreate_creates_missing_app_user(settings, runner, fake_db):
    MoodleDumper(settings, runner).recreate_database()

    fake_db.cursor.execute.assert_any_call(
        "CREATE USER IF NOT EXISTS %s@'localhost' IDENTIFIED BY %s", ("moodle", "moodlepw")
    )
    executed = [c[0][0] for c in fake_db.cursor.execute.call_args_list]
    create_user = executed.index("CREATE USER IF NOT EXISTS %s@'localhost' IDENTIFIED BY %s")
    assert create_user < executed.index("GRANT ALL PRIVILEGES ON `moodle`.* TO 'moodle'@'localhost'")


def test_recreate_without_app_password_only_grants(settings, runner, fake_db):
    settings = dataclasses.replace(settings, lms_db_password=None)
    MoodleDumper(settings, runner).recreate_database()

    executed = [c[0][0] for c in fake_db.cursor.execute.call_args_list]
    assert not any(s.startswith("CREATE USER") for s in executed)
    assert executed[-1] == "FLUSH PRIVILEGES"



def test_restore_without_dump(tmp_path, settings, runner, fake_db):
    with pytest.raises(ComponentRestoreFailure):
        MoodleDumper(settings, runner).restore(tmp_path)


def test_replay_failure_is_restore_failure(tmp_path, settings, runner, fake_db):
    (tmp_path / "moodle-20240115-020000.sql.gz").write_bytes(gzip.compress(b"x"))
    runner.fail("mysql -h")
    with pytest.raises(ComponentRestoreFailure):
        MoodleDumper(settings, runner).restore(tmp_path)


def _spool_tarball(spool_dir, sql=b"-- koha native\n"):
    def effect(cmd):
        spool_dir.mkdir(parents=True, exist_ok=True)
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w:gz") as tf:
            data = gzip.compress(sql)
            info = tarfile.TarInfo("library-2024-01-15.sql.gz")
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
        (spool_dir / "library-2024-01-15.tar.gz").write_bytes(buffer.getvalue())

    return effect


def test_koha_prefers_native_dump(tmp_path, settings, runner):
    runner.available.add("koha-dump")
    dumper = KohaDumper(settings, runner)
    dumper.spool_dir = tmp_path / "spool" / "library"
    runner.effects["koha-dump"] = _spool_tarball(dumper.spool_dir)

    path = dumper.dump(tmp_path / "databases", "20240115-020000")

    assert path.name == "koha-20240115-020000.tar.gz"
    assert not list(dumper.spool_dir.glob("*.tar.gz"))
    assert runner.commands("mysqldump") == []


def test_koha_falls_back_when_tool_missing(tmp_path, settings, runner):
    path = KohaDumper(settings, runner).dump(tmp_path, "20240115-020000")
    assert path.name == "koha-20240115-020000.sql.gz"
    assert runner.commands("mysqldump")[0][-1] == "koha_library"


def test_koha_falls_back_when_tool_leaves_nothing(tmp_path, settings, runner):
    runner.available.add("koha-dump")
    dumper = KohaDumper(settings, runner)
    dumper.spool_dir = tmp_path / "empty-spool"
    path = dumper.dump(tmp_path, "20240115-020000")
    assert path.suffixes == [".sql", ".gz"]


def test_koha_fallback_failure_is_fatal(tmp_path, settings, runner):
    runner.fail("mysqldump")
    with pytest.raises(ComponentCaptureFailure):
        KohaDumper(settings, runner).dump(tmp_path, "20240115-020000")


def test_koha_restore_from_native_tarball(tmp_path, settings, runner):
    databases = tmp_path / "databases"
    _spool_tarball(databases)(None)
    (databases / "library-2024-01-15.tar.gz").rename(databases / "koha-20240115-020000.tar.gz")

    KohaDumper(settings, runner).restore(databases)

    assert ["koha-remove", "--keep-mysql", "library"] in runner.calls
    assert ["koha-create", "--create-db", "library"] in runner.calls
    assert runner.fed["library"] == b"-- koha native\n"


def test_koha_restore_tool_warnings_do_not_stop(tmp_path, settings, runner):
    databases = tmp_path / "databases"
    _spool_tarball(databases)(None)
    (databases / "library-2024-01-15.tar.gz").rename(databases / "koha-20240115-020000.tar.gz")
    runner.fail("koha-remove")
    runner.fail("koha-create")

    KohaDumper(settings, runner).restore(databases)

    assert runner.fed["library"] == b"-- koha native\n"


def test_koha_restore_generic_dump(tmp_path, settings, runner, fake_db):
    (tmp_path / "koha-20240115-020000.sql.gz").write_bytes(gzip.compress(b"-- generic\n"))
    KohaDumper(settings, runner).restore(tmp_path)
    assert runner.fed["koha_library"] == b"-- generic\n"
