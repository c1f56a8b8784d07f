import gzip
import io
import json
import subprocess
import tarfile
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from config import RemoteSettings, Settings
from core.errors import CommandFailed


class FakeRunner:
    """
    Stands in for CommandRunner: records every command and answers from
    configurable tables instead of spawning processes.
    """

    def __init__(self):
        self.calls: List[List[str]] = []
        self.available = set()
        self.failures: Dict[str, int] = {}
        self.outputs: Dict[str, str] = {
            "dpkg --get-selections": "bash\t\t\t\t\tinstall\nmariadb-server\t\t\t\tinstall\n",
            "apt-mark showmanual": "mariadb-server\nkoha-common\n",
        }
        self.effects: Dict[str, object] = {}
        self.inactive = set()
        self.dumps: Dict[str, bytes] = {}
        self.fed: Dict[str, bytes] = {}

    def _lookup(self, table, cmd):
        line = " ".join(cmd)
        for prefix in sorted(table, key=len, reverse=True):
            if line.startswith(prefix):
                return table[prefix]
        return None

    def fail(self, prefix: str, returncode: int = 1) -> None:
        self.failures[prefix] = returncode

    def commands(self, prefix: str) -> List[List[str]]:
        return [c for c in self.calls if " ".join(c).startswith(prefix)]

    def is_available(self, tool):
        return tool in self.available

    def run(self, cmd, env=None, user=None, check=True):
        cmd = list(cmd)
        self.calls.append(cmd)
        returncode = self._lookup(self.failures, cmd) or 0
        stdout = self._lookup(self.outputs, cmd) or ""

        if cmd[:2] == ["systemctl", "is-active"]:
            service = cmd[-1]
            active = service not in self.inactive
            returncode = 0 if active else 3
            stdout = "active\n" if active else "inactive\n"

        effect = self._lookup(self.effects, cmd)
        if effect is not None and returncode == 0:
            effect(cmd)

        if check and returncode != 0:
            raise CommandFailed(cmd, returncode, "simulated failure")
        return subprocess.CompletedProcess(cmd, returncode, stdout, "")

    def dump_to(self, cmd, dest, env=None, user=None):
        cmd = list(cmd)
        self.calls.append(cmd)
        returncode = self._lookup(self.failures, cmd)
        if returncode:
            raise CommandFailed(cmd, returncode, "simulated dump failure")
        database = cmd[-1]
        dest.write(self.dumps.get(database, f"-- dump of {database}\n".encode()))

    def feed_from(self, cmd, src, env=None, user=None):
        cmd = list(cmd)
        self.calls.append(cmd)
        returncode = self._lookup(self.failures, cmd)
        if returncode:
            raise CommandFailed(cmd, returncode, "simulated replay failure")
        self.fed[cmd[-1]] = src.read()


class _FakePaginator:
    def __init__(self, client, page_size):
        self.client = client
        self.page_size = page_size

    def paginate(self, Bucket, Prefix=""):
        self.client.listings += 1
        keys = sorted(k for k in self.client.objects if k.startswith(Prefix))
        if not keys:
            yield {"KeyCount": 0}
            return
        for start in range(0, len(keys), self.page_size):
            yield {
                "Contents": [
                    {
                        "Key": key,
                        "Size": len(self.client.objects[key]),
                        "LastModified": datetime(2024, 1, 1),
                    }
                    for key in keys[start:start + self.page_size]
                ]
            }


class FakeS3Client:
    """In-memory S3 client with the subset of calls ArchiveStore makes."""

    def __init__(self, page_size: int = 2):
        self.objects: Dict[str, bytes] = {}
        self.page_size = page_size
        self.listings = 0
        self.uploads: List[str] = []
        self.downloads: List[str] = []
        self.deleted: List[str] = []
        self.fail_uploads = False
        self.fail_deletes = False
        self.bucket_missing = False

    @staticmethod
    def _error(code, operation):
        return ClientError({"Error": {"Code": code, "Message": code}}, operation)

    def put(self, key: str, data: bytes) -> None:
        self.objects[key] = data

    def get_paginator(self, name):
        assert name == "list_objects_v2"
        return _FakePaginator(self, self.page_size)

    def upload_file(self, Filename, Bucket, Key, Config=None):
        if self.fail_uploads:
            raise self._error("500", "PutObject")
        self.objects[Key] = Path(Filename).read_bytes()
        self.uploads.append(Key)

    def download_file(self, Bucket, Key, Filename, Config=None):
        if Key not in self.objects:
            raise self._error("404", "HeadObject")
        Path(Filename).write_bytes(self.objects[Key])
        self.downloads.append(Key)

    def delete_object(self, Bucket, Key):
        if self.fail_deletes:
            raise self._error("500", "DeleteObject")
        self.objects.pop(Key, None)
        self.deleted.append(Key)

    def head_bucket(self, Bucket):
        if self.bucket_missing:
            raise self._error("404", "HeadBucket")
        return {}

    def list_objects_v2(self, **kwargs):
        return {"KeyCount": 0}


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def s3_client():
    return FakeS3Client()


@pytest.fixture
def sites(tmp_path):
    """A minimal Moodle + Koha host layout under a temporary directory."""
    root = tmp_path / "www"
    (root / "moodle" / "admin" / "cli").mkdir(parents=True)
    (root / "moodle" / "config.php").write_text("<?php $CFG->dbname = 'moodle';\n")
    (root / "config").mkdir()
    (root / "config" / "database-credentials.txt").write_text(
        "MariaDB Root:\n  User: root\n  Password: rootpw\n\n"
        "Moodle Database:\n  Name: moodle\n  Password: moodlepw\n"
    )
    data = root / "data" / "moodledata"
    (data / "filedir" / "ab").mkdir(parents=True)
    (data / "filedir" / "ab" / "abcdef").write_bytes(b"course file contents")
    (data / "lang").mkdir()
    (data / "lang" / "en.txt").write_text("hello")
    return root


@pytest.fixture
def settings(tmp_path, sites):
    etc = tmp_path / "etc"
    (etc / "caddy").mkdir(parents=True)
    (etc / "caddy" / "Caddyfile").write_text("moodle.example.org {\n}\n")
    return Settings(
        sites_directory=sites,
        backup_dir=tmp_path / "backups" / "daily",
        restore_root=tmp_path / "restore",
        emergency_root=tmp_path / "backups" / "emergency",
        log_dir=tmp_path / "log" / "backups",
        restore_log_dir=tmp_path / "log" / "restore",
        lock_file=tmp_path / "run" / "campusvault.lock",
        credentials_file=sites / "config" / "database-credentials.txt",
        hostname="testhost",
        remote=RemoteSettings(bucket="test-bucket", prefix="backups/moodle-koha-testhost"),
        db_root_password="rootpw",
        lms_db_password="moodlepw",
        web_user=None,
        min_free_space_mb=0,
        restore_min_free_space_mb=0,
        config_paths=(etc / "caddy" / "Caddyfile", etc / "missing.conf", sites / "moodle" / "config.php"),
        emergency_config_paths=(etc / "caddy" / "Caddyfile", sites / "moodle" / "config.php"),
        config_restore_root=tmp_path / "restored-root",
    )


@pytest.fixture
def fake_db(monkeypatch):
    """Patch PyMySQL so dumpers see a reachable server with 42 users."""
    connection = MagicMock()
    cursor = connection.cursor.return_value.__enter__.return_value
    cursor.fetchone.return_value = (42,)
    cursor.fetchall.return_value = (("mdl_user",),)
    connect = MagicMock(return_value=connection)
    monkeypatch.setattr("core.providers.mariadb.pymysql.connect", connect)
    connect.cursor = cursor
    return connect


def _add_bytes(tf: tarfile.TarFile, name: str, data: bytes) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    tf.addfile(info, io.BytesIO(data))


def _targz(entries: Dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tf:
        for name, data in entries.items():
            _add_bytes(tf, name, data)
    return buffer.getvalue()


@pytest.fixture
def make_bundle():
    """
    Build an in-memory backup bundle in the layout the backup run produces.
    ``omit`` drops whole groups to simulate damaged packages.
    """

    def _make(
        timestamp: str = "20240115-020000",
        omit=(),
        config_entries: Optional[Dict[str, bytes]] = None,
        hostname: str = "testhost",
    ) -> bytes:
        entries = {}
        if "databases" not in omit:
            entries[f"databases/moodle-{timestamp}.sql.gz"] = gzip.compress(b"-- moodle dump\n")
            entries[f"databases/koha-{timestamp}.sql.gz"] = gzip.compress(b"-- koha dump\n")
        if "files" not in omit:
            entries[f"files/moodledata-{timestamp}.tar.gz"] = _targz(
                {"moodledata/filedir/restored.txt": b"restored file"}
            )
        if "config" not in omit:
            entries[f"config/configs-{timestamp}.tar.gz"] = _targz(
                config_entries or {"etc/caddy/Caddyfile": b"restored caddy config\n"}
            )
            entries[f"config/packages-{timestamp}.list"] = b"bash install\n"
        metadata = {"timestamp": timestamp, "hostname": hostname, "tier": "daily", "components": {}}
        entries[f"backup-metadata-{timestamp}.json"] = json.dumps(metadata).encode()
        return _targz(entries)

    return _make
