from datetime import datetime, timedelta

import pytest

from config import RemoteSettings
from core.errors import CorruptArchive, TransferFailure
from core.s3_storage import ArchiveStore

PREFIX = "backups/moodle-koha-testhost"


@pytest.fixture
def store(s3_client):
    return ArchiveStore(RemoteSettings(bucket="test-bucket", prefix=PREFIX), client=s3_client)


def put(client, tier, ts, data=b"x"):
    key = f"{PREFIX}/{tier}/backup-{tier}-{ts}.tar.gz"
    client.put(key, data)
    return key


def test_list_is_newest_first_and_ignores_foreign_objects(store, s3_client):
    put(s3_client, "daily", "20240113-020000")
    put(s3_client, "daily", "20240115-020000")
    put(s3_client, "daily", "20240114-020000")
    s3_client.put(f"{PREFIX}/daily/notes.txt", b"n")
    s3_client.put(f"{PREFIX}/daily/backup-weekly-20240114-020000.tar.gz", b"w")
    s3_client.put(f"{PREFIX}/daily/old/backup-daily-20230101-020000.tar.gz", b"o")

    archives = store.list("daily")

    assert [a.filename for a in archives] == [
        "backup-daily-20240115-020000.tar.gz",
        "backup-daily-20240114-020000.tar.gz",
        "backup-daily-20240113-020000.tar.gz",
    ]
    assert archives[0].archive_id == "daily/backup-daily-20240115-020000.tar.gz"
    assert archives[0].timestamp == datetime(2024, 1, 15, 2, 0, 0)


def test_list_all_covers_every_tier(store, s3_client):
    put(s3_client, "weekly", "20240114-020000")
    listing = store.list_all()
    assert set(listing) == {"daily", "weekly", "monthly"}
    assert listing["daily"] == []
    assert len(listing["weekly"]) == 1


def test_upload_key_layout(tmp_path, store, s3_client):
    bundle = tmp_path / "backup-monthly-20240301-020000.tar.gz"
    bundle.write_bytes(b"bundle")

    ref = store.upload(bundle, "monthly")

    assert s3_client.uploads == [f"{PREFIX}/monthly/backup-monthly-20240301-020000.tar.gz"]
    assert ref.tier == "monthly"
    assert ref.size == 6


def test_upload_rejects_name_from_other_tier(tmp_path, store):
    bundle = tmp_path / "backup-daily-20240301-020000.tar.gz"
    bundle.write_bytes(b"bundle")
    with pytest.raises(ValueError):
        store.upload(bundle, "monthly")


def test_upload_failure(tmp_path, store, s3_client):
    s3_client.fail_uploads = True
    bundle = tmp_path / "backup-daily-20240302-020000.tar.gz"
    bundle.write_bytes(b"bundle")
    with pytest.raises(TransferFailure):
        store.upload(bundle, "daily")
    assert bundle.exists()


def test_download_verifies_package(tmp_path, store, s3_client, make_bundle):
    put(s3_client, "daily", "20240115-020000", make_bundle("20240115-020000"))
    ref = store.list("daily")[0]

    path = store.download(ref, tmp_path / "restore")

    assert path == tmp_path / "restore" / "backup-daily-20240115-020000.tar.gz"
    assert path.exists()


def test_download_corrupt_package(tmp_path, store, s3_client):
    put(s3_client, "daily", "20240115-020000", b"definitely not gzip")
    with pytest.raises(CorruptArchive):
        store.download("daily/backup-daily-20240115-020000.tar.gz", tmp_path)


def test_download_missing_object(tmp_path, store):
    with pytest.raises(TransferFailure):
        store.download("daily/backup-daily-20240115-020000.tar.gz", tmp_path)


def test_delete_older_than_is_strict(store, s3_client):
    """Exactly at the threshold is kept, one second older is deleted"""
    now = datetime(2024, 3, 10, 2, 0, 0)
    kept = put(s3_client, "daily", "20240303-020000")  # exactly 7 days
    gone = put(s3_client, "daily", "20240303-015959")  # 7 days + 1s
    recent = put(s3_client, "daily", "20240309-020000")

    deleted = store.delete_older_than("daily", timedelta(days=7), now=now)

    assert [d.filename for d in deleted] == ["backup-daily-20240303-015959.tar.gz"]
    assert gone not in s3_client.objects
    assert kept in s3_client.objects
    assert recent in s3_client.objects


def test_delete_older_than_only_touches_its_tier(store, s3_client):
    now = datetime(2024, 3, 10)
    weekly = put(s3_client, "weekly", "20240101-020000")
    store.delete_older_than("daily", timedelta(days=7), now=now)
    assert weekly in s3_client.objects


def test_delete_failure(store, s3_client):
    put(s3_client, "daily", "20230101-020000")
    s3_client.fail_deletes = True
    with pytest.raises(TransferFailure):
        store.delete_older_than("daily", timedelta(days=7), now=datetime(2024, 1, 1))


def test_find(store, s3_client):
    put(s3_client, "weekly", "20240114-020000")
    assert store.find("weekly/backup-weekly-20240114-020000.tar.gz").tier == "weekly"
    with pytest.raises(KeyError):
        store.find("weekly/backup-weekly-20240121-020000.tar.gz")
    with pytest.raises(KeyError):
        store.find("yearly/whatever.tar.gz")


def test_connection(store, s3_client):
    assert store.test_connection() is True
    s3_client.bucket_missing = True
    assert store.test_connection() is False
