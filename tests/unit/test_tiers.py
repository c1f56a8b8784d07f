from datetime import date, datetime

import pytest

from core.tiers import (
    archive_name,
    format_timestamp,
    parse_archive_name,
    select_tier,
)


@pytest.mark.parametrize(
    "run_date, expected",
    [
        (date(2024, 1, 15), "daily"),  # Monday
        (date(2024, 1, 14), "weekly"),  # Sunday
        (date(2024, 2, 1), "monthly"),  # Thursday
        (date(2024, 9, 1), "monthly"),  # Sunday and the 1st
        (date(2024, 3, 31), "weekly"),
    ],
)
def test_select_tier(run_date, expected):
    assert select_tier(run_date) == expected


def test_archive_name_round_trip():
    ts = format_timestamp(datetime(2024, 1, 15, 2, 0, 5))
    assert ts == "20240115-020005"
    name = archive_name("weekly", ts)
    assert name == "backup-weekly-20240115-020005.tar.gz"
    assert parse_archive_name(name) == ("weekly", datetime(2024, 1, 15, 2, 0, 5))


def test_archive_name_rejects_unknown_tier():
    with pytest.raises(ValueError):
        archive_name("yearly", "20240115-020000")


@pytest.mark.parametrize(
    "filename",
    [
        "backup-daily-20240115.tar.gz",
        "backup-hourly-20240115-020000.tar.gz",
        "backup-daily-20240115-020000.tar",
        "notes.txt",
        "backup-daily-20241345-020000.tar.gz",  # not a real date
    ],
)
def test_parse_archive_name_ignores_foreign_names(filename):
    assert parse_archive_name(filename) is None
