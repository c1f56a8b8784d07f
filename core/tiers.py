"""Retention tiers and archive naming."""

import re
from datetime import date, datetime
from typing import Optional, Tuple

TIERS = ("daily", "weekly", "monthly")

TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"

_ARCHIVE_RE = re.compile(
    r"^backup-(?P<tier>daily|weekly|monthly)-(?P<ts>\d{8}-\d{6})\.tar\.gz$"
)


def select_tier(run_date: date) -> str:
    """
    Pick the single retention tier for a run.

    The 1st of the month is monthly, otherwise Sunday is weekly, otherwise
    daily. A Sunday that is also the 1st is monthly only.
    """
    if run_date.day == 1:
        return "monthly"
    if run_date.isoweekday() == 7:
        return "weekly"
    return "daily"


def format_timestamp(moment: datetime) -> str:
    return moment.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT)


def archive_name(tier: str, timestamp: str) -> str:
    if tier not in TIERS:
        raise ValueError(f"Unknown tier: {tier}")
    return f"backup-{tier}-{timestamp}.tar.gz"


def parse_archive_name(filename: str) -> Optional[Tuple[str, datetime]]:
    """Return (tier, timestamp) for a well-formed archive name, else None."""
    match = _ARCHIVE_RE.match(filename)
    if not match:
        return None
    try:
        return match.group("tier"), parse_timestamp(match.group("ts"))
    except ValueError:
        return None
