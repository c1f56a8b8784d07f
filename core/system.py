"""Host facts used in prechecks, metadata and failure reports."""

import glob
import logging
import os
import platform
import shutil
import socket
from pathlib import Path
from typing import Dict, List, Optional

from .runner import CommandRunner

logger = logging.getLogger("campusvault.system")


def free_space_mb(path: Path) -> int:
    """Available space in MB on the filesystem holding ``path``."""
    existing = Path(path)
    while not existing.exists() and existing != existing.parent:
        existing = existing.parent
    return int(shutil.disk_usage(existing).free / (1024 * 1024))


def disk_usage_percent(path: Path = Path("/")) -> str:
    usage = shutil.disk_usage(path)
    return f"{usage.used * 100 // usage.total}%" if usage.total else "unknown"


def uptime_days() -> Optional[int]:
    try:
        with open("/proc/uptime", "r") as f:
            return int(float(f.read().split()[0]) // 86400)
    except (OSError, ValueError, IndexError):
        return None


def load_average() -> str:
    try:
        return ", ".join(f"{value:.2f}" for value in os.getloadavg())
    except OSError:
        return "unknown"


def memory_summary() -> str:
    """One-line memory summary from /proc/meminfo."""
    try:
        info: Dict[str, int] = {}
        with open("/proc/meminfo", "r") as f:
            for line in f:
                key, _, value = line.partition(":")
                info[key] = int(value.split()[0])
    except (OSError, ValueError, IndexError):
        return "Mem: unknown"
    total = info.get("MemTotal", 0) // 1024
    available = info.get("MemAvailable", 0) // 1024
    return f"Mem: total {total}MB, available {available}MB"


def system_stats() -> Dict[str, str]:
    days = uptime_days()
    return {
        "kernel": platform.release(),
        "uptime_days": str(days) if days is not None else "unknown",
        "load_average": load_average(),
        "disk_usage": disk_usage_percent(),
    }


def resource_snapshot(path: Path = Path("/")) -> str:
    """Short server status block appended to failure diagnostics."""
    try:
        usage = shutil.disk_usage(path)
        disk = (
            f"Disk {path}: {usage.used // (1024 ** 3)}G used of "
            f"{usage.total // (1024 ** 3)}G ({disk_usage_percent(path)})"
        )
    except OSError:
        disk = f"Disk {path}: unknown"
    return "\n".join([disk, memory_summary(), f"Load: {load_average()}"])


def hostname() -> str:
    return socket.gethostname()


def capture_package_manifest(
    runner: CommandRunner,
    dest_dir: Path,
    timestamp: str,
    apt_sources: str = "/etc/apt/sources.list*",
) -> List[Path]:
    """
    Save the installed package selections for disaster recovery.

    Writes packages-{ts}.list and packages-manual-{ts}.list and copies the
    apt repository definitions next to them.

    Returns:
        Paths of the written files
    """
    dest_dir.mkdir(parents=True, exist_ok=True)
    written = []

    selections = runner.run(["dpkg", "--get-selections"])
    path = dest_dir / f"packages-{timestamp}.list"
    path.write_text(selections.stdout)
    written.append(path)

    manual = runner.run(["apt-mark", "showmanual"])
    path = dest_dir / f"packages-manual-{timestamp}.list"
    path.write_text(manual.stdout)
    written.append(path)

    for source in glob.glob(apt_sources):
        target = dest_dir / Path(source).name
        try:
            if os.path.isdir(source):
                shutil.copytree(source, target, dirs_exist_ok=True)
            else:
                shutil.copy2(source, target)
            written.append(target)
        except OSError as e:
            logger.warning("Could not copy %s: %s", source, e)

    return written
