"""Backup utility functions for checksums and package integrity checks."""

import hashlib
import os
import tarfile
from pathlib import Path
from typing import Iterable, List, Union

EXPECTED_GROUPS = ("databases", "files", "config")


def calculate_checksum(file_path: Union[str, Path], algorithm: str = "sha256") -> str:
    """
    Calculate checksum of a file.

    Args:
        file_path: Path to the file
        algorithm: Hash algorithm (sha256, md5, sha1)

    Returns:
        Hexadecimal hash string

    Raises:
        FileNotFoundError: If file doesn't exist
        ValueError: If unsupported algorithm
    """
    file_path_obj = Path(file_path)
    if not file_path_obj.exists():
        raise FileNotFoundError(f"File not found: {file_path}")

    if algorithm not in ("sha256", "md5", "sha1"):
        raise ValueError(f"Unsupported algorithm: {algorithm}")
    hasher = hashlib.new(algorithm)

    # Read file in chunks to handle large files
    with open(file_path_obj, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            hasher.update(chunk)

    return hasher.hexdigest()


def tree_checksum(root: Union[str, Path]) -> str:
    """
    Checksum of a directory tree: relative paths and file contents.

    Two trees with the same files and contents produce the same digest
    regardless of where they live.
    """
    root = Path(root)
    hasher = hashlib.sha256()
    for current, dirs, files in os.walk(root):
        dirs.sort()
        rel_dir = Path(current).relative_to(root).as_posix()
        hasher.update(f"d:{rel_dir}\n".encode())
        for name in sorted(files):
            file_path = Path(current) / name
            hasher.update(f"f:{rel_dir}/{name}\n".encode())
            if file_path.is_symlink():
                hasher.update(os.readlink(file_path).encode())
            else:
                hasher.update(calculate_checksum(file_path).encode())
    return hasher.hexdigest()


def human_size(size_bytes: int) -> str:
    """du -h style size string."""
    size = float(size_bytes)
    for unit in ("B", "K", "M", "G", "T"):
        if size < 1024 or unit == "T":
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size_bytes}B"


def directory_size(path: Union[str, Path]) -> int:
    total = 0
    for current, _, files in os.walk(path):
        for name in files:
            file_path = os.path.join(current, name)
            if not os.path.islink(file_path):
                total += os.path.getsize(file_path)
    return total


def verify_package(archive_path: Union[str, Path]) -> List[str]:
    """
    Read every member header of a tar.gz package.

    Returns:
        Member names

    Raises:
        FileNotFoundError: If the archive is missing
        tarfile.TarError / OSError / EOFError: If it cannot be read
    """
    archive_path = Path(archive_path)
    if not archive_path.exists():
        raise FileNotFoundError(f"Backup file not found: {archive_path}")
    if archive_path.stat().st_size == 0:
        raise tarfile.ReadError("Backup file is empty")
    with tarfile.open(archive_path, "r:gz") as tf:
        return tf.getnames()


def missing_groups(
    names: Iterable[str], expected: Iterable[str] = EXPECTED_GROUPS
) -> List[str]:
    """Expected top-level directories absent from a package listing."""
    present = {n.lstrip("./").split("/", 1)[0] for n in names if n}
    return [group for group in expected if group not in present]
