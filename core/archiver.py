"""tar.gz capture and restore of directory trees and configuration files."""

import fnmatch
import logging
import os
import shutil
import tarfile
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger("campusvault.archiver")

# Subtrees of a data directory whose contents are never worth restoring
VOLATILE_PATTERNS = ("cache", "temp", "sessions", "localcache", "lock")

DIR_MODE = 0o755
FILE_MODE = 0o644


def _inside(dest: Path, target: Path) -> bool:
    return target == dest or dest in target.parents


def safe_extract(tf: tarfile.TarFile, dest: Path) -> List[str]:
    """
    Extract every member of ``tf`` under ``dest``.

    Raises:
        tarfile.TarError: If a member, hard link or symlink would land
            outside ``dest``, a member sits below a symlink from the same
            archive, or the member is a device/FIFO entry
    """
    dest = Path(dest).resolve()
    members = tf.getmembers()
    symlinks = set()
    for member in members:
        name = PurePosixPath(os.path.normpath(member.name))
        if not _inside(dest, (dest / name).resolve()):
            raise tarfile.TarError(f"Unsafe path in archive: {member.name}")
        if any(parent in symlinks for parent in name.parents):
            raise tarfile.TarError(f"Member below a symlink in archive: {member.name}")
        if member.isdev() or member.isfifo():
            raise tarfile.TarError(f"Unsupported member type: {member.name}")
        if member.islnk():
            if not _inside(dest, (dest / member.linkname).resolve()):
                raise tarfile.TarError(f"Unsafe link in archive: {member.name}")
        elif member.issym():
            # an absolute linkname replaces the joined prefix
            if not _inside(dest, (dest / name.parent / member.linkname).resolve()):
                raise tarfile.TarError(f"Unsafe symlink in archive: {member.name}")
            symlinks.add(name)
    # Members are already vetted above; keep owners and modes as archived
    if hasattr(tarfile, "fully_trusted_filter"):
        tf.extractall(dest, members=members, filter="fully_trusted")
    else:
        tf.extractall(dest, members=members)
    return [m.name for m in members]


def top_level_names(archive: Path) -> List[str]:
    """Distinct first path components of an archive's members."""
    with tarfile.open(archive, "r:*") as tf:
        parts = (PurePosixPath(m.name).parts for m in tf.getmembers())
        names = {p[0] for p in parts if p}
    return sorted(names)


class FileSetArchiver:
    """
    Captures a data directory as tar.gz and puts it back.

    Restores never delete a live tree: it is renamed aside with a timestamp
    suffix first.
    """

    def __init__(
        self,
        owner: Optional[str] = None,
        group: Optional[str] = None,
        excludes: Sequence[str] = VOLATILE_PATTERNS,
        dir_mode: int = DIR_MODE,
        file_mode: int = FILE_MODE,
    ) -> None:
        self.owner = owner
        self.group = group or owner
        self.excludes = tuple(excludes)
        self.dir_mode = dir_mode
        self.file_mode = file_mode

    def is_volatile(self, arcname: str) -> bool:
        """True for entries inside an excluded subtree (not the subtree itself)."""
        parts = PurePosixPath(arcname).parts
        if len(parts) < 3:
            return False
        return any(fnmatch.fnmatch(parts[1], pattern) for pattern in self.excludes)

    def capture(self, source_dir: Path, dest_path: Path) -> Path:
        """
        Archive ``source_dir`` (as its own top-level entry) into ``dest_path``.

        Raises:
            FileNotFoundError: If the source directory does not exist
            OSError / tarfile.TarError: On read or write errors
        """
        source_dir = Path(source_dir)
        if not source_dir.is_dir():
            raise FileNotFoundError(f"Directory not found: {source_dir}")
        dest_path.parent.mkdir(parents=True, exist_ok=True)

        def _filter(info: tarfile.TarInfo) -> Optional[tarfile.TarInfo]:
            return None if self.is_volatile(info.name) else info

        with tarfile.open(dest_path, "w:gz") as tf:
            tf.add(str(source_dir), arcname=source_dir.name, filter=_filter)
        return dest_path

    def capture_paths(self, paths: Iterable[Path], dest_path: Path) -> Tuple[Path, List[Path]]:
        """
        Archive absolute paths relative to ``/``. Missing paths are skipped.

        Returns:
            (archive path, list of skipped paths)
        """
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        skipped = []
        with tarfile.open(dest_path, "w:gz") as tf:
            for path in paths:
                path = Path(path)
                if not path.exists():
                    skipped.append(path)
                    continue
                tf.add(str(path), arcname=str(path).lstrip("/"))
        if skipped:
            logger.warning(
                "Some configuration files are missing from the archive: %s",
                ", ".join(str(p) for p in skipped),
            )
        return dest_path, skipped

    def move_aside(self, target: Path, stamp: Optional[str] = None) -> Optional[Path]:
        """Rename an existing tree to ``{name}.old.{stamp}``."""
        if not target.exists():
            return None
        stamp = stamp or datetime.now().strftime("%Y%m%d-%H%M%S")
        aside = target.with_name(f"{target.name}.old.{stamp}")
        counter = 1
        while aside.exists():
            aside = target.with_name(f"{target.name}.old.{stamp}.{counter}")
            counter += 1
        target.rename(aside)
        logger.info("Moved existing %s to %s", target, aside.name)
        return aside

    def restore(self, archive: Path, target_dir: Path) -> Path:
        """
        Extract an archive created by :meth:`capture` into ``target_dir``.

        The archive's top-level entry must match ``target_dir.name``; it is
        extracted into ``target_dir.parent``.
        """
        target_dir = Path(target_dir)
        # Refuse a mismatched archive before the live tree is moved aside
        found = top_level_names(archive)
        if found != [target_dir.name]:
            raise tarfile.TarError(
                f"Archive {archive.name} holds {found or 'nothing'}, expected {target_dir.name}/"
            )
        self.move_aside(target_dir)
        target_dir.parent.mkdir(parents=True, exist_ok=True)
        with tarfile.open(archive, "r:gz") as tf:
            safe_extract(tf, target_dir.parent)
        if not target_dir.is_dir():
            raise tarfile.TarError(
                f"Archive {archive.name} did not contain {target_dir.name}/"
            )
        self.normalize_permissions(target_dir)
        return target_dir

    def restore_paths(self, archive: Path, root: Path, keep_dir: Optional[Path] = None) -> List[str]:
        """
        Extract a configuration archive onto ``root``.

        Files about to be overwritten are first copied into ``keep_dir``.
        """
        root = Path(root)
        with tarfile.open(archive, "r:gz") as tf:
            names = [m.name for m in tf.getmembers()]
            if keep_dir is not None:
                keep_dir.mkdir(parents=True, exist_ok=True)
                for name in names:
                    current = root / name
                    if current.is_file():
                        copy = keep_dir / name
                        copy.parent.mkdir(parents=True, exist_ok=True)
                        shutil.copy2(current, copy)
                logger.info("Current configs backed up to: %s", keep_dir)
            safe_extract(tf, root)
        return names

    def normalize_permissions(self, path: Path) -> None:
        """Recursively apply owner and the directory/file modes."""
        path = Path(path)
        for current, dirs, files in os.walk(path):
            os.chmod(current, self.dir_mode)
            if self.owner:
                shutil.chown(current, self.owner, self.group)
            for name in files:
                file_path = os.path.join(current, name)
                if os.path.islink(file_path):
                    continue
                os.chmod(file_path, self.file_mode)
                if self.owner:
                    shutil.chown(file_path, self.owner, self.group)

    def chown_tree(self, path: Path) -> None:
        """Ownership only, leaving modes untouched."""
        if not self.owner:
            return
        for current, dirs, files in os.walk(path):
            shutil.chown(current, self.owner, self.group)
            for name in files:
                file_path = os.path.join(current, name)
                if not os.path.islink(file_path):
                    shutil.chown(file_path, self.owner, self.group)
