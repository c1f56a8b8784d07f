from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from config import Settings

from ..runner import CommandRunner


class BaseDumper(ABC):
    """Captures and replays one application data store."""

    #: Filename prefix of the dumps, e.g. "moodle" -> moodle-{ts}.sql.gz
    prefix = "database"

    def __init__(self, settings: Settings, runner: CommandRunner) -> None:
        self.settings = settings
        self.runner = runner

    @abstractmethod
    def check_connection(self) -> bool:
        """Checks if the database is reachable."""
        raise NotImplementedError

    @abstractmethod
    def dump(self, dest_dir: Path, timestamp: str) -> Path:
        """
        Performs a consistent dump and returns the path to the dump file.

        Args:
            dest_dir: Directory where the dump should be saved
            timestamp: Run timestamp embedded in the filename

        Raises:
            ComponentCaptureFailure: If no usable dump could be produced
        """
        raise NotImplementedError

    @abstractmethod
    def find_dump(self, databases_dir: Path) -> Optional[Path]:
        """Locate this store's dump among extracted backup files."""
        raise NotImplementedError

    @abstractmethod
    def restore(self, databases_dir: Path) -> Path:
        """
        Drops, recreates and replays the store from an extracted backup.

        Returns:
            The dump file that was replayed

        Raises:
            ComponentRestoreFailure: If the dump is missing or replay fails
        """
        raise NotImplementedError
