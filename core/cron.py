import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from crontab import CronTab

from config import CONFIG_FILE_ENV, SITES_DIRECTORY_ENV

# We need the executable to run main.py
PYTHON_EXEC = sys.executable
# core/cron.py -> project root / main.py
MAIN_SCRIPT = str(Path(__file__).resolve().parent.parent / "main.py")

JOB_COMMENT = "campusvault-backup"
DEFAULT_SCHEDULE = "0 2 * * *"


class CronManager:
    """Installs the nightly backup job in a crontab (root's by default)."""

    def __init__(self, cron: Optional[Any] = None, user: Any = True):
        self.cron = cron if cron is not None else CronTab(user=user)

    def list_jobs(self) -> List[Dict[str, Any]]:
        jobs = []
        for job in self.cron:
            if job.comment == JOB_COMMENT:
                jobs.append(
                    {
                        "schedule": str(job.slices),
                        "command": job.command,
                        "enabled": job.is_enabled(),
                    }
                )
        return jobs

    def build_command(self, log_file: Optional[Path] = None) -> str:
        # Pass the settings location explicitly, cron runs with a bare environment
        env_prefix = ""
        for name in (CONFIG_FILE_ENV, SITES_DIRECTORY_ENV):
            if os.environ.get(name):
                env_prefix += f"{name}={os.environ[name]} "
        command = f"{env_prefix}{PYTHON_EXEC} {MAIN_SCRIPT} backup"
        if log_file is not None:
            command += f" >> {log_file} 2>&1"
        return command

    def add_backup_job(self, schedule: str = DEFAULT_SCHEDULE, log_file: Optional[Path] = None) -> bool:
        # Only one nightly job
        self.remove_job()

        job = self.cron.new(command=self.build_command(log_file), comment=JOB_COMMENT)
        try:
            job.setall(schedule)
            valid = job.is_valid()
        except (ValueError, KeyError):
            valid = False
        if not valid:
            self.cron.remove(job)
            raise ValueError(f"Invalid cron schedule: {schedule}")
        self.cron.write()
        return True

    def remove_job(self) -> None:
        self.cron.remove_all(comment=JOB_COMMENT)
        self.cron.write()
