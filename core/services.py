"""systemd services and the LMS maintenance flag."""

import logging
from typing import Dict, Iterable, List, Sequence

from config import Settings

from .errors import CommandFailed, ServiceStartFailure
from .runner import CommandRunner

logger = logging.getLogger("campusvault.services")


class ServiceController:
    def __init__(self, settings: Settings, runner: CommandRunner) -> None:
        self.settings = settings
        self.runner = runner

    def is_active(self, service: str) -> bool:
        result = self.runner.run(
            ["systemctl", "is-active", "--quiet", service], check=False
        )
        return result.returncode == 0

    def snapshot(self, services: Iterable[str]) -> Dict[str, str]:
        """Map each service to its `systemctl is-active` state."""
        states = {}
        for service in services:
            result = self.runner.run(["systemctl", "is-active", service], check=False)
            states[service] = (result.stdout or "").strip() or "unknown"
        return states

    def inactive(self, services: Iterable[str]) -> List[str]:
        return [s for s in services if not self.is_active(s)]

    def run_as_web_user(self, cmd: Sequence[str]) -> None:
        self.runner.run(cmd, user=self.settings.web_user)

    def _maintenance(self, flag: str) -> bool:
        script = self.settings.moodle_dir / "admin" / "cli" / "maintenance.php"
        if not script.exists():
            logger.debug("No maintenance script at %s", script)
            return False
        try:
            self.run_as_web_user(["php", str(script), flag])
            return True
        except CommandFailed as e:
            logger.warning("Failed to %s Moodle maintenance mode: %s", flag.lstrip("-"), e)
            return False

    def enter_maintenance(self) -> bool:
        return self._maintenance("--enable")

    def exit_maintenance(self) -> bool:
        return self._maintenance("--disable")

    def stop_services(self, services: Iterable[str]) -> List[str]:
        """Stop services in order. Returns the ones that failed to stop."""
        failed = []
        for service in services:
            try:
                self.runner.run(["systemctl", "stop", service])
                logger.info("Stopped %s", service)
            except CommandFailed as e:
                logger.warning("Failed to stop %s: %s", service, e)
                failed.append(service)
        return failed

    def start_services(self, services: Iterable[str]) -> List[str]:
        """
        Start services in order.

        Raises:
            ServiceStartFailure: If the database service does not start

        Returns:
            The non-critical services that failed to start
        """
        failed = []
        for service in services:
            try:
                self.runner.run(["systemctl", "start", service])
                logger.info("Started %s", service)
            except CommandFailed as e:
                if service == self.settings.database_service:
                    raise ServiceStartFailure(
                        f"Failed to start {service}", {"error": str(e)}
                    )
                logger.warning("Failed to start %s: %s", service, e)
                failed.append(service)
        return failed
