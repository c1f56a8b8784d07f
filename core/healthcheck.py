"""Healthchecks.io style start/success/fail pings."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Set

import requests
from tenacity import (
    RetryError,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from utils.logger import tail_log

from .system import hostname, resource_snapshot

logger = logging.getLogger("campusvault.healthcheck")

PING_TIMEOUT = 10
PING_ATTEMPTS = 3


class HealthSignal:
    """
    Sends lifecycle pings to an external monitor.

    Every call is best-effort: transport errors are logged and swallowed so a
    broken monitor can never fail a backup. Without a URL every call is a
    no-op. Each ping kind is sent at most once per instance.
    """

    def __init__(
        self,
        url: Optional[str],
        timeout: int = PING_TIMEOUT,
        attempts: int = PING_ATTEMPTS,
        session: Optional[requests.Session] = None,
        retry_wait: float = 1.0,
    ) -> None:
        self.url = url.rstrip("/") if url else None
        self.timeout = timeout
        self.attempts = attempts
        self.retry_wait = retry_wait
        self.session = session or requests.Session()
        self._sent: Set[str] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def _post(self, endpoint: str, data: Optional[str]) -> None:
        @retry(
            stop=stop_after_attempt(self.attempts),
            wait=wait_fixed(self.retry_wait),
            retry=retry_if_exception_type(requests.RequestException),
        )
        def _send() -> None:
            if data:
                response = self.session.post(
                    endpoint, data=data.encode("utf-8"), timeout=self.timeout
                )
            else:
                response = self.session.get(endpoint, timeout=self.timeout)
            response.raise_for_status()

        _send()

    def _ping(self, kind: str, suffix: str, data: Optional[str] = None) -> bool:
        if not self.enabled:
            logger.debug("Health check not configured - skipping %s ping", kind)
            return False
        if kind in self._sent:
            return False
        self._sent.add(kind)
        try:
            self._post(f"{self.url}{suffix}", data)
            return True
        except RetryError as e:
            logger.warning(
                "Health check %s ping failed: %s", kind, e.last_attempt.exception()
            )
        except requests.RequestException as e:
            logger.warning("Health check %s ping failed: %s", kind, e)
        return False

    def notify_start(self) -> bool:
        return self._ping("start", "/start")

    def notify_success(self, summary: Optional[str] = None) -> bool:
        return self._ping("success", "", summary)

    def notify_fail(self, diagnostic: Optional[str] = None) -> bool:
        return self._ping("fail", "/fail", diagnostic)


def format_failure_report(
    error: str,
    log_file: Optional[Path] = None,
    title: str = "Backup Failed",
    lines: int = 20,
) -> str:
    """Diagnostic bundle sent with a fail ping."""
    return (
        f"{title}: {hostname()}\n"
        f"Time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n"
        f"Error: {error}\n"
        f"\n"
        f"Last {lines} log lines:\n"
        f"{tail_log(log_file, lines)}\n"
        f"\n"
        f"Server Status:\n"
        f"{resource_snapshot()}"
    )
