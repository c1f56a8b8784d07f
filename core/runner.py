"""Thin wrapper around the external tools the orchestrators drive.

Every ``mysqldump``, ``systemctl``, ``koha-*`` or ``php`` invocation goes
through :class:`CommandRunner` so the orchestration can be exercised with a
test double instead of real processes.
"""

import getpass
import logging
import os
import shutil
import subprocess
import tempfile
from typing import BinaryIO, Dict, List, Optional, Sequence

from .errors import CommandFailed

logger = logging.getLogger("campusvault.runner")

CHUNK_SIZE = 1024 * 1024


class CommandRunner:
    """Runs external commands, optionally as another user via sudo."""

    def __init__(self, sudo: str = "sudo") -> None:
        self.sudo = sudo
        self._current_user = getpass.getuser()

    def _build(self, cmd: Sequence[str], user: Optional[str]) -> List[str]:
        if user and user != self._current_user:
            return [self.sudo, "-u", user, *cmd]
        return list(cmd)

    def _env(self, env: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
        if not env:
            return None
        merged = os.environ.copy()
        merged.update(env)
        return merged

    def is_available(self, tool: str) -> bool:
        return shutil.which(tool) is not None

    def run(
        self,
        cmd: Sequence[str],
        env: Optional[Dict[str, str]] = None,
        user: Optional[str] = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        """
        Run a command to completion and capture its output.

        Args:
            cmd: Command and arguments
            env: Extra environment variables (merged over the current env)
            user: Run as this user through sudo
            check: Raise CommandFailed on a non-zero exit code

        Returns:
            The completed process with text stdout/stderr
        """
        full_cmd = self._build(cmd, user)
        logger.debug("Running: %s", " ".join(full_cmd))
        try:
            result = subprocess.run(
                full_cmd, env=self._env(env), capture_output=True, text=True
            )
        except FileNotFoundError as e:
            raise CommandFailed(full_cmd, 127, str(e))
        if check and result.returncode != 0:
            raise CommandFailed(full_cmd, result.returncode, result.stderr or "")
        return result

    def dump_to(
        self,
        cmd: Sequence[str],
        dest: BinaryIO,
        env: Optional[Dict[str, str]] = None,
        user: Optional[str] = None,
    ) -> None:
        """Stream a command's stdout into ``dest`` (e.g. a gzip file)."""
        full_cmd = self._build(cmd, user)
        logger.debug("Streaming from: %s", " ".join(full_cmd))
        # stderr goes to a file, a chatty tool must not block on a full pipe
        with tempfile.TemporaryFile() as err_file:
            try:
                proc = subprocess.Popen(
                    full_cmd,
                    env=self._env(env),
                    stdout=subprocess.PIPE,
                    stderr=err_file,
                )
            except FileNotFoundError as e:
                raise CommandFailed(full_cmd, 127, str(e))
            shutil.copyfileobj(proc.stdout, dest, CHUNK_SIZE)
            proc.stdout.close()
            if proc.wait() != 0:
                raise CommandFailed(full_cmd, proc.returncode, _read_errors(err_file))

    def feed_from(
        self,
        cmd: Sequence[str],
        src: BinaryIO,
        env: Optional[Dict[str, str]] = None,
        user: Optional[str] = None,
    ) -> None:
        """Stream ``src`` into a command's stdin (e.g. a SQL replay)."""
        full_cmd = self._build(cmd, user)
        logger.debug("Streaming into: %s", " ".join(full_cmd))
        with tempfile.TemporaryFile() as err_file:
            try:
                proc = subprocess.Popen(
                    full_cmd,
                    env=self._env(env),
                    stdin=subprocess.PIPE,
                    stdout=subprocess.DEVNULL,
                    stderr=err_file,
                )
            except FileNotFoundError as e:
                raise CommandFailed(full_cmd, 127, str(e))
            try:
                shutil.copyfileobj(src, proc.stdin, CHUNK_SIZE)
            except BrokenPipeError:
                # the tool exited early, its exit status below says why
                pass
            finally:
                try:
                    proc.stdin.close()
                except BrokenPipeError:
                    pass
            if proc.wait() != 0:
                raise CommandFailed(full_cmd, proc.returncode, _read_errors(err_file))


def _read_errors(err_file: BinaryIO) -> str:
    err_file.seek(0)
    return err_file.read().decode(errors="replace")
