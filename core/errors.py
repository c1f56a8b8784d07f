"""Exceptions raised by the backup and restore lifecycle."""

from typing import Any, Dict, List, Optional


class CampusVaultError(Exception):
    """Base exception for all campusvault errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigError(CampusVaultError):
    """Raised when settings or credentials cannot be loaded."""

    pass


class CredentialsMissing(ConfigError):
    """Raised when the credentials file does not exist."""

    pass


class CredentialsMalformed(ConfigError):
    """Raised when a label or its password value cannot be found."""

    pass


class PreflightFailure(CampusVaultError):
    """Raised when the host is not ready for a run."""

    pass


class RunLockBusy(PreflightFailure):
    """Raised when another backup or restore holds the host lock."""

    pass


class CommandFailed(CampusVaultError):
    """Raised when an external tool exits with a non-zero status."""

    def __init__(self, cmd: List[str], returncode: int, stderr: str = ""):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"Command '{cmd[0] if cmd else '?'}' failed with exit code {returncode}",
            {"stderr": stderr.strip()[-500:]} if stderr else None,
        )


class ComponentCaptureFailure(CampusVaultError):
    """Raised when one backup component cannot be captured."""

    pass


class ToolAssistFailure(CampusVaultError):
    """Raised when a store-native dump or restore tool fails."""

    pass


class ComponentRestoreFailure(CampusVaultError):
    """Raised when a mandatory restore step fails."""

    pass


class TransferFailure(CampusVaultError):
    """Raised when an upload, download or remote delete fails."""

    pass


class CorruptArchive(CampusVaultError):
    """Raised when a downloaded package fails the integrity check."""

    pass


class SelectionError(CampusVaultError):
    """Base class for restore target resolution errors."""

    pass


class NotFound(SelectionError):
    """Raised when no archive matches the requested selection."""

    pass


class SelectionAmbiguous(SelectionError):
    """Raised when more than one archive matches and the operator must pick."""

    def __init__(self, message: str, candidates: List[Any]):
        self.candidates = list(candidates)
        super().__init__(
            message, {"candidates": [str(c) for c in self.candidates]}
        )


class ServiceStartFailure(CampusVaultError):
    """Raised when the primary database service does not start."""

    pass
