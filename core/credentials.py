"""Lookup of secrets in the installer's plain-text credentials file.

The file is made of blocks like::

    MariaDB Root:
      User: root
      Password: s3cret

    Moodle Database:
      Name: moodle
      Password: other
"""

from pathlib import Path
from typing import List, Optional, Union

from .errors import CredentialsMalformed, CredentialsMissing

PASSWORD_MARKER = "Password:"


def _is_label_line(line: str) -> bool:
    stripped = line.strip()
    return (
        stripped.endswith(":")
        and stripped.count(":") == 1
        and not stripped.startswith(PASSWORD_MARKER)
    )


class CredentialsStore:
    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self._lines: Optional[List[str]] = None

    def exists(self) -> bool:
        return self.path.is_file()

    def _read(self) -> List[str]:
        if self._lines is None:
            if not self.path.is_file():
                raise CredentialsMissing(
                    f"Database credentials file not found at: {self.path}"
                )
            with open(self.path, "r", encoding="utf-8") as f:
                self._lines = f.read().splitlines()
        return self._lines

    def resolve(self, label: str) -> str:
        """
        Return the password recorded for ``label``.

        Raises:
            CredentialsMissing: If the file does not exist
            CredentialsMalformed: If the label is absent or has no password
        """
        lines = self._read()
        header = f"{label}:"

        for index, line in enumerate(lines):
            if line.strip() != header:
                continue
            for following in lines[index + 1:]:
                stripped = following.strip()
                if stripped.startswith(PASSWORD_MARKER):
                    value = stripped[len(PASSWORD_MARKER):].strip()
                    if not value:
                        break
                    return value
                if _is_label_line(following):
                    break
            raise CredentialsMalformed(
                f"No password found for '{label}' in {self.path}"
            )

        raise CredentialsMalformed(f"Label '{label}' not found in {self.path}")
