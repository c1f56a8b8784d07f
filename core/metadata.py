"""Backup descriptor written into every bundle."""

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from .backup_utils import calculate_checksum

BACKUP_VERSION = "1.0"


@dataclass(frozen=True)
class ComponentInfo:
    file: str
    size: int
    sha256: str
    records: Optional[int] = None

    @classmethod
    def from_file(cls, path: Path, records: Optional[int] = None) -> "ComponentInfo":
        return cls(
            file=path.name,
            size=path.stat().st_size,
            sha256=calculate_checksum(path),
            records=records,
        )


@dataclass(frozen=True)
class BackupMetadata:
    timestamp: str
    hostname: str
    tier: str
    components: Dict[str, ComponentInfo] = field(default_factory=dict)
    services: Dict[str, str] = field(default_factory=dict)
    system: Dict[str, str] = field(default_factory=dict)
    backup_version: str = BACKUP_VERSION

    @property
    def filename(self) -> str:
        return f"backup-metadata-{self.timestamp}.json"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for info in data["components"].values():
            if info.get("records") is None:
                info.pop("records")
        return data

    def write(self, dest_dir: Path) -> Path:
        path = Path(dest_dir) / self.filename
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
        return path

    @classmethod
    def load(cls, path: Path) -> "BackupMetadata":
        with open(path, "r") as f:
            data = json.load(f)
        components = {
            name: ComponentInfo(**info) for name, info in data.get("components", {}).items()
        }
        return cls(
            timestamp=data["timestamp"],
            hostname=data["hostname"],
            tier=data["tier"],
            components=components,
            services=data.get("services", {}),
            system=data.get("system", {}),
            backup_version=data.get("backup_version", BACKUP_VERSION),
        )
