import json
import os
import socket
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from core.credentials import CredentialsStore
from core.errors import ConfigError

# Allow override via env vars
CONFIG_FILE_ENV = "CAMPUSVAULT_CONFIG"
SITES_DIRECTORY_ENV = "SITES_DIRECTORY"
DEFAULT_CONFIG_FILE = Path("/etc/campusvault/config.json")
DEFAULT_SITES_DIRECTORY = Path("/var/www")

HEALTHCHECK_PLACEHOLDER = "https://hc-ping.com/YOUR-CHECK-UUID"

DB_ROOT_LABEL = "MariaDB Root"
LMS_DB_LABEL = "Moodle Database"

DEFAULT_CONFIG_PATHS = (
    "/etc/apache2/sites-available",
    "/etc/caddy/Caddyfile",
    "/etc/koha/sites",
    "/etc/php/8.3/fpm/php.ini",
    "/etc/mysql/mariadb.conf.d",
    "{sites}/config",
    "{sites}/moodle/config.php",
)

DEFAULT_EMERGENCY_CONFIG_PATHS = (
    "{sites}/moodle/config.php",
    "/etc/caddy/Caddyfile",
    "/etc/apache2/sites-available/library.conf",
    "/etc/koha/sites/library/koha-conf.xml",
)


@dataclass(frozen=True)
class RetentionPolicy:
    """Number of archives kept per tier, expressed as an age threshold."""

    daily: int = 7
    weekly: int = 4
    monthly: int = 6

    def threshold(self, tier: str) -> timedelta:
        if tier == "daily":
            return timedelta(days=self.daily)
        if tier == "weekly":
            return timedelta(days=self.weekly * 7)
        if tier == "monthly":
            return timedelta(days=self.monthly * 30)
        raise ValueError(f"Unknown tier: {tier}")


@dataclass(frozen=True)
class RemoteSettings:
    """S3-compatible remote store (Backblaze B2, Minio, Amazon S3)."""

    bucket: str = ""
    prefix: str = ""
    endpoint_url: Optional[str] = None
    region: str = "us-east-1"
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    transfers: int = 4
    chunk_size_mb: int = 64
    timeout: int = 60
    max_attempts: int = 3


@dataclass(frozen=True)
class LMSSettings:
    database: str = "moodle"
    user: str = "moodle"
    sanity_table: str = "mdl_user"


@dataclass(frozen=True)
class ILSSettings:
    instance: str = "library"
    database: str = "koha_library"
    spool_dir: Path = Path("/var/spool/koha")


@dataclass(frozen=True)
class Settings:
    """Resolved configuration for one backup or restore run."""

    sites_directory: Path
    backup_dir: Path
    restore_root: Path
    emergency_root: Path
    log_dir: Path
    restore_log_dir: Path
    lock_file: Path
    credentials_file: Path
    hostname: str
    remote: RemoteSettings
    db_root_password: str = field(default="", repr=False)
    lms_db_password: Optional[str] = field(default=None, repr=False)
    db_host: str = "localhost"
    db_port: int = 3306
    db_user: str = "root"
    healthcheck_url: Optional[str] = None
    restore_healthcheck_url: Optional[str] = None
    retention: RetentionPolicy = RetentionPolicy()
    lms: LMSSettings = LMSSettings()
    ils: ILSSettings = ILSSettings()
    min_free_space_mb: int = 5000
    restore_min_free_space_mb: int = 10240
    web_user: Optional[str] = "www-data"
    required_services: Tuple[str, ...] = ("mariadb", "apache2", "php8.3-fpm")
    database_service: str = "mariadb"
    web_services: Tuple[str, ...] = ("apache2", "php8.3-fpm")
    optional_services: Tuple[str, ...] = ("caddy",)
    snapshot_services: Tuple[str, ...] = (
        "apache2",
        "caddy",
        "mariadb",
        "php8.3-fpm",
        "koha-common",
    )
    config_paths: Tuple[Path, ...] = ()
    emergency_config_paths: Tuple[Path, ...] = ()
    config_restore_root: Path = Path("/")

    @property
    def moodle_dir(self) -> Path:
        return self.sites_directory / "moodle"

    @property
    def moodle_config(self) -> Path:
        return self.moodle_dir / "config.php"

    @property
    def data_dir(self) -> Path:
        return self.sites_directory / "data"

    @property
    def moodledata_dir(self) -> Path:
        return self.data_dir / "moodledata"


def _expand_paths(paths: Any, sites: Path) -> Tuple[Path, ...]:
    return tuple(Path(str(p).format(sites=sites)) for p in paths)


def _read_config_file(config_file: Path) -> Dict[str, Any]:
    if not config_file.exists():
        return {}
    try:
        with open(config_file, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot read settings file {config_file}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"Settings file {config_file} must contain a JSON object")
    return data


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"Settings section '{name}' must be an object")
    return value


def load_settings(
    config_file: Optional[Path] = None,
    require_credentials: bool = True,
) -> Settings:
    """
    Build the immutable run configuration.

    Args:
        config_file: JSON settings file (default: $CAMPUSVAULT_CONFIG or
            /etc/campusvault/config.json; a missing file means defaults)
        require_credentials: Resolve database secrets from the credentials file

    Raises:
        ConfigError: If the settings file or credentials are unusable
    """
    if config_file is None:
        config_file = Path(os.getenv(CONFIG_FILE_ENV, str(DEFAULT_CONFIG_FILE)))
    data = _read_config_file(Path(config_file))

    hostname = data.get("hostname") or socket.gethostname()
    sites = Path(
        os.getenv(SITES_DIRECTORY_ENV)
        or data.get("sites_directory")
        or DEFAULT_SITES_DIRECTORY
    )
    credentials_file = Path(
        data.get("credentials_file") or sites / "config" / "database-credentials.txt"
    )

    remote_cfg = _section(data, "remote")
    remote = RemoteSettings(
        bucket=remote_cfg.get("bucket", ""),
        prefix=remote_cfg.get("prefix") or f"backups/moodle-koha-{hostname}",
        endpoint_url=remote_cfg.get("endpoint_url"),
        region=remote_cfg.get("region", "us-east-1"),
        access_key=remote_cfg.get("access_key"),
        secret_key=remote_cfg.get("secret_key"),
        transfers=int(remote_cfg.get("transfers", 4)),
        chunk_size_mb=int(remote_cfg.get("chunk_size_mb", 64)),
        timeout=int(remote_cfg.get("timeout", 60)),
        max_attempts=int(remote_cfg.get("max_attempts", 3)),
    )

    retention_cfg = _section(data, "retention")
    retention = RetentionPolicy(
        daily=int(retention_cfg.get("daily", 7)),
        weekly=int(retention_cfg.get("weekly", 4)),
        monthly=int(retention_cfg.get("monthly", 6)),
    )

    lms_cfg = _section(data, "lms")
    ils_cfg = _section(data, "ils")

    db_root_password = ""
    lms_db_password = None
    if require_credentials:
        store = CredentialsStore(credentials_file)
        db_root_password = store.resolve(DB_ROOT_LABEL)
        try:
            lms_db_password = store.resolve(LMS_DB_LABEL)
        except ConfigError:
            lms_db_password = None

    optional: Dict[str, Any] = {}
    for key in ("required_services", "web_services", "optional_services", "snapshot_services"):
        if key in data:
            optional[key] = tuple(data[key])
    for key in ("min_free_space_mb", "restore_min_free_space_mb", "db_port"):
        if key in data:
            optional[key] = int(data[key])
    for key in ("database_service", "db_host", "db_user"):
        if key in data:
            optional[key] = data[key]
    if "web_user" in data:
        optional["web_user"] = data["web_user"] or None

    healthcheck_url = data.get("healthcheck_url")
    if healthcheck_url == HEALTHCHECK_PLACEHOLDER:
        healthcheck_url = None

    return Settings(
        sites_directory=sites,
        backup_dir=Path(data.get("backup_dir", "/var/backups/daily")),
        restore_root=Path(data.get("restore_root", "/var/restore")),
        emergency_root=Path(data.get("emergency_root", "/var/backups/emergency")),
        log_dir=Path(data.get("log_dir", "/var/log/backups")),
        restore_log_dir=Path(data.get("restore_log_dir", "/var/log/restore")),
        lock_file=Path(data.get("lock_file", "/run/lock/campusvault.lock")),
        credentials_file=credentials_file,
        hostname=hostname,
        remote=remote,
        db_root_password=db_root_password,
        lms_db_password=lms_db_password,
        healthcheck_url=healthcheck_url or None,
        restore_healthcheck_url=data.get("restore_healthcheck_url") or None,
        retention=retention,
        lms=LMSSettings(
            database=lms_cfg.get("database", "moodle"),
            user=lms_cfg.get("user", "moodle"),
            sanity_table=lms_cfg.get("sanity_table", "mdl_user"),
        ),
        ils=ILSSettings(
            instance=ils_cfg.get("instance", "library"),
            database=ils_cfg.get("database", "koha_library"),
            spool_dir=Path(ils_cfg.get("spool_dir", "/var/spool/koha")),
        ),
        config_paths=_expand_paths(
            data.get("config_paths", DEFAULT_CONFIG_PATHS), sites
        ),
        emergency_config_paths=_expand_paths(
            data.get("emergency_config_paths", DEFAULT_EMERGENCY_CONFIG_PATHS), sites
        ),
        config_restore_root=Path(data.get("config_restore_root", "/")),
        **optional,
    )
