"""
S3 Archive Store
Tiered backup archives on S3-compatible storage (Backblaze B2, Minio, Amazon S3)
"""
import logging
import tarfile
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from config import RemoteSettings

from .backup_utils import verify_package
from .errors import CorruptArchive, TransferFailure
from .tiers import TIERS, parse_archive_name

logger = logging.getLogger("campusvault.s3")


@dataclass(frozen=True)
class ArchiveRef:
    """One remote backup archive."""

    tier: str
    filename: str
    timestamp: datetime
    size: int = 0
    last_modified: Optional[datetime] = None

    @property
    def archive_id(self) -> str:
        return f"{self.tier}/{self.filename}"

    def __str__(self) -> str:
        return self.archive_id


class ArchiveStore:
    """
    Archives stored under ``{prefix}/{tier}/{filename}`` in one bucket.
    """

    def __init__(self, remote: RemoteSettings, client: Any = None):
        """
        Initialize the archive store

        Args:
            remote: Remote store settings (bucket, prefix, endpoint, keys)
            client: Pre-built S3 client (a boto3 client is created if None)
        """
        self.remote = remote
        self.bucket = remote.bucket
        self.prefix = remote.prefix.strip("/")

        if client is None:
            client_config = {
                "region_name": remote.region,
                "config": Config(
                    connect_timeout=remote.timeout,
                    read_timeout=remote.timeout,
                    retries={"max_attempts": remote.max_attempts, "mode": "standard"},
                ),
            }
            if remote.access_key and remote.secret_key:
                client_config["aws_access_key_id"] = remote.access_key
                client_config["aws_secret_access_key"] = remote.secret_key
            # Custom endpoint for B2/Minio
            if remote.endpoint_url:
                client_config["endpoint_url"] = remote.endpoint_url
            client = boto3.client("s3", **client_config)
        self.client = client

        chunk = remote.chunk_size_mb * 1024 * 1024
        self.transfer_config = TransferConfig(
            multipart_threshold=chunk,
            multipart_chunksize=chunk,
            max_concurrency=remote.transfers,
            use_threads=remote.transfers > 1,
        )

    @property
    def location(self) -> str:
        return f"s3://{self.bucket}/{self.prefix}"

    def key_for(self, tier: str, filename: str) -> str:
        if tier not in TIERS:
            raise ValueError(f"Unknown tier: {tier}")
        return f"{self.prefix}/{tier}/{filename}" if self.prefix else f"{tier}/{filename}"

    def _tier_prefix(self, tier: str) -> str:
        return self.key_for(tier, "")

    def list(self, tier: str) -> List[ArchiveRef]:
        """
        List archives of one tier, newest embedded timestamp first.

        Objects whose names are not backup-{tier}-{timestamp}.tar.gz are ignored.

        Raises:
            TransferFailure: If the listing fails
        """
        prefix = self._tier_prefix(tier)
        archives = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    filename = obj["Key"][len(prefix):]
                    if "/" in filename:
                        continue
                    parsed = parse_archive_name(filename)
                    if not parsed or parsed[0] != tier:
                        continue
                    archives.append(
                        ArchiveRef(
                            tier=tier,
                            filename=filename,
                            timestamp=parsed[1],
                            size=int(obj.get("Size", 0)),
                            last_modified=obj.get("LastModified"),
                        )
                    )
        except (ClientError, BotoCoreError) as e:
            raise TransferFailure(f"Listing {tier} backups failed", {"error": str(e)})

        archives.sort(key=lambda a: (a.timestamp, a.filename), reverse=True)
        return archives

    def list_all(self) -> Dict[str, List[ArchiveRef]]:
        return {tier: self.list(tier) for tier in TIERS}

    def find(self, archive_id: str) -> ArchiveRef:
        """
        Resolve "tier/filename" to a stored archive.

        Raises:
            KeyError: If the archive does not exist
        """
        tier, _, filename = archive_id.partition("/")
        if tier not in TIERS:
            raise KeyError(archive_id)
        for archive in self.list(tier):
            if archive.filename == filename:
                return archive
        raise KeyError(archive_id)

    def upload(self, local_path: Union[str, Path], tier: str) -> ArchiveRef:
        """
        Upload an archive into its tier with parallel multipart transfer.

        Raises:
            TransferFailure: On any client or transport error
        """
        local_path = Path(local_path)
        parsed = parse_archive_name(local_path.name)
        if not parsed or parsed[0] != tier:
            raise ValueError(f"{local_path.name} is not a {tier} archive name")

        key = self.key_for(tier, local_path.name)
        try:
            self.client.upload_file(
                str(local_path), self.bucket, key, Config=self.transfer_config
            )
        except (ClientError, BotoCoreError, OSError) as e:
            raise TransferFailure(
                f"Upload of {local_path.name} failed", {"key": key, "error": str(e)}
            )
        logger.info("Uploaded %s to s3://%s/%s", local_path.name, self.bucket, key)
        return ArchiveRef(
            tier=tier,
            filename=local_path.name,
            timestamp=parsed[1],
            size=local_path.stat().st_size,
        )

    def download(self, archive: Union[str, ArchiveRef], dest_dir: Union[str, Path]) -> Path:
        """
        Download an archive and check it is a readable tar.gz package.

        Raises:
            TransferFailure: On any client or transport error
            CorruptArchive: If the downloaded file cannot be read as a package
        """
        archive_id = archive.archive_id if isinstance(archive, ArchiveRef) else archive
        tier, _, filename = archive_id.partition("/")
        key = self.key_for(tier, filename)
        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        local_path = dest_dir / filename

        try:
            self.client.download_file(
                self.bucket, key, str(local_path), Config=self.transfer_config
            )
        except (ClientError, BotoCoreError, OSError) as e:
            raise TransferFailure(
                f"Download of {archive_id} failed", {"key": key, "error": str(e)}
            )
        if not local_path.exists():
            raise TransferFailure(f"Failed to download backup {archive_id}")

        logger.info("Verifying backup integrity...")
        try:
            verify_package(local_path)
        except (tarfile.TarError, OSError, EOFError) as e:
            raise CorruptArchive(
                f"Backup file {filename} is corrupted", {"error": str(e)}
            )
        return local_path

    def delete(self, archive: ArchiveRef) -> None:
        key = self.key_for(archive.tier, archive.filename)
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise TransferFailure(f"Delete of {archive} failed", {"error": str(e)})
        logger.info("Deleted old backup: %s", archive)

    def delete_older_than(
        self, tier: str, threshold: timedelta, now: Optional[datetime] = None
    ) -> List[ArchiveRef]:
        """
        Delete archives in ``tier`` whose age is strictly greater than ``threshold``.

        Age is measured from the timestamp embedded in the archive name.

        Returns:
            The deleted archives
        """
        now = now or datetime.now()
        deleted = []
        for archive in self.list(tier):
            if now - archive.timestamp > threshold:
                self.delete(archive)
                deleted.append(archive)
        return deleted

    def test_connection(self) -> bool:
        """
        Test bucket connectivity and permissions

        Returns:
            True if connection successful, False otherwise
        """
        try:
            self.client.head_bucket(Bucket=self.bucket)
            self.client.list_objects_v2(Bucket=self.bucket, Prefix=self.prefix, MaxKeys=1)
            return True
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code")
            if error_code == "404":
                logger.error("Bucket '%s' not found", self.bucket)
            elif error_code == "403":
                logger.error("Access denied to bucket '%s'", self.bucket)
            else:
                logger.error("Connection test failed: %s", e)
            return False
        except BotoCoreError as e:
            logger.error("Connection test failed: %s", e)
            return False
