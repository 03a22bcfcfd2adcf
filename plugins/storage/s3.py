"""
AWS S3 storage backend.

Drives the AWS CLI (``aws s3 cp``, ``aws s3 ls``) using a named profile, so
credentials never pass through this process. The profile is handed over in
``AWS_PROFILE`` and scrubbed from any CLI output that ends up in a message.
"""

import re
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.config_loader import S3Destination
from core.errors import DeliveryError, MetadataError
from plugins.base import CommandMixin, FileInfo, StorageBackend

# "2024-01-15 10:30:45      12345 etcd-backup-20240115-103045.db"
S3_LS_LINE = re.compile(
    r"^(?P<date>\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2})\s+(?P<size>\d+)\s+(?P<key>.+)$"
)


class S3Storage(CommandMixin, StorageBackend):
    """
    Delivers snapshots to ``s3://<bucket>[/<folder>]/``.

    Example:
        >>> storage = S3Storage(S3Destination(bucket="etcd", profile="backup"))
        >>> storage.put(Path("/tmp/etcd-backup-123-1/etcd-backup-20240115-103045.db"))
        's3://etcd/etcd-backup-20240115-103045.db'
    """

    tool = "aws"

    def __init__(self, destination: S3Destination, config: Optional[Dict[str, Any]] = None):
        super().__init__(config or {})
        self.bucket = destination.bucket
        self.folder = (destination.folder or "").strip("/")
        self._profile = destination.profile

    @property
    def name(self) -> str:
        return "S3Storage"

    @property
    def destination(self) -> str:
        if self.folder:
            return f"s3://{self.bucket}/{self.folder}/"
        return f"s3://{self.bucket}"

    def object_uri(self, file_name: str) -> str:
        """Full URI of an object stored under the destination prefix."""
        return f"{self.destination.rstrip('/')}/{file_name}"

    def _aws(self, *args: str) -> subprocess.CompletedProcess:
        cmd: List[str] = ["aws", *args]
        return self._run_command(cmd, env={"AWS_PROFILE": self._profile.get_secret_value()})

    def _scrub(self, text: object) -> str:
        """Return text with the profile name masked."""
        profile = re.escape(self._profile.get_secret_value())
        return re.sub(rf"(?<![\w-]){profile}(?![\w-])", "<profile>", str(text).strip())

    def identity_valid(self) -> bool:
        try:
            result = self._aws("sts", "get-caller-identity")
        except (subprocess.SubprocessError, OSError) as e:
            self.logger.error(f"AWS identity check failed: {self._scrub(e)}")
            return False

        if result.returncode != 0:
            self.logger.error(
                f"Invalid AWS credentials for the configured profile: {self._scrub(result.stderr)}"
            )
            return False
        return True

    def exists(self, path: str) -> bool:
        try:
            result = self._aws("s3", "ls", path)
        except (subprocess.SubprocessError, OSError) as e:
            self.logger.error(f"Failed to list {path}: {self._scrub(e)}")
            return False
        return result.returncode == 0

    def put(self, local_file: Path) -> str:
        uri = self.object_uri(Path(local_file).name)
        self.logger.info(f"Uploading {local_file} to {uri}")

        try:
            result = self._aws("s3", "cp", str(local_file), uri)
        except (subprocess.SubprocessError, OSError) as e:
            raise DeliveryError(f"Failed to upload {local_file} to S3: {self._scrub(e)}") from e

        if result.returncode != 0:
            raise DeliveryError(
                f"Failed to upload {local_file} to S3: {self._scrub(result.stderr)}"
            )
        return uri

    def stat(self, location: str) -> FileInfo:
        try:
            result = self._aws("s3", "ls", location)
        except (subprocess.SubprocessError, OSError) as e:
            raise MetadataError(
                f"Failed to retrieve S3 metadata for {location}: {self._scrub(e)}"
            ) from e

        if result.returncode != 0:
            raise MetadataError(
                f"Failed to retrieve S3 metadata for {location}: {self._scrub(result.stderr)}"
            )

        key_name = location.rsplit("/", 1)[-1]
        for line in result.stdout.splitlines():
            match = S3_LS_LINE.match(line.strip())
            if match and match.group("key") == key_name:
                # aws s3 ls prints timestamps in the local timezone
                modified = datetime.strptime(match.group("date"), "%Y-%m-%d %H:%M:%S")
                return FileInfo(
                    location=location,
                    size=int(match.group("size")),
                    modified=modified.astimezone(timezone.utc),
                )

        raise MetadataError(f"S3 object {location} not found in listing")
