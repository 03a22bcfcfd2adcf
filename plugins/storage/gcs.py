"""
Google Cloud Storage backend.

Drives ``gsutil`` with ``GOOGLE_APPLICATION_CREDENTIALS`` pointing at the
configured service account key.
"""

import os
import re
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from core.config_loader import GCSDestination
from core.errors import DeliveryError, MetadataError
from plugins.base import CommandMixin, FileInfo, StorageBackend

# "     12345  2024-01-15T10:30:45Z  gs://bucket/etcd-backup-20240115-103045.db"
GSUTIL_LS_LINE = re.compile(r"^\s*(?P<size>\d+)\s+(?P<date>\S+)\s+(?P<uri>gs://\S+)\s*$")


class GCSStorage(CommandMixin, StorageBackend):
    """Delivers snapshots to ``gs://<bucket>[/<folder>]/``."""

    tool = "gsutil"

    def __init__(self, destination: GCSDestination, config: Optional[Dict[str, Any]] = None):
        super().__init__(config or {})
        self.bucket = destination.bucket
        self.folder = (destination.folder or "").strip("/")
        self.credentials_path = Path(destination.credentials_path)

    @property
    def name(self) -> str:
        return "GCSStorage"

    @property
    def destination(self) -> str:
        if self.folder:
            return f"gs://{self.bucket}/{self.folder}/"
        return f"gs://{self.bucket}"

    def object_uri(self, file_name: str) -> str:
        """Full URI of an object stored under the destination prefix."""
        return f"{self.destination.rstrip('/')}/{file_name}"

    def _gsutil(self, *args: str) -> subprocess.CompletedProcess:
        return self._run_command(
            ["gsutil", *args],
            env={"GOOGLE_APPLICATION_CREDENTIALS": str(self.credentials_path)},
        )

    def identity_valid(self) -> bool:
        if not self.credentials_path.is_file() or not os.access(self.credentials_path, os.R_OK):
            self.logger.error("GCS credentials file is missing or unreadable")
            return False

        try:
            result = self._gsutil("ls", f"gs://{self.bucket}")
        except (subprocess.SubprocessError, OSError) as e:
            self.logger.error(f"GCS identity check failed: {e}")
            return False

        if result.returncode != 0:
            self.logger.error(f"Invalid GCS credentials: {result.stderr.strip()}")
            return False
        return True

    def exists(self, path: str) -> bool:
        try:
            result = self._gsutil("ls", path)
        except (subprocess.SubprocessError, OSError) as e:
            self.logger.error(f"Failed to list {path}: {e}")
            return False
        return result.returncode == 0

    def put(self, local_file: Path) -> str:
        uri = self.object_uri(Path(local_file).name)
        self.logger.info(f"Uploading {local_file} to {uri}")

        try:
            result = self._gsutil("cp", str(local_file), uri)
        except (subprocess.SubprocessError, OSError) as e:
            raise DeliveryError(f"Failed to upload {local_file} to GCS: {e}") from e

        if result.returncode != 0:
            raise DeliveryError(
                f"Failed to upload {local_file} to GCS: {result.stderr.strip()}"
            )
        return uri

    def stat(self, location: str) -> FileInfo:
        try:
            result = self._gsutil("ls", "-l", location)
        except (subprocess.SubprocessError, OSError) as e:
            raise MetadataError(f"Failed to retrieve GCS metadata for {location}: {e}") from e

        if result.returncode != 0:
            raise MetadataError(
                f"Failed to retrieve GCS metadata for {location}: {result.stderr.strip()}"
            )

        for line in result.stdout.splitlines():
            match = GSUTIL_LS_LINE.match(line)
            if match and match.group("uri") == location:
                try:
                    modified = datetime.strptime(
                        match.group("date"), "%Y-%m-%dT%H:%M:%SZ"
                    ).replace(tzinfo=timezone.utc)
                except ValueError as e:
                    raise MetadataError(
                        f"Unexpected timestamp in gsutil output: {match.group('date')}"
                    ) from e
                return FileInfo(
                    location=location,
                    size=int(match.group("size")),
                    modified=modified,
                )

        raise MetadataError(f"GCS object {location} not found in listing")
