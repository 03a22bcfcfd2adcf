"""
Azure Blob Storage backend.

Drives the Azure CLI (``az storage ...``). The account key is handed to the
CLI through ``AZURE_STORAGE_KEY`` rather than on the command line.
"""

import json
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from core.config_loader import AzureDestination
from core.errors import DeliveryError, MetadataError
from plugins.base import CommandMixin, FileInfo, StorageBackend

BLOB_METADATA_QUERY = "{size:properties.contentLength, modified:properties.lastModified}"


def _parse_azure_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class AzureStorage(CommandMixin, StorageBackend):
    """Delivers snapshots to a blob container of a storage account."""

    tool = "az"

    def __init__(self, destination: AzureDestination, config: Optional[Dict[str, Any]] = None):
        super().__init__(config or {})
        self.account = destination.storage_account
        self.container = destination.container
        self._account_key = destination.storage_account_key

    @property
    def name(self) -> str:
        return "AzureStorage"

    @property
    def destination(self) -> str:
        return f"azure://{self.account}/{self.container}"

    def blob_uri(self, blob_name: str) -> str:
        """Location string of a blob in the configured container."""
        return f"{self.destination}/{blob_name}"

    def _az(self, *args: str) -> subprocess.CompletedProcess:
        return self._run_command(
            ["az", *args],
            env={"AZURE_STORAGE_KEY": self._account_key.get_secret_value()},
        )

    def identity_valid(self) -> bool:
        try:
            result = self._az("storage", "account", "show", "--name", self.account)
        except (subprocess.SubprocessError, OSError) as e:
            self.logger.error(f"Azure identity check failed: {e}")
            return False

        if result.returncode != 0:
            self.logger.error(
                f"Invalid Azure credentials for storage account {self.account}: "
                f"{result.stderr.strip()}"
            )
            return False
        return True

    def exists(self, path: str) -> bool:
        """Check that the container named by the last segment of path exists."""
        container = path.rstrip("/").rsplit("/", 1)[-1]
        try:
            result = self._az(
                "storage",
                "container",
                "show",
                "--account-name",
                self.account,
                "--name",
                container,
            )
        except (subprocess.SubprocessError, OSError) as e:
            self.logger.error(f"Failed to look up container {container}: {e}")
            return False
        return result.returncode == 0

    def put(self, local_file: Path) -> str:
        blob_name = Path(local_file).name
        location = self.blob_uri(blob_name)
        self.logger.info(f"Uploading {local_file} to Azure Blob Storage: {location}")

        try:
            result = self._az(
                "storage",
                "blob",
                "upload",
                "--account-name",
                self.account,
                "--container-name",
                self.container,
                "--file",
                str(local_file),
                "--name",
                blob_name,
            )
        except (subprocess.SubprocessError, OSError) as e:
            raise DeliveryError(
                f"Failed to upload {local_file} to Azure Blob Storage: {e}"
            ) from e

        if result.returncode != 0:
            raise DeliveryError(
                f"Failed to upload {local_file} to Azure Blob Storage: {result.stderr.strip()}"
            )
        return location

    def stat(self, location: str) -> FileInfo:
        blob_name = location.rsplit("/", 1)[-1]
        try:
            result = self._az(
                "storage",
                "blob",
                "show",
                "--account-name",
                self.account,
                "--container-name",
                self.container,
                "--name",
                blob_name,
                "--query",
                BLOB_METADATA_QUERY,
                "--output",
                "json",
            )
        except (subprocess.SubprocessError, OSError) as e:
            raise MetadataError(f"Failed to retrieve Azure metadata for {location}: {e}") from e

        if result.returncode != 0:
            raise MetadataError(
                f"Failed to retrieve Azure metadata for {location}: {result.stderr.strip()}"
            )

        try:
            data = json.loads(result.stdout)
            size = data.get("size")
            modified = data.get("modified")
            return FileInfo(
                location=location,
                size=int(size) if size is not None else None,
                modified=_parse_azure_timestamp(modified) if modified else None,
            )
        except (ValueError, TypeError, AttributeError) as e:
            raise MetadataError(
                f"Unexpected output from 'az storage blob show' for {location}: {e}"
            ) from e
