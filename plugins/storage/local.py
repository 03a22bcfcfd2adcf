"""
Local filesystem storage backend.

Snapshots for local targets are written straight into the backup folder, so
delivery is usually a no-op.
"""

import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from core.config_loader import LocalDestination
from core.errors import DeliveryError, MetadataError
from plugins.base import FileInfo, StorageBackend


class LocalStorage(StorageBackend):
    """Stores snapshots in a directory on this host."""

    def __init__(self, destination: LocalDestination, config: Optional[Dict[str, Any]] = None):
        super().__init__(config or {})
        self.folder = Path(destination.backup_folder)

    @property
    def name(self) -> str:
        return "LocalStorage"

    @property
    def destination(self) -> str:
        return str(self.folder)

    def identity_valid(self) -> bool:
        return True

    def exists(self, path: str) -> bool:
        return Path(path).exists()

    def put(self, local_file: Path) -> str:
        """Copy local_file into the backup folder unless it is already there."""
        local_file = Path(local_file)
        try:
            if local_file.parent.resolve() == self.folder.resolve():
                self.logger.debug(f"{local_file} already in {self.folder}, nothing to copy")
                return str(local_file)

            target_path = self.folder / local_file.name
            shutil.copy2(local_file, target_path)
            target_path.chmod(0o600)
            self.logger.info(f"Copied {local_file} to {target_path}")
            return str(target_path)
        except OSError as e:
            raise DeliveryError(f"Failed to copy {local_file} to {self.folder}: {e}") from e

    def stat(self, location: str) -> FileInfo:
        try:
            st = Path(location).stat()
        except OSError as e:
            raise MetadataError(f"Failed to stat local backup {location}: {e}") from e

        return FileInfo(
            location=location,
            size=st.st_size,
            modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
        )
