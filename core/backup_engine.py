"""
Backup Engine for etcd-backup.

This module orchestrates backups for every configured target. Each target is
driven through a strict state machine:

    PENDING -> VALIDATED -> SNAPSHOT_TAKEN -> DELIVERED -> RETIRED -> DONE

with FAILED reachable from any non-terminal state. Failures stay contained in
their target; callers decide whether a failed target ends the run.
"""

import os
import re
import tempfile
import threading
import time
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Type

from core.config_loader import (
    AzureDestination,
    GCSDestination,
    LocalDestination,
    S3Destination,
    TargetSpec,
)
from core.errors import (
    BackupCancelled,
    BackupError,
    DeliveryError,
    MetadataError,
    PreflightError,
    SnapshotError,
)
from core.preflight import PreflightChecker
from core.settings import AppSettings
from lib.logger import get_logger, log_context
from lib.utils import format_bytes, get_timestamp, human_readable_duration, safe_remove, utc_now
from plugins.base import FileInfo, SnapshotPlugin, StorageBackend
from plugins.snapshot.etcdctl import EtcdctlSnapshotPlugin
from plugins.storage.azure import AzureStorage
from plugins.storage.gcs import GCSStorage
from plugins.storage.local import LocalStorage
from plugins.storage.s3 import S3Storage

__all__ = [
    "BACKUP_FILE_PATTERN",
    "BackupArtifact",
    "BackupCancelled",
    "BackupEngine",
    "BackupError",
    "DeliveryError",
    "MetadataError",
    "PreflightError",
    "SnapshotError",
    "TargetResult",
    "TargetState",
    "get_storage_backend",
]

BACKUP_PREFIX = "etcd-backup"
BACKUP_FILE_PATTERN = re.compile(r"^etcd-backup-\d{8}-\d{6}\.db$")

# Dispatch table: destination variant -> storage backend implementation
STORAGE_BACKENDS: Dict[type, Type[StorageBackend]] = {
    LocalDestination: LocalStorage,
    S3Destination: S3Storage,
    GCSDestination: GCSStorage,
    AzureDestination: AzureStorage,
}


def get_storage_backend(destination: Any, settings: AppSettings) -> StorageBackend:
    """
    Instantiate the storage backend for a destination.

    Raises:
        BackupError: If no backend is registered for the destination type
    """
    backend_cls = STORAGE_BACKENDS.get(type(destination))
    if backend_cls is None:
        raise BackupError(f"No storage backend for destination type {type(destination).__name__}")
    return backend_cls(
        destination,
        {"command_timeout": settings.command_timeout, "etcdctl_path": settings.etcdctl_path},
    )


class TargetState(str, Enum):
    """Orchestration state of a single target."""

    PENDING = "pending"
    VALIDATED = "validated"
    SNAPSHOT_TAKEN = "snapshot_taken"
    DELIVERED = "delivered"
    RETIRED = "retired"
    DONE = "done"
    FAILED = "failed"


ALLOWED_TRANSITIONS: Dict[TargetState, frozenset] = {
    TargetState.PENDING: frozenset({TargetState.VALIDATED, TargetState.FAILED}),
    TargetState.VALIDATED: frozenset({TargetState.SNAPSHOT_TAKEN, TargetState.FAILED}),
    TargetState.SNAPSHOT_TAKEN: frozenset({TargetState.DELIVERED, TargetState.FAILED}),
    TargetState.DELIVERED: frozenset({TargetState.RETIRED, TargetState.FAILED}),
    TargetState.RETIRED: frozenset({TargetState.DONE, TargetState.FAILED}),
    TargetState.DONE: frozenset(),
    TargetState.FAILED: frozenset(),
}


@dataclass(frozen=True)
class BackupArtifact:
    """A delivered snapshot. Size and time are None when metadata was unavailable."""

    target_index: int
    file_name: str
    size_bytes: Optional[int]
    modified_at: Optional[datetime]
    location: str


@dataclass
class TargetResult:
    """
    Progress and outcome of one target.

    Attributes:
        index: 1-based position of the target in its document
        target: The target being processed
        state: Current state
        history: Every state visited, in order
        artifact: Delivered artifact (after DELIVERED)
        error: Failure cause (when FAILED)
        retired_files: Number of stale local backups deleted
        duration_seconds: Wall time spent on the target
        snapshot_path: Where the snapshot was written locally
    """

    index: int
    target: TargetSpec
    state: TargetState = TargetState.PENDING
    history: List[TargetState] = field(default_factory=lambda: [TargetState.PENDING])
    artifact: Optional[BackupArtifact] = None
    error: Optional[Exception] = None
    retired_files: int = 0
    duration_seconds: float = 0.0
    snapshot_path: Optional[Path] = None

    @property
    def succeeded(self) -> bool:
        return self.state is TargetState.DONE

    @property
    def failed(self) -> bool:
        return self.state is TargetState.FAILED

    @property
    def error_kind(self) -> Optional[str]:
        """Class name of the failure cause, e.g. "PreflightError"."""
        return type(self.error).__name__ if self.error is not None else None

    def advance(self, new_state: TargetState) -> None:
        """
        Move to new_state.

        Raises:
            BackupError: If the transition is not allowed
        """
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise BackupError(
                f"Illegal state transition for target {self.index}: "
                f"{self.state.value} -> {new_state.value}"
            )
        self.state = new_state
        self.history.append(new_state)

    def fail(self, error: Exception) -> None:
        """Record error and move to FAILED."""
        self.error = error
        self.advance(TargetState.FAILED)


class BackupEngine:
    """
    Orchestrates backups across targets.

    Targets are processed one at a time in document order. Scratch
    directories used for cloud uploads are removed by cleanup(), which runs
    automatically when the engine is used as a context manager.

    Attributes:
        settings: Runtime settings
        preflight: Pre-flight checker
        snapshot_plugin: Produces snapshot files
        cancel_event: Optional event; when set, work stops at the next transition
        logger: Logger instance

    Example:
        >>> with BackupEngine(settings) as engine:
        ...     results = engine.backup_all_targets(loader.get_targets())
    """

    def __init__(
        self,
        settings: AppSettings,
        preflight: Optional[PreflightChecker] = None,
        snapshot_plugin: Optional[SnapshotPlugin] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        """
        Initialize BackupEngine.

        Args:
            settings: Runtime settings
            preflight: Pre-flight checker (default: built from settings)
            snapshot_plugin: Snapshot producer (default: etcdctl)
            cancel_event: Optional cancellation token
        """
        self.settings = settings
        self.preflight = preflight or PreflightChecker(settings)
        self.snapshot_plugin = snapshot_plugin or EtcdctlSnapshotPlugin(self._plugin_config())
        self.cancel_event = cancel_event
        self.logger = get_logger()
        self._scratch_dirs: List[Path] = []

        self.logger.debug("BackupEngine initialized")

    def __enter__(self) -> "BackupEngine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()

    def _plugin_config(self) -> Dict[str, Any]:
        return {
            "command_timeout": self.settings.command_timeout,
            "etcdctl_path": self.settings.etcdctl_path,
        }

    # ========================================================================
    # Main Orchestration Methods
    # ========================================================================

    def backup_all_targets(self, targets: Sequence[TargetSpec]) -> List[TargetResult]:
        """
        Back up every target, isolating failures per target.

        A failed target is logged and the next one is processed. After
        cancellation, remaining targets are recorded as failed without being
        started.

        Args:
            targets: Targets in document order

        Returns:
            One TargetResult per target, in order
        """
        results: List[TargetResult] = []
        total = len(targets)

        for index, target in enumerate(targets, start=1):
            if self._is_cancelled():
                skipped = TargetResult(index=index, target=target)
                skipped.fail(BackupCancelled(f"Target {index}: run cancelled before start"))
                results.append(skipped)
                continue

            self.logger.info(
                f"Processing backup configuration {index} of {total}: {target.describe()}"
            )
            results.append(self.backup_target(target, index))

        self._log_summary(results)
        return results

    def backup_target(self, target: TargetSpec, index: int = 1) -> TargetResult:
        """
        Drive one target through the state machine.

        Never raises for a failed step; the failure is recorded on the result.

        Args:
            target: Target to back up
            index: 1-based target index for messages and scratch naming

        Returns:
            TargetResult in state DONE or FAILED
        """
        result = TargetResult(index=index, target=target)
        start_time = time.monotonic()

        try:
            backend = self._get_backend_for_target(target)

            self._check_cancelled(index)
            self.preflight.check(target, backend, index)
            result.advance(TargetState.VALIDATED)

            self._check_cancelled(index)
            result.snapshot_path = self._take_snapshot(target, index)
            result.advance(TargetState.SNAPSHOT_TAKEN)

            self._check_cancelled(index)
            location = self._deliver(target, backend, result.snapshot_path, index)
            result.advance(TargetState.DELIVERED)

            self._check_cancelled(index)
            result.artifact = self._record_metadata(
                backend, result.snapshot_path, location, index
            )
            if isinstance(target.destination, LocalDestination):
                result.retired_files = self.apply_retention_policy(
                    target.destination.backup_folder
                )
            result.advance(TargetState.RETIRED)

            result.advance(TargetState.DONE)

        except BackupError as e:
            result.fail(e)
            self.logger.bind(**log_context(target=index, kind=target.destination.kind)).error(
                f"Target {index} failed ({type(e).__name__}): {e}"
            )

        except Exception as e:  # pylint: disable=broad-exception-caught
            # Unexpected errors must not take down the rest of the batch
            result.fail(e)
            self.logger.error(
                f"Target {index} failed with unexpected error:\n{traceback.format_exc()}"
            )

        result.duration_seconds = round(time.monotonic() - start_time, 2)

        if result.succeeded:
            self.logger.info(
                f"Target {index}: backup completed in "
                f"{human_readable_duration(result.duration_seconds)}"
            )
        return result

    # ========================================================================
    # Backend Management
    # ========================================================================

    def _get_backend_for_target(self, target: TargetSpec) -> StorageBackend:
        """
        Instantiate the storage backend for a target's destination variant.

        Raises:
            BackupError: If no backend is registered for the destination
        """
        backend = get_storage_backend(target.destination, self.settings)
        self.logger.debug(f"Using {backend.name} for {target.describe()}")
        return backend

    # ========================================================================
    # Backup Steps
    # ========================================================================

    def _take_snapshot(self, target: TargetSpec, index: int) -> Path:
        """
        Take a snapshot into a fresh, timestamped file.

        Local targets write straight into their backup folder; cloud targets
        write into a private scratch directory.

        Raises:
            SnapshotError: If the snapshot mechanism fails
        """
        if isinstance(target.destination, LocalDestination):
            snapshot_dir = Path(target.destination.backup_folder)
        else:
            snapshot_dir = self._create_scratch_dir(index)

        snapshot_path = snapshot_dir / self._generate_backup_filename()
        self.logger.info(f"Target {index}: taking snapshot to {snapshot_path}")

        if not self.snapshot_plugin.take_snapshot(target, snapshot_path):
            raise SnapshotError(
                f"Target {index}: snapshot of {target.etcd_endpoints} failed"
            )
        return snapshot_path

    def _deliver(
        self,
        target: TargetSpec,
        backend: StorageBackend,
        snapshot_path: Path,
        index: int,
    ) -> str:
        """
        Deliver the snapshot to its backend.

        Returns:
            Location of the delivered artifact

        Raises:
            DeliveryError: If the upload fails; the snapshot stays in scratch
                until the engine is cleaned up
        """
        if isinstance(target.destination, LocalDestination):
            # Already at its final location
            return str(snapshot_path)

        try:
            location = backend.put(snapshot_path)
        except DeliveryError:
            self.logger.error(
                f"Target {index}: upload failed, snapshot kept at {snapshot_path} "
                f"until the run finishes"
            )
            raise

        self.logger.info(f"Target {index}: delivered to {location}")
        return location

    def _record_metadata(
        self,
        backend: StorageBackend,
        snapshot_path: Path,
        location: str,
        index: int,
    ) -> BackupArtifact:
        """
        Build the artifact record from backend metadata.

        A MetadataError is logged as a warning; the artifact is still returned
        with unknown size and time.
        """
        info: Optional[FileInfo] = None
        try:
            info = backend.stat(location)
        except MetadataError as e:
            self.logger.warning(f"Target {index}: {e}")

        artifact = BackupArtifact(
            target_index=index,
            file_name=snapshot_path.name,
            size_bytes=info.size if info else None,
            modified_at=info.modified if info else None,
            location=location,
        )

        size = format_bytes(artifact.size_bytes) if artifact.size_bytes is not None else "unknown"
        modified = artifact.modified_at.isoformat() if artifact.modified_at else "unknown"
        self.logger.info(
            f"Target {index}: File: {artifact.location} | Size: {size} | Modified: {modified}"
        )
        return artifact

    # ========================================================================
    # Retention Policy
    # ========================================================================

    def apply_retention_policy(self, backup_folder: Path, now: Optional[datetime] = None) -> int:
        """
        Delete local backups older than ``retention_days``.

        Only files named like ``etcd-backup-YYYYMMDD-HHMMSS.db`` are considered.
        Cloud artifacts are never touched.

        Args:
            backup_folder: Folder to prune
            now: Reference time (default: current time)

        Returns:
            Number of backups deleted
        """
        cutoff = (now or utc_now()) - timedelta(days=self.settings.retention_days)
        cutoff_ts = cutoff.timestamp()
        deleted = 0

        for backup_file in self._get_backup_files(backup_folder):
            try:
                if backup_file.stat().st_mtime >= cutoff_ts:
                    continue
                backup_file.unlink()
                deleted += 1
                self.logger.debug(f"Deleted old backup {backup_file}")
            except OSError as e:
                self.logger.warning(f"Failed to delete old backup {backup_file}: {e}")

        self.logger.info(
            f"Deleted {deleted} local backup(s) older than "
            f"{self.settings.retention_days} days from {backup_folder}"
        )
        return deleted

    def _get_backup_files(self, backup_folder: Path) -> List[Path]:
        """
        Get backup files in a folder, sorted by age (oldest first).

        Returns:
            Paths matching the backup naming pattern
        """
        folder = Path(backup_folder)
        if not folder.is_dir():
            self.logger.warning(f"Backup directory does not exist: {folder}")
            return []

        try:
            candidates = [
                f for f in folder.iterdir()
                if f.is_file() and BACKUP_FILE_PATTERN.match(f.name)
            ]
        except OSError as e:
            self.logger.error(f"Error reading backup directory {folder}: {e}")
            return []

        dated = []
        for backup_file in candidates:
            try:
                dated.append((backup_file.stat().st_mtime, backup_file))
            except OSError as e:
                # Removed by a concurrent run since the listing
                self.logger.debug(f"Skipping {backup_file}: {e}")

        dated.sort(key=lambda item: item[0])
        return [backup_file for _, backup_file in dated]

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def _generate_backup_filename(self, now: Optional[datetime] = None) -> str:
        """
        Generate a backup filename with a UTC timestamp.

        Example:
            >>> engine._generate_backup_filename()
            'etcd-backup-20250124-120000.db'
        """
        return f"{BACKUP_PREFIX}-{get_timestamp(now=now)}.db"

    def _create_scratch_dir(self, index: int) -> Path:
        """
        Create a private scratch directory for one target.

        Named after the process id and target index so concurrent runs on the
        same host don't collide. Created with mode 0700.

        Raises:
            BackupError: If the directory can't be created
        """
        try:
            scratch = Path(
                tempfile.mkdtemp(
                    prefix=f"{BACKUP_PREFIX}-{os.getpid()}-{index}-",
                    dir=str(self.settings.scratch_root) if self.settings.scratch_root else None,
                )
            )
        except OSError as e:
            raise BackupError(
                f"Target {index}: failed to create temporary directory: {e}"
            ) from e

        self._scratch_dirs.append(scratch)
        self.logger.debug(f"Target {index}: created scratch directory {scratch}")
        return scratch

    def cleanup(self) -> None:
        """Remove every scratch directory created by this engine."""
        while self._scratch_dirs:
            scratch = self._scratch_dirs.pop()
            try:
                safe_remove(scratch)
                self.logger.debug(f"Removed scratch directory {scratch}")
            except OSError as e:
                self.logger.warning(f"Failed to remove scratch directory {scratch}: {e}")

    def _is_cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _check_cancelled(self, index: int) -> None:
        if self._is_cancelled():
            raise BackupCancelled(f"Target {index}: run cancelled")

    def _log_summary(self, results: Sequence[TargetResult]) -> None:
        done = [r for r in results if r.succeeded]
        failed = [r for r in results if r.failed]

        self.logger.info(
            f"All backup configurations processed: {len(done)} succeeded, {len(failed)} failed"
        )
        for result in failed:
            self.logger.warning(
                f"  - target {result.index} ({result.target.describe()}): "
                f"{result.error_kind}: {result.error}"
            )
