"""
Pre-flight checks for etcd-backup.

Everything that can be verified before a snapshot is taken is verified here,
so a run fails fast on missing tools, unreadable certificates, bad
credentials or missing destinations. Checks never modify a TargetSpec.
"""

import shutil
import subprocess
from pathlib import Path
from typing import List

from core.config_loader import GCSDestination, LocalDestination, TargetSpec
from core.errors import PreflightError
from core.settings import AppSettings
from lib.logger import get_logger
from lib.utils import (
    ensure_directory,
    format_bytes,
    free_space_bytes,
    is_writable_directory,
    validate_path,
)
from plugins.base import StorageBackend


class PreflightChecker:
    """
    Runs run-level and per-target pre-flight checks.

    Example:
        >>> checker = PreflightChecker(settings)
        >>> checker.check_run()
        >>> checker.check(target, backend, index=1)
    """

    def __init__(self, settings: AppSettings):
        self.settings = settings
        self.logger = get_logger()

    # ========================================================================
    # Run-level checks (shared by all targets)
    # ========================================================================

    def missing_tools(self) -> List[str]:
        """Return required executables that are not on PATH."""
        return [tool for tool in self.settings.required_tools if shutil.which(tool) is None]

    def cluster_reachable(self) -> bool:
        """Return True if the cluster check command succeeds."""
        command = self.settings.cluster_check_command
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.settings.command_timeout,
            )
        except (subprocess.SubprocessError, OSError) as e:
            self.logger.error(f"Cluster check '{' '.join(command)}' failed: {e}")
            return False

        if result.returncode != 0:
            self.logger.error(
                f"Cluster check '{' '.join(command)}' failed: {result.stderr.strip()}"
            )
            return False
        return True

    def check_run(self) -> None:
        """
        Verify required tools and cluster reachability once per run.

        Raises:
            PreflightError: If a tool is missing or the cluster is unreachable
        """
        missing = self.missing_tools()
        if missing:
            raise PreflightError(
                f"Required tool(s) not installed: {', '.join(missing)}",
                step="dependencies",
            )

        if self.settings.check_cluster:
            if not self.cluster_reachable():
                raise PreflightError(
                    "Cannot connect to the Kubernetes cluster", step="cluster"
                )
            self.logger.info("Cluster is reachable")

    # ========================================================================
    # Per-target checks
    # ========================================================================

    def check(self, target: TargetSpec, backend: StorageBackend, index: int = 1) -> None:
        """
        Run all checks for one target.

        Args:
            target: Target to check
            backend: Storage backend the target will deliver to
            index: 1-based target index for messages

        Raises:
            PreflightError: On the first failed check
        """
        self._check_tls_material(target, index)

        if isinstance(target.destination, LocalDestination):
            self._prepare_local_folder(target.destination.backup_folder, index)
        else:
            provider = target.cloud_provider.value
            self._check_cloud_tool(backend, provider, index)
            self._check_credentials(target, backend, provider, index)
            self._check_destination(backend, provider, index)

        self.logger.info(f"Target {index}: pre-flight checks passed")

    def _check_tls_material(self, target: TargetSpec, index: int) -> None:
        # Paths are not echoed, they are treated like credentials
        for description, path in target.tls_files.items():
            try:
                validate_path(path, must_be_readable=True)
            except FileNotFoundError as e:
                raise PreflightError(
                    f"Target {index}: {description} not found", step="tls"
                ) from e
            except PermissionError as e:
                raise PreflightError(
                    f"Target {index}: {description} is not readable", step="tls"
                ) from e
            except (ValueError, OSError) as e:
                raise PreflightError(
                    f"Target {index}: {description} is not a regular file", step="tls"
                ) from e
        self.logger.debug(f"Target {index}: TLS material is readable")

    def _check_cloud_tool(self, backend: StorageBackend, provider: str, index: int) -> None:
        if not backend.tool_present():
            raise PreflightError(
                f"Target {index}: '{backend.tool}' is required for {provider} but not installed",
                step="tool",
                provider=provider,
            )
        self.logger.debug(f"Target {index}: '{backend.tool}' is installed for {provider}")

    def _check_credentials(
        self, target: TargetSpec, backend: StorageBackend, provider: str, index: int
    ) -> None:
        if isinstance(target.destination, GCSDestination):
            try:
                validate_path(target.destination.credentials_path, must_be_readable=True)
            except (ValueError, OSError) as e:
                raise PreflightError(
                    f"Target {index}: GCS credentials file is missing or unreadable",
                    step="credentials",
                    provider=provider,
                ) from e

        if not backend.identity_valid():
            raise PreflightError(
                f"Target {index}: invalid {provider} credentials",
                step="credentials",
                provider=provider,
            )
        self.logger.info(f"Target {index}: {provider} credentials validated")

    def _check_destination(self, backend: StorageBackend, provider: str, index: int) -> None:
        if not backend.destination_exists():
            raise PreflightError(
                f"Target {index}: {provider} destination {backend.destination} does not exist",
                step="destination",
                provider=provider,
            )
        self.logger.info(f"Target {index}: {provider} destination {backend.destination} exists")

    def _prepare_local_folder(self, folder: Path, index: int) -> None:
        try:
            if not folder.exists():
                self.logger.info(f"Target {index}: creating backup folder {folder}")
            ensure_directory(folder, mode=0o700)
        except (ValueError, OSError) as e:
            raise PreflightError(
                f"Target {index}: failed to create backup folder {folder}: {e}",
                step="backup_folder",
            ) from e

        if not is_writable_directory(folder):
            raise PreflightError(
                f"Target {index}: backup folder {folder} is not writable",
                step="backup_folder",
            )

        free = free_space_bytes(folder)
        if free < self.settings.min_free_bytes:
            raise PreflightError(
                f"Target {index}: insufficient disk space in {folder}: "
                f"{format_bytes(free)} available, {format_bytes(self.settings.min_free_bytes)} required",
                step="disk_space",
            )
