"""
Plugin base classes for etcd-backup.

Defines the contracts for the two kinds of external collaborators:

- StorageBackend: delivers a snapshot file somewhere and reports on it
- SnapshotPlugin: produces a snapshot file

Concrete plugins that drive command line tools share the CommandMixin helper.
"""

import os
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from core.config_loader import TargetSpec
from lib.logger import get_logger


@dataclass(frozen=True)
class FileInfo:
    """Size and modification time of a stored artifact."""

    location: str
    size: Optional[int]
    modified: Optional[datetime]


class PluginBase(ABC):
    """
    Base class for all plugins.

    Attributes:
        config: Plugin-specific settings
        logger: Logger instance
    """

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.logger = get_logger()

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable plugin name."""


class CommandMixin:
    """
    Helpers for plugins that shell out to external tools.

    Expects ``self.config`` to optionally hold ``command_timeout`` (seconds).
    """

    config: Dict[str, Any]

    def _command_env(self, extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        env = dict(os.environ)
        if extra:
            env.update(extra)
        return env

    def _run_command(
        self,
        args: List[str],
        env: Optional[Mapping[str, str]] = None,
    ) -> subprocess.CompletedProcess:
        """
        Run a command and capture its output.

        Never raises for a non-zero exit; callers inspect ``returncode``.

        Raises:
            subprocess.TimeoutExpired: If ``command_timeout`` elapses
            OSError: If the executable can't be started
        """
        return subprocess.run(
            args,
            capture_output=True,
            text=True,
            check=False,
            env=self._command_env(env),
            timeout=self.config.get("command_timeout"),
        )


class StorageBackend(PluginBase):
    """
    Uniform storage capability implemented once per backend kind.

    Subclasses set ``tool`` to the command line client they depend on, or
    leave it None when no external tool is needed.
    """

    tool: Optional[str] = None

    def tool_present(self) -> bool:
        """Return True if the backend's client tool is on PATH."""
        return self.tool is None or shutil.which(self.tool) is not None

    @property
    @abstractmethod
    def destination(self) -> str:
        """URI (or path) of the folder/prefix/container receiving snapshots."""

    @abstractmethod
    def identity_valid(self) -> bool:
        """Return True if the configured credentials resolve."""

    @abstractmethod
    def exists(self, path: str) -> bool:
        """Return True if path exists at the backend. Never creates anything."""

    @abstractmethod
    def put(self, local_file: Path) -> str:
        """
        Deliver a local file.

        Returns:
            Location of the delivered artifact

        Raises:
            DeliveryError: On transport or authentication failure
        """

    @abstractmethod
    def stat(self, location: str) -> FileInfo:
        """
        Report size and modification time of a delivered artifact.

        Raises:
            MetadataError: If metadata can't be retrieved
        """

    def destination_exists(self) -> bool:
        """Return True if the configured destination exists."""
        return self.exists(self.destination)


class SnapshotPlugin(PluginBase):
    """Produces a point-in-time snapshot file."""

    tool: Optional[str] = None

    @abstractmethod
    def take_snapshot(self, target: TargetSpec, destination: Path) -> bool:
        """
        Write a snapshot of the cluster described by target to destination.

        Returns:
            True if the snapshot was written
        """
