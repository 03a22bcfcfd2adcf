"""
etcdctl snapshot plugin.

Takes a snapshot with ``etcdctl snapshot save`` using the v3 API and the
target's TLS client material.
"""

import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.config_loader import TargetSpec
from plugins.base import CommandMixin, SnapshotPlugin


class EtcdctlSnapshotPlugin(CommandMixin, SnapshotPlugin):
    """
    Snapshot plugin wrapping ``etcdctl``.

    Config keys:
        etcdctl_path: Executable to run (default: "etcdctl")
        command_timeout: Seconds before the command is killed (default: no limit)
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config or {})

    @property
    def name(self) -> str:
        return "EtcdctlSnapshotPlugin"

    @property
    def tool(self) -> str:
        return self.config.get("etcdctl_path", "etcdctl")

    def build_command(self, target: TargetSpec, destination: Path) -> List[str]:
        """Return the etcdctl command line for a snapshot of target."""
        return [
            self.tool,
            f"--endpoints={target.etcd_endpoints}",
            f"--cacert={target.etcd_cacert}",
            f"--cert={target.etcd_cert}",
            f"--key={target.etcd_key}",
            "snapshot",
            "save",
            str(destination),
        ]

    def take_snapshot(self, target: TargetSpec, destination: Path) -> bool:
        self.logger.info(f"Starting etcd snapshot from {target.etcd_endpoints}")

        try:
            result = self._run_command(
                self.build_command(target, destination), env={"ETCDCTL_API": "3"}
            )
        except subprocess.TimeoutExpired:
            self.logger.error(
                f"etcdctl snapshot timed out after {self.config.get('command_timeout')}s"
            )
            return False
        except OSError as e:
            self.logger.error(f"Failed to run {self.tool}: {e}")
            return False

        if result.returncode != 0:
            self.logger.error(
                f"etcdctl snapshot failed (exit {result.returncode}): {result.stderr.strip()}"
            )
            return False

        if not destination.is_file() or destination.stat().st_size == 0:
            self.logger.error(f"etcdctl reported success but {destination} is missing or empty")
            return False

        self.logger.debug(result.stdout.strip())
        return True
