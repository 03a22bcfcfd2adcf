"""
Runtime settings for etcd-backup.

Settings control how the tool runs (logging, retention, external commands),
not what it backs up. They are read from an optional YAML file; every field
has a default so the tool works without one.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from core.config_loader import ConfigError
from lib.logger import VALID_LOG_LEVELS

SETTINGS_ENV_VAR = "ETCD_BACKUP_SETTINGS"
DEFAULT_SETTINGS_PATH = Path("/etc/etcd-backup/settings.yaml")

ENV_OVERRIDES = {
    "ETCD_BACKUP_LOG_FILE": "log_file",
    "ETCD_BACKUP_LOG_LEVEL": "log_level",
}


class AppSettings(BaseModel):
    """Runtime settings with defaults matching a stock kubeadm control plane."""

    model_config = ConfigDict(extra="forbid")

    log_file: Optional[Path] = Field(
        Path("/var/log/etcd-backup.log"), description="Log file, None to disable"
    )
    log_level: str = Field("INFO", description="Minimum log level")
    log_rotation: Union[str, int] = Field("10 MB", description="Log rotation trigger")
    console: bool = Field(True, description="Also log to stderr")
    retention_days: int = Field(7, description="Age after which local backups are pruned")
    etcdctl_path: str = Field("etcdctl", description="etcdctl executable")
    check_cluster: bool = Field(True, description="Run the cluster reachability check")
    cluster_check_command: List[str] = Field(
        default_factory=lambda: ["kubectl", "get", "nodes"],
        description="Command that must succeed for the cluster to count as reachable",
    )
    command_timeout: Optional[float] = Field(
        None, description="Timeout in seconds for each external command"
    )
    scratch_root: Optional[Path] = Field(
        None, description="Parent of per-target scratch directories (system temp)"
    )
    min_free_bytes: int = Field(
        1024 * 1024, description="Free space required in a local backup folder"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level name."""
        if v.upper() not in VALID_LOG_LEVELS:
            raise ValueError(f"Log level must be one of {VALID_LOG_LEVELS}")
        return v.upper()

    @field_validator("retention_days")
    @classmethod
    def validate_retention(cls, v: int) -> int:
        """Validate retention days is positive."""
        if v < 1:
            raise ValueError("Retention days must be at least 1")
        return v

    @field_validator("command_timeout")
    @classmethod
    def validate_timeout(cls, v: Optional[float]) -> Optional[float]:
        """Validate timeout is positive when set."""
        if v is not None and v <= 0:
            raise ValueError("Command timeout must be positive")
        return v

    @field_validator("cluster_check_command")
    @classmethod
    def validate_cluster_command(cls, v: List[str]) -> List[str]:
        """Require a non-empty command."""
        if not v:
            raise ValueError("Cluster check command must not be empty")
        return v

    @field_validator("min_free_bytes")
    @classmethod
    def validate_min_free(cls, v: int) -> int:
        """Validate free space threshold is not negative."""
        if v < 0:
            raise ValueError("Minimum free bytes cannot be negative")
        return v

    @property
    def required_tools(self) -> List[str]:
        """Executables that must be on PATH for any run."""
        tools = [self.etcdctl_path]
        if self.check_cluster:
            tools.append(self.cluster_check_command[0])
        return tools


def _load_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            content = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse settings file {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read settings file {path}: {e}") from e

    if content is None:
        return {}
    if not isinstance(content, dict):
        raise ConfigError(
            f"Settings must be a YAML dictionary, got {type(content).__name__}"
        )
    return content


def _resolve_path(path: Optional[Path]) -> Optional[Path]:
    if path is not None:
        return path
    env_path = os.environ.get(SETTINGS_ENV_VAR)
    if env_path:
        return Path(env_path)
    if DEFAULT_SETTINGS_PATH.exists():
        return DEFAULT_SETTINGS_PATH
    return None


def load_settings(path: Optional[Path] = None) -> AppSettings:
    """
    Load runtime settings.

    Resolution order: explicit path, ``$ETCD_BACKUP_SETTINGS``,
    ``/etc/etcd-backup/settings.yaml`` if present, then built-in defaults.
    ``ETCD_BACKUP_LOG_FILE`` and ``ETCD_BACKUP_LOG_LEVEL`` override the file.

    Raises:
        ConfigError: If the file is missing, unreadable or invalid
    """
    raw: Dict[str, Any] = {}
    settings_path = _resolve_path(path)
    if settings_path is not None:
        if not settings_path.exists():
            raise ConfigError(f"Settings file not found: {settings_path}")
        raw = _load_yaml(settings_path)

    for env_var, field_name in ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value is None:
            continue
        if field_name == "log_file" and not value:
            # An empty ETCD_BACKUP_LOG_FILE disables file logging
            raw[field_name] = None
        else:
            raw[field_name] = value

    try:
        return AppSettings.model_validate(raw)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(loc) for loc in error['loc'])}: {error['msg']}"
            for error in e.errors()
        )
        raise ConfigError(f"Invalid settings: {details}") from e
