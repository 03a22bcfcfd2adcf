"""
Logging setup for etcd-backup.

Thin wrapper around loguru that configures console and rotating file sinks
and allows the level to be changed at runtime.
"""

import sys
from pathlib import Path
from typing import Any, Dict, Optional, Union

from loguru import logger

VALID_LOG_LEVELS = ["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"]

DEFAULT_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss!UTC} | {level: <8} | {name}:{function} - {message}"
)

# Sink parameters of the last setup_logger() call, reused by set_log_level()
_sink_config: Dict[str, Any] = {}


def _normalize_level(level: str) -> str:
    normalized = level.upper()
    if normalized not in VALID_LOG_LEVELS:
        raise ValueError(
            f"Invalid log level '{level}'. Must be one of {VALID_LOG_LEVELS}"
        )
    return normalized


def _add_sinks() -> None:
    level = _sink_config["log_level"]
    format_string = _sink_config["format_string"]

    if _sink_config["console"]:
        logger.add(sys.stderr, level=level, format=format_string)

    log_file = _sink_config["log_file"]
    if log_file is not None:
        logger.add(
            str(log_file),
            level=level,
            format=format_string,
            rotation=_sink_config["rotation"],
            retention=_sink_config["retention"],
            compression=_sink_config["compression"],
            encoding="utf-8",
            enqueue=False,
        )


def setup_logger(
    log_level: str = "INFO",
    log_file: Optional[Union[str, Path]] = None,
    console: bool = True,
    format_string: Optional[str] = None,
    rotation: Union[str, int] = "10 MB",
    retention: Optional[Union[str, int]] = 5,
    compression: Optional[str] = "gz",
) -> None:
    """
    Configure the global loguru logger.

    Removes any previously added sinks, so it is safe to call more than once.

    Args:
        log_level: Minimum level to emit (case-insensitive)
        log_file: Optional log file path; parent directory is created (0700)
        console: Also log to stderr
        format_string: Custom loguru format string
        rotation: Rotation trigger for the file sink (size string or bytes)
        retention: How many rotated files (or how long) to keep
        compression: Compression for rotated files, or None

    Raises:
        ValueError: If log_level is not a valid level
    """
    level = _normalize_level(log_level)

    log_path: Optional[Path] = None
    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

    _sink_config.clear()
    _sink_config.update(
        {
            "log_level": level,
            "log_file": log_path,
            "console": console,
            "format_string": format_string or DEFAULT_FORMAT,
            "rotation": rotation,
            "retention": retention,
            "compression": compression,
        }
    )

    logger.remove()
    _add_sinks()

    if log_path is not None and log_path.exists():
        log_path.chmod(0o600)


def get_logger():
    """Return the shared loguru logger."""
    return logger


def log_context(**kwargs: Any) -> Dict[str, Any]:
    """
    Build a context dictionary for ``logger.bind()``.

    Example:
        >>> get_logger().bind(**log_context(target=2, provider="s3")).info("...")
    """
    return dict(kwargs)


def set_log_level(level: str) -> None:
    """
    Change the level of all configured sinks.

    Raises:
        ValueError: If level is not a valid level
    """
    normalized = _normalize_level(level)

    if not _sink_config:
        setup_logger(log_level=normalized)
        return

    _sink_config["log_level"] = normalized
    logger.remove()
    _add_sinks()
