"""
Utility functions for etcd-backup.

This module provides common helper functions used throughout the project
for path operations, date/time handling and formatting.
"""

import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

# Path Operations


def validate_path(
    path: Union[str, Path],
    must_exist: bool = False,
    must_be_absolute: bool = False,
    must_be_readable: bool = False,
) -> Path:
    """
    Validate and sanitize a filesystem path.

    Args:
        path: Path to validate (string or Path object)
        must_exist: If True, raise error if path doesn't exist
        must_be_absolute: If True, raise error if path is not absolute
        must_be_readable: If True, raise error if path is not a readable file

    Returns:
        Validated Path object

    Raises:
        ValueError: If path is invalid or doesn't meet requirements
        FileNotFoundError: If must_exist=True and path doesn't exist
        PermissionError: If must_be_readable=True and the file can't be read
    """
    if not path:
        raise ValueError("Path cannot be empty")

    path_obj = Path(path)

    if must_be_absolute and not path_obj.is_absolute():
        raise ValueError(f"Path must be absolute: {path}")

    if (must_exist or must_be_readable) and not path_obj.exists():
        raise FileNotFoundError(f"Path does not exist: {path}")

    if must_be_readable:
        if not path_obj.is_file():
            raise ValueError(f"Path is not a regular file: {path}")
        if not os.access(path_obj, os.R_OK):
            raise PermissionError(f"Path is not readable: {path}")

    return path_obj


def ensure_directory(path: Union[str, Path], mode: int = 0o700) -> Path:
    """
    Create directory if it doesn't exist.

    Args:
        path: Directory path to create
        mode: Directory permissions for newly created directories (default: 0o700)

    Returns:
        Path object of the directory

    Raises:
        ValueError: If path is empty
        OSError: If directory creation fails
    """
    path_obj = validate_path(path)
    existed = path_obj.is_dir()
    path_obj.mkdir(parents=True, exist_ok=True, mode=mode)
    if not existed:
        # mkdir honours the umask, enforce the requested mode explicitly
        path_obj.chmod(mode)
    return path_obj


def is_writable_directory(path: Union[str, Path]) -> bool:
    """Return True if path is an existing directory the current user can write to."""
    path_obj = Path(path)
    return path_obj.is_dir() and os.access(path_obj, os.W_OK | os.X_OK)


def free_space_bytes(path: Union[str, Path]) -> int:
    """Return free bytes on the filesystem holding path."""
    return shutil.disk_usage(str(path)).free


def safe_remove(path: Union[str, Path], missing_ok: bool = True) -> bool:
    """
    Safely remove a file or directory.

    Args:
        path: Path to remove
        missing_ok: If True, don't raise error if path doesn't exist

    Returns:
        True if path was removed, False if it didn't exist

    Raises:
        FileNotFoundError: If missing_ok=False and path doesn't exist
        OSError: If removal fails for other reasons
    """
    path_obj = Path(path)

    if not path_obj.exists():
        if missing_ok:
            return False
        raise FileNotFoundError(f"Path does not exist: {path}")

    if path_obj.is_file():
        path_obj.unlink()
    elif path_obj.is_dir():
        shutil.rmtree(path_obj)

    return True


# Date/Time Utilities


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def get_timestamp(fmt: str = "%Y%m%d-%H%M%S", now: Optional[datetime] = None) -> str:
    """
    Get a UTC timestamp string.

    Args:
        fmt: strftime format (default is sortable and filesystem-safe)
        now: Optional moment to format instead of the current time

    Returns:
        Formatted timestamp (e.g., "20240115-103045")
    """
    moment = now or utc_now()
    return moment.astimezone(timezone.utc).strftime(fmt)


def human_readable_duration(seconds: Union[int, float]) -> str:
    """
    Convert seconds to human-readable duration.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "2h 30m 15s", "45s", "1d 3h")

    Example:
        >>> human_readable_duration(3665)
        '1h 1m 5s'
        >>> human_readable_duration(45)
        '45s'
    """
    if seconds < 0:
        raise ValueError("Duration cannot be negative")

    seconds = int(seconds)

    days, remainder = divmod(seconds, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, secs = divmod(remainder, 60)

    parts = []
    if days > 0:
        parts.append(f"{days}d")
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)


# Format Helpers


def format_bytes(bytes_value: Union[int, float], precision: int = 2) -> str:
    """
    Convert bytes to human-readable size.

    Args:
        bytes_value: Size in bytes
        precision: Number of decimal places (default: 2)

    Returns:
        Formatted size string (e.g., "1.50 GB", "512.00 MB")

    Example:
        >>> format_bytes(1536)
        '1.50 KB'
    """
    if bytes_value < 0:
        raise ValueError("Bytes value cannot be negative")

    units = ["B", "KB", "MB", "GB", "TB", "PB"]
    size = float(bytes_value)
    unit_index = 0

    while size >= 1024.0 and unit_index < len(units) - 1:
        size /= 1024.0
        unit_index += 1

    return f"{size:.{precision}f} {units[unit_index]}"


def redact(value: Optional[str]) -> str:
    """
    Return a placeholder acknowledging that a secret value is set.

    Example:
        >>> redact("my-profile")
        '<set (hidden)>'
        >>> redact("")
        '<not set>'
    """
    return "<set (hidden)>" if value else "<not set>"
