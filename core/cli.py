"""
Command line entry point for etcd-backup.

Usage:
    etcd-backup                 # interactive, prompts for one target
    etcd-backup targets.conf    # batch, backs up every block in the file

Exit codes:
    0  interactive backup succeeded, or the batch ran to completion
       (individual targets may have failed, see the log)
    1  configuration, settings or run-level pre-flight error, a failed
       interactive backup, or a cancelled run
    2  usage error
"""

import argparse
import signal
import sys
import threading
from pathlib import Path
from typing import Iterable, List, Optional

from core.backup_engine import BackupEngine
from core.config_loader import ConfigError, ConfigLoader
from core.errors import PreflightError
from core.preflight import PreflightChecker
from core.prompts import prompt_for_target
from core.schema import InvalidField
from core.settings import AppSettings, load_settings
from lib.logger import VALID_LOG_LEVELS, get_logger, set_log_level, setup_logger

logger = get_logger()

USAGE = "etcd-backup [config_file]"

EXIT_OK = 0
EXIT_FAILURE = 1


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="etcd-backup",
        usage=USAGE,
        description="Take etcd snapshots and deliver them to local or cloud storage.",
    )
    parser.add_argument(
        "config",
        nargs="?",
        type=Path,
        help="Backup configuration file. Omit to be prompted for a single target.",
    )
    parser.add_argument(
        "--settings",
        type=Path,
        help="Runtime settings YAML file (default: $ETCD_BACKUP_SETTINGS or "
        "/etc/etcd-backup/settings.yaml).",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=VALID_LOG_LEVELS,
        help="Override the log level from the settings file.",
    )
    return parser.parse_args(None if argv is None else list(argv))


def _stdin_is_tty() -> bool:
    return sys.stdin is not None and sys.stdin.isatty()


def _configure(args: argparse.Namespace) -> Optional[AppSettings]:
    try:
        settings = load_settings(args.settings)
    except ConfigError as e:
        logger.error(f"{e}")
        return None

    try:
        setup_logger(
            log_level=settings.log_level,
            log_file=settings.log_file,
            console=settings.console,
            rotation=settings.log_rotation,
        )
    except OSError as e:
        logger.error(f"Cannot open log file {settings.log_file}: {e}")
        return None

    if args.log_level:
        set_log_level(args.log_level)
        settings = settings.model_copy(update={"log_level": args.log_level})
    return settings


def _install_cancel_handlers(cancel_event: threading.Event) -> List[tuple]:
    """Route SIGTERM to the cancel event. Returns the handlers to restore."""

    def _handler(signum, frame):
        logger.warning(f"Received signal {signum}, cancelling after the current step")
        cancel_event.set()

    previous = []
    if threading.current_thread() is threading.main_thread():
        previous.append((signal.SIGTERM, signal.signal(signal.SIGTERM, _handler)))
    return previous


def run_interactive(settings: AppSettings, cancel_event: threading.Event) -> int:
    """Prompt for one target and back it up. Any failure is fatal."""
    if not _stdin_is_tty():
        logger.error("Interactive mode requires a terminal")
        logger.error(f"Usage: {USAGE}")
        return EXIT_FAILURE

    logger.info("Running in interactive mode")
    checker = PreflightChecker(settings)
    try:
        checker.check_run()
        target = prompt_for_target()
    except (ConfigError, InvalidField, PreflightError) as e:
        logger.error(f"{e}")
        return EXIT_FAILURE
    except (EOFError, KeyboardInterrupt):
        logger.error("Aborted by user")
        return EXIT_FAILURE

    try:
        with BackupEngine(settings, preflight=checker, cancel_event=cancel_event) as engine:
            result = engine.backup_target(target, index=1)
    except KeyboardInterrupt:
        logger.error("Aborted by user")
        return EXIT_FAILURE

    if not result.succeeded:
        logger.error(f"Backup failed: {result.error}")
        return EXIT_FAILURE

    logger.info("Backup completed")
    return EXIT_OK


def run_batch(config_path: Path, settings: AppSettings, cancel_event: threading.Event) -> int:
    """Back up every block of a configuration file, isolating failures."""
    try:
        loader = ConfigLoader(config_path)
    except FileNotFoundError:
        logger.error(f"Configuration file '{config_path}' does not exist")
        logger.error(f"Usage: {USAGE}")
        return EXIT_FAILURE
    except (ConfigError, InvalidField) as e:
        logger.error(f"{e}")
        return EXIT_FAILURE

    checker = PreflightChecker(settings)
    try:
        checker.check_run()
    except PreflightError as e:
        logger.error(f"{e}")
        return EXIT_FAILURE

    try:
        with BackupEngine(settings, preflight=checker, cancel_event=cancel_event) as engine:
            engine.backup_all_targets(loader.get_targets())
    except KeyboardInterrupt:
        logger.error("Aborted by user")
        return EXIT_FAILURE

    if cancel_event.is_set():
        logger.warning("Run was cancelled before all targets were processed")
        return EXIT_FAILURE
    return EXIT_OK


def main(argv: Optional[Iterable[str]] = None) -> int:
    """
    Run etcd-backup.

    Args:
        argv: Arguments without the program name (default: sys.argv[1:])

    Returns:
        Process exit code
    """
    try:
        args = parse_args(argv)
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else 2

    settings = _configure(args)
    if settings is None:
        return EXIT_FAILURE

    logger.info("etcd-backup started")
    cancel_event = threading.Event()
    previous_handlers = _install_cancel_handlers(cancel_event)
    try:
        if args.config is None:
            return run_interactive(settings, cancel_event)
        return run_batch(args.config, settings, cancel_event)
    finally:
        for signum, handler in previous_handlers:
            if handler is not None:
                signal.signal(signum, handler)


if __name__ == "__main__":
    sys.exit(main())
