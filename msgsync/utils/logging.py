"""
Logging setup for the msgsync logger hierarchy.

Modules log through logging.getLogger(__name__); this module only decides
where the "msgsync" records go:

- stderr, at the configured level
- one file per day under the log directory, always at DEBUG, with the
  thread name so concurrent account and fetch workers can be told apart

Environment overrides (for one-off debugging without editing config.yaml):
    MSGSYNC_DEBUG=1          force DEBUG
    MSGSYNC_LOG_LEVEL=ERROR  override the configured level
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import date
from pathlib import Path
from typing import IO, TYPE_CHECKING, Optional

from msgsync.utils.paths import resolve_log_dir

if TYPE_CHECKING:
    from msgsync.config.sync_config import SyncConfig

ROOT_LOGGER_NAME = "msgsync"

CONSOLE_FORMAT = "%(levelname)s: %(message)s"
FILE_FORMAT = "%(asctime)s [%(threadName)s] %(name)s %(levelname)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

ENV_LOG_LEVEL = "MSGSYNC_LOG_LEVEL"
ENV_DEBUG = "MSGSYNC_DEBUG"

LOG_FILE_PREFIX = "msgsync_"
DEFAULT_KEEP_LOG_FILES = 10

LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def parse_log_level(value: Optional[str], default: int = logging.INFO) -> int:
    """Map a level name (any case) to its constant; unknown names give default."""
    if not value:
        return default
    return LOG_LEVELS.get(value.strip().upper(), default)


def effective_log_level(configured: Optional[str] = None, verbose: bool = False) -> int:
    """
    Pick the console level.

    Precedence: MSGSYNC_DEBUG, verbose, MSGSYNC_LOG_LEVEL, the configured
    level, INFO.
    """
    if os.environ.get(ENV_DEBUG, "").lower() in ("1", "true", "yes") or verbose:
        return logging.DEBUG
    configured_level = parse_log_level(configured)
    return parse_log_level(os.environ.get(ENV_LOG_LEVEL), default=configured_level)


def daily_log_file(log_dir: Path, day: Optional[date] = None) -> Path:
    day = day or date.today()
    return log_dir / f"{LOG_FILE_PREFIX}{day.strftime('%Y%m%d')}.log"


def cleanup_old_logs(log_dir: Path, keep_count: int = DEFAULT_KEEP_LOG_FILES) -> int:
    """
    Delete all but the keep_count most recent daily log files.

    Files not named like a daily log are left alone. keep_count 0 disables
    cleanup.

    Returns:
        Number of files deleted
    """
    if keep_count <= 0 or not log_dir.is_dir():
        return 0

    logs = sorted(
        log_dir.glob(f"{LOG_FILE_PREFIX}*.log"),
        key=lambda p: p.stat().st_mtime,
        reverse=True,
    )
    deleted = 0
    for old_log in logs[keep_count:]:
        try:
            old_log.unlink()
            deleted += 1
        except OSError as e:
            logging.getLogger(__name__).debug(f"Could not delete old log {old_log}: {e}")
    return deleted


def setup_logging(
    level: int = logging.INFO,
    log_dir: Optional[Path] = None,
    keep_log_files: int = DEFAULT_KEEP_LOG_FILES,
    stream: Optional[IO[str]] = None,
) -> logging.Logger:
    """
    (Re)configure the msgsync logger.

    Handlers installed by a previous call are replaced, so this is safe to
    call once per run. A log directory that cannot be created only costs
    the file handler.

    Args:
        level: Console level
        log_dir: Directory for daily log files, None for console only
        keep_log_files: Daily files to keep when pruning log_dir
        stream: Console stream, stderr by default

    Returns:
        The "msgsync" logger
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = False

    console = logging.StreamHandler(stream or sys.stderr)
    console.setLevel(level)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    logger.addHandler(console)
    logger.setLevel(level)

    if log_dir is None:
        return logger

    log_file = daily_log_file(log_dir)
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
    except OSError as e:
        logger.warning(f"File logging disabled, cannot open {log_file}: {e}")
        return logger

    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT, DATE_FORMAT))
    logger.addHandler(file_handler)
    logger.setLevel(logging.DEBUG)

    deleted = cleanup_old_logs(log_dir, keep_log_files)
    logger.debug(f"Logging to {log_file}, pruned {deleted} old log files")
    return logger


def configure_logging(config: SyncConfig, config_dir: Path) -> logging.Logger:
    """Set up logging from the logging keys of a SyncConfig."""
    log_dir = resolve_log_dir(config.log_dir, config_dir) if config.file_logging else None
    return setup_logging(
        level=effective_log_level(config.log_level, config.verbose),
        log_dir=log_dir,
        keep_log_files=config.keep_log_files,
    )
