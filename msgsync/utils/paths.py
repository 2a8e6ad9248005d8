"""
Filesystem locations used by msgsync.

The config directory holds config.yaml and is the anchor for every
relative path in it (database, blob store, logs).
"""

from __future__ import annotations

import os
from pathlib import Path

DEFAULT_CONFIG_DIR = Path.home() / ".msgsync"
CONFIG_DIR_ENV_VAR = "MSGSYNC_CONFIG_DIR"

LOG_SUBDIR = "logs"
MEMORY_DATABASE = ":memory:"


def resolve_config_dir(config_dir: Path | str | None = None) -> Path:
    """
    Resolve the msgsync config directory.

    An explicit argument wins, then $MSGSYNC_CONFIG_DIR, then ~/.msgsync.
    The result is always absolute.
    """
    if config_dir is not None:
        return Path(config_dir).expanduser().resolve()

    from_env = os.environ.get(CONFIG_DIR_ENV_VAR)
    if from_env:
        return Path(from_env).expanduser().resolve()

    return DEFAULT_CONFIG_DIR.expanduser().resolve()


def resolve_data_path(value: Path | str, config_dir: Path) -> Path:
    """
    Resolve a path taken from config.yaml.

    ~ is expanded; relative paths are taken relative to config_dir.
    """
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = config_dir / path
    return path.resolve()


def resolve_database_path(value: str, config_dir: Path) -> str:
    """Like resolve_data_path, but an in-memory database is left alone."""
    if value == MEMORY_DATABASE:
        return value
    return str(resolve_data_path(value, config_dir))


def resolve_log_dir(log_dir: Path | str | None, config_dir: Path) -> Path:
    """Configured log directory, or <config_dir>/logs."""
    if log_dir:
        return resolve_data_path(log_dir, config_dir)
    return config_dir / LOG_SUBDIR
