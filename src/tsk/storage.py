"""Centralized storage path calculation."""

from __future__ import annotations

from pathlib import Path

from tsk.config import Config

TASKS_FILENAME = "tasks.json"
SYNC_STATE_FILENAME = "sync-state.json"


def get_data_dir(config: Config) -> Path:
    """Directory holding the task and sync-state files.

    Defaults to the config directory; the data_dir setting overrides it.
    """
    override = config.data_dir
    return Path(override).expanduser() if override else config.config_dir


def get_tasks_path(config: Config) -> Path:
    return get_data_dir(config) / TASKS_FILENAME


def get_sync_state_path(config: Config) -> Path:
    return get_data_dir(config) / SYNC_STATE_FILENAME


def ensure_data_dir(path: Path) -> Path:
    """Create the data directory, failing loudly if it cannot be used.

    Raises NotADirectoryError if the path exists but is not a directory and
    PermissionError/OSError if it cannot be created.
    """
    if path.exists() and not path.is_dir():
        raise NotADirectoryError(f"Data directory is not a directory: {path}")
    path.mkdir(parents=True, exist_ok=True)
    return path
