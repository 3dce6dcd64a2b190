"""Storage paths and JSON helpers."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
import tempfile
from typing import Any

from platformdirs import user_config_path, user_data_path, user_state_path

APP_NAME = "phase-client"

logger = logging.getLogger(__name__)


def get_config_dir() -> Path:
    return Path(user_config_path(APP_NAME))


def get_data_dir() -> Path:
    return Path(user_data_path(APP_NAME))


def get_state_dir() -> Path:
    return Path(user_state_path(APP_NAME))


def get_logs_dir() -> Path:
    return get_state_dir() / "logs"


def get_bin_dir() -> Path:
    """User-installed engine binaries."""
    return get_data_dir() / "bin"


def ensure_dirs() -> None:
    for path in (get_config_dir(), get_data_dir(), get_state_dir(), get_logs_dir()):
        path.mkdir(parents=True, exist_ok=True)


def load_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    try:
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)
    except json.JSONDecodeError as exc:
        logger.warning("Ignoring unreadable JSON in %s: %s", path, exc)
        return default


def save_json(path: Path, data: Any) -> None:
    atomic_write_json(path, data)


def atomic_write_json(path: Path, data: Any, *, private: bool = False) -> None:
    """Write JSON through a temp file in the same directory and rename it into place.

    With ``private`` the file is created with 0600 permissions on POSIX, which
    matters for anything holding node passwords or subscription tokens.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path_str = tempfile.mkstemp(
        prefix=f".{path.name}.",
        suffix=".tmp",
        dir=str(path.parent),
    )
    tmp_path = Path(tmp_path_str)
    try:
        if private and os.name == "posix":
            os.fchmod(fd, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2, sort_keys=True)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                pass
        raise
