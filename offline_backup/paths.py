from __future__ import annotations

import os
import tempfile
from pathlib import Path

_DEFAULT_BASE = "/var/lib/offline-backup"


def _expand(path: str) -> str:
    candidate = Path(path).expanduser()
    try:
        return str(candidate.resolve())
    except FileNotFoundError:
        return str(candidate)


def base_path() -> str:
    """Return the base directory for run logs and artifacts.

    The location can be overridden via the ``OFFLINE_BACKUP_BASE_PATH``
    environment variable.
    """

    override = os.environ.get("OFFLINE_BACKUP_BASE_PATH")
    if override:
        return _expand(override)
    return _expand(_DEFAULT_BASE)


def logs_dir() -> str:
    return str(Path(base_path()) / "logs")


def default_scratch_root() -> str:
    return tempfile.gettempdir()
