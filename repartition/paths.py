from __future__ import annotations

import os
from pathlib import Path

_DEFAULT_BASE = "/var/lib/rpi-repartition"
_DEFAULT_MOUNT_BASE = "/mnt/repartition"


def _expand(path: str) -> str:
    candidate = Path(path).expanduser()
    try:
        return str(candidate.resolve())
    except FileNotFoundError:
        return str(candidate)


def base_path() -> str:
    """Return the state directory for logs and run artifacts.

    ``REPART_BASE_PATH`` overrides the default location.
    """

    override = os.environ.get("REPART_BASE_PATH")
    if override:
        return _expand(override)
    return _expand(_DEFAULT_BASE)


def logs_dir() -> str:
    return str(Path(base_path()) / "logs")


def default_mount_base() -> str:
    return os.environ.get("REPART_MOUNT_BASE") or _DEFAULT_MOUNT_BASE
