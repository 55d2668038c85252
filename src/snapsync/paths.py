"""Path utilities for the snapsync local store.

The LMDB environment lives in a single directory. Resolution order:

1. An explicit path passed by the caller.
2. SNAPSYNC_DATA_DIR environment variable.
3. XDG data directory: $XDG_DATA_HOME/snapsync, falling back to
   ~/.local/share/snapsync.

Unlike a cache, the local store may hold private records that have not been
uploaded yet, so it lives under XDG_DATA_HOME rather than XDG_CACHE_HOME.
"""

from __future__ import annotations

import os
from pathlib import Path

# Environment variable names
ENV_DATA_DIR = "SNAPSYNC_DATA_DIR"

# Directory name of the LMDB environment inside the data dir
STORE_DIR_NAME = "store.lmdb"


def get_xdg_data_home() -> Path:
    """Get XDG data home directory.

    Returns $XDG_DATA_HOME if set, otherwise ~/.local/share
    """
    xdg_data = os.environ.get("XDG_DATA_HOME")
    if xdg_data:
        return Path(xdg_data)
    return Path.home() / ".local" / "share"


def get_data_dir(data_dir: Path | None = None) -> Path:
    """Get the snapsync data directory.

    Args:
        data_dir: Explicit directory; wins over every other source.

    Returns:
        Path to the data directory (not created)
    """
    if data_dir is not None:
        return Path(data_dir)

    env_dir = os.environ.get(ENV_DATA_DIR)
    if env_dir:
        return Path(env_dir)

    return get_xdg_data_home() / "snapsync"


def get_store_path(data_dir: Path | None = None) -> Path:
    """Get the LMDB environment directory inside the data dir."""
    return get_data_dir(data_dir) / STORE_DIR_NAME


def ensure_data_dir(data_dir: Path | None = None) -> Path:
    """Get data directory, creating it if it doesn't exist."""
    path = get_data_dir(data_dir)
    path.mkdir(parents=True, exist_ok=True)
    return path
