"""
BearBridge Platform Abstraction
-------------------------------
Path resolution and OS detection for the pieces of the bridge that touch the
host: the URL "open" facility used to reach Bear, Bear's database location,
and where logs go.

Directories resolve through platformdirs with an environment override.
"""

import os
import sys
import shutil
import logging
from pathlib import Path
from typing import Dict, Any, Optional

import platformdirs

logger = logging.getLogger("BearBridge.Platform")

# ---------------------------------------------------------------------------
# Platform detection
# ---------------------------------------------------------------------------

IS_WINDOWS = sys.platform == "win32"
IS_MACOS = sys.platform == "darwin"
IS_LINUX = sys.platform.startswith("linux")

_APP_NAME = "bearbridge"
_APP_AUTHOR = "bearbridge"

# Bear keeps its Core Data store inside its app group container.
_BEAR_GROUP_CONTAINER = "9K33E3U3T4.net.shinyfrog.bear"
_BEAR_DATABASE_RELPATH = Path("Library") / "Group Containers" / _BEAR_GROUP_CONTAINER / "Application Data" / "database.sqlite"


def get_platform_info() -> Dict[str, Any]:
    """Return platform diagnostic information for the doctor output."""
    return {
        "os": sys.platform,
        "python": sys.version.split()[0],
        "is_macos": IS_MACOS,
        "open_command": find_open_command(),
        "bear_database": str(default_bear_database_path()),
        "log_dir": str(get_log_dir()),
    }


# ---------------------------------------------------------------------------
# Directory resolution
# ---------------------------------------------------------------------------

def _resolve_dir(env_var: str, platformdirs_fn: str) -> Path:
    """
    Resolve a directory path with priority:
    1. Environment variable override (highest)
    2. platformdirs
    """
    env_val = os.environ.get(env_var)
    if env_val:
        return Path(env_val)
    fn = getattr(platformdirs, platformdirs_fn)
    return Path(fn(_APP_NAME, _APP_AUTHOR))


def get_config_dir() -> Path:
    """
    Get the BearBridge configuration directory.

    Priority: BEAR_BRIDGE_CONFIG_DIR env var > platformdirs.
    Contains: config.yaml
    """
    return _resolve_dir("BEAR_BRIDGE_CONFIG_DIR", "user_config_dir")


def get_log_dir() -> Path:
    """
    Get the BearBridge log directory.

    Priority: BEAR_BRIDGE_LOG_DIR env var > platformdirs.
    """
    return _resolve_dir("BEAR_BRIDGE_LOG_DIR", "user_log_dir")


def default_bear_database_path() -> Path:
    """Location of Bear's SQLite store for the current user."""
    return Path.home() / _BEAR_DATABASE_RELPATH


# ---------------------------------------------------------------------------
# URL dispatch
# ---------------------------------------------------------------------------

def find_open_command(override: Optional[str] = None) -> Optional[str]:
    """
    Locate the executable that hands a URL to its registered application.

    macOS: ``open``. Linux/BSD: ``xdg-open``. Windows has no standalone
    executable for this, so ``None`` is returned and dispatch must fail.
    """
    if override:
        return shutil.which(override) or override

    env_override = os.environ.get("BEAR_BRIDGE_OPEN_COMMAND")
    if env_override:
        return shutil.which(env_override) or env_override

    if IS_WINDOWS:
        return None
    candidate = "open" if IS_MACOS else "xdg-open"
    return shutil.which(candidate)


def log_platform_summary() -> None:
    """Log a one-line platform summary at startup."""
    info = get_platform_info()
    logger.info(
        "BearBridge on %s | Python %s | open=%s | db=%s",
        info["os"],
        info["python"],
        info["open_command"] or "<none>",
        info["bear_database"],
    )
