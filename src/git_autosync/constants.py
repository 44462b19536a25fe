import os
from pathlib import Path

"""Global constants and path definitions for git-autosync.

This module defines the filesystem layout (adhering to XDG standards where applicable),
application identifiers, and the default values shared by the sync engine.
"""

# --- Identity ---
APP_NAME = "git-autosync"
"""str: The human-readable application name."""

# --- Paths ---
_XDG_STATE = os.environ.get("XDG_STATE_HOME")
_BASE_STATE = Path(_XDG_STATE) if _XDG_STATE else Path.home() / ".local/state"

STATE_DIR = _BASE_STATE / "git-autosync"
"""Path: The directory for runtime state data (logs, pid file)."""

LOG_FILE = STATE_DIR / "daemon.log"
"""Path: The file path for the daemon process logs."""

PID_FILE = STATE_DIR / "daemon.pid"
"""Path: The file path storing the running daemon's process ID."""

# --- Configuration Paths ---
CONFIG_DIR: Path = Path.home() / ".config/git-autosync"
"""Path: The directory for user configuration files."""

CONFIG_FILE: Path = CONFIG_DIR / "config.toml"
"""Path: The global configuration file path."""

LOCAL_CONFIG_NAME = "autosync.toml"
"""str: Per-repository configuration file looked up in the watch root."""

# --- Git / Logic Constants ---
DEFAULT_IGNORES = [
    ".git/",
    "*.log",
    "*.tmp",
    "*.swp",
    "*~",
]
"""list[str]: Patterns the watcher always drops, before user-configured ignores."""

GIT_LOCK_FILES = [
    "MERGE_HEAD",
    "REBASE_HEAD",
    "CHERRY_PICK_HEAD",
    "BISECT_LOG",
    "rebase-merge",
    "rebase-apply",
    "index.lock",
]
"""
list[str]: Git internal files indicating an
active operation (merge/rebase/commit) that blocks a sync.
"""

SUCCESS = 25
"""int: Custom log level between INFO and WARNING for completed syncs."""
