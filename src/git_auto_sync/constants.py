import os
from pathlib import Path

"""Global constants and path definitions for git-auto-sync.

This module defines the application identifiers, the literal values written
into the commit graph, and the filesystem layout (adhering to XDG standards
where applicable) used across the application.
"""

# --- Identity ---
APP_NAME = "git-auto-sync"
"""str: The human-readable application name."""

APP_LABEL = "git-auto-sync"
"""str: The systemd unit name used when installed as a user service."""

# --- Configuration ---
CONFIG_FILENAME = "git-auto-sync.toml"
"""str: The configuration file name searched for on the executable PATH."""

DEFAULT_REMOTE = "origin"
"""str: The remote that is fetched from and pushed to."""

# --- Commit Graph Literals ---
SNAPSHOT_MESSAGE = "sync"
"""str: Message for commits capturing local working-tree changes."""

MERGE_MESSAGE = "merge"
"""str: Message for commits integrating the remote branch."""

NO_CONFLICT_PATH = "<error_no_conflict>"
"""str: Reported when a conflict carries no usable index entry."""

INVALID_CONFLICT_PATH = "<conflict_invalid_path>"
"""str: Reported when a conflicting path is not valid UTF-8."""

MERGE_STATE_FILES = [
    "MERGE_HEAD",
    "MERGE_MSG",
    "MERGE_MODE",
    "MERGE_AUTOSTASH",
]
"""list[str]: Git internal files recording an in-progress merge."""

# --- Paths ---
_XDG_STATE = os.environ.get("XDG_STATE_HOME")
_BASE_STATE = Path(_XDG_STATE) if _XDG_STATE else Path.home() / ".local/state"

STATE_DIR = _BASE_STATE / "git-auto-sync"
"""Path: The directory for runtime state data (logs)."""

LOG_FILE = STATE_DIR / "daemon.log"
"""Path: The file path for the daemon process logs."""

ALERT_SOUND = Path("assets") / "alert.wav"
"""Path: The failure alert, relative to the executable's directory."""
