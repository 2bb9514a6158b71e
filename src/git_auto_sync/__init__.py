"""git-auto-sync: unattended synchronization of a git working tree.

On a fixed schedule the daemon commits local changes, integrates the
upstream branch (fast-forward or three-way merge, stopping on conflicts),
and pushes the result back to the remote.
"""

from . import (
    cli,
    config,
    constants,
    credentials,
    daemon,
    errors,
    git_wrapper,
    ops,
    service,
    system,
)

__all__ = [
    "cli",
    "config",
    "constants",
    "credentials",
    "daemon",
    "errors",
    "git_wrapper",
    "ops",
    "service",
    "system",
]
