"""Error taxonomy for git-auto-sync.

Startup errors (`ConfigError`, `RepositoryOpenError`) terminate the process.
Every other `SyncError` is scoped to a single attempt: it is caught at the
scheduler boundary, reported, and the daemon moves on to the next tick.
"""


class SyncError(Exception):
    """Base class for all synchronization errors."""


class ConfigError(SyncError):
    """The configuration file is missing, unreadable, or malformed."""


class RepositoryOpenError(SyncError):
    """The configured working tree cannot be opened as a repository."""


class ObjectStoreError(SyncError):
    """A read or write on commits, trees, refs, or the index failed."""


class AuthExhaustedError(SyncError):
    """Every candidate credential was rejected by the remote."""

    def __init__(self, url: str):
        super().__init__(f"No credential accepted by {url}")
        self.url = url


class NetworkError(SyncError):
    """A fetch or push failed for a reason other than authentication."""


class PushRejectedError(NetworkError):
    """The remote refused one or more pushed references."""

    def __init__(self, rejected: dict[str, str]):
        details = ", ".join(f"{name} ({status})" for name, status in rejected.items())
        super().__init__(f"Push rejected: {details}")
        self.rejected = rejected


class ConflictError(SyncError):
    """A three-way merge left conflicting paths in the index.

    The conflicted index and working tree are left untouched for manual
    resolution.
    """

    def __init__(self, paths: list[str]):
        super().__init__(f"aborting: conflicts found in {len(paths)} path(s)")
        self.paths = paths


class UnknownClassificationError(SyncError):
    """Merge analysis matched none of the known integration cases."""


class AttemptCancelledError(SyncError):
    """The attempt passed its deadline and stopped at a phase boundary."""


class AttemptInFlightError(SyncError):
    """A previously abandoned attempt is still running."""
