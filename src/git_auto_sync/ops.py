import enum
import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from .constants import (
    APP_NAME,
    INVALID_CONFLICT_PATH,
    MERGE_MESSAGE,
    NO_CONFLICT_PATH,
    SNAPSHOT_MESSAGE,
)
from .credentials import run_authenticated
from .errors import (
    AttemptCancelledError,
    ConflictError,
    NetworkError,
    ObjectStoreError,
    PushRejectedError,
    SyncError,
    UnknownClassificationError,
)
from .git_wrapper import Conflict, GitCommandError, GitRepo, MergeAnalysis, PushUpdate

logger = logging.getLogger(APP_NAME)


class OutcomeKind(enum.Enum):
    SUCCESS = "success"
    NO_CHANGES = "no-changes"
    CONFLICTS_DETECTED = "conflicts-detected"
    ERROR = "error"
    TIMED_OUT = "timed-out"


@dataclass(frozen=True)
class Outcome:
    """The result of one scheduled attempt.

    Attributes:
        kind (OutcomeKind): What happened.
        paths (tuple[str, ...]): Conflicting paths, for CONFLICTS_DETECTED.
        cause (BaseException | None): The failure, for ERROR.
    """

    kind: OutcomeKind
    paths: tuple[str, ...] = ()
    cause: BaseException | None = None

    @classmethod
    def success(cls) -> "Outcome":
        return cls(OutcomeKind.SUCCESS)

    @classmethod
    def no_changes(cls) -> "Outcome":
        return cls(OutcomeKind.NO_CHANGES)

    @classmethod
    def conflicts(cls, paths: list[str]) -> "Outcome":
        return cls(OutcomeKind.CONFLICTS_DETECTED, paths=tuple(paths))

    @classmethod
    def error(cls, cause: BaseException) -> "Outcome":
        return cls(OutcomeKind.ERROR, cause=cause)

    @classmethod
    def timed_out(cls) -> "Outcome":
        return cls(OutcomeKind.TIMED_OUT)

    @property
    def is_failure(self) -> bool:
        return self.kind in (
            OutcomeKind.CONFLICTS_DETECTED,
            OutcomeKind.ERROR,
            OutcomeKind.TIMED_OUT,
        )

    def describe(self) -> str:
        if self.kind is OutcomeKind.CONFLICTS_DETECTED:
            return f"conflicts in {', '.join(self.paths)}"
        if self.kind is OutcomeKind.ERROR:
            return f"{type(self.cause).__name__}: {self.cause}"
        return self.kind.value


class CancelToken:
    """Cooperative cancellation flag shared between the scheduler and an attempt.

    The attempt polls it at phase boundaries; nothing is interrupted mid-I/O.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Blocks until cancelled or `timeout` elapses. Returns the flag."""
        return self._event.wait(timeout)

    def check(self, phase: str) -> None:
        """Raises AttemptCancelledError if the deadline has already passed."""
        if self._event.is_set():
            raise AttemptCancelledError(f"Deadline passed before {phase}")


@dataclass(frozen=True)
class Integration:
    """What the integration engine did.

    Attributes:
        analysis (MergeAnalysis): The classification that was acted on.
        head (str): The local branch commit afterwards.
        tracking (str): The fetched remote commit.
        changed (bool): Whether the local branch moved.
    """

    analysis: MergeAnalysis
    head: str
    tracking: str
    changed: bool


@contextmanager
def _object_store(step: str) -> Iterator[None]:
    """Translates git plumbing failures into ObjectStoreError."""
    try:
        yield
    except GitCommandError as e:
        raise ObjectStoreError(f"{step} failed: {e}") from e


def _short(oid: str) -> str:
    return oid[:8]


def _identity_env(repo: GitRepo) -> dict[str, str]:
    env = os.environ.copy()
    env.update(repo.signature().env())
    return env


def _resolve_head(repo: GitRepo, branch: str | None = None) -> tuple[str, str]:
    """Returns the branch HEAD points at and that branch's commit.

    When `branch` is given, HEAD must be on it; this is checked before the
    commit is looked up.

    Raises:
        ObjectStoreError: If HEAD is detached, on another branch, or the
        branch has no commits yet.
    """
    try:
        ref = repo.head_ref()
    except GitCommandError as e:
        raise ObjectStoreError(f"Repository has no valid HEAD: {e}") from e

    if branch is not None and ref != f"refs/heads/{branch}":
        raise ObjectStoreError(f"HEAD is on {ref}, expected refs/heads/{branch}")

    try:
        return ref, repo.peel_to_commit(ref)
    except GitCommandError as e:
        raise ObjectStoreError(f"Repository has no valid HEAD: {e}") from e


def conflict_path(conflict: Conflict) -> str:
    """Names the path of a conflict for reporting.

    The "theirs" entry is preferred. A conflict with no "theirs" side (the
    upstream deleted the file) falls back to "ours", then the ancestor, so a
    real path is reported whenever any stage has one.
    """
    entry = conflict.theirs or conflict.ours or conflict.ancestor
    if entry is None or not entry.path:
        return NO_CONFLICT_PATH
    try:
        return entry.path.decode("utf-8")
    except UnicodeDecodeError:
        return INVALID_CONFLICT_PATH


def commit_snapshot(repo: GitRepo, branch: str | None = None) -> str | None:
    """Stages every working-tree change and commits it on the current branch.

    Args:
        repo (GitRepo): The open repository.
        branch (str | None): When given, HEAD must be on this branch.

    Returns:
        str | None: The new commit id, or None when the staged tree matches
        the head commit's tree.

    Raises:
        ObjectStoreError: If there is no head commit, HEAD is on another
        branch, or any index/object write fails.
    """
    logger.info("COMMIT: starting commit...")
    ref, parent = _resolve_head(repo, branch)

    with _object_store("Snapshot"):
        repo.add_all()
        tree = repo.write_tree()
        changed = repo.diff_trees(repo.tree_of(parent), tree)

        if not changed:
            logger.info("COMMIT: empty tree. skipping...")
            return None

        commit = repo.commit_tree(tree, [parent], SNAPSHOT_MESSAGE, env=_identity_env(repo))
        repo.update_ref(ref, commit, parent)

    logger.info(f"COMMIT: {len(changed)} path(s) changed. commit oid: {commit}")
    return commit


def _fast_forward(repo: GitRepo, ref: str, local: str, theirs: str) -> None:
    logger.info(f"PULL: fast-forwarding {_short(local)}..{_short(theirs)}")
    with _object_store("Fast-forward checkout"):
        repo.read_tree_update(local, theirs)

    try:
        repo.update_ref(ref, theirs, local)
    except GitCommandError as e:
        # TODO: give this path its own error kind once we know what makes the
        # compare-and-swap fail in practice; for now recover by re-pointing.
        branch = ref.removeprefix("refs/heads/")
        logger.warning(
            f"PULL: could not move {ref} ({e}). Re-pointing {branch} at {_short(theirs)}."
        )
        with _object_store("Fast-forward fallback"):
            repo.checkout(branch, start_point=theirs)


def _merge(repo: GitRepo, ref: str, local: str, theirs: str) -> Integration:
    logger.info(f"MERGE: merging {_short(theirs)} into {_short(local)}...")

    with _object_store("Merge"):
        if not repo.merge_no_commit(theirs):
            paths = [conflict_path(c) for c in repo.conflicts()]
            for path in paths:
                logger.error(f"CONFLICT: {path}")
            raise ConflictError(paths)

        tree = repo.write_tree()
        if not repo.diff_trees(repo.tree_of(local), tree):
            repo.cleanup_merge_state()
            logger.info("MERGE: empty tree. skipping...")
            return Integration(MergeAnalysis.NORMAL, local, theirs, changed=False)

        commit = repo.commit_tree(
            tree, [local, theirs], MERGE_MESSAGE, env=_identity_env(repo)
        )
        repo.update_ref(ref, commit, local)
        repo.cleanup_merge_state()

    logger.info(f"MERGE: commit oid: {commit}")
    return Integration(MergeAnalysis.NORMAL, commit, theirs, changed=True)


def integrate(
    repo: GitRepo, branch: str, remote: str, ssh_dir: Path | None = None
) -> Integration:
    """Brings the local branch up to date with its remote counterpart.

    Fetches `branch` from `remote`, classifies the relationship between the
    local head and the fetched commit, and fast-forwards or merges as needed.

    Args:
        repo (GitRepo): The open repository.
        branch (str): The branch name, identical locally and on the remote.
        remote (str): The remote name.
        ssh_dir (Path | None): Override for the ssh key directory.

    Returns:
        Integration: What was done.

    Raises:
        ConflictError: The merge left conflicts; merge state is left in place.
        AuthExhaustedError: No credential was accepted.
        NetworkError: The fetch failed.
        ObjectStoreError: Any local read or write failed.
        UnknownClassificationError: The histories are unrelated.
    """
    logger.info("PULL: starting pull...")
    ref, local = _resolve_head(repo, branch)

    try:
        tracking_ref = run_authenticated(
            repo, remote, lambda env: repo.fetch(remote, branch, env=env), ssh_dir
        )
    except GitCommandError as e:
        raise NetworkError(f"Fetch of '{branch}' from {remote} failed: {e}") from e

    with _object_store("Merge analysis"):
        theirs = repo.peel_to_commit(tracking_ref)
        analysis = repo.merge_analysis(local, theirs)

    if analysis is MergeAnalysis.UP_TO_DATE:
        logger.info("PULL: up to date. skipping...")
        return Integration(analysis, local, theirs, changed=False)

    if analysis is MergeAnalysis.FAST_FORWARD:
        _fast_forward(repo, ref, local, theirs)
        return Integration(analysis, theirs, theirs, changed=True)

    if analysis is MergeAnalysis.NORMAL:
        return _merge(repo, ref, local, theirs)

    raise UnknownClassificationError("Unknown merge analysis result")


def unresolved_conflicts(repo: GitRepo) -> list[str] | None:
    """Reports a merge left unfinished by an earlier attempt.

    Returns:
        list[str] | None: The conflicting paths (possibly empty when the user
        has resolved them but not yet committed), or None when no merge is in
        progress.
    """
    with _object_store("Merge state check"):
        if not repo.merge_in_progress() and not repo.has_conflicts():
            return None
        return [conflict_path(c) for c in repo.conflicts()]


def publish(
    repo: GitRepo, branch: str, remote: str, ssh_dir: Path | None = None
) -> list[PushUpdate]:
    """Pushes the local branch to the same branch on the remote.

    Raises:
        PushRejectedError: The remote refused a reference.
        AuthExhaustedError: No credential was accepted.
        NetworkError: The push failed.
    """
    logger.info("PUSH: starting push...")
    refspec = f"refs/heads/{branch}:refs/heads/{branch}"

    try:
        updates = run_authenticated(
            repo, remote, lambda env: repo.push(remote, refspec, env=env), ssh_dir
        )
    except GitCommandError as e:
        raise NetworkError(f"Push to {remote} failed: {e}") from e

    for update in updates:
        logger.info(f"PUSH: ref pushed. name: {update.name}; status: {update.status}")

    rejected = {u.name: u.status for u in updates if u.status}
    if rejected:
        raise PushRejectedError(rejected)
    return updates


def run_attempt(
    repo: GitRepo,
    branch: str,
    remote: str,
    token: CancelToken,
    ssh_dir: Path | None = None,
) -> Outcome:
    """Runs one full commit, integrate, publish cycle.

    The push is skipped when the local branch already equals the fetched
    remote commit.

    Args:
        repo (GitRepo): The repository handle owned by the scheduler.
        branch (str): The branch to synchronize.
        remote (str): The remote name.
        token (CancelToken): Checked between phases.
        ssh_dir (Path | None): Override for the ssh key directory.

    Returns:
        Outcome: SUCCESS, NO_CHANGES, CONFLICTS_DETECTED or ERROR.
    """
    try:
        token.check("commit")
        pending = unresolved_conflicts(repo)
        if pending is not None:
            # Never stage over an unfinished merge.
            logger.error("CONFLICT: previous merge is still unresolved. skipping...")
            return Outcome.conflicts(pending)
        committed = commit_snapshot(repo, branch)

        token.check("pull")
        result = integrate(repo, branch, remote, ssh_dir)

        if result.head == result.tracking:
            if committed is None and not result.changed:
                logger.info("PUSH: remote already up to date. skipping...")
                return Outcome.no_changes()
            logger.info("PUSH: remote already has the local head. skipping...")
            return Outcome.success()

        token.check("push")
        publish(repo, branch, remote, ssh_dir)
        return Outcome.success()

    except ConflictError as e:
        return Outcome.conflicts(e.paths)
    except SyncError as e:
        return Outcome.error(e)
