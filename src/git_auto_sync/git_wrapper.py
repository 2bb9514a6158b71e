import enum
import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from .constants import APP_NAME, MERGE_STATE_FILES
from .errors import RepositoryOpenError

logger = logging.getLogger(APP_NAME)

AUTH_FAILURE_PATTERNS = (
    "authentication failed",
    "permission denied",
    "could not read username",
    "could not read password",
    "invalid username or password",
    "invalid credentials",
    "returned error: 401",
    "returned error: 403",
)
"""tuple[str, ...]: Lower-case stderr fragments that mean the remote refused a credential."""


class GitCommandError(RuntimeError):
    """A git invocation exited with a non-zero status.

    Attributes:
        args_list (list[str]): The git arguments that were run.
        returncode (int): The process exit code.
        stdout (str): Captured standard output.
        stderr (str): Captured standard error.
    """

    def __init__(self, args: list[str], returncode: int, stdout: str, stderr: str):
        super().__init__(f"Git error: {stderr.strip() or f'git {args[0]} exited {returncode}'}")
        self.args_list = args
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @property
    def is_auth_failure(self) -> bool:
        """Whether stderr indicates the remote rejected the supplied credential."""
        text = self.stderr.lower()
        return any(pattern in text for pattern in AUTH_FAILURE_PATTERNS)


class MergeAnalysis(enum.Enum):
    """Relationship between the local head and the fetched remote head."""

    UP_TO_DATE = "up-to-date"
    FAST_FORWARD = "fast-forward"
    NORMAL = "normal"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Signature:
    name: str
    email: str

    def env(self) -> dict[str, str]:
        """Environment variables that make git record this identity."""
        return {
            "GIT_AUTHOR_NAME": self.name,
            "GIT_AUTHOR_EMAIL": self.email,
            "GIT_COMMITTER_NAME": self.name,
            "GIT_COMMITTER_EMAIL": self.email,
        }


@dataclass(frozen=True)
class IndexEntry:
    """One stage of an unmerged path in the index."""

    mode: str
    oid: str
    path: bytes


@dataclass(frozen=True)
class Conflict:
    """An unmerged path: the ancestor (stage 1), ours (2) and theirs (3) entries."""

    ancestor: IndexEntry | None
    ours: IndexEntry | None
    theirs: IndexEntry | None


@dataclass(frozen=True)
class PushUpdate:
    """The remote's answer for one pushed reference.

    Attributes:
        name (str): The remote reference name.
        status (str | None): None when accepted, otherwise the rejection reason.
    """

    name: str
    status: str | None


class GitRepo:
    """A wrapper around the Git command-line interface for a specific repository.

    Every operation the synchronization engine needs from version control
    (staging, tree writing, commit creation, ref updates, merge analysis,
    fetch and push) is a method here. Methods raise `GitCommandError` on
    failure; translating those into attempt-level errors is left to callers.

    Attributes:
        path (Path): The file system path to the repository root.
    """

    def __init__(self, path: Path):
        """Opens the repository.

        Args:
            path (Path): The path to the working tree root.

        Raises:
            RepositoryOpenError: If the path does not contain a .git entry.
        """
        self.path = path
        if not (self.path / ".git").exists():
            raise RepositoryOpenError(f"Not a git repository: {self.path}")

    def _exec(
        self, args: list[str], env: dict | None = None, text: bool = True
    ) -> subprocess.CompletedProcess:
        """Executes a Git command within the repository context.

        Args:
            args (list[str]): A list of arguments to pass to the git command.
            env (dict | None): A complete environment for the subprocess, used
                to carry credentials and commit identity. Defaults to None.
            text (bool): Decode output as text. Defaults to True.

        Returns:
            subprocess.CompletedProcess: The finished process with raw output.

        Raises:
            GitCommandError: If the git command returns a non-zero exit code.
        """
        res = subprocess.run(
            ["git", *args],
            cwd=self.path,
            capture_output=True,
            text=text,
            env=env,
        )
        if res.returncode != 0:
            stdout, stderr = res.stdout, res.stderr
            if not text:
                stdout = stdout.decode(errors="replace")
                stderr = stderr.decode(errors="replace")
            raise GitCommandError(args, res.returncode, stdout, stderr)
        return res

    def _run(self, args: list[str], env: dict | None = None) -> str:
        """Executes a Git command and returns its stripped stdout."""
        return self._exec(args, env=env).stdout.strip()

    @property
    def git_dir(self) -> Path:
        """The resolved git directory (handles `.git` files of linked worktrees)."""
        return Path(self._run(["rev-parse", "--absolute-git-dir"]))

    def head_ref(self) -> str:
        """Retrieves the full name of the branch HEAD points at.

        Returns:
            str: e.g. 'refs/heads/main'.
        """
        return self._run(["symbolic-ref", "-q", "HEAD"])

    def rev_parse(self, rev: str) -> str | None:
        """Resolves a revision to a full SHA-1 hash.

        Returns:
            str | None: The full SHA-1 hash, or None if the revision could
            not be resolved.
        """
        try:
            return self._run(["rev-parse", "--verify", "-q", rev])
        except GitCommandError as e:
            logger.debug(f"rev-parse failed for '{rev}': {e}")
            return None

    def peel_to_commit(self, ref: str) -> str:
        """Resolves a reference to the commit it ultimately points at."""
        return self._run(["rev-parse", "--verify", f"{ref}^{{commit}}"])

    def tree_of(self, commit: str) -> str:
        """Returns the tree id recorded by a commit."""
        return self._run(["rev-parse", "--verify", f"{commit}^{{tree}}"])

    def add_all(self) -> None:
        """Stages every change (modified, deleted, and untracked) under the root."""
        self._run(["add", "--all", "--", "."])

    def write_tree(self) -> str:
        """Creates a tree object from the current index.

        Returns:
            str: The SHA-1 hash of the created tree object.
        """
        return self._run(["write-tree"])

    def diff_trees(self, old_tree: str, new_tree: str) -> list[str]:
        """Lists the paths that differ between two trees."""
        if old_tree == new_tree:
            return []
        output = self._run(["diff-tree", "-r", "--name-only", old_tree, new_tree])
        return output.splitlines() if output else []

    def signature(self) -> Signature:
        """Reads the committer identity configured for this repository."""
        ident = self._run(["var", "GIT_COMMITTER_IDENT"])
        match = re.match(r"^(.*?)\s*<([^>]*)>", ident)
        if not match:
            raise GitCommandError(["var"], 0, ident, f"Unparseable identity '{ident}'")
        return Signature(name=match.group(1), email=match.group(2))

    def commit_tree(
        self, tree: str, parents: list[str], message: str, env: dict | None = None
    ) -> str:
        """Creates a commit object from a tree object.

        Args:
            tree (str): The tree SHA-1 to commit.
            parents (list[str]): A list of parent commit SHA-1s, in order.
            message (str): The commit message.
            env (dict | None): Environment carrying the author/committer identity.

        Returns:
            str: The SHA-1 hash of the new commit.
        """
        cmd = ["commit-tree", tree, "-m", message]
        for p in parents:
            cmd.extend(["-p", p])
        return self._run(cmd, env=env)

    def update_ref(self, ref: str, new_oid: str, old_oid: str | None = None) -> None:
        """Atomically updates a reference to a new object ID.

        Args:
            ref (str): The reference to update (e.g., 'refs/heads/main').
            new_oid (str): The new SHA-1 hash.
            old_oid (str | None): The expected old SHA-1 hash. If provided, the
                update fails unless the ref currently holds this value.
        """
        cmd = ["update-ref", "-m", APP_NAME, ref, new_oid]
        if old_oid:
            cmd.append(old_oid)
        self._run(cmd)

    def remote_url(self, name: str) -> str:
        """Returns the fetch URL configured for a remote."""
        return self._run(["remote", "get-url", name])

    def fetch(self, remote: str, branch: str, env: dict | None = None) -> str:
        """Fetches one branch, updating its remote-tracking reference.

        Returns:
            str: The tracking reference name (e.g. 'refs/remotes/origin/main').
        """
        tracking = f"refs/remotes/{remote}/{branch}"
        self._run(
            ["fetch", "--no-tags", remote, f"+refs/heads/{branch}:{tracking}"],
            env=env,
        )
        return tracking

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        """Whether `ancestor` is reachable from (or equal to) `descendant`."""
        try:
            self._run(["merge-base", "--is-ancestor", ancestor, descendant])
            return True
        except GitCommandError as e:
            if e.returncode == 1:
                return False
            raise

    def merge_base(self, a: str, b: str) -> str | None:
        """Returns the best common ancestor, or None for unrelated histories."""
        try:
            return self._run(["merge-base", a, b])
        except GitCommandError as e:
            if e.returncode == 1:
                return None
            raise

    def merge_analysis(self, local: str, remote: str) -> MergeAnalysis:
        """Classifies how `remote` can be integrated into `local`."""
        if local == remote or self.is_ancestor(remote, local):
            return MergeAnalysis.UP_TO_DATE
        if self.is_ancestor(local, remote):
            return MergeAnalysis.FAST_FORWARD
        if self.merge_base(local, remote):
            return MergeAnalysis.NORMAL
        return MergeAnalysis.UNKNOWN

    def read_tree_update(self, old_tree_ish: str, new_tree_ish: str) -> None:
        """Moves the index and working tree from one tree to another.

        Uses a two-tree merge, which refuses to clobber local modifications.
        """
        self._run(["read-tree", "-u", "-m", old_tree_ish, new_tree_ish])

    def checkout(
        self, branch: str, start_point: str | None = None, force: bool = False
    ) -> None:
        """Checks out a branch.

        Args:
            branch (str): The branch name to check out.
            start_point (str | None): When given, the branch is created or
                re-pointed at this commit first (`checkout -B`).
            force (bool): Whether to discard local changes.
        """
        cmd = ["checkout"]
        if force:
            cmd.append("-f")
        if start_point:
            cmd.extend(["-B", branch, start_point])
        else:
            cmd.append(branch)
        self._run(cmd)

    def merge_no_commit(self, commit: str) -> bool:
        """Performs a three-way merge into the index and working tree.

        Nothing is committed and merge state (MERGE_HEAD) is left in place.

        Returns:
            bool: True for a clean merge, False when conflicts were recorded.
        """
        try:
            self._run(["merge", "--no-commit", "--no-ff", commit])
            return True
        except GitCommandError:
            if self.has_conflicts():
                return False
            raise

    def conflicts(self) -> Iterator[Conflict]:
        """Yields every unmerged path recorded in the index."""
        raw = self._exec(["ls-files", "--unmerged", "-z"], text=False).stdout
        stages: dict[bytes, dict[int, IndexEntry]] = {}

        for record in raw.split(b"\0"):
            if not record:
                continue
            meta, sep, path = record.partition(b"\t")
            parts = meta.split()
            if not sep or len(parts) != 3 or parts[2] not in (b"1", b"2", b"3"):
                logger.warning(f"Skipping unparseable index entry: {record!r}")
                continue
            mode, oid, stage = (p.decode("ascii", errors="replace") for p in parts)
            stages.setdefault(path, {})[int(stage)] = IndexEntry(mode, oid, path)

        for entries in stages.values():
            yield Conflict(
                ancestor=entries.get(1), ours=entries.get(2), theirs=entries.get(3)
            )

    def has_conflicts(self) -> bool:
        return any(True for _ in self.conflicts())

    def merge_in_progress(self) -> bool:
        """Whether a merge was started and not yet committed or cleaned up."""
        return (self.git_dir / "MERGE_HEAD").exists()

    def cleanup_merge_state(self) -> None:
        """Forgets an in-progress merge, leaving index and working tree as they are."""
        git_dir = self.git_dir
        for name in MERGE_STATE_FILES:
            (git_dir / name).unlink(missing_ok=True)

    def push(
        self, remote: str, refspec: str, env: dict | None = None
    ) -> list[PushUpdate]:
        """Pushes a refspec and reports the remote's verdict per reference.

        A push where the remote rejects a reference exits non-zero; in that
        case the parsed updates are still returned so callers can surface
        the rejection reasons.

        Returns:
            list[PushUpdate]: One entry per reference the remote answered for.
        """
        try:
            out = self._exec(["push", "--porcelain", remote, refspec], env=env).stdout
        except GitCommandError as e:
            updates = parse_push_porcelain(e.stdout)
            if any(u.status for u in updates):
                return updates
            raise
        return parse_push_porcelain(out)


def parse_push_porcelain(output: str) -> list[PushUpdate]:
    """Parses `git push --porcelain` output into per-reference updates.

    Each reference line has the form `<flag>\\t<src>:<dst>\\t<summary>`; the
    flag `!` marks a rejected reference.
    """
    updates = []
    for line in output.splitlines():
        if "\t" not in line:
            continue
        flag, _, rest = line.partition("\t")
        refs, _, summary = rest.partition("\t")
        if ":" not in refs:
            continue
        name = refs.split(":", 1)[1]
        status = (summary.strip() or "rejected") if flag.strip() == "!" else None
        updates.append(PushUpdate(name=name, status=status))
    return updates
