"""Shared fixtures: throwaway git repositories wired to a bare origin."""

import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

import pytest

from git_auto_sync.git_wrapper import GitRepo

requires_git = pytest.mark.skipif(
    shutil.which("git") is None, reason="git executable not available"
)


def git(cwd: Path, *args: str) -> str:
    """Runs git in `cwd` and returns stripped stdout."""
    res = subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
    )
    return res.stdout.strip()


def configure_identity(path: Path) -> None:
    git(path, "config", "user.name", "Sync Test")
    git(path, "config", "user.email", "sync@example.com")
    git(path, "config", "commit.gpgsign", "false")


def commit_file(path: Path, name: str, content: str, message: str) -> str:
    """Writes a file, commits it, and returns the new commit id."""
    (path / name).write_text(content)
    git(path, "add", name)
    git(path, "commit", "-q", "-m", message)
    return git(path, "rev-parse", "HEAD")


@dataclass
class Workspace:
    """A local clone and a second clone sharing one bare origin.

    Attributes:
        origin (Path): The bare remote.
        local (Path): The working tree under synchronization.
        other (Path): Another clone used to publish upstream changes.
        repo (GitRepo): Handle on `local`.
        base (str): The initial commit shared by everyone.
    """

    origin: Path
    local: Path
    other: Path
    repo: GitRepo
    base: str

    def push_upstream(self, name: str, content: str, message: str = "upstream") -> str:
        """Commits a change in the other clone and pushes it to origin."""
        commit = commit_file(self.other, name, content, message)
        git(self.other, "push", "-q", "origin", "main")
        return commit

    def head(self) -> str:
        return git(self.local, "rev-parse", "refs/heads/main")

    def origin_head(self) -> str:
        return git(self.origin, "rev-parse", "refs/heads/main")


@pytest.fixture
def workspace(tmp_path: Path) -> Workspace:
    """Builds origin, local and other repositories sharing one base commit.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
    """
    origin = tmp_path / "origin.git"
    local = tmp_path / "local"
    other = tmp_path / "other"

    git(tmp_path, "init", "-q", "--bare", "--initial-branch=main", str(origin))

    git(tmp_path, "init", "-q", "--initial-branch=main", str(local))
    configure_identity(local)
    base = commit_file(local, "README.md", "hello\n", "base")
    git(local, "remote", "add", "origin", str(origin))
    git(local, "push", "-q", "origin", "main")

    git(tmp_path, "clone", "-q", "--branch", "main", str(origin), str(other))
    configure_identity(other)

    return Workspace(origin, local, other, GitRepo(local), base)
