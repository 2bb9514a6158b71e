"""Tests for the synchronization engine: snapshot, integration, and publishing."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest
from conftest import Workspace, commit_file, configure_identity, git, requires_git

from git_auto_sync import ops
from git_auto_sync.errors import (
    AttemptCancelledError,
    ConflictError,
    NetworkError,
    ObjectStoreError,
    PushRejectedError,
    UnknownClassificationError,
)
from git_auto_sync.git_wrapper import GitCommandError, GitRepo, MergeAnalysis, PushUpdate
from git_auto_sync.ops import CancelToken, OutcomeKind

LOCAL_SHA = "a" * 40
REMOTE_SHA = "c" * 40


@pytest.fixture
def fake_repo(mocker: MagicMock) -> MagicMock:
    """A mocked GitRepo on branch main, with credentials bypassed.

    Args:
        mocker (MagicMock): Pytest fixture for mocking.
    """
    mocker.patch(
        "git_auto_sync.ops.run_authenticated",
        side_effect=lambda repo, remote, action, ssh_dir=None: action({}),
    )
    repo = MagicMock(spec=GitRepo)
    repo.head_ref.return_value = "refs/heads/main"
    repo.fetch.return_value = "refs/remotes/origin/main"
    repo.peel_to_commit.side_effect = lambda ref: {
        "refs/heads/main": LOCAL_SHA,
        "refs/remotes/origin/main": REMOTE_SHA,
    }[ref]
    return repo


# Snapshot Committer


@requires_git
def test_snapshot_without_changes_is_noop(workspace: Workspace) -> None:
    """Verifies that a clean tree yields no commit and leaves the branch alone."""
    assert ops.commit_snapshot(workspace.repo) is None
    assert workspace.head() == workspace.base


@requires_git
def test_snapshot_commits_all_changes(workspace: Workspace) -> None:
    """Verifies that edits and new files land in one 'sync' commit."""
    (workspace.local / "README.md").write_text("changed\n")
    (workspace.local / "notes.txt").write_text("new\n")

    commit = ops.commit_snapshot(workspace.repo)

    assert commit is not None
    assert workspace.head() == commit
    assert git(workspace.local, "log", "-1", "--format=%s") == "sync"
    assert git(workspace.local, "rev-list", "--parents", "-n", "1", commit).split() == [
        commit,
        workspace.base,
    ]
    files = git(workspace.local, "ls-tree", "-r", "--name-only", commit).splitlines()
    assert sorted(files) == ["README.md", "notes.txt"]


@requires_git
def test_snapshot_is_idempotent(workspace: Workspace) -> None:
    """Verifies that re-running the committer on an unchanged tree is a no-op."""
    (workspace.local / "README.md").write_text("changed\n")
    first = ops.commit_snapshot(workspace.repo)

    assert ops.commit_snapshot(workspace.repo) is None
    assert workspace.head() == first


@requires_git
def test_snapshot_requires_a_head_commit(tmp_path: Path) -> None:
    """Verifies that a repository without commits cannot be snapshotted.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
    """
    git(tmp_path, "init", "-q", "--initial-branch=main", "empty")
    configure_identity(tmp_path / "empty")
    (tmp_path / "empty" / "file.txt").write_text("data\n")

    with pytest.raises(ObjectStoreError, match="no valid HEAD"):
        ops.commit_snapshot(GitRepo(tmp_path / "empty"))


def test_snapshot_wraps_plumbing_failures(mocker: MagicMock) -> None:
    """Verifies that index or object-store failures surface as ObjectStoreError."""
    repo = MagicMock(spec=GitRepo)
    repo.head_ref.return_value = "refs/heads/main"
    repo.peel_to_commit.return_value = LOCAL_SHA
    repo.write_tree.side_effect = GitCommandError(["write-tree"], 128, "", "corrupt")

    with pytest.raises(ObjectStoreError, match="Snapshot failed"):
        ops.commit_snapshot(repo)

    repo.commit_tree.assert_not_called()
    repo.update_ref.assert_not_called()


# Integration Engine


@requires_git
def test_integrate_up_to_date_when_remote_is_ancestor(workspace: Workspace) -> None:
    """Verifies that local commits ahead of the remote need no merge."""
    local_commit = commit_file(workspace.local, "local.txt", "mine\n", "local")

    result = ops.integrate(workspace.repo, "main", "origin")

    assert result.analysis is MergeAnalysis.UP_TO_DATE
    assert result.head == local_commit
    assert result.tracking == workspace.base
    assert not result.changed


@requires_git
def test_integrate_fast_forwards_without_merge_commit(workspace: Workspace) -> None:
    """Verifies that the branch moves exactly to the remote commit."""
    upstream = workspace.push_upstream("upstream.txt", "theirs\n")

    result = ops.integrate(workspace.repo, "main", "origin")

    assert result.analysis is MergeAnalysis.FAST_FORWARD
    assert workspace.head() == upstream
    assert git(workspace.local, "rev-list", "--count", "main") == "2"
    assert (workspace.local / "upstream.txt").read_text() == "theirs\n"
    assert git(workspace.local, "status", "--porcelain") == ""


def test_fast_forward_falls_back_to_repointing_branch(fake_repo: MagicMock) -> None:
    """Verifies that a failed ref update re-points the branch instead of failing."""
    fake_repo.merge_analysis.return_value = MergeAnalysis.FAST_FORWARD
    fake_repo.update_ref.side_effect = GitCommandError(
        ["update-ref"], 128, "", "cannot lock ref"
    )

    result = ops.integrate(fake_repo, "main", "origin")

    fake_repo.read_tree_update.assert_called_once_with(LOCAL_SHA, REMOTE_SHA)
    fake_repo.checkout.assert_called_once_with("main", start_point=REMOTE_SHA)
    assert result.head == REMOTE_SHA
    assert result.changed


@requires_git
def test_integrate_merges_diverged_histories(workspace: Workspace) -> None:
    """Verifies that a clean three-way merge creates a two-parent 'merge' commit."""
    local_commit = commit_file(workspace.local, "local.txt", "mine\n", "local")
    upstream = workspace.push_upstream("upstream.txt", "theirs\n")

    result = ops.integrate(workspace.repo, "main", "origin")

    assert result.analysis is MergeAnalysis.NORMAL
    assert result.changed
    head = workspace.head()
    assert git(workspace.local, "rev-list", "--parents", "-n", "1", head).split() == [
        head,
        local_commit,
        upstream,
    ]
    assert git(workspace.local, "log", "-1", "--format=%s") == "merge"
    assert not (workspace.local / ".git" / "MERGE_HEAD").exists()


@requires_git
def test_integrate_reports_conflicts_and_keeps_state(workspace: Workspace) -> None:
    """Verifies that conflicting edits abort without committing or cleaning up."""
    local_commit = commit_file(workspace.local, "README.md", "local edit\n", "local")
    workspace.push_upstream("README.md", "remote edit\n")

    with pytest.raises(ConflictError) as excinfo:
        ops.integrate(workspace.repo, "main", "origin")

    assert excinfo.value.paths == ["README.md"]
    assert workspace.head() == local_commit
    assert (workspace.local / ".git" / "MERGE_HEAD").exists()


def test_integrate_merge_without_delta_is_noop(fake_repo: MagicMock) -> None:
    """Verifies that a clean merge that changes nothing creates no commit."""
    fake_repo.merge_analysis.return_value = MergeAnalysis.NORMAL
    fake_repo.merge_no_commit.return_value = True
    fake_repo.diff_trees.return_value = []

    result = ops.integrate(fake_repo, "main", "origin")

    assert not result.changed
    assert result.head == LOCAL_SHA
    fake_repo.commit_tree.assert_not_called()
    fake_repo.cleanup_merge_state.assert_called_once()


def test_integrate_rejects_unknown_classification(fake_repo: MagicMock) -> None:
    """Verifies that unrelated histories abort the attempt."""
    fake_repo.merge_analysis.return_value = MergeAnalysis.UNKNOWN

    with pytest.raises(UnknownClassificationError, match="Unknown merge analysis"):
        ops.integrate(fake_repo, "main", "origin")


def test_integrate_wraps_fetch_failures(fake_repo: MagicMock) -> None:
    """Verifies that a failed fetch is a NetworkError and nothing is merged."""
    fake_repo.fetch.side_effect = GitCommandError(
        ["fetch"], 128, "", "fatal: unable to access: Could not resolve host"
    )

    with pytest.raises(NetworkError, match="Fetch of 'main'"):
        ops.integrate(fake_repo, "main", "origin")

    fake_repo.merge_analysis.assert_not_called()


def test_integrate_refuses_other_branch(fake_repo: MagicMock) -> None:
    """Verifies that a HEAD on a different branch is not merged into."""
    fake_repo.head_ref.return_value = "refs/heads/feature"

    with pytest.raises(ObjectStoreError, match="expected refs/heads/main"):
        ops.integrate(fake_repo, "main", "origin")

    fake_repo.fetch.assert_not_called()
    fake_repo.peel_to_commit.assert_not_called()


# Publisher


def test_publish_surfaces_rejected_refs(fake_repo: MagicMock) -> None:
    """Verifies that a non-empty status on a pushed ref is a failure."""
    fake_repo.push.return_value = [
        PushUpdate("refs/heads/main", "[rejected] (non-fast-forward)")
    ]

    with pytest.raises(PushRejectedError) as excinfo:
        ops.publish(fake_repo, "main", "origin")

    assert excinfo.value.rejected == {
        "refs/heads/main": "[rejected] (non-fast-forward)"
    }
    fake_repo.push.assert_called_once_with(
        "origin", "refs/heads/main:refs/heads/main", env={}
    )


def test_publish_wraps_network_failures(fake_repo: MagicMock) -> None:
    """Verifies that a failing push call is a NetworkError."""
    fake_repo.push.side_effect = GitCommandError(["push"], 128, "", "Connection refused")

    with pytest.raises(NetworkError, match="Push to origin failed"):
        ops.publish(fake_repo, "main", "origin")


# Full attempts


@requires_git
def test_attempt_with_nothing_to_do(workspace: Workspace) -> None:
    """Verifies the no-op scenario: local and remote both at the base commit."""
    outcome = ops.run_attempt(workspace.repo, "main", "origin", CancelToken())

    assert outcome.kind is OutcomeKind.NO_CHANGES
    assert workspace.head() == workspace.base


@requires_git
def test_attempt_commits_and_publishes_local_edits(workspace: Workspace) -> None:
    """Verifies that local edits are committed and pushed to origin."""
    (workspace.local / "README.md").write_text("edited locally\n")

    outcome = ops.run_attempt(workspace.repo, "main", "origin", CancelToken())

    assert outcome.kind is OutcomeKind.SUCCESS
    assert workspace.head() != workspace.base
    assert workspace.origin_head() == workspace.head()


@requires_git
def test_attempt_fast_forwards_without_pushing(workspace: Workspace) -> None:
    """Verifies that pulling upstream work alone succeeds without a new commit."""
    upstream = workspace.push_upstream("upstream.txt", "theirs\n")

    outcome = ops.run_attempt(workspace.repo, "main", "origin", CancelToken())

    assert outcome.kind is OutcomeKind.SUCCESS
    assert workspace.head() == upstream
    assert workspace.origin_head() == upstream


@requires_git
def test_attempt_merges_and_publishes(workspace: Workspace) -> None:
    """Verifies that diverged, non-overlapping edits end up merged on origin."""
    (workspace.local / "local.txt").write_text("mine\n")
    upstream = workspace.push_upstream("upstream.txt", "theirs\n")

    outcome = ops.run_attempt(workspace.repo, "main", "origin", CancelToken())

    assert outcome.kind is OutcomeKind.SUCCESS
    assert workspace.origin_head() == workspace.head()
    parents = git(workspace.local, "rev-list", "--parents", "-n", "1", "main").split()
    assert parents[2] == upstream


@requires_git
def test_attempt_reports_conflicting_paths(workspace: Workspace) -> None:
    """Verifies that same-file edits end the attempt with the conflict set."""
    (workspace.local / "README.md").write_text("local edit\n")
    workspace.push_upstream("README.md", "remote edit\n")
    origin_before = workspace.origin_head()

    outcome = ops.run_attempt(workspace.repo, "main", "origin", CancelToken())

    assert outcome.kind is OutcomeKind.CONFLICTS_DETECTED
    assert outcome.paths == ("README.md",)
    assert workspace.origin_head() == origin_before


@requires_git
def test_attempt_reports_missing_remote_as_error(workspace: Workspace) -> None:
    """Verifies that a repository without the configured remote fails the attempt."""
    outcome = ops.run_attempt(workspace.repo, "main", "upstream", CancelToken())

    assert outcome.kind is OutcomeKind.ERROR
    assert isinstance(outcome.cause, NetworkError)


def test_attempt_stops_when_cancelled(mocker: MagicMock) -> None:
    """Verifies that a cancelled token prevents any further phase."""
    repo = MagicMock(spec=GitRepo)
    token = CancelToken()
    token.cancel()

    outcome = ops.run_attempt(repo, "main", "origin", token)

    assert outcome.kind is OutcomeKind.ERROR
    assert isinstance(outcome.cause, AttemptCancelledError)
    repo.add_all.assert_not_called()


def test_attempt_skips_push_after_cancel_mid_attempt(mocker: MagicMock) -> None:
    """Verifies that a deadline passing during pull prevents the push."""
    token = CancelToken()
    mocker.patch("git_auto_sync.ops.commit_snapshot", return_value="b" * 40)

    def slow_integrate(*_args: object) -> ops.Integration:
        token.cancel()
        return ops.Integration(MergeAnalysis.UP_TO_DATE, "b" * 40, LOCAL_SHA, False)

    mocker.patch("git_auto_sync.ops.integrate", side_effect=slow_integrate)
    mock_publish = mocker.patch("git_auto_sync.ops.publish")
    repo = MagicMock(spec=GitRepo)
    repo.merge_in_progress.return_value = False
    repo.has_conflicts.return_value = False

    outcome = ops.run_attempt(repo, "main", "origin", token)

    assert isinstance(outcome.cause, AttemptCancelledError)
    mock_publish.assert_not_called()


@requires_git
def test_attempt_push_rejection_is_error(workspace: Workspace, mocker: MagicMock) -> None:
    """Verifies that a rejected push is reported even though git exited cleanly."""
    (workspace.local / "README.md").write_text("edited\n")
    mocker.patch.object(
        workspace.repo,
        "push",
        return_value=[PushUpdate("refs/heads/main", "[remote rejected] (hook declined)")],
    )

    outcome = ops.run_attempt(workspace.repo, "main", "origin", CancelToken())

    assert outcome.kind is OutcomeKind.ERROR
    assert isinstance(outcome.cause, PushRejectedError)



@requires_git
def test_attempt_after_conflict_leaves_merge_untouched(workspace: Workspace) -> None:
    """Verifies that later ticks keep reporting the conflict without committing it."""
    (workspace.local / "README.md").write_text("local edit\n")
    workspace.push_upstream("README.md", "remote edit\n")

    first = ops.run_attempt(workspace.repo, "main", "origin", CancelToken())
    head_after_conflict = workspace.head()
    second = ops.run_attempt(workspace.repo, "main", "origin", CancelToken())

    assert first.kind is OutcomeKind.CONFLICTS_DETECTED
    assert second.kind is OutcomeKind.CONFLICTS_DETECTED
    assert second.paths == ("README.md",)
    assert workspace.head() == head_after_conflict
    assert git(workspace.local, "log", "-1", "--format=%s") == "sync"
    assert "<<<<<<<" in (workspace.local / "README.md").read_text()
    assert (workspace.local / ".git" / "MERGE_HEAD").exists()
    assert workspace.repo.has_conflicts()


@requires_git
def test_attempt_on_other_branch_commits_nothing(workspace: Workspace) -> None:
    """Verifies that a HEAD on the wrong branch fails before anything is staged."""
    git(workspace.local, "checkout", "-q", "-b", "feature")
    (workspace.local / "x.txt").write_text("draft\n")

    outcome = ops.run_attempt(workspace.repo, "main", "origin", CancelToken())

    assert outcome.kind is OutcomeKind.ERROR
    assert isinstance(outcome.cause, ObjectStoreError)
    assert git(workspace.local, "rev-parse", "feature") == workspace.base
    assert git(workspace.local, "status", "--porcelain") == "?? x.txt"


def test_attempt_reports_unfinished_merge_without_staging() -> None:
    """Verifies that a merge in progress short-circuits before the snapshot."""
    repo = MagicMock(spec=GitRepo)
    repo.merge_in_progress.return_value = True
    repo.conflicts.return_value = iter([])

    outcome = ops.run_attempt(repo, "main", "origin", CancelToken())

    assert outcome.kind is OutcomeKind.CONFLICTS_DETECTED
    assert outcome.paths == ()
    repo.add_all.assert_not_called()
