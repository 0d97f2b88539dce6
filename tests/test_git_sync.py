"""Tests for git pull/push of the data directory."""

import os
import subprocess

import pytest

from lore_knowledge.git_sync import (
    AUTOSTASH_MESSAGE,
    GitResult,
    GitSynchronizer,
    get_git_error_hint,
)


def git_out(repo, *args):
    return subprocess.run(
        ["git", *args], cwd=repo, capture_output=True, text=True, check=True
    ).stdout.strip()


@pytest.fixture
def clone(workspace, git_remote, git_cmd):
    """Second working copy of git_remote, standing in for another machine."""
    path = workspace / "other-machine"
    subprocess.run(
        ["git", "clone", str(git_remote), str(path)], capture_output=True, text=True, check=True
    )
    git_cmd(path, "checkout", "main")
    return path


class TestErrorHints:
    """Tests for get_git_error_hint."""

    @pytest.mark.parametrize(
        "message,expected",
        [
            ("git@github.com: Permission denied (publickey).", "SSH auth failed"),
            ("ssh: Could not resolve host: github.com", "Network unreachable"),
            ("fatal: Authentication failed for 'https://x'", "Git credentials expired"),
            ("fatal: not a git repository (or any parent)", "Data directory is not a git repo"),
            ("ERROR: Repository not found.", "Remote repository not accessible"),
            ("CONFLICT (content): Merge conflict in a.md", "Merge conflict in data repo"),
        ],
    )
    def test_known_errors(self, message, expected):
        assert get_git_error_hint(message).startswith(expected)

    def test_unknown_error(self):
        assert get_git_error_hint("something odd") is None

    def test_result_hint(self):
        assert GitResult(success=False, error="Could not resolve host").hint is not None
        assert GitResult(success=True).hint is None


class TestRepositoryState:
    """Tests for the state queries."""

    def test_not_a_repo(self, workspace):
        sync = GitSynchronizer(workspace)
        assert sync.is_git_repo() is False
        assert sync.pull().skipped is True
        assert sync.commit_and_push("msg").skipped is True

    def test_subdirectory_is_not_repo_root(self, git_repo):
        sub = git_repo / "sources"
        sub.mkdir()
        assert GitSynchronizer(sub).is_git_repo() is False

    def test_state_queries(self, git_repo):
        sync = GitSynchronizer(git_repo)
        assert sync.is_git_repo() is True
        assert sync.has_remote() is False
        assert sync.current_branch() == "main"
        assert sync.has_commits() is True
        assert sync.has_changes() is False
        (git_repo / "new.md").write_text("x")
        assert sync.has_changes() is True


class TestCommitAndPush:
    """Tests for commit_and_push."""

    def test_no_remote_commits_locally(self, git_repo):
        (git_repo / "a.md").write_text("a")

        result = GitSynchronizer(git_repo).commit_and_push("Sync")

        assert result.success is True
        assert result.changed is True
        assert result.pushed is False
        assert result.message == "Committed (no remote to push)"
        assert git_out(git_repo, "log", "-1", "--format=%s") == "Sync"

    def test_commit_and_push(self, git_repo, git_remote):
        (git_repo / "a.md").write_text("a")

        result = GitSynchronizer(git_repo).commit_and_push("Sync: Added 1 source(s)")

        assert result.pushed is True
        assert result.message == "Committed and pushed"
        assert git_out(git_remote, "rev-parse", "main") == git_out(git_repo, "rev-parse", "HEAD")

    def test_nothing_to_do(self, git_repo, git_remote):
        result = GitSynchronizer(git_repo).commit_and_push("Sync")
        assert result.success is True
        assert result.changed is False
        assert result.pushed is False
        assert result.message == "No changes to commit"

    def test_pushes_backlog(self, git_repo, git_remote, git_cmd):
        """Test that commits left unpushed by an earlier failure are flushed."""
        (git_repo / "a.md").write_text("a")
        git_cmd(git_repo, "add", "-A")
        git_cmd(git_repo, "commit", "-m", "Earlier sync")

        result = GitSynchronizer(git_repo).commit_and_push("Sync")

        assert result.pushed is True
        assert result.changed is False
        assert result.message == "Pushed 1 unpushed commit(s)"
        assert git_out(git_remote, "log", "-1", "--format=%s", "main") == "Earlier sync"

    def test_first_push_sets_upstream(self, git_repo, workspace, git_cmd):
        remote = workspace / "fresh.git"
        subprocess.run(["git", "init", "--bare", str(remote)], capture_output=True, check=True)
        git_cmd(git_repo, "remote", "add", "origin", str(remote))
        sync = GitSynchronizer(git_repo)

        result = sync.commit_and_push("Sync")

        assert result.pushed is True
        assert sync.has_upstream() is True

    def test_push_failure_keeps_commit(self, git_repo, workspace, git_cmd):
        git_cmd(git_repo, "remote", "add", "origin", str(workspace / "missing.git"))
        (git_repo / "a.md").write_text("a")

        result = GitSynchronizer(git_repo).commit_and_push("Sync")

        assert result.success is True
        assert result.changed is True
        assert result.pushed is False
        assert result.error
        assert result.message == "Committed locally, push failed"
        assert git_out(git_repo, "status", "--porcelain") == ""

    def test_refuses_to_commit_conflicts(self, git_repo, git_cmd):
        """Test that unmerged paths are never committed."""
        git_cmd(git_repo, "checkout", "-b", "feature")
        (git_repo / "file.md").write_text("feature\n")
        git_cmd(git_repo, "add", "-A")
        git_cmd(git_repo, "commit", "-m", "feature change")
        git_cmd(git_repo, "checkout", "main")
        (git_repo / "file.md").write_text("main\n")
        git_cmd(git_repo, "add", "-A")
        git_cmd(git_repo, "commit", "-m", "main change")
        subprocess.run(["git", "merge", "feature"], cwd=git_repo, capture_output=True)

        result = GitSynchronizer(git_repo).commit_and_push("Sync")

        assert result.success is False
        assert result.error == "Working tree has unresolved merge conflicts"
        assert git_out(git_repo, "log", "-1", "--format=%s") == "main change"


class TestPull:
    """Tests for pull."""

    def test_no_remote(self, git_repo):
        result = GitSynchronizer(git_repo).pull()
        assert result.success is True
        assert result.skipped is True

    def test_already_up_to_date(self, git_repo, git_remote):
        result = GitSynchronizer(git_repo).pull()
        assert result.success is True
        assert result.changed is False

    def test_pulls_remote_changes_and_keeps_local_edits(self, git_repo, git_remote, clone, git_cmd):
        (clone / "remote.md").write_text("from another machine")
        git_cmd(clone, "add", "-A")
        git_cmd(clone, "commit", "-m", "Remote sync")
        git_cmd(clone, "push")
        (git_repo / "local.md").write_text("uncommitted")

        result = GitSynchronizer(git_repo).pull()

        assert result.success is True
        assert result.changed is True
        assert (git_repo / "remote.md").read_text() == "from another machine"
        assert (git_repo / "local.md").read_text() == "uncommitted"
        assert git_out(git_repo, "stash", "list") == ""

    def test_remote_without_branch(self, workspace, make_repo, git_cmd):
        repo = make_repo(workspace / "solo")
        (repo / "a.md").write_text("a")
        git_cmd(repo, "add", "-A")
        git_cmd(repo, "commit", "-m", "init")
        remote = workspace / "empty.git"
        subprocess.run(["git", "init", "--bare", str(remote)], capture_output=True, check=True)
        git_cmd(repo, "remote", "add", "origin", str(remote))

        result = GitSynchronizer(repo).pull()

        assert result.success is True
        assert result.changed is False
        assert result.message == "Remote has no branch main yet"

    def test_unreachable_remote(self, git_repo, workspace, git_cmd):
        git_cmd(git_repo, "remote", "add", "origin", str(workspace / "missing.git"))
        result = GitSynchronizer(git_repo).pull()
        assert result.success is False
        assert result.error

    def test_conflicting_stash_pop_is_not_committed(self, git_repo, git_remote, clone, git_cmd):
        """Test that a local edit clashing with the pulled one stays in the stash only."""
        (clone / "README.md").write_text("remote edit\n")
        git_cmd(clone, "commit", "-am", "Remote edit")
        git_cmd(clone, "push")
        (git_repo / "README.md").write_text("local uncommitted edit\n")
        sync = GitSynchronizer(git_repo)

        result = sync.pull()

        assert result.success is True
        assert result.message == "Pulled new changes (local changes kept in git stash)"
        assert AUTOSTASH_MESSAGE in git_out(git_repo, "stash", "list")
        assert sync.has_unmerged_paths() is False
        assert (git_repo / "README.md").read_text() == "remote edit\n"

        (git_repo / "new.md").write_text("new source")
        pushed = sync.commit_and_push("Sync")

        assert pushed.pushed is True
        assert "<<<<<<<" not in git_out(git_repo, "show", "HEAD:README.md")
        assert git_out(git_repo, "show", "HEAD:README.md") == "remote edit"

    def test_pull_recovers_clean_stuck_rebase(self, git_repo, git_remote, clone, git_cmd):
        (clone / "remote.md").write_text("from another machine")
        git_cmd(clone, "add", "-A")
        git_cmd(clone, "commit", "-m", "Remote sync")
        git_cmd(clone, "push")
        (git_repo / "a.md").write_text("a")
        git_cmd(git_repo, "add", "-A")
        git_cmd(git_repo, "commit", "-m", "second")
        env = {**os.environ, "GIT_SEQUENCE_EDITOR": "sed -i.bak -e s/^pick/edit/"}
        subprocess.run(
            ["git", "rebase", "-i", "HEAD~1"], cwd=git_repo, env=env, capture_output=True, check=True
        )
        sync = GitSynchronizer(git_repo)
        assert sync.rebase_in_progress() is True

        result = sync.pull()

        assert result.success is True
        assert result.changed is True
        assert sync.rebase_in_progress() is False
        assert sync.current_branch() == "main"
        assert (git_repo / "remote.md").exists()
        assert "second" in git_out(git_repo, "log", "--format=%s")

    def test_pull_recovers_conflicted_stuck_rebase(self, git_repo, git_remote, clone, git_cmd):
        (clone / "remote.md").write_text("from another machine")
        git_cmd(clone, "add", "-A")
        git_cmd(clone, "commit", "-m", "Remote sync")
        git_cmd(clone, "push")

        git_cmd(git_repo, "checkout", "-b", "other")
        (git_repo / "file.md").write_text("other\n")
        git_cmd(git_repo, "add", "-A")
        git_cmd(git_repo, "commit", "-m", "other change")
        git_cmd(git_repo, "checkout", "main")
        (git_repo / "file.md").write_text("main\n")
        git_cmd(git_repo, "add", "-A")
        git_cmd(git_repo, "commit", "-m", "main change")
        subprocess.run(["git", "rebase", "other"], cwd=git_repo, capture_output=True)
        sync = GitSynchronizer(git_repo)
        assert sync.rebase_in_progress() is True
        assert sync.has_unmerged_paths() is True

        result = sync.pull()

        assert result.success is True
        assert result.changed is True
        assert sync.rebase_in_progress() is False
        assert sync.current_branch() == "main"
        assert (git_repo / "file.md").read_text() == "main\n"
        assert (git_repo / "remote.md").exists()


class TestStuckRebaseRecovery:
    """Tests for recover_stuck_rebase."""

    def test_no_rebase(self, git_repo):
        assert GitSynchronizer(git_repo).recover_stuck_rebase() is None

    def test_clean_rebase_is_continued(self, git_repo, git_cmd):
        (git_repo / "a.md").write_text("a")
        git_cmd(git_repo, "add", "-A")
        git_cmd(git_repo, "commit", "-m", "second")
        env = {**os.environ, "GIT_SEQUENCE_EDITOR": "sed -i.bak -e s/^pick/edit/"}
        subprocess.run(
            ["git", "rebase", "-i", "HEAD~1"], cwd=git_repo, env=env, capture_output=True, check=True
        )
        sync = GitSynchronizer(git_repo)
        assert sync.rebase_in_progress() is True

        assert sync.recover_stuck_rebase() == "continued"
        assert sync.rebase_in_progress() is False
        assert git_out(git_repo, "log", "-1", "--format=%s") == "second"

    def test_conflicted_rebase_is_aborted(self, git_repo, git_cmd):
        """Test that abort leaves pre-existing stash entries alone."""
        (git_repo / "README.md").write_text("stashed edit\n")
        git_cmd(git_repo, "stash", "push", "-m", "keep me")

        git_cmd(git_repo, "checkout", "-b", "feature")
        (git_repo / "file.md").write_text("feature\n")
        git_cmd(git_repo, "add", "-A")
        git_cmd(git_repo, "commit", "-m", "feature change")
        git_cmd(git_repo, "checkout", "main")
        (git_repo / "file.md").write_text("main\n")
        git_cmd(git_repo, "add", "-A")
        git_cmd(git_repo, "commit", "-m", "main change")
        git_cmd(git_repo, "checkout", "feature")
        subprocess.run(["git", "rebase", "main"], cwd=git_repo, capture_output=True)
        sync = GitSynchronizer(git_repo)
        assert sync.rebase_in_progress() is True
        assert sync.has_unmerged_paths() is True

        assert sync.recover_stuck_rebase() == "aborted"
        assert sync.rebase_in_progress() is False
        assert sync.current_branch() == "feature"
        assert "keep me" in git_out(git_repo, "stash", "list")
