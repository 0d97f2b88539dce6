"""Tests for data repository bootstrap."""

import subprocess

from lore_knowledge import data_repo
from lore_knowledge.data_repo import get_git_remote_url, init_data_repo


class TestInitDataRepo:
    """Tests for init_data_repo."""

    def test_creates_layout_and_commit(self, workspace):
        root = workspace / "lore-data"

        result = init_data_repo(root)

        assert result.git_initialized is True
        assert result.error is None
        assert (root / "sources").is_dir()
        assert "*.lock" in (root / ".gitignore").read_text()
        assert (root / "README.md").read_text().startswith("# Lore Data Repository")
        log = subprocess.run(
            ["git", "log", "--format=%s"], cwd=root, capture_output=True, text=True, check=True
        )
        assert log.stdout.strip() == "Initial lore data repository"

    def test_idempotent(self, workspace):
        root = workspace / "lore-data"
        init_data_repo(root)
        (root / "README.md").write_text("custom")

        result = init_data_repo(root)

        assert result.git_initialized is True
        assert (root / "README.md").read_text() == "custom"

    def test_git_missing(self, workspace, monkeypatch):
        def no_git(cwd, *args):
            raise FileNotFoundError("git")

        monkeypatch.setattr(data_repo, "_git", no_git)

        result = init_data_repo(workspace / "lore-data")

        assert result.git_initialized is False
        assert result.error == "Git is not installed"

    def test_identity_missing(self, workspace, monkeypatch):
        def no_identity(cwd, *args):
            raise subprocess.CalledProcessError(
                128, ["git", *args], stderr="*** Please tell me who you are."
            )

        monkeypatch.setattr(data_repo, "_git", no_identity)

        result = init_data_repo(workspace / "lore-data")

        assert result.git_initialized is False
        assert result.error.startswith("Git user not configured")

    def test_other_git_error_truncated(self, workspace, monkeypatch):
        def fails(cwd, *args):
            raise subprocess.CalledProcessError(1, ["git"], stderr="x" * 500)

        monkeypatch.setattr(data_repo, "_git", fails)

        assert init_data_repo(workspace / "lore-data").error == "x" * 200


class TestGetGitRemoteUrl:
    """Tests for get_git_remote_url."""

    def test_remote(self, git_repo, git_cmd):
        git_cmd(git_repo, "remote", "add", "origin", "git@example.com:me/lore-data.git")
        assert get_git_remote_url(git_repo) == "git@example.com:me/lore-data.git"

    def test_no_remote(self, git_repo):
        assert get_git_remote_url(git_repo) is None

    def test_missing_directory(self, workspace):
        assert get_git_remote_url(workspace / "nope") is None
