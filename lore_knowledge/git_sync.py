"""Git synchronization of the data directory between machines.

``GitSynchronizer.pull`` and ``GitSynchronizer.commit_and_push`` are safe to
call at any time. They recover from a rebase left behind by a killed
process, never fail on "nothing to do", and treat a missing repository or
remote as a skipped step rather than an error.
"""

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

AUTOSTASH_MESSAGE = "lore-sync autostash"

_ERROR_HINTS = [
    (
        ("permission denied (publickey)", "permission denied"),
        "SSH auth failed. Consider switching to HTTPS: "
        "git remote set-url origin https://github.com/<user>/<repo>.git",
    ),
    (("could not resolve host",), "Network unreachable. Will retry next cycle."),
    (
        ("authentication failed", "invalid credentials"),
        "Git credentials expired. Fix: gh auth login (or update your credential manager)",
    ),
    (("not a git repository",), "Data directory is not a git repo. Fix: run lore init"),
    (
        ("could not read from remote", "repository not found"),
        "Remote repository not accessible. Check the URL with: git remote -v",
    ),
    (
        ("merge conflict", "needs merge", "conflict"),
        "Merge conflict in data repo. Fix: cd <data-dir> && git status "
        "(resolve conflicts manually)",
    ),
]


def get_git_error_hint(error_message: str) -> str | None:
    """Map a raw git error to a remediation hint.

    Args:
        error_message: stderr or exception text from git.

    Returns:
        A one-line hint, or None when the error is not recognized.
    """
    message = error_message.lower()
    for markers, hint in _ERROR_HINTS:
        if any(marker in message for marker in markers):
            return hint
    return None


@dataclass
class GitResult:
    """Outcome of a pull or commit+push."""

    success: bool
    message: str = ""
    error: str | None = None
    changed: bool = False
    pushed: bool = False
    skipped: bool = False

    @property
    def hint(self) -> str | None:
        return get_git_error_hint(self.error) if self.error else None


class GitSynchronizer:
    """Pulls and pushes a data directory that is a git working tree."""

    def __init__(self, repo_dir: str | Path) -> None:
        """Initialize the synchronizer.

        Args:
            repo_dir: Root of the data directory.
        """
        self.repo_dir = Path(repo_dir).resolve()

    def _run_git(self, *args: str, check: bool = False) -> subprocess.CompletedProcess[str]:
        """Run a git command in the repository.

        Args:
            *args: Git command arguments.
            check: Whether to raise on non-zero exit.

        Returns:
            Completed process result.

        Raises:
            subprocess.CalledProcessError: If check=True and command fails.
        """
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0", "GIT_EDITOR": "true"}
        return subprocess.run(
            ["git", "-C", str(self.repo_dir), *args],
            capture_output=True,
            text=True,
            check=check,
            env=env,
        )

    @staticmethod
    def _output(result: subprocess.CompletedProcess[str]) -> str:
        return (result.stderr or result.stdout or "").strip()

    # -- repository state ----------------------------------------------

    def is_git_repo(self) -> bool:
        """Check that repo_dir is the top level of a git working tree."""
        if not self.repo_dir.is_dir():
            return False
        try:
            result = self._run_git("rev-parse", "--show-toplevel")
        except FileNotFoundError:
            logger.warning("git is not installed")
            return False
        if result.returncode != 0:
            return False
        return Path(result.stdout.strip()).resolve() == self.repo_dir

    def has_remote(self) -> bool:
        result = self._run_git("remote")
        return result.returncode == 0 and bool(result.stdout.strip())

    def has_changes(self) -> bool:
        """Uncommitted changes, including untracked files."""
        result = self._run_git("status", "--porcelain")
        return result.returncode == 0 and bool(result.stdout.strip())

    def current_branch(self) -> str | None:
        result = self._run_git("symbolic-ref", "--short", "HEAD")
        return result.stdout.strip() if result.returncode == 0 else None

    def has_upstream(self) -> bool:
        result = self._run_git("rev-parse", "--abbrev-ref", "--symbolic-full-name", "@{u}")
        return result.returncode == 0

    def has_commits(self) -> bool:
        return self._run_git("rev-parse", "--verify", "--quiet", "HEAD").returncode == 0

    def git_dir(self) -> Path:
        result = self._run_git("rev-parse", "--absolute-git-dir")
        return Path(result.stdout.strip())

    def rebase_in_progress(self) -> bool:
        """Leftover rebase state from an interrupted process."""
        git_dir = self.git_dir()
        return (git_dir / "rebase-merge").exists() or (git_dir / "rebase-apply").exists()

    def has_unmerged_paths(self) -> bool:
        result = self._run_git("diff", "--name-only", "--diff-filter=U")
        return bool(result.stdout.strip())

    def unpushed_commit_count(self) -> int:
        """Commits on HEAD that the remote has not seen.

        Without an upstream every local commit counts as unpushed.
        """
        if not self.has_commits():
            return 0
        if self.has_upstream():
            result = self._run_git("log", "@{u}..HEAD", "--oneline")
        else:
            result = self._run_git("log", "HEAD", "--oneline")
        if result.returncode != 0:
            return 0
        return len([line for line in result.stdout.splitlines() if line.strip()])

    # -- recovery --------------------------------------------------------

    def recover_stuck_rebase(self) -> str | None:
        """Finish or abandon a rebase left behind by a killed process.

        Tries ``rebase --continue`` when there are no unmerged paths and falls
        back to ``rebase --abort``.

        Returns:
            Description of the recovery, or None if no rebase was in progress.
        """
        if not self.rebase_in_progress():
            return None

        if not self.has_unmerged_paths():
            result = self._run_git("rebase", "--continue")
            if result.returncode == 0 and not self.rebase_in_progress():
                logger.warning("Recovered stuck rebase with rebase --continue")
                return "continued"
            logger.warning("rebase --continue failed: %s", self._output(result))

        result = self._run_git("rebase", "--abort")
        if result.returncode != 0:
            logger.error("rebase --abort failed: %s", self._output(result))
            return "failed"
        logger.warning("Recovered stuck rebase with rebase --abort")
        return "aborted"

    # -- operations ------------------------------------------------------

    def _stash(self) -> bool:
        if not self.has_changes() or not self.has_commits():
            return False
        result = self._run_git("stash", "push", "--include-untracked", "-m", AUTOSTASH_MESSAGE)
        if result.returncode != 0:
            logger.error("Stash failed: %s", self._output(result))
            return False
        return "No local changes" not in result.stdout

    def _pop_stash(self) -> bool:
        result = self._run_git("stash", "pop")
        if result.returncode != 0:
            # The stash entry stays in `git stash list` for manual recovery.
            logger.error("Stash pop failed (possible conflict): %s", self._output(result))
            if self.has_unmerged_paths():
                reset = self._run_git("reset", "--hard", "HEAD")
                if reset.returncode != 0:
                    logger.error("Could not discard conflicted stash pop: %s", self._output(reset))
            return False
        return True

    def pull(self) -> GitResult:
        """Merge remote changes into the working tree.

        Local changes are stashed around the pull and restored afterwards.
        A stash pop that conflicts is undone with ``reset --hard`` so no
        conflict markers reach the next commit; the changes stay in
        ``git stash list``. It does not fail the pull.

        Returns:
            GitResult; ``changed`` is set when new commits arrived.
        """
        if not self.is_git_repo():
            return GitResult(success=True, message="Not a git repository, skipping pull", skipped=True)
        if not self.has_remote():
            return GitResult(success=True, message="No remote configured, skipping pull", skipped=True)

        self.recover_stuck_rebase()

        branch = self.current_branch()
        pull_args = ["pull", "--no-rebase", "--no-edit"]
        if not self.has_upstream():
            if branch is None:
                return GitResult(success=True, message="Detached HEAD, skipping pull", skipped=True)
            remote_head = self._run_git("ls-remote", "--exit-code", "--heads", "origin", branch)
            if remote_head.returncode == 2:
                return GitResult(success=True, message=f"Remote has no branch {branch} yet")
            if remote_head.returncode != 0:
                error = self._output(remote_head)
                return GitResult(success=False, message="Pull failed", error=error)
            pull_args += ["origin", branch]

        did_stash = self._stash()
        result = self._run_git(*pull_args)
        if result.returncode != 0:
            error = self._output(result)
            if self.has_unmerged_paths():
                self._run_git("merge", "--abort")
            if did_stash:
                self._pop_stash()
            logger.error("git pull failed: %s", error)
            return GitResult(success=False, message="Pull failed", error=error)

        message = "Already up to date"
        changed = "Already up to date" not in result.stdout
        if changed:
            message = "Pulled new changes"
        if did_stash and not self._pop_stash():
            message += " (local changes kept in git stash)"
        return GitResult(success=True, message=message, changed=changed)

    def commit_and_push(self, message: str) -> GitResult:
        """Commit all changes and push, flushing any earlier unpushed commits.

        A push failure leaves ``success`` set (the local commit stands) and
        reports the failure in ``error``; the next sync retries the push.

        Args:
            message: Commit message.

        Returns:
            GitResult; ``changed`` when a commit was made, ``pushed`` when
            the push succeeded.
        """
        if not self.is_git_repo():
            return GitResult(success=True, message="Not a git repository, skipping commit", skipped=True)

        self.recover_stuck_rebase()
        if self.has_unmerged_paths():
            error = "Working tree has unresolved merge conflicts"
            logger.error("Refusing to commit: %s", error)
            return GitResult(success=False, message="Commit skipped", error=error)

        committed = False
        if self.has_changes():
            add = self._run_git("add", "-A")
            if add.returncode != 0:
                return GitResult(success=False, message="Commit failed", error=self._output(add))
            commit = self._run_git("commit", "-m", message)
            if commit.returncode != 0:
                return GitResult(success=False, message="Commit failed", error=self._output(commit))
            committed = True

        if not self.has_remote():
            text = "Committed (no remote to push)" if committed else "No changes to commit"
            return GitResult(success=True, message=text, changed=committed)

        unpushed = self.unpushed_commit_count()
        if unpushed == 0:
            return GitResult(success=True, message="No changes to commit", changed=committed)

        if self.has_upstream():
            push = self._run_git("push")
        else:
            push = self._run_git("push", "-u", "origin", "HEAD")
        if push.returncode != 0:
            error = self._output(push)
            logger.error("git push failed: %s", error)
            text = "Committed locally, push failed" if committed else "Push failed"
            return GitResult(success=True, message=text, error=error, changed=committed)

        text = "Committed and pushed" if committed else f"Pushed {unpushed} unpushed commit(s)"
        return GitResult(success=True, message=text, changed=committed, pushed=True)
