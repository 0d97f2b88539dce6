"""Bootstrap of a lore data directory as a git repository."""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

GITIGNORE = """.env
.env.local
*.lock
"""

README = """# Lore Data Repository

Your personal knowledge repository for Lore.

## Structure

- `sources/` - Ingested content, organized by project
  - `{project}/{YYYY-MM-DD}-{slug}-{short-id}/` - Each source document
  - `.paths.json` - UUID to directory index (auto-managed)
- `deleted-hashes.json` - Content hashes of deleted sources (never re-ingested)

Vector embeddings live in the configured store, so every machine shares them.
"""


@dataclass
class InitDataRepoResult:
    git_initialized: bool
    error: str | None = None


def _git(cwd: Path, *args: str) -> None:
    subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True, check=True)


def init_data_repo(path: str | Path) -> InitDataRepoResult:
    """Create the data directory layout and an initial git commit.

    Idempotent: existing files and an existing repository are left alone.

    Args:
        path: Data directory to initialize.

    Returns:
        InitDataRepoResult. ``error`` explains why git setup failed
        (git missing, identity not configured...).
    """
    root = Path(path).expanduser()
    (root / "sources").mkdir(parents=True, exist_ok=True)

    gitignore = root / ".gitignore"
    if not gitignore.exists():
        gitignore.write_text(GITIGNORE)
    readme = root / "README.md"
    if not readme.exists():
        readme.write_text(README)

    if (root / ".git").exists():
        return InitDataRepoResult(git_initialized=True)

    try:
        _git(root, "init")
        _git(root, "add", ".")
        _git(root, "commit", "-m", "Initial lore data repository")
    except FileNotFoundError:
        return InitDataRepoResult(git_initialized=False, error="Git is not installed")
    except subprocess.CalledProcessError as e:
        message = (e.stderr or e.stdout or str(e)).strip()
        lowered = message.lower()
        if "user.email" in lowered or "user.name" in lowered or "tell me who you are" in lowered:
            return InitDataRepoResult(
                git_initialized=False,
                error='Git user not configured. Run: git config --global user.email "you@example.com" '
                '&& git config --global user.name "Your Name"',
            )
        return InitDataRepoResult(git_initialized=False, error=message[:200])

    logger.info("Initialized data repository at %s", root)
    return InitDataRepoResult(git_initialized=True)


def get_git_remote_url(path: str | Path) -> str | None:
    """URL of the ``origin`` remote, or None."""
    try:
        result = subprocess.run(
            ["git", "remote", "get-url", "origin"],
            cwd=Path(path).expanduser(),
            capture_output=True,
            text=True,
        )
    except (FileNotFoundError, NotADirectoryError):
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None
