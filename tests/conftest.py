"""Pytest configuration and shared fixtures."""

import os
import subprocess
import tempfile
import threading
from pathlib import Path

import pytest

from lore_knowledge._config import SyncSource
from lore_knowledge.extractor import ExtractedMetadata
from lore_knowledge.store import MAX_REMOTE_CONTENT_BYTES


class FakeStore:
    """In-memory SourceStore with the same semantics as ChromaSourceStore."""

    def __init__(self) -> None:
        self.records: dict[str, dict] = {}
        self.reset_calls = 0
        self.ping_calls = 0
        self.write_calls = 0
        self.lookup_calls = 0
        self.fail_ping: Exception | None = None
        self.fail_writes: Exception | None = None
        self.fail_lookups: Exception | None = None
        self._lock = threading.Lock()

    def reset(self) -> None:
        self.reset_calls += 1

    def ping(self) -> None:
        self.ping_calls += 1
        if self.fail_ping is not None:
            raise self.fail_ping

    def add_source(self, record: dict, vector: list[float], content: str | None = None) -> bool:
        with self._lock:
            self.write_calls += 1
            if self.fail_writes is not None:
                raise self.fail_writes
            content_hash = record.get("content_hash")
            for other_id, other in self.records.items():
                if other_id != record["id"] and content_hash and other["content_hash"] == content_hash:
                    return False
            stored = content if content and len(content.encode()) <= MAX_REMOTE_CONTENT_BYTES else ""
            self.records[record["id"]] = {
                **record,
                "source_path": record.get("source_path") or "",
                "vector": vector,
                "content": stored,
                "has_full_content": bool(stored),
            }
            return True

    def _lookup(self) -> None:
        self.lookup_calls += 1
        if self.fail_lookups is not None:
            raise self.fail_lookups

    def check_content_hash_exists(self, content_hash: str) -> bool:
        self._lookup()
        return any(r["content_hash"] == content_hash for r in self.records.values())

    def get_existing_content_hashes(self, hashes: list[str]) -> set[str]:
        self._lookup()
        known = {r["content_hash"] for r in self.records.values()}
        return set(hashes) & known

    def get_source_path_mappings(self, paths: list[str]) -> dict[str, dict[str, str]]:
        self._lookup()
        wanted = set(paths)
        return {
            r["source_path"]: {"id": source_id, "content_hash": r["content_hash"]}
            for source_id, r in self.records.items()
            if r["source_path"] in wanted
        }

    def get_all_source_ids(self) -> set[str]:
        self._lookup()
        return set(self.records)

    def get_sources_with_paths(self) -> list[dict[str, str]]:
        self._lookup()
        return [
            {"id": source_id, "source_path": r["source_path"]}
            for source_id, r in self.records.items()
            if r["source_path"]
        ]

    def get_source_content_map(self, source_ids: list[str]) -> dict[str, str]:
        self._lookup()
        return {
            source_id: self.records[source_id]["content"]
            for source_id in source_ids
            if source_id in self.records and self.records[source_id]["content"]
        }

    def get_source_ids_without_content(self) -> list[str]:
        self._lookup()
        return [sid for sid, r in self.records.items() if not r["has_full_content"]]

    def backfill_source_content(self, contents: dict[str, str]) -> int:
        updated = 0
        for source_id, text in contents.items():
            record = self.records.get(source_id)
            if record is None or not text:
                continue
            record["content"] = text
            record["has_full_content"] = True
            updated += 1
        return updated


class FakeExtractor:
    """Counting extractor: title from the first line, summary from the text."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def extract(self, text: str, file_path, image=None) -> ExtractedMetadata:
        with self._lock:
            self.calls.append(str(file_path))
        first_line = text.strip().splitlines()[0] if text.strip() else Path(file_path).stem
        return ExtractedMetadata(
            title=first_line.lstrip("# ").strip() or Path(file_path).stem,
            summary=text.strip()[:200] or "empty",
            content_type="note",
        )


class FakeEmbedder:
    """Deterministic three-dimensional embeddings."""

    def __init__(self) -> None:
        self.calls = 0

    def generate_embedding(self, text: str) -> list[float]:
        self.calls += 1
        return [float(len(text) % 7), 1.0, 0.5]


def run_git(repo: Path, *args: str) -> subprocess.CompletedProcess:
    """Run git in repo, raising on failure."""
    return subprocess.run(
        ["git", *args],
        cwd=repo,
        capture_output=True,
        text=True,
        check=True,
    )


def init_git_repo(path: Path) -> Path:
    """Create a git repository on branch main with a test identity."""
    path.mkdir(parents=True, exist_ok=True)
    run_git(path, "init")
    run_git(path, "symbolic-ref", "HEAD", "refs/heads/main")
    run_git(path, "config", "user.email", "test@example.com")
    run_git(path, "config", "user.name", "Test User")
    run_git(path, "config", "commit.gpgsign", "false")
    return path


@pytest.fixture(autouse=True)
def git_identity(monkeypatch):
    """Fixed git identity, independent of the user's global config."""
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", os.devnull)
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test User")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test User")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "test@example.com")


@pytest.fixture
def git_cmd():
    """Run git in a repository, raising on failure."""
    return run_git


@pytest.fixture
def make_repo():
    """Create a git repository on branch main."""
    return init_git_repo


@pytest.fixture
def workspace():
    """Create a temporary directory for one test."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir).resolve()


@pytest.fixture
def data_dir(workspace):
    """Empty data directory with a sources/ folder."""
    path = workspace / "data"
    (path / "sources").mkdir(parents=True)
    return path


@pytest.fixture
def notes_dir(workspace):
    """Source directory for a sync source."""
    path = workspace / "notes"
    path.mkdir()
    return path


@pytest.fixture
def notes_source(notes_dir):
    """Enabled sync source over notes_dir, markdown only."""
    return SyncSource(name="Notes", path=str(notes_dir), glob="**/*.md", project="research")


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def fake_extractor():
    return FakeExtractor()


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()


@pytest.fixture
def git_repo(workspace):
    """Git repository with one initial commit."""
    repo = init_git_repo(workspace / "repo")
    (repo / "README.md").write_text("# Data\n")
    run_git(repo, "add", ".")
    run_git(repo, "commit", "-m", "Initial commit")
    return repo


@pytest.fixture
def git_remote(workspace, git_repo):
    """Bare remote that git_repo tracks on branch main."""
    remote = workspace / "remote.git"
    subprocess.run(
        ["git", "init", "--bare", str(remote)], capture_output=True, text=True, check=True
    )
    run_git(remote, "symbolic-ref", "HEAD", "refs/heads/main")
    run_git(git_repo, "remote", "add", "origin", str(remote))
    run_git(git_repo, "push", "-u", "origin", "main")
    return remote
