"""File discovery: the free first phase of a sync run.

Discovery walks each sync source, hashes every matching file and classifies
it against the store with two batched reads. It never calls the metadata
extractor, so it is cheap enough to run on every file-system event.
"""

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from lore_knowledge.blocklist import load_blocklist
from lore_knowledge.errors import StoreError
from lore_knowledge.glob_matcher import matches_glob
from lore_knowledge.utils import compute_file_hash

if TYPE_CHECKING:
    from lore_knowledge._config import SyncSource
    from lore_knowledge.store import SourceStore

logger = logging.getLogger(__name__)

SKIPPED_DIRS = {"node_modules", "__pycache__"}


@dataclass
class DiscoveredFile:
    """A file found under a sync source, with its content hash."""

    absolute_path: str
    relative_path: str
    content_hash: str
    size: int
    modified_at: datetime
    source_name: str
    project: str
    existing_id: str | None = None

    @property
    def is_edit(self) -> bool:
        return self.existing_id is not None


@dataclass
class DiscoveryResult:
    """Classification of every file under one source."""

    source: "SyncSource"
    total_files: int = 0
    new_files: list[DiscoveredFile] = field(default_factory=list)
    edited_files: list[DiscoveredFile] = field(default_factory=list)
    existing_files: int = 0
    blocked_files: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def pending_files(self) -> list[DiscoveredFile]:
        """Files that need processing: new first, then edits."""
        return self.new_files + self.edited_files


def list_matching_files(root: Path, glob: str) -> list[tuple[Path, str]]:
    """Walk root and collect files whose relative path matches glob.

    Hidden files and directories, ``node_modules`` and ``__pycache__`` are
    skipped.

    Args:
        root: Source directory.
        glob: Glob pattern applied to the path relative to root.

    Returns:
        Sorted ``(absolute_path, relative_path)`` pairs, relative paths
        using ``/`` separators.
    """
    matches = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d for d in dirnames if not d.startswith(".") and d not in SKIPPED_DIRS
        )
        for name in sorted(filenames):
            if name.startswith("."):
                continue
            absolute = Path(dirpath) / name
            relative = absolute.relative_to(root).as_posix()
            if matches_glob(relative, glob):
                matches.append((absolute, relative))
    return matches


def discover_source(
    source: "SyncSource",
    store: "SourceStore",
    blocklist: set[str] | None = None,
    seen_hashes: set[str] | None = None,
) -> DiscoveryResult:
    """Discover and classify the files of one sync source.

    Every file lands in exactly one bucket: existing (hash already indexed,
    or already seen earlier in this run), blocked (hash deleted by the
    user, counted as existing), edited (path known under a different hash)
    or new.

    Args:
        source: The sync source to scan.
        store: Store used for the two batched lookups.
        blocklist: Blocked content hashes. Loaded by the caller once per run.
        seen_hashes: Hashes already queued earlier in this run; updated in place.

    Returns:
        DiscoveryResult. A missing directory yields an empty result with
        an error string.
    """
    result = DiscoveryResult(source=source)
    blocklist = blocklist or set()
    if seen_hashes is None:
        seen_hashes = set()
    root = source.expanded_path

    if not root.is_dir():
        result.errors.append(f"Directory not found: {root}")
        return result

    try:
        matching = list_matching_files(root, source.glob)
    except OSError as e:
        result.errors.append(f"Error scanning directory: {e}")
        return result

    result.total_files = len(matching)
    if not matching:
        return result

    files: list[DiscoveredFile] = []
    for absolute, relative in matching:
        try:
            stat = absolute.stat()
            content_hash = compute_file_hash(absolute)
        except OSError as e:
            result.errors.append(f"Error processing {absolute}: {e}")
            continue
        files.append(
            DiscoveredFile(
                absolute_path=str(absolute),
                relative_path=relative,
                content_hash=content_hash,
                size=stat.st_size,
                modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                source_name=source.name,
                project=source.project,
            )
        )

    try:
        existing_hashes = store.get_existing_content_hashes([f.content_hash for f in files])
        path_mappings = store.get_source_path_mappings([f.absolute_path for f in files])
    except StoreError as e:
        result.errors.append(f"Store lookup failed: {e}")
        return result

    for file in files:
        if file.content_hash in existing_hashes or file.content_hash in seen_hashes:
            result.existing_files += 1
        elif file.content_hash in blocklist:
            result.existing_files += 1
            result.blocked_files += 1
        elif file.absolute_path in path_mappings:
            file.existing_id = path_mappings[file.absolute_path]["id"]
            result.edited_files.append(file)
        else:
            result.new_files.append(file)
        seen_hashes.add(file.content_hash)

    logger.debug(
        "Discovered %s: %d files, %d new, %d edited, %d existing",
        source.name,
        result.total_files,
        len(result.new_files),
        len(result.edited_files),
        result.existing_files,
    )
    return result


def discover_all_sources(
    sources: list["SyncSource"],
    store: "SourceStore",
    data_dir: str | Path | None = None,
    on_source_start: Callable[["SyncSource"], None] | None = None,
    on_source_complete: Callable[[DiscoveryResult], None] | None = None,
) -> list[DiscoveryResult]:
    """Discover every enabled source, one after another.

    Args:
        sources: Configured sources; disabled ones are skipped.
        store: Store used for lookups.
        data_dir: Data directory holding the blocklist.
        on_source_start: Called before each source is scanned.
        on_source_complete: Called with each source's result.

    Returns:
        One DiscoveryResult per enabled source.
    """
    blocklist = load_blocklist(data_dir) if data_dir else set()
    seen_hashes: set[str] = set()
    results = []
    for source in sources:
        if not source.enabled:
            continue
        if on_source_start:
            on_source_start(source)
        result = discover_source(source, store, blocklist=blocklist, seen_hashes=seen_hashes)
        if on_source_complete:
            on_source_complete(result)
        results.append(result)
    return results


def summarize_discovery(results: list[DiscoveryResult]) -> dict[str, int]:
    """Aggregate counts across sources."""
    return {
        "sources_scanned": len(results),
        "total_files": sum(r.total_files for r in results),
        "new_files": sum(len(r.new_files) for r in results),
        "edited_files": sum(len(r.edited_files) for r in results),
        "existing_files": sum(r.existing_files for r in results),
        "errors": sum(len(r.errors) for r in results),
    }
