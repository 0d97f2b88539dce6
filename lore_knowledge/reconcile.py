"""Reconciliation between the store and the local data directory.

Two repair passes run after processing on every sync:

- ``legacy_disk_sync`` indexes bundles that are on disk but missing from the
  store (a failed store write, or content ingested by older versions into
  ``sources/<uuid>/``).
- ``reconcile_local_content`` makes sure every indexed source has a real
  local ``content.md``, and uploads local content the store is missing.

Both are best-effort. A single bad file is skipped and retried next run.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from lore_knowledge._embedding import create_searchable_text
from lore_knowledge.blocklist import load_blocklist
from lore_knowledge.errors import AuthorizationError, StoreError
from lore_knowledge.source_paths import PathIndex, load_bundle_metadata

if TYPE_CHECKING:
    from lore_knowledge.process import Embedder
    from lore_knowledge.store import SourceStore

logger = logging.getLogger(__name__)

STUB_MARKER = "<!-- lore:stub -->"
TEXT_EXTENSIONS = {
    ".md",
    ".txt",
    ".json",
    ".jsonl",
    ".csv",
    ".xml",
    ".yaml",
    ".yml",
    ".html",
    ".log",
}
FALLBACK_SUMMARY_CHARS = 500


def is_real_content(text: str | None) -> bool:
    """Content that is neither empty nor a placeholder stub."""
    return bool(text and text.strip()) and not text.startswith(STUB_MARKER)


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None


def _write_content(bundle_dir: Path, content: str) -> bool:
    try:
        bundle_dir.mkdir(parents=True, exist_ok=True)
        (bundle_dir / "content.md").write_text(content, encoding="utf-8")
    except OSError as e:
        logger.warning("Could not write %s/content.md: %s", bundle_dir, e)
        return False
    return True


def reconcile_local_content(
    data_dir: str | Path, store: "SourceStore", path_index: PathIndex | None = None
) -> int:
    """Ensure every indexed source has a real local content.md.

    Resolution order per source: keep real local content; copy the original
    file when it still exists and is a text format; otherwise fetch stored
    content from the store in one batched call. Finally, local content is
    uploaded for sources indexed before the store kept full text.

    Args:
        data_dir: Data directory.
        store: Source store.
        path_index: Path index of data_dir. Created if omitted.

    Returns:
        Number of content.md files written.
    """
    path_index = path_index or PathIndex(data_dir)
    try:
        all_ids = store.get_all_source_ids()
        if not all_ids:
            return 0
        path_map = {s["id"]: s["source_path"] for s in store.get_sources_with_paths()}
    except (StoreError, AuthorizationError) as e:
        logger.warning("Skipping reconciliation: %s", e)
        return 0

    reconciled = 0
    missing: dict[str, Path] = {}
    for source_id in sorted(all_ids):
        bundle_dir = path_index.resolve_source_dir(source_id)
        content_path = bundle_dir / "content.md"
        if content_path.exists() and is_real_content(_read_text(content_path)):
            continue

        source_path = path_map.get(source_id)
        if source_path:
            original = Path(source_path)
            if original.suffix.lower() in TEXT_EXTENSIONS and original.is_file():
                content = _read_text(original)
                if content and _write_content(bundle_dir, content):
                    reconciled += 1
                    continue

        missing[source_id] = bundle_dir

    if missing:
        try:
            remote_content = store.get_source_content_map(list(missing))
        except (StoreError, AuthorizationError) as e:
            logger.warning("Could not fetch stored content: %s", e)
            remote_content = {}
        for source_id, content in remote_content.items():
            if is_real_content(content) and _write_content(missing[source_id], content):
                reconciled += 1

    try:
        backfill = {}
        for source_id in store.get_source_ids_without_content():
            content = _read_text(path_index.resolve_source_dir(source_id) / "content.md")
            if is_real_content(content):
                backfill[source_id] = content
        if backfill:
            updated = store.backfill_source_content(backfill)
            logger.info("Backfilled stored content for %d source(s)", updated)
    except (StoreError, AuthorizationError) as e:
        logger.warning("Content backfill skipped: %s", e)

    if reconciled:
        logger.info("Reconciled local content for %d source(s)", reconciled)
    return reconciled


@dataclass
class LegacySyncResult:
    """Counts from a legacy disk scan."""

    sources_found: int = 0
    sources_indexed: int = 0
    already_indexed: int = 0


def _load_summary(bundle_dir: Path, content: str) -> str:
    try:
        with open(bundle_dir / "insights.json") as f:
            summary = json.load(f).get("summary")
        if summary:
            return summary
    except (json.JSONDecodeError, OSError, AttributeError):
        pass
    if len(content) > FALLBACK_SUMMARY_CHARS:
        return content[:FALLBACK_SUMMARY_CHARS] + "..."
    return content


def legacy_disk_sync(
    data_dir: str | Path,
    store: "SourceStore",
    embedder: "Embedder",
    path_index: PathIndex | None = None,
) -> LegacySyncResult:
    """Index bundles that exist on disk but not in the store.

    Covers both legacy ``sources/<uuid>/`` directories and new-format
    bundles whose store write failed. Bundles whose content hash is
    blocklisted are left alone.

    Args:
        data_dir: Data directory.
        store: Source store.
        embedder: Embedding service for summaries.
        path_index: Path index of data_dir. Created if omitted.

    Returns:
        LegacySyncResult counts.
    """
    path_index = path_index or PathIndex(data_dir)
    result = LegacySyncResult()

    bundles: dict[str, tuple[Path, dict]] = {}
    for bundle_dir in path_index.iter_bundle_dirs():
        metadata = load_bundle_metadata(bundle_dir)
        if metadata and metadata.get("id"):
            bundles[metadata["id"]] = (bundle_dir, metadata)
    result.sources_found = len(bundles)
    if not bundles:
        return result

    try:
        indexed_ids = store.get_all_source_ids()
    except (StoreError, AuthorizationError) as e:
        logger.warning("Skipping legacy disk scan: %s", e)
        return result
    result.already_indexed = len(set(bundles) & indexed_ids)

    blocklist = load_blocklist(data_dir)
    new_entries = {}
    for source_id, (bundle_dir, metadata) in sorted(bundles.items()):
        if source_id in indexed_ids or metadata.get("content_hash") in blocklist:
            continue
        content = _read_text(bundle_dir / "content.md")
        if not is_real_content(content):
            continue

        summary = _load_summary(bundle_dir, content)
        projects = metadata.get("projects") or []
        record = {
            "id": source_id,
            "title": metadata.get("title", bundle_dir.name),
            "source_type": metadata.get("source_type", "document"),
            "content_type": metadata.get("content_type", "document"),
            "created_at": metadata.get("created_at", ""),
            "projects": projects,
            "tags": metadata.get("tags") or [],
            "content_hash": metadata.get("content_hash"),
            "source_path": metadata.get("source_path"),
            "source_name": metadata.get("sync_source"),
            "summary": summary,
        }
        try:
            project = projects[0] if projects else None
            vector = embedder.generate_embedding(create_searchable_text(summary, project))
            written = store.add_source(record, vector, content=content)
        except AuthorizationError as e:
            logger.error("Legacy disk scan stopped: %s", e)
            break
        except Exception as e:
            logger.warning("Could not index %s: %s", bundle_dir.name, e)
            continue

        if not written:
            continue
        result.sources_indexed += 1
        if bundle_dir.parent != path_index.sources_dir:
            new_entries[source_id] = f"{bundle_dir.parent.name}/{bundle_dir.name}"

    path_index.bulk_add(new_entries)
    if result.sources_indexed:
        logger.info("Indexed %d bundle(s) found on disk", result.sources_indexed)
    return result
