"""Human-friendly on-disk layout for source bundles.

Bundles live at ``sources/<project>/<YYYY-MM-DD>-<slug>-<id[:8]>/``. The
path index (``sources/.paths.json``) maps full source ids to those relative
paths. It is only a cache: ``PathIndex.rebuild`` reconstructs it from the
``metadata.json`` files on disk. Older data directories used
``sources/<uuid>/`` and are still resolved.
"""

import json
import logging
import re
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from lore_knowledge.utils import ISO_DATE_PATTERN, slugify

logger = logging.getLogger(__name__)

SOURCES_DIRNAME = "sources"
PATH_INDEX_FILENAME = ".paths.json"

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
SHORT_ID_PATTERN = re.compile(r"^[0-9a-f]{8}$", re.IGNORECASE)


def sanitize_project(project: str) -> str:
    """Turn a project name into a safe single path segment.

    Args:
        project: Raw project name.

    Returns:
        Sanitized segment, or "uncategorized" when nothing usable remains.
    """
    segment = project.lower()
    segment = re.sub(r"[/\\]", "-", segment)
    segment = re.sub(r"\.{2,}", "", segment)
    segment = segment.strip(".")
    segment = re.sub(r"[^a-z0-9._-]", "-", segment)
    segment = re.sub(r"-+", "-", segment)
    segment = segment.strip("-")
    return segment or "uncategorized"


def compute_source_path(project: str, title: str, created_at: str, source_id: str) -> str:
    """Compute the bundle path relative to ``sources/``.

    The id fragment keeps the path unique when titles collide.

    Args:
        project: Project the source belongs to.
        title: Source title.
        created_at: ISO timestamp; only the date part is used. Today's
            date stands in when it does not start with ``YYYY-MM-DD``.
        source_id: Full source id.

    Returns:
        Relative path ``<project>/<YYYY-MM-DD>-<slug>-<id[:8]>``.
    """
    date = created_at[:10] if isinstance(created_at, str) else ""
    if not ISO_DATE_PATTERN.match(date):
        date = datetime.now(timezone.utc).date().isoformat()
    dir_name = f"{date}-{slugify(title)}-{source_id[:8]}"
    return f"{sanitize_project(project)}/{dir_name}"


def extract_id_from_dir_name(dir_name: str) -> str | None:
    """Extract the source id (or id prefix) from a bundle directory name.

    Args:
        dir_name: Directory name, legacy UUID or ``date-slug-xxxxxxxx``.

    Returns:
        The full UUID for legacy names, the 8-char prefix for new-format
        names, or None when the name matches neither.
    """
    if UUID_PATTERN.match(dir_name):
        return dir_name
    short_id = dir_name[-8:]
    if SHORT_ID_PATTERN.match(short_id):
        return short_id
    return None


def load_bundle_metadata(bundle_dir: Path) -> dict[str, Any] | None:
    """Read a bundle's metadata.json, returning None when missing or corrupt."""
    try:
        with open(bundle_dir / "metadata.json") as f:
            metadata = json.load(f)
    except (json.JSONDecodeError, OSError):
        return None
    return metadata if isinstance(metadata, dict) else None


class PathIndex:
    """Persisted ``{source_id: relative_path}`` map for one data directory.

    Every modification re-reads the file from disk under an in-process lock,
    so concurrent writers in the processing pool never drop each other's
    entries.
    """

    def __init__(self, data_dir: str | Path) -> None:
        """Initialize the path index.

        Args:
            data_dir: Data directory containing ``sources/``.
        """
        self.data_dir = Path(data_dir)
        self.sources_dir = self.data_dir / SOURCES_DIRNAME
        self.index_path = self.sources_dir / PATH_INDEX_FILENAME
        self._lock = threading.Lock()

    def load(self) -> dict[str, str]:
        """Load the index from disk.

        Returns:
            The id to relative path map. Empty if the file is missing or corrupt.
        """
        try:
            with open(self.index_path) as f:
                index = json.load(f)
        except FileNotFoundError:
            return {}
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Path index %s unreadable, treating as empty: %s", self.index_path, e)
            return {}
        return index if isinstance(index, dict) else {}

    def needs_rebuild(self) -> bool:
        """True when the index file is corrupt (e.g. merge conflict markers)
        or missing while bundles exist on disk."""
        if not self.index_path.exists():
            return any(bundle.parent != self.sources_dir for bundle in self.iter_bundle_dirs())
        try:
            with open(self.index_path) as f:
                return not isinstance(json.load(f), dict)
        except (json.JSONDecodeError, OSError):
            return True

    def save(self, index: dict[str, str]) -> None:
        """Write the index to disk.

        Args:
            index: Full id to relative path map.
        """
        self.sources_dir.mkdir(parents=True, exist_ok=True)
        with open(self.index_path, "w") as f:
            json.dump(index, f, indent=2, sort_keys=True)
            f.write("\n")

    def add(self, source_id: str, relative_path: str) -> None:
        """Record one bundle location."""
        with self._lock:
            index = self.load()
            index[source_id] = relative_path
            self.save(index)

    def remove(self, source_id: str) -> None:
        """Forget one bundle location. No-op when the id is unknown."""
        with self._lock:
            index = self.load()
            if source_id in index:
                del index[source_id]
                self.save(index)

    def bulk_add(self, entries: dict[str, str]) -> None:
        """Record many bundle locations with a single read-modify-write."""
        if not entries:
            return
        with self._lock:
            index = self.load()
            index.update(entries)
            self.save(index)

    def get(self, source_id: str) -> str | None:
        """Relative path recorded for source_id, if any."""
        return self.load().get(source_id)

    def resolve_source_dir(self, source_id: str, metadata: dict[str, Any] | None = None) -> Path:
        """Resolve a source id to its bundle directory.

        Resolution order: the index, then the legacy ``sources/<uuid>/``
        directory, then a path computed from metadata (write path). The index
        is not updated here; callers add the entry once the bundle exists.

        Args:
            source_id: Full source id.
            metadata: Optional dict with ``project``, ``title``, ``created_at``.

        Returns:
            Absolute bundle directory (may not exist yet).
        """
        relative = self.get(source_id)
        if relative:
            return self.sources_dir / relative

        legacy_dir = self.sources_dir / source_id
        if legacy_dir.exists():
            return legacy_dir

        if metadata:
            return self.sources_dir / compute_source_path(
                metadata["project"], metadata["title"], metadata["created_at"], source_id
            )

        return legacy_dir

    def iter_bundle_dirs(self) -> list[Path]:
        """List every bundle directory on disk, legacy and new format."""
        bundles: list[Path] = []
        if not self.sources_dir.is_dir():
            return bundles
        for entry in sorted(self.sources_dir.iterdir()):
            if not entry.is_dir() or entry.name.startswith("."):
                continue
            if UUID_PATTERN.match(entry.name):
                bundles.append(entry)
                continue
            try:
                subdirs = sorted(entry.iterdir())
            except OSError:
                continue
            for sub in subdirs:
                if sub.is_dir() and not sub.name.startswith("."):
                    if SHORT_ID_PATTERN.match(sub.name[-8:]):
                        bundles.append(sub)
        return bundles

    def rebuild(self) -> dict[str, int]:
        """Rebuild the index by scanning bundle directories on disk.

        New-format bundles are indexed from their ``metadata.json``; bundles
        with missing or corrupt metadata are skipped. Legacy UUID directories
        are counted but not indexed since ``resolve_source_dir`` finds them
        directly.

        Returns:
            Counts ``{"total", "new_format", "legacy"}``.
        """
        index: dict[str, str] = {}
        new_format = 0
        legacy = 0

        for bundle_dir in self.iter_bundle_dirs():
            if bundle_dir.parent == self.sources_dir:
                legacy += 1
                continue
            metadata = load_bundle_metadata(bundle_dir)
            if not metadata or not metadata.get("id"):
                logger.debug("Skipping %s: no usable metadata.json", bundle_dir)
                continue
            index[metadata["id"]] = f"{bundle_dir.parent.name}/{bundle_dir.name}"
            new_format += 1

        with self._lock:
            self.save(index)
        logger.info("Rebuilt path index: %d new-format, %d legacy", new_format, legacy)
        return {"total": new_format + legacy, "new_format": new_format, "legacy": legacy}
