"""Blocklist of content hashes belonging to deleted sources.

The blocklist lives at ``<data_dir>/deleted-hashes.json`` and is tracked by
git, so a deletion on one machine stops the same content from being
re-ingested on every other machine.
"""

import json
import logging
from pathlib import Path

from lore_knowledge._locking import file_lock

logger = logging.getLogger(__name__)

BLOCKLIST_FILENAME = "deleted-hashes.json"


def blocklist_path(data_dir: str | Path) -> Path:
    """Location of the blocklist file inside a data directory."""
    return Path(data_dir) / BLOCKLIST_FILENAME


def _lock_path(data_dir: str | Path) -> Path:
    return Path(data_dir) / ".deleted-hashes.lock"


def load_blocklist(data_dir: str | Path) -> set[str]:
    """Load the set of blocked content hashes.

    Args:
        data_dir: Data directory.

    Returns:
        Set of hashes. Empty when the file is missing or unreadable.
    """
    path = blocklist_path(data_dir)
    if not path.exists():
        return set()
    try:
        with open(path) as f:
            hashes = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Ignoring unreadable blocklist %s: %s", path, e)
        return set()
    if not isinstance(hashes, list):
        return set()
    return {h for h in hashes if isinstance(h, str)}


def _save_blocklist(data_dir: str | Path, hashes: set[str]) -> None:
    path = blocklist_path(data_dir)
    with open(path, "w") as f:
        json.dump(sorted(hashes), f, indent=2)
        f.write("\n")


def add_to_blocklist(data_dir: str | Path, *hashes: str | None) -> bool:
    """Add one or more content hashes to the blocklist.

    Falsy values are skipped. The file is only rewritten when the set
    actually changes.

    Args:
        data_dir: Data directory.
        *hashes: Content hashes to block.

    Returns:
        True if the blocklist changed.
    """
    with file_lock(_lock_path(data_dir)):
        existing = load_blocklist(data_dir)
        new_hashes = {h for h in hashes if h and h not in existing}
        if not new_hashes:
            return False
        _save_blocklist(data_dir, existing | new_hashes)
    logger.debug("Blocked %d hash(es)", len(new_hashes))
    return True


def remove_from_blocklist(data_dir: str | Path, content_hash: str) -> bool:
    """Remove a content hash from the blocklist (restore of a deleted source).

    Args:
        data_dir: Data directory.
        content_hash: Hash to unblock.

    Returns:
        True if the hash was present and removed.
    """
    with file_lock(_lock_path(data_dir)):
        existing = load_blocklist(data_dir)
        if content_hash not in existing:
            return False
        existing.discard(content_hash)
        _save_blocklist(data_dir, existing)
    return True
