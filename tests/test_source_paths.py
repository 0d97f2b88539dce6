"""Tests for bundle path layout and the path index."""

import json
from datetime import datetime, timezone

from lore_knowledge.source_paths import (
    PathIndex,
    compute_source_path,
    extract_id_from_dir_name,
    sanitize_project,
)

SOURCE_ID = "0f8fad5b-d9cb-469f-a165-70867728950e"
OTHER_ID = "7c9e6679-7425-40de-944b-e07fc1f90ae7"


def make_bundle(data_dir, relative_path, source_id):
    """Create a minimal bundle with metadata.json."""
    bundle = data_dir / "sources" / relative_path
    bundle.mkdir(parents=True)
    (bundle / "metadata.json").write_text(json.dumps({"id": source_id, "title": "T"}))
    return bundle


class TestComputeSourcePath:
    """Tests for compute_source_path and helpers."""

    def test_layout(self):
        path = compute_source_path("Research", "Hello World", "2025-03-04T10:00:00+00:00", SOURCE_ID)
        assert path == "research/2025-03-04-hello-world-0f8fad5b"

    def test_non_iso_date_uses_today(self):
        today = datetime.now(timezone.utc).date().isoformat()
        assert compute_source_path("r", "Plan", "2024/03/15", SOURCE_ID) == (
            f"r/{today}-plan-0f8fad5b"
        )
        assert compute_source_path("r", "Plan", "", SOURCE_ID).startswith(f"r/{today}-")

    def test_sanitize_project(self):
        assert sanitize_project("../Evil/Project") == "evil-project"
        assert sanitize_project("My Project!") == "my-project"
        assert sanitize_project("...") == "uncategorized"

    def test_extract_id_from_dir_name(self):
        assert extract_id_from_dir_name(SOURCE_ID) == SOURCE_ID
        assert extract_id_from_dir_name("2025-03-04-hello-0f8fad5b") == "0f8fad5b"
        assert extract_id_from_dir_name("random-dir") is None


class TestPathIndex:
    """Tests for PathIndex."""

    def test_add_get_remove(self, data_dir):
        index = PathIndex(data_dir)
        index.add(SOURCE_ID, "research/2025-03-04-hello-0f8fad5b")
        assert index.get(SOURCE_ID) == "research/2025-03-04-hello-0f8fad5b"
        index.remove(SOURCE_ID)
        assert index.get(SOURCE_ID) is None

    def test_bulk_add(self, data_dir):
        index = PathIndex(data_dir)
        index.bulk_add({SOURCE_ID: "a/x-0f8fad5b", OTHER_ID: "a/y-7c9e6679"})
        assert index.load() == {SOURCE_ID: "a/x-0f8fad5b", OTHER_ID: "a/y-7c9e6679"}

    def test_resolve_prefers_index(self, data_dir):
        index = PathIndex(data_dir)
        index.add(SOURCE_ID, "research/2025-03-04-hello-0f8fad5b")
        assert index.resolve_source_dir(SOURCE_ID) == (
            data_dir / "sources" / "research" / "2025-03-04-hello-0f8fad5b"
        )

    def test_resolve_legacy_dir(self, data_dir):
        legacy = data_dir / "sources" / SOURCE_ID
        legacy.mkdir()
        assert PathIndex(data_dir).resolve_source_dir(SOURCE_ID) == legacy

    def test_resolve_from_metadata(self, data_dir):
        metadata = {"project": "Research", "title": "Hello", "created_at": "2025-03-04"}
        resolved = PathIndex(data_dir).resolve_source_dir(SOURCE_ID, metadata)
        assert resolved == data_dir / "sources" / "research" / "2025-03-04-hello-0f8fad5b"

    def test_rebuild_reproduces_mapping(self, data_dir):
        """Test that deleting the index and rebuilding yields the same map."""
        index = PathIndex(data_dir)
        make_bundle(data_dir, "research/2025-03-04-hello-0f8fad5b", SOURCE_ID)
        make_bundle(data_dir, "other/2025-03-05-world-7c9e6679", OTHER_ID)
        index.bulk_add(
            {
                SOURCE_ID: "research/2025-03-04-hello-0f8fad5b",
                OTHER_ID: "other/2025-03-05-world-7c9e6679",
            }
        )
        before = index.load()

        index.index_path.unlink()
        assert index.needs_rebuild() is True
        counts = index.rebuild()

        assert index.load() == before
        assert counts == {"total": 2, "new_format": 2, "legacy": 0}

    def test_rebuild_counts_legacy_and_skips_corrupt(self, data_dir):
        (data_dir / "sources" / SOURCE_ID).mkdir()
        broken = data_dir / "sources" / "research" / "2025-03-04-broken-7c9e6679"
        broken.mkdir(parents=True)
        (broken / "metadata.json").write_text("{not json")

        counts = PathIndex(data_dir).rebuild()

        assert counts == {"total": 1, "new_format": 0, "legacy": 1}
        assert PathIndex(data_dir).load() == {}

    def test_needs_rebuild_on_conflict_markers(self, data_dir):
        index = PathIndex(data_dir)
        index.index_path.write_text("<<<<<<< HEAD\n{}\n=======\n{}\n>>>>>>> theirs\n")
        assert index.needs_rebuild() is True
        assert index.load() == {}

    def test_needs_rebuild_false_for_empty_data_dir(self, data_dir):
        assert PathIndex(data_dir).needs_rebuild() is False
