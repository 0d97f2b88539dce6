"""Processing: the paid second phase of a sync run.

Each new or edited file is preprocessed, sent once to the metadata
extractor, written to disk as a source bundle, then embedded and written to
the store. The bundle is always written first; a failed disk write means the
store is never called and the file is retried from scratch next time.

An authorization failure from the store stops the run: no further batch is
started and ``AuthorizationError`` propagates to the caller.
"""

import json
import logging
import shutil
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from lore_knowledge._embedding import create_searchable_text
from lore_knowledge.errors import AuthorizationError
from lore_knowledge.events import EventBus, SourceCreatedEvent
from lore_knowledge.extractor import ExtractedMetadata
from lore_knowledge.processors import process_file
from lore_knowledge.source_paths import PathIndex, compute_source_path
from lore_knowledge.utils import generate_source_id, normalize_date, utc_now_iso

if TYPE_CHECKING:
    from lore_knowledge.discover import DiscoveredFile
    from lore_knowledge.extractor import MetadataExtractor
    from lore_knowledge.processors import ProcessedContent
    from lore_knowledge.store import SourceStore

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 2
DEFAULT_BATCH_DELAY = 0.5


class Embedder(Protocol):
    def generate_embedding(self, text: str) -> list[float]: ...


@dataclass
class ProcessedFile:
    """A file that made it to disk and into the store."""

    file: "DiscoveredFile"
    metadata: ExtractedMetadata
    source_id: str
    relative_path: str


@dataclass
class ProcessError:
    """A file-scoped failure."""

    file: "DiscoveredFile"
    error: str


@dataclass
class ProcessResult:
    """Outcome of one processing phase."""

    processed: list[ProcessedFile] = field(default_factory=list)
    errors: list[ProcessError] = field(default_factory=list)
    skipped: list["DiscoveredFile"] = field(default_factory=list)

    @property
    def titles(self) -> list[str]:
        return [p.metadata.title for p in self.processed]


class _FileOutcome:
    """What happened to one file inside a batch."""

    def __init__(
        self,
        processed: ProcessedFile | None = None,
        error: str | None = None,
        skipped: bool = False,
        auth_error: AuthorizationError | None = None,
    ) -> None:
        self.processed = processed
        self.error = error
        self.skipped = skipped
        self.auth_error = auth_error


def write_bundle(
    bundle_dir: Path,
    source_id: str,
    file: "DiscoveredFile",
    metadata: ExtractedMetadata,
    content_text: str,
    created_at: str,
    is_image: bool,
) -> None:
    """Write a source bundle: original copy, content.md, insights.json, metadata.json.

    metadata.json is written last so a readable metadata file implies a
    complete bundle.

    Raises:
        OSError: If any write fails.
    """
    bundle_dir.mkdir(parents=True, exist_ok=True)
    original = Path(file.absolute_path)
    if not is_image:
        shutil.copyfile(original, bundle_dir / f"original{original.suffix.lower()}")

    (bundle_dir / "content.md").write_text(content_text, encoding="utf-8")

    with open(bundle_dir / "insights.json", "w") as f:
        json.dump({"summary": metadata.summary, "themes": [], "quotes": []}, f, indent=2)

    source_metadata = {
        "id": source_id,
        "title": metadata.title,
        "source_type": "document",
        "content_type": metadata.content_type,
        "created_at": created_at,
        "imported_at": utc_now_iso(),
        "projects": [file.project],
        "tags": [],
        "participants": metadata.participants,
        "source_path": file.absolute_path,
        "content_hash": file.content_hash,
        "sync_source": file.source_name,
        "original_file": file.relative_path,
    }
    with open(bundle_dir / "metadata.json", "w") as f:
        json.dump(source_metadata, f, indent=2)


class ProcessingPipeline:
    """Runs extraction, bundle writes and store writes for discovered files."""

    def __init__(
        self,
        data_dir: str | Path,
        store: "SourceStore",
        extractor: "MetadataExtractor",
        embedder: Embedder,
        events: EventBus | None = None,
        path_index: PathIndex | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            data_dir: Data directory holding ``sources/``.
            store: Store receiving source records.
            extractor: Metadata extractor (one call per file).
            embedder: Embedding service for summaries.
            events: Bus receiving SourceCreated events.
            path_index: Path index of data_dir. Created if omitted.
        """
        self.data_dir = Path(data_dir)
        self.store = store
        self.extractor = extractor
        self.embedder = embedder
        self.events = events
        self.path_index = path_index or PathIndex(self.data_dir)

    @staticmethod
    def _settle_metadata(
        file: "DiscoveredFile", metadata: ExtractedMetadata, processed: "ProcessedContent"
    ) -> None:
        """Coerce extractor output to strings and fill gaps from the file itself.

        The title the file declares (front matter, first H1, HTML ``<title>``)
        replaces a title that is only the file name.
        """
        path = Path(file.absolute_path)
        title = str(metadata.title).strip() if metadata.title is not None else ""
        placeholders = {"", path.name, path.stem, path.stem.replace("_", " ").strip()}
        if title in placeholders and processed.title and processed.title.strip():
            title = processed.title.strip()
        metadata.title = title or path.name
        metadata.summary = str(metadata.summary) if metadata.summary is not None else ""
        metadata.date = normalize_date(metadata.date) or processed.date

    def process_one(self, file: "DiscoveredFile") -> _FileOutcome:
        """Process a single file. Never raises."""
        try:
            processed = process_file(file.absolute_path)
            metadata = self.extractor.extract(
                processed.text, file.absolute_path, image=processed.image
            )
        except Exception as e:
            logger.error("Extraction failed for %s: %s", file.relative_path, e)
            return _FileOutcome(error=f"Extraction failed: {e}")

        try:
            self._settle_metadata(file, metadata, processed)
            content_text = (
                f"# {metadata.title}\n\n{metadata.summary}" if processed.is_image else processed.text
            )
            source_id = file.existing_id or generate_source_id()
            created_at = metadata.date or utc_now_iso()

            relative_path = compute_source_path(file.project, metadata.title, created_at, source_id)
            bundle_dir = self.path_index.sources_dir / relative_path
            previous_dir = (
                self.path_index.resolve_source_dir(source_id) if file.existing_id else None
            )
            fresh_bundle = not bundle_dir.exists()
        except Exception as e:
            logger.error("Could not prepare %s: %s", file.relative_path, e)
            return _FileOutcome(error=f"Invalid metadata: {e}")

        try:
            write_bundle(
                bundle_dir, source_id, file, metadata, content_text, created_at, processed.is_image
            )
        except OSError as e:
            logger.error("Disk write failed for %s: %s", file.relative_path, e)
            if fresh_bundle:
                shutil.rmtree(bundle_dir, ignore_errors=True)
            return _FileOutcome(error=f"Disk write failed: {e}")

        record = {
            "id": source_id,
            "title": metadata.title,
            "source_type": "document",
            "content_type": metadata.content_type,
            "created_at": created_at,
            "projects": [file.project],
            "tags": [],
            "content_hash": file.content_hash,
            "source_path": file.absolute_path,
            "source_name": file.source_name,
            "summary": metadata.summary,
        }
        try:
            searchable = create_searchable_text(metadata.summary, file.project)
            vector = self.embedder.generate_embedding(searchable)
            written = self.store.add_source(record, vector, content=content_text)
        except AuthorizationError as e:
            if fresh_bundle:
                shutil.rmtree(bundle_dir, ignore_errors=True)
            return _FileOutcome(auth_error=e)
        except Exception as e:
            # The bundle stays on disk; the legacy scan indexes it later.
            logger.error("Indexing failed for %s: %s", file.relative_path, e)
            return _FileOutcome(error=f"Indexing failed: {e}")

        if not written:
            logger.info("Skipping %s: content already indexed", file.relative_path)
            if fresh_bundle:
                shutil.rmtree(bundle_dir, ignore_errors=True)
            return _FileOutcome(skipped=True)

        self.path_index.add(source_id, relative_path)
        if previous_dir is not None and previous_dir != bundle_dir and previous_dir.exists():
            shutil.rmtree(previous_dir, ignore_errors=True)

        if self.events is not None:
            self.events.publish(
                SourceCreatedEvent(
                    id=source_id,
                    title=metadata.title,
                    content_type=metadata.content_type,
                    created_at=created_at,
                    projects=[file.project],
                    tags=[],
                    source_path=file.absolute_path,
                    content_hash=file.content_hash,
                    sync_source=file.source_name,
                    original_file=file.relative_path,
                )
            )

        return _FileOutcome(
            processed=ProcessedFile(
                file=file, metadata=metadata, source_id=source_id, relative_path=relative_path
            )
        )

    def run(
        self,
        files: list["DiscoveredFile"],
        concurrency: int = DEFAULT_CONCURRENCY,
        batch_delay: float = DEFAULT_BATCH_DELAY,
        on_progress: Callable[[int, int, str], None] | None = None,
    ) -> ProcessResult:
        """Process files in concurrent batches.

        Args:
            files: New and edited files from discovery.
            concurrency: Files per batch (and worker threads).
            batch_delay: Seconds to wait between batches.
            on_progress: Called with ``(completed, total, label)`` per file.

        Returns:
            ProcessResult with processed files and file-scoped errors.

        Raises:
            AuthorizationError: If the store rejected our credentials. The
                current batch finishes; no later batch starts.
        """
        result = ProcessResult()
        if not files:
            return result
        concurrency = max(1, concurrency)
        completed = 0

        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="lore-process") as pool:
            for start in range(0, len(files), concurrency):
                batch = files[start : start + concurrency]
                outcomes = list(pool.map(self.process_one, batch))

                auth_error = None
                for file, outcome in zip(batch, outcomes):
                    completed += 1
                    if outcome.auth_error is not None:
                        auth_error = auth_error or outcome.auth_error
                        continue
                    if outcome.processed is not None:
                        result.processed.append(outcome.processed)
                        label = outcome.processed.metadata.title
                    elif outcome.skipped:
                        result.skipped.append(file)
                        label = f"Skipped: {file.relative_path}"
                    else:
                        result.errors.append(ProcessError(file=file, error=outcome.error or ""))
                        label = f"Error: {file.relative_path}"
                    if on_progress:
                        on_progress(completed, len(files), label)

                if auth_error is not None:
                    logger.error(
                        "Store authorization failed, aborting %d remaining file(s)",
                        len(files) - start - len(batch),
                    )
                    raise auth_error

                if start + concurrency < len(files) and batch_delay > 0:
                    time.sleep(batch_delay)

        return result


def process_files(
    files: list["DiscoveredFile"],
    data_dir: str | Path,
    *,
    store: "SourceStore",
    extractor: "MetadataExtractor",
    embedder: Embedder,
    events: EventBus | None = None,
    concurrency: int = DEFAULT_CONCURRENCY,
    batch_delay: float = DEFAULT_BATCH_DELAY,
    on_progress: Callable[[int, int, str], None] | None = None,
) -> ProcessResult:
    """Convenience wrapper around ``ProcessingPipeline.run``."""
    pipeline = ProcessingPipeline(data_dir, store, extractor, embedder, events=events)
    return pipeline.run(
        files, concurrency=concurrency, batch_delay=batch_delay, on_progress=on_progress
    )
