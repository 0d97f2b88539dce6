"""Sync orchestrator: one full pull, index, reconcile and push cycle."""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from lore_knowledge._locking import DEFAULT_FILE_LOCK_TIMEOUT, file_lock
from lore_knowledge.discover import discover_all_sources, summarize_discovery
from lore_knowledge.errors import AuthorizationError, StoreError
from lore_knowledge.git_sync import GitSynchronizer
from lore_knowledge.process import DEFAULT_BATCH_DELAY, DEFAULT_CONCURRENCY, ProcessingPipeline
from lore_knowledge.reconcile import legacy_disk_sync, reconcile_local_content
from lore_knowledge.source_paths import PathIndex

if TYPE_CHECKING:
    from lore_knowledge._config import ConfigManager, SyncSourceConfig
    from lore_knowledge.events import EventBus
    from lore_knowledge.extractor import MetadataExtractor
    from lore_knowledge.process import Embedder
    from lore_knowledge.store import SourceStore

logger = logging.getLogger(__name__)

RUN_LOCK_FILENAME = ".lore-sync.lock"


@dataclass
class SyncOptions:
    """What a sync run should do."""

    git_pull: bool = True
    git_push: bool = True
    index_new: bool = True
    dry_run: bool = False
    use_legacy: bool = False
    concurrency: int = DEFAULT_CONCURRENCY
    batch_delay: float = DEFAULT_BATCH_DELAY
    lock_timeout: float = DEFAULT_FILE_LOCK_TIMEOUT


@dataclass
class SyncRunResult:
    """Outcome of one sync run."""

    git_pulled: bool = False
    git_pushed: bool = False
    git_error: str | None = None
    discovery: dict[str, int] | None = None
    processing: dict[str, Any] | None = None
    sources_found: int = 0
    sources_indexed: int = 0
    already_indexed: int = 0
    reconciled: int = 0
    error: str | None = None
    file_errors: list[str] = field(default_factory=list)

    @property
    def files_processed(self) -> int:
        return self.processing["processed"] if self.processing else 0

    @property
    def files_scanned(self) -> int:
        return self.discovery["total_files"] if self.discovery else 0

    @property
    def error_count(self) -> int:
        count = 0
        if self.discovery:
            count += self.discovery["errors"]
        if self.processing:
            count += self.processing["errors"]
        return count + (1 if self.error else 0)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the JSON shape printed by ``lore sync --json``."""
        data: dict[str, Any] = {
            "git_pulled": self.git_pulled,
            "git_pushed": self.git_pushed,
        }
        if self.git_error:
            data["git_error"] = self.git_error
        if self.discovery is not None:
            data["discovery"] = dict(self.discovery)
        if self.processing is not None:
            data["processing"] = dict(self.processing)
        data["sources_found"] = self.sources_found
        data["sources_indexed"] = self.sources_indexed
        data["already_indexed"] = self.already_indexed
        data["reconciled"] = self.reconciled
        if self.error:
            data["error"] = self.error
        return data


def _append_error(existing: str | None, new: str) -> str:
    return f"{existing}; {new}" if existing else new


class SyncOrchestrator:
    """Runs sync cycles against one data directory.

    Order within a run: git pull, discovery, auth preflight, processing,
    legacy disk scan, content reconciliation, commit and push. Runs on the
    same machine are serialized with an advisory lock in the data directory.
    """

    def __init__(
        self,
        data_dir: str | Path,
        store: "SourceStore",
        extractor: "MetadataExtractor",
        embedder: "Embedder",
        sources_config: "SyncSourceConfig",
        events: "EventBus | None" = None,
        git: GitSynchronizer | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            data_dir: Data directory (a git working tree, ideally).
            store: Remote source store.
            extractor: Metadata extractor used during processing.
            embedder: Embedding service for summaries.
            sources_config: Sync source configuration.
            events: Bus receiving SourceCreated events.
            git: Git synchronizer; defaults to one over data_dir.
        """
        self.data_dir = Path(data_dir)
        self.store = store
        self.extractor = extractor
        self.embedder = embedder
        self.sources_config = sources_config
        self.events = events
        self.git = git or GitSynchronizer(self.data_dir)
        self.path_index = PathIndex(self.data_dir)

    def run(
        self,
        options: SyncOptions | None = None,
        on_progress: Callable[[int, str], None] | None = None,
    ) -> SyncRunResult:
        """Run one sync cycle.

        Args:
            options: Run options; defaults to a full sync.
            on_progress: Called with ``(percent, message)`` between phases.

        Returns:
            SyncRunResult.

        Raises:
            AuthorizationError: If the store rejected our credentials before
                or during processing.
            TimeoutError: If another sync holds the run lock.
        """
        options = options or SyncOptions()
        self.data_dir.mkdir(parents=True, exist_ok=True)
        with file_lock(self.data_dir / RUN_LOCK_FILENAME, timeout=options.lock_timeout):
            return self._run_locked(options, on_progress)

    def _progress(
        self, callback: Callable[[int, str], None] | None, percent: int, message: str
    ) -> None:
        logger.debug("%s", message)
        if callback:
            callback(percent, message)

    def _run_locked(
        self, options: SyncOptions, on_progress: Callable[[int, str], None] | None
    ) -> SyncRunResult:
        self.store.reset()
        result = SyncRunResult()

        if options.git_pull and not options.dry_run:
            self._progress(on_progress, 5, "Pulling from git...")
            pull = self.git.pull()
            result.git_pulled = pull.success and pull.changed
            if pull.error:
                result.git_error = pull.error
            if self.path_index.needs_rebuild():
                logger.warning("Path index missing or corrupt, rebuilding from disk")
                self.path_index.rebuild()

        if options.index_new:
            sources = self.sources_config.enabled_sources()
            if sources and not options.use_legacy:
                self._progress(on_progress, 20, "Discovering new files...")
                self._sync_sources(sources, options, result, on_progress)

            if options.dry_run:
                return result

            self._progress(on_progress, 60, "Running legacy sync...")
            legacy = legacy_disk_sync(self.data_dir, self.store, self.embedder, self.path_index)
            result.sources_found = legacy.sources_found
            result.sources_indexed = legacy.sources_indexed
            result.already_indexed = legacy.already_indexed

            self._progress(on_progress, 80, "Reconciling local content...")
            result.reconciled = reconcile_local_content(self.data_dir, self.store, self.path_index)

        if options.git_push and not options.dry_run:
            self._progress(on_progress, 90, "Committing and pushing...")
            total_new = result.files_processed + result.sources_indexed + result.reconciled
            message = f"Sync: Added {total_new} source(s)" if total_new > 0 else "Sync"
            push = self.git.commit_and_push(message)
            result.git_pushed = push.pushed
            if push.error:
                result.git_error = _append_error(result.git_error, push.error)

        return result

    def _sync_sources(
        self,
        sources: list,
        options: SyncOptions,
        result: SyncRunResult,
        on_progress: Callable[[int, str], None] | None,
    ) -> None:
        discovered = discover_all_sources(sources, self.store, data_dir=self.data_dir)
        result.discovery = summarize_discovery(discovered)
        for discovery in discovered:
            for error in discovery.errors:
                logger.warning("[%s] %s", discovery.source.name, error)
                result.file_errors.append(error)

        pending = [f for d in discovered for f in d.new_files]
        pending += [f for d in discovered for f in d.edited_files]
        if options.dry_run or not pending:
            return

        self._preflight(len(pending))

        def report(done: int, total: int, label: str) -> None:
            self._progress(on_progress, 20 + int(40 * done / total), f"[{done}/{total}] {label}")

        pipeline = ProcessingPipeline(
            self.data_dir,
            self.store,
            self.extractor,
            self.embedder,
            events=self.events,
            path_index=self.path_index,
        )
        processed = pipeline.run(
            pending,
            concurrency=options.concurrency,
            batch_delay=options.batch_delay,
            on_progress=report,
        )
        result.processing = {
            "processed": len(processed.processed),
            "errors": len(processed.errors),
            "titles": processed.titles,
        }
        for error in processed.errors:
            result.file_errors.append(f"{error.file.relative_path}: {error.error}")

    def _preflight(self, pending: int) -> None:
        """Check the store accepts our credentials before any paid extraction."""
        self.store.reset()
        try:
            self.store.ping()
        except (AuthorizationError, StoreError) as e:
            logger.error("Store preflight failed before processing %d file(s): %s", pending, e)
            raise AuthorizationError(
                f"Auth check failed before processing ({pending} file(s) skipped)"
            ) from e


def build_orchestrator(
    config: "ConfigManager",
    data_dir: str | Path,
    events: "EventBus | None" = None,
) -> SyncOrchestrator:
    """Assemble an orchestrator from the settings in config.json.

    Args:
        config: Config manager for the per-machine config directory.
        data_dir: Resolved data directory.
        events: Optional bus for SourceCreated events.

    Returns:
        A ready SyncOrchestrator.
    """
    from lore_knowledge._config import SyncSourceConfig
    from lore_knowledge._embedding import EmbeddingService
    from lore_knowledge.extractor import create_extractor
    from lore_knowledge.store import create_store

    config.bridge_env()
    return SyncOrchestrator(
        data_dir,
        store=create_store(config.base_path, config.get_section("chroma")),
        extractor=create_extractor(config.get_section("extractor")),
        embedder=EmbeddingService.from_settings(config.get_section("embedding")),
        sources_config=SyncSourceConfig(config.base_path),
        events=events,
    )
