"""Remote source store: the authoritative index of ingested sources.

The engine talks to the store through ``SourceStore``. ``ChromaSourceStore``
implements it on top of ChromaDB: an ``HttpClient`` when a server host is
configured (shared between machines), otherwise a ``PersistentClient`` in
the per-machine config directory.

Vectors are always computed by the caller, so collections are created
without an embedding function.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Protocol

import chromadb
from chromadb.config import Settings
from chromadb.errors import ChromaError

from lore_knowledge.errors import AuthorizationError, StoreError
from lore_knowledge.utils import utc_now_iso

logger = logging.getLogger(__name__)

LOOKUP_BATCH_SIZE = 100
MAX_REMOTE_CONTENT_BYTES = 500 * 1024
DEFAULT_COLLECTION = "lore_sources"

_AUTH_STATUS_CODES = (401, 403)
_AUTH_MARKERS = ("unauthorized", "forbidden", "authentication", "not authorized")


def is_authorization_failure(exc: BaseException) -> bool:
    """Check whether an exception means the store rejected our credentials.

    Args:
        exc: Exception raised by the store client.

    Returns:
        True for 401/403 responses and auth error messages.
    """
    if isinstance(exc, AuthorizationError):
        return True
    code = getattr(exc, "code", None)
    if callable(code):
        try:
            code = code()
        except Exception:
            code = None
    if code in _AUTH_STATUS_CODES:
        return True
    response = getattr(exc, "response", None)
    if getattr(response, "status_code", None) in _AUTH_STATUS_CODES:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _AUTH_MARKERS)


def _batches(items: list[str], size: int = LOOKUP_BATCH_SIZE) -> list[list[str]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class SourceStore(Protocol):
    """Operations the sync engine needs from the remote store."""

    def reset(self) -> None: ...

    def ping(self) -> None: ...

    def add_source(
        self,
        record: dict[str, Any],
        vector: list[float],
        content: str | None = None,
    ) -> bool: ...

    def check_content_hash_exists(self, content_hash: str) -> bool: ...

    def get_existing_content_hashes(self, hashes: list[str]) -> set[str]: ...

    def get_source_path_mappings(self, paths: list[str]) -> dict[str, dict[str, str]]: ...

    def get_all_source_ids(self) -> set[str]: ...

    def get_sources_with_paths(self) -> list[dict[str, str]]: ...

    def get_source_content_map(self, source_ids: list[str]) -> dict[str, str]: ...

    def get_source_ids_without_content(self) -> list[str]: ...

    def backfill_source_content(self, contents: dict[str, str]) -> int: ...


class ChromaSourceStore:
    """SourceStore backed by a ChromaDB collection.

    The client connection is created lazily and can be dropped with
    ``reset()``; the next operation reconnects.
    """

    def __init__(
        self,
        path: str | Path | None = None,
        host: str | None = None,
        port: int = 8000,
        collection_name: str = DEFAULT_COLLECTION,
        headers: dict[str, str] | None = None,
        client: Any = None,
    ) -> None:
        """Initialize the store.

        Args:
            path: Directory for a local PersistentClient.
            host: Chroma server host. Takes precedence over path.
            port: Chroma server port.
            collection_name: Collection holding source records.
            headers: Extra HTTP headers (e.g. an auth token) for HttpClient.
            client: Pre-built chromadb client (mainly for tests).
        """
        if client is None and path is None and host is None:
            raise ValueError("ChromaSourceStore needs a path, a host or a client")
        self.path = Path(path) if path else None
        self.host = host
        self.port = port
        self.collection_name = collection_name
        self.headers = headers
        self._client = client
        self._owns_client = client is None
        self._collection: chromadb.Collection | None = None
        self._lock = threading.Lock()

    def _connect(self) -> Any:
        settings = Settings(anonymized_telemetry=False)
        if self.host:
            return chromadb.HttpClient(
                host=self.host, port=self.port, headers=self.headers, settings=settings
            )
        self.path.mkdir(parents=True, exist_ok=True)
        return chromadb.PersistentClient(path=str(self.path), settings=settings)

    @property
    def collection(self) -> "chromadb.Collection":
        """Lazily connect and open the sources collection."""
        with self._lock:
            if self._collection is None:
                try:
                    if self._client is None:
                        self._client = self._connect()
                    self._collection = self._client.get_or_create_collection(
                        name=self.collection_name,
                        metadata={"hnsw:space": "cosine"},
                        embedding_function=None,
                    )
                except Exception as e:
                    raise self._translate(e, "connecting to store") from e
            return self._collection

    def reset(self) -> None:
        """Drop the cached connection so the next call reconnects."""
        with self._lock:
            self._collection = None
            if self._owns_client:
                self._client = None

    def ping(self) -> None:
        """Perform one cheap authenticated read.

        Raises:
            AuthorizationError: If the store rejects our credentials.
            StoreError: If the store is unreachable.
        """
        try:
            self.collection.count()
        except (AuthorizationError, StoreError):
            raise
        except Exception as e:
            raise self._translate(e, "pinging store") from e

    def _translate(self, exc: Exception, action: str) -> Exception:
        if is_authorization_failure(exc):
            return AuthorizationError(f"Store rejected credentials while {action}")
        if isinstance(exc, (StoreError, AuthorizationError)):
            return exc
        if isinstance(exc, ChromaError):
            return StoreError(f"Store error while {action}: {exc}")
        return StoreError(f"Unexpected error while {action}: {exc}")

    # -- writes ---------------------------------------------------------

    def add_source(
        self,
        record: dict[str, Any],
        vector: list[float],
        content: str | None = None,
    ) -> bool:
        """Insert or update one source record.

        A record whose content hash already belongs to a different source is
        skipped silently: that content is already indexed.

        Args:
            record: Source fields (``id``, ``title``, ``content_type``,
                ``created_at``, ``projects``, ``tags``, ``content_hash``,
                ``source_path``, ``summary``...).
            vector: Embedding of the summary.
            content: Full text, stored only when at most 500 KB.

        Returns:
            True if written, False if skipped as a duplicate.

        Raises:
            AuthorizationError: If the store rejects our credentials.
            StoreError: For any other store failure.
        """
        source_id = record["id"]
        content_hash = record.get("content_hash") or ""
        try:
            if content_hash:
                existing = self.collection.get(where={"content_hash": content_hash}, include=[])
                if any(other != source_id for other in existing["ids"]):
                    logger.debug("Content hash %s already indexed, skipping", content_hash[:12])
                    return False

            stored_content = ""
            content_size = 0
            if content:
                size = len(content.encode("utf-8"))
                if size <= MAX_REMOTE_CONTENT_BYTES:
                    stored_content = content
                    content_size = size

            metadata = {
                "title": record.get("title", ""),
                "source_type": record.get("source_type", "document"),
                "content_type": record.get("content_type", "document"),
                "created_at": record.get("created_at", ""),
                "projects": json.dumps(record.get("projects", [])),
                "tags": json.dumps(record.get("tags", [])),
                "content_hash": content_hash,
                "source_path": record.get("source_path") or "",
                "source_name": record.get("source_name") or "",
                "summary": record.get("summary", ""),
                "has_full_content": bool(stored_content),
                "content_size": content_size,
                "indexed_at": utc_now_iso(),
            }
            self.collection.upsert(
                ids=[source_id],
                embeddings=[vector],
                metadatas=[metadata],
                documents=[stored_content],
            )
        except (AuthorizationError, StoreError):
            raise
        except Exception as e:
            raise self._translate(e, f"adding source {source_id}") from e
        return True

    def backfill_source_content(self, contents: dict[str, str]) -> int:
        """Upload full content for sources indexed before content was stored.

        Args:
            contents: Map of source id to local content.

        Returns:
            Number of sources updated.
        """
        updated = 0
        for batch in _batches(list(contents)):
            try:
                rows = self.collection.get(ids=batch, include=["metadatas", "embeddings"])
            except Exception as e:
                raise self._translate(e, "reading sources for backfill") from e

            ids, embeddings, metadatas, documents = [], [], [], []
            for i, source_id in enumerate(rows["ids"]):
                text = contents.get(source_id)
                if not text:
                    continue
                size = len(text.encode("utf-8"))
                if size > MAX_REMOTE_CONTENT_BYTES:
                    continue
                metadata = dict(rows["metadatas"][i] or {})
                metadata["has_full_content"] = True
                metadata["content_size"] = size
                ids.append(source_id)
                embeddings.append([float(x) for x in rows["embeddings"][i]])
                metadatas.append(metadata)
                documents.append(text)

            if not ids:
                continue
            try:
                self.collection.update(
                    ids=ids, embeddings=embeddings, metadatas=metadatas, documents=documents
                )
            except Exception as e:
                raise self._translate(e, "backfilling content") from e
            updated += len(ids)
        return updated

    # -- reads ----------------------------------------------------------

    def check_content_hash_exists(self, content_hash: str) -> bool:
        """Check whether any source has this content hash."""
        try:
            rows = self.collection.get(where={"content_hash": content_hash}, limit=1, include=[])
        except Exception as e:
            raise self._translate(e, "checking content hash") from e
        return len(rows["ids"]) > 0

    def get_existing_content_hashes(self, hashes: list[str]) -> set[str]:
        """Return the subset of hashes that are already indexed.

        Queries in batches of 100.
        """
        existing: set[str] = set()
        for batch in _batches(sorted(set(hashes))):
            try:
                rows = self.collection.get(
                    where={"content_hash": {"$in": batch}}, include=["metadatas"]
                )
            except Exception as e:
                raise self._translate(e, "checking content hashes") from e
            for metadata in rows["metadatas"]:
                if metadata and metadata.get("content_hash"):
                    existing.add(metadata["content_hash"])
        return existing

    def get_source_path_mappings(self, paths: list[str]) -> dict[str, dict[str, str]]:
        """Map absolute source paths to ``{id, content_hash}`` of their record.

        Queries in batches of 100.
        """
        mappings: dict[str, dict[str, str]] = {}
        for batch in _batches(sorted(set(paths))):
            try:
                rows = self.collection.get(
                    where={"source_path": {"$in": batch}}, include=["metadatas"]
                )
            except Exception as e:
                raise self._translate(e, "reading source paths") from e
            for source_id, metadata in zip(rows["ids"], rows["metadatas"]):
                if metadata and metadata.get("source_path"):
                    mappings[metadata["source_path"]] = {
                        "id": source_id,
                        "content_hash": metadata.get("content_hash", ""),
                    }
        return mappings

    def get_all_source_ids(self) -> set[str]:
        """Ids of every indexed source."""
        try:
            rows = self.collection.get(include=[])
        except Exception as e:
            raise self._translate(e, "listing sources") from e
        return set(rows["ids"])

    def get_sources_with_paths(self) -> list[dict[str, str]]:
        """``{id, source_path}`` for every source that records its origin."""
        try:
            rows = self.collection.get(where={"source_path": {"$ne": ""}}, include=["metadatas"])
        except Exception as e:
            raise self._translate(e, "listing source paths") from e
        return [
            {"id": source_id, "source_path": metadata["source_path"]}
            for source_id, metadata in zip(rows["ids"], rows["metadatas"])
            if metadata and metadata.get("source_path")
        ]

    def get_source_content_map(self, source_ids: list[str]) -> dict[str, str]:
        """Fetch stored full content for the given ids.

        Ids without stored content are left out of the result.
        """
        content_map: dict[str, str] = {}
        for batch in _batches(list(source_ids)):
            try:
                rows = self.collection.get(ids=batch, include=["documents"])
            except Exception as e:
                raise self._translate(e, "fetching content") from e
            for source_id, document in zip(rows["ids"], rows["documents"]):
                if document:
                    content_map[source_id] = document
        return content_map

    def get_source_ids_without_content(self) -> list[str]:
        """Ids of sources whose full content was never stored remotely."""
        try:
            rows = self.collection.get(where={"has_full_content": False}, include=[])
        except Exception as e:
            raise self._translate(e, "listing sources without content") from e
        return list(rows["ids"])

    def count(self) -> int:
        """Number of indexed sources."""
        return self.collection.count()


def create_store(config_dir: Path, settings: dict[str, Any] | None = None) -> ChromaSourceStore:
    """Build the store described by the ``chroma`` config section.

    Args:
        config_dir: Per-machine config directory (home of the local database).
        settings: ``chroma`` section of config.json.

    Returns:
        A ChromaSourceStore.
    """
    settings = settings or {}
    headers = None
    token = settings.get("token")
    if token:
        headers = {"Authorization": f"Bearer {token}"}
    return ChromaSourceStore(
        path=Path(settings.get("path") or config_dir / "chroma").expanduser(),
        host=settings.get("host"),
        port=int(settings.get("port", 8000)),
        collection_name=settings.get("collection", DEFAULT_COLLECTION),
        headers=headers,
    )
