"""Summary embeddings with sentence-transformers.

Every source is indexed by one vector: the embedding of its summary,
prefixed with the project so similar notes from different projects stay
apart.
"""

from __future__ import annotations

import logging
from typing import Any

from sentence_transformers import SentenceTransformer

from lore_knowledge.errors import EmbeddingError
from lore_knowledge.utils import sanitize_for_embedding

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "all-MiniLM-L6-v2"


def create_searchable_text(summary: str, project: str | None = None) -> str:
    """Text that gets embedded for a source summary."""
    if project:
        return f"[Project: {project}] Summary: {summary}"
    return f"Summary: {summary}"


class EmbeddingService:
    """Encodes source summaries, loading the model on first use.

    The model is shared by the worker threads of the processing pipeline;
    ``SentenceTransformer.encode`` is safe to call concurrently.
    """

    def __init__(
        self, model_name: str = DEFAULT_MODEL, model: SentenceTransformer | None = None
    ) -> None:
        """Initialize the embedding service.

        Args:
            model_name: sentence-transformers model to load lazily.
            model: Pre-loaded model; skips loading.
        """
        self.model_name = model_name
        self._model = model

    @classmethod
    def from_settings(cls, settings: dict[str, Any] | None = None) -> EmbeddingService:
        """Build from the ``embedding`` section of config.json."""
        settings = settings or {}
        return cls(model_name=settings.get("model") or DEFAULT_MODEL)

    @property
    def model(self) -> SentenceTransformer:
        if self._model is None:
            logger.debug("Loading embedding model %s", self.model_name)
            try:
                self._model = SentenceTransformer(self.model_name)
            except Exception as e:
                raise EmbeddingError(
                    f"Failed to load embedding model '{self.model_name}': {e}"
                ) from e
        return self._model

    def generate_embeddings(self, texts: list[str]) -> list[list[float]]:
        """Encode several texts in one model call.

        Raises:
            EmbeddingError: If any text is empty after sanitization or
                encoding fails.
        """
        cleaned = [sanitize_for_embedding(text) for text in texts]
        if not all(cleaned):
            raise EmbeddingError("Cannot generate embedding for empty text")
        if not cleaned:
            return []
        try:
            vectors = self.model.encode(cleaned, convert_to_numpy=True)
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"Failed to encode text: {e}") from e
        return [vector.tolist() for vector in vectors]

    def generate_embedding(self, text: str) -> list[float]:
        """Encode one summary."""
        return self.generate_embeddings([text])[0]
