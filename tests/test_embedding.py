"""Tests for the embedding service."""

import numpy as np
import pytest

from lore_knowledge._embedding import DEFAULT_MODEL, EmbeddingService, create_searchable_text
from lore_knowledge.errors import EmbeddingError


class StubModel:
    """Stands in for a SentenceTransformer."""

    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def encode(self, texts, convert_to_numpy=True):
        self.calls.append(list(texts))
        if self.fail:
            raise RuntimeError("CUDA out of memory")
        return np.array([[float(len(t)), 1.0] for t in texts])


class TestCreateSearchableText:
    def test_with_project(self):
        assert create_searchable_text("Met with Ana", "research") == (
            "[Project: research] Summary: Met with Ana"
        )

    def test_without_project(self):
        assert create_searchable_text("Met with Ana") == "Summary: Met with Ana"


class TestEmbeddingService:
    """Tests for EmbeddingService."""

    def test_generate_embedding(self):
        model = StubModel()
        service = EmbeddingService(model=model)

        assert service.generate_embedding("  hello\n world ") == [11.0, 1.0]
        assert model.calls == [["hello world"]]

    def test_batch_in_one_call(self):
        model = StubModel()
        vectors = EmbeddingService(model=model).generate_embeddings(["a", "bb"])
        assert vectors == [[1.0, 1.0], [2.0, 1.0]]
        assert len(model.calls) == 1

    def test_empty_list(self):
        assert EmbeddingService(model=StubModel()).generate_embeddings([]) == []

    def test_empty_text_rejected(self):
        with pytest.raises(EmbeddingError, match="empty text"):
            EmbeddingService(model=StubModel()).generate_embedding("   ")

    def test_encode_failure_wrapped(self):
        with pytest.raises(EmbeddingError, match="CUDA out of memory"):
            EmbeddingService(model=StubModel(fail=True)).generate_embedding("hello")

    def test_model_load_failure(self, monkeypatch):
        def broken(name):
            raise OSError(f"{name} not found")

        monkeypatch.setattr("lore_knowledge._embedding.SentenceTransformer", broken)
        service = EmbeddingService(model_name="missing-model")

        with pytest.raises(EmbeddingError, match="missing-model"):
            service.generate_embedding("hello")

    def test_from_settings(self):
        assert EmbeddingService.from_settings().model_name == DEFAULT_MODEL
        service = EmbeddingService.from_settings({"model": "all-mpnet-base-v2"})
        assert service.model_name == "all-mpnet-base-v2"
