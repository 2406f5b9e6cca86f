"""Tests for src/engine/retrieval.py - embedding provider and Chroma vector store."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.engine.retrieval import ChromaVectorStore, OpenAIEmbeddingProvider, normalize_chroma_where
from src.engine.types import EmbeddingError, VectorStoreError


# -----------------------------------------------------------------------------
# Embeddings
# -----------------------------------------------------------------------------


class TestOpenAIEmbeddingProvider:
    """Tests for OpenAIEmbeddingProvider."""

    def _client(self, vectors):
        client = MagicMock()
        client.embeddings.create = AsyncMock(
            return_value=SimpleNamespace(data=[SimpleNamespace(embedding=v) for v in vectors])
        )
        return client

    def test_embeds_texts(self):
        """Embeddings come back in input order."""
        client = self._client([(0.1, 0.2), (0.3, 0.4)])
        provider = OpenAIEmbeddingProvider("text-embedding-3-small", client=client)

        result = asyncio.run(provider.embed(["a", "b"]))

        assert result == [[0.1, 0.2], [0.3, 0.4]]
        client.embeddings.create.assert_awaited_once_with(model="text-embedding-3-small", input=["a", "b"])

    def test_model_override(self):
        """A per-call model overrides the default."""
        client = self._client([(1.0,)])
        asyncio.run(OpenAIEmbeddingProvider("default-model", client=client).embed(["a"], "other-model"))
        assert client.embeddings.create.call_args.kwargs["model"] == "other-model"

    def test_empty_input_skips_call(self):
        """Empty input makes no API call."""
        client = self._client([])
        assert asyncio.run(OpenAIEmbeddingProvider("m", client=client).embed([])) == []
        client.embeddings.create.assert_not_awaited()

    def test_failure_wrapped(self):
        """API failures are wrapped in EmbeddingError."""
        client = MagicMock()
        client.embeddings.create = AsyncMock(side_effect=RuntimeError("api down"))

        with pytest.raises(EmbeddingError) as exc_info:
            asyncio.run(OpenAIEmbeddingProvider("m", client=client).embed(["a"]))

        assert isinstance(exc_info.value.__cause__, RuntimeError)


# -----------------------------------------------------------------------------
# Where-clause normalization
# -----------------------------------------------------------------------------


class TestNormalizeChromaWhere:
    """Tests for normalize_chroma_where."""

    def test_none_and_empty(self):
        """Missing or empty filters give no where clause."""
        assert normalize_chroma_where(None) is None
        assert normalize_chroma_where({}) is None

    def test_single_key_unchanged(self):
        """A single-key filter is passed through."""
        assert normalize_chroma_where({"doc_type": "kb_article"}) == {"doc_type": "kb_article"}

    def test_multi_key_becomes_sorted_and(self):
        """Multiple keys become a sorted $and."""
        where = {"persona_type": "professional", "doc_type": "kb_article"}
        assert normalize_chroma_where(where) == {
            "$and": [{"doc_type": "kb_article"}, {"persona_type": "professional"}]
        }

    def test_operators_after_fields(self):
        """Operator keys follow plain fields inside $and."""
        where = {"$or": [{"a": 1}, {"b": 2}], "doc_type": "kb_article"}
        assert normalize_chroma_where(where) == {
            "$and": [{"doc_type": "kb_article"}, {"$or": [{"a": 1}, {"b": 2}]}]
        }

    def test_nested_items_normalized(self):
        """Nested operator items are normalized too."""
        where = {"$or": [{"a": 1, "b": 2}, {"c": 3}]}
        assert normalize_chroma_where(where) == {"$or": [{"$and": [{"a": 1}, {"b": 2}]}, {"c": 3}]}


# -----------------------------------------------------------------------------
# Chroma vector store
# -----------------------------------------------------------------------------


def _query_result(ids, documents, metadatas, distances):
    return {"ids": [ids], "documents": [documents], "metadatas": [metadatas], "distances": [distances]}


class TestChromaVectorStore:
    """Tests for ChromaVectorStore."""

    def test_converts_distance_and_applies_floor(self):
        """Distances become similarities and the floor drops far chunks."""
        collection = MagicMock()
        collection.query.return_value = _query_result(
            ["c1", "c2", "c3"],
            ["close chunk", "mid chunk", "far chunk"],
            [{"doc_id": "d1", "title": "Doc One"}, None, {"doc_id": "d3"}],
            [0.1, 0.25, 0.6],
        )
        store = ChromaVectorStore(collection)

        result = asyncio.run(store.match([0.1, 0.2], 25, 0.7))

        assert [c.chunk_text for c in result] == ["close chunk", "mid chunk"]
        assert result[0].score == pytest.approx(0.9)
        assert result[0].metadata.doc_id == "d1"
        assert result[0].metadata.title == "Doc One"
        assert result[0].metadata.extra == {"chunk_id": "c1"}
        assert result[1].metadata.extra == {"chunk_id": "c2"}

        kwargs = collection.query.call_args.kwargs
        assert kwargs["query_embeddings"] == [[0.1, 0.2]]
        assert kwargs["n_results"] == 25
        assert kwargs["include"] == ["documents", "metadatas", "distances"]
        assert "where" not in kwargs

    def test_existing_chunk_id_kept(self):
        """A chunk_id already in metadata is kept."""
        collection = MagicMock()
        collection.query.return_value = _query_result(["c1"], ["text"], [{"chunk_id": "original"}], [0.0])

        result = asyncio.run(ChromaVectorStore(collection).match([1.0], 5, 0.0))

        assert result[0].metadata.extra == {"chunk_id": "original"}

    def test_filter_passed_as_where(self):
        """Filters are normalized into where and n_results is at least one."""
        collection = MagicMock()
        collection.query.return_value = _query_result([], [], [], [])

        asyncio.run(ChromaVectorStore(collection).match([1.0], 0, 0.5, filter={"a": 1, "b": 2}))

        kwargs = collection.query.call_args.kwargs
        assert kwargs["where"] == {"$and": [{"a": 1}, {"b": 2}]}
        assert kwargs["n_results"] == 1

    def test_missing_distance_is_treated_as_far(self):
        """A missing distance scores zero similarity."""
        collection = MagicMock()
        collection.query.return_value = _query_result(["c1"], ["text"], [{}], [])

        assert asyncio.run(ChromaVectorStore(collection).match([1.0], 5, 0.1)) == []
        assert len(asyncio.run(ChromaVectorStore(collection).match([1.0], 5, 0.0))) == 1

    def test_unexpected_result_shape(self):
        """An unexpected query result gives no rows."""
        collection = MagicMock()
        collection.query.return_value = None
        assert asyncio.run(ChromaVectorStore(collection).match([1.0], 5, 0.0)) == []

    def test_query_failure_wrapped(self):
        """Query failures are wrapped in VectorStoreError."""
        collection = MagicMock()
        collection.query.side_effect = RuntimeError("collection missing")

        with pytest.raises(VectorStoreError):
            asyncio.run(ChromaVectorStore(collection).match([1.0], 5, 0.0))
