"""Embedding and vector-store collaborators.

OpenAIEmbeddingProvider turns text into vectors; ChromaVectorStore runs the
similarity lookup and returns normalized RetrievalCandidates. Both wrap every
provider failure in the engine's error types so the pipeline can treat them
as fatal for the primary retrieval path.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from .candidates import normalize_candidate
from .llm_client import get_async_client
from .types import EmbeddingError, RetrievalCandidate, VectorStoreError

logger = logging.getLogger(__name__)


class EmbeddingProvider(Protocol):
    async def embed(self, texts: Sequence[str], model: Optional[str] = None) -> List[List[float]]: ...


class VectorStore(Protocol):
    async def match(
        self,
        embedding: Sequence[float],
        match_count: int,
        similarity_floor: float,
        filter: Optional[Mapping[str, Any]] = None,
    ) -> List[RetrievalCandidate]: ...


class OpenAIEmbeddingProvider:
    """EmbeddingProvider backed by the OpenAI embeddings API."""

    def __init__(self, model: str, *, client: Any = None):
        self.model = model
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = get_async_client()
        return self._client

    async def embed(self, texts: Sequence[str], model: Optional[str] = None) -> List[List[float]]:
        if not texts:
            return []
        try:
            response = await self.client.embeddings.create(model=model or self.model, input=list(texts))
            return [list(item.embedding) for item in response.data]
        except Exception as exc:  # noqa: BLE001
            raise EmbeddingError("OpenAI embedding request failed.") from exc


def normalize_chroma_where(where: Mapping[str, Any] | None) -> Dict[str, Any] | None:
    """Normalize a where-clause to a single top-level operator for Chroma.

    Some Chroma versions require `where` to contain exactly one operator at the top level.
    This helper rewrites multi-key dicts into a deterministic `$and`.
    It also recursively normalizes items inside $or and $and arrays.

    Examples:
    - {"doc_type": "kb_article"} -> unchanged
    - {"doc_type": "kb_article", "persona_type": "professional"} ->
        {"$and": [{"doc_type": "kb_article"}, {"persona_type": "professional"}]}
    """
    if where is None:
        return None
    w = dict(where)
    if not w:
        return None

    for op_key in ("$or", "$and"):
        if op_key in w and isinstance(w[op_key], list):
            w[op_key] = [
                normalize_chroma_where(item) or item
                for item in w[op_key]
                if isinstance(item, dict)
            ]

    # Already a single top-level operator.
    if len(w) == 1:
        return w

    op_items: list[tuple[str, Any]] = []
    kv_items: list[tuple[str, Any]] = []
    for k, v in w.items():
        if isinstance(k, str) and k.startswith("$"):
            op_items.append((k, v))
        else:
            kv_items.append((k, v))

    clauses: list[dict[str, Any]] = []
    for k, v in sorted(kv_items, key=lambda t: str(t[0])):
        clauses.append({str(k): v})
    for k, v in sorted(op_items, key=lambda t: str(t[0])):
        clauses.append({str(k): v})

    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


class ChromaVectorStore:
    """VectorStore over a Chroma collection using cosine distance.

    Similarity is reported as ``1 - distance``; rows below the similarity floor
    are dropped. Result order follows Chroma's, which callers must not rely on.
    """

    def __init__(self, collection: Any):
        self.collection = collection

    @classmethod
    def from_path(cls, path: Path | str, collection_name: str) -> "ChromaVectorStore":
        import chromadb

        client = chromadb.PersistentClient(path=str(path))
        collection = client.get_or_create_collection(collection_name, metadata={"hnsw:space": "cosine"})
        return cls(collection)

    def _query(self, embedding: Sequence[float], n_results: int, where: Dict[str, Any] | None) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "query_embeddings": [list(embedding)],
            "n_results": n_results,
            # Chroma always returns ids; 'ids' is not a valid `include` item.
            "include": ["documents", "metadatas", "distances"],
        }
        if where is not None:
            kwargs["where"] = where
        return self.collection.query(**kwargs)

    async def match(
        self,
        embedding: Sequence[float],
        match_count: int,
        similarity_floor: float,
        filter: Optional[Mapping[str, Any]] = None,
    ) -> List[RetrievalCandidate]:
        where = normalize_chroma_where(filter)
        try:
            results = await asyncio.to_thread(self._query, embedding, max(1, match_count), where)
        except Exception as exc:  # noqa: BLE001
            raise VectorStoreError("Chroma similarity query failed.") from exc

        if not isinstance(results, dict):
            return []
        ids = (results.get("ids") or [[]])[0] or []
        documents = (results.get("documents") or [[]])[0] or []
        metadatas = (results.get("metadatas") or [[]])[0] or []
        distances = (results.get("distances") or [[]])[0] or []

        candidates: List[RetrievalCandidate] = []
        for index, chunk_id in enumerate(ids):
            try:
                distance = float(distances[index])
            except (IndexError, TypeError, ValueError):
                distance = 1.0
            similarity = 1.0 - distance
            if similarity < similarity_floor:
                continue
            metadata = dict(metadatas[index]) if index < len(metadatas) and metadatas[index] else {}
            metadata.setdefault("chunk_id", str(chunk_id))
            row = {
                "chunk": str(documents[index] or "") if index < len(documents) else "",
                "similarity": similarity,
                "metadata": metadata,
            }
            candidates.append(normalize_candidate(row))

        logger.debug("Chroma match: returned=%d kept=%d floor=%.3f", len(ids), len(candidates), similarity_floor)
        return candidates
