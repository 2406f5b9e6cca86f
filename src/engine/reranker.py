"""Post-retrieval reranking.

Modes:
- none: keep incoming order, truncate to ``max_results``
- mmr: maximal marginal relevance over fresh candidate embeddings
- cohere-rerank: declared but not implemented; logs a warning and acts as none

Reranking is fail-open: an embedding failure during MMR degrades to plain
truncation.
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Sequence

from .constants import MMR_LAMBDA
from .retrieval import EmbeddingProvider
from .types import RankerMode, RetrievalCandidate

logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    magnitude = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / magnitude if magnitude > 0 else 0.0


def select_mmr(
    query_embedding: Sequence[float],
    embeddings: Sequence[Sequence[float]],
    max_results: int,
    mmr_lambda: float = MMR_LAMBDA,
) -> list[int]:
    """Greedy MMR over precomputed embeddings; returns selected indices in order.

    Each step picks the index maximizing
    ``lambda * sim(candidate, query) - (1 - lambda) * max(sim(candidate, selected))``.
    Empty embeddings are never selected.
    """
    mmr_lambda = max(0.0, min(1.0, mmr_lambda))
    relevance = [cosine_similarity(vec, query_embedding) if vec else None for vec in embeddings]
    selected: list[int] = []

    while len(selected) < min(max_results, len(embeddings)):
        best_index = None
        best_score = float("-inf")
        for index, vec in enumerate(embeddings):
            if index in selected or relevance[index] is None:
                continue
            redundancy = max((cosine_similarity(vec, embeddings[s]) for s in selected), default=0.0)
            score = mmr_lambda * relevance[index] - (1 - mmr_lambda) * redundancy
            if score > best_score:
                best_score = score
                best_index = index
        if best_index is None:
            break
        selected.append(best_index)
    return selected


async def run_mmr(
    candidates: Sequence[RetrievalCandidate],
    *,
    max_results: int,
    query_embedding: Optional[Sequence[float]],
    embedder: Optional[EmbeddingProvider],
    mmr_lambda: float = MMR_LAMBDA,
) -> list[RetrievalCandidate]:
    if not query_embedding or embedder is None or not candidates:
        return list(candidates[:max_results])

    texted = [(i, c.chunk_text.strip()) for i, c in enumerate(candidates) if c.chunk_text and c.chunk_text.strip()]
    if not texted:
        return list(candidates[:max_results])

    embeddings = await embedder.embed([text for _, text in texted])
    order = select_mmr(query_embedding, embeddings, max_results, mmr_lambda)
    return [candidates[texted[i][0]] for i in order]


async def apply_ranker(
    candidates: Sequence[RetrievalCandidate],
    *,
    mode: RankerMode,
    max_results: int,
    query_embedding: Optional[Sequence[float]] = None,
    embedder: Optional[EmbeddingProvider] = None,
    mmr_lambda: float = MMR_LAMBDA,
) -> list[RetrievalCandidate]:
    """Reorder and truncate ``candidates`` according to ``mode``. Never raises."""
    if not candidates:
        return []
    limit = max(1, int(max_results))

    if mode == RankerMode.MMR:
        try:
            return await run_mmr(
                candidates,
                max_results=limit,
                query_embedding=query_embedding,
                embedder=embedder,
                mmr_lambda=mmr_lambda,
            )
        except Exception:  # noqa: BLE001
            logger.warning("MMR ranking failed; falling back to vector order", exc_info=True)
            return list(candidates[:limit])

    if mode == RankerMode.COHERE_RERANK:
        logger.warning("cohere-rerank requested but not implemented; falling back to vector order")

    return list(candidates[:limit])
