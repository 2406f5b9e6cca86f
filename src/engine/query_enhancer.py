"""Pre-retrieval query enhancement: reverse-RAG rewriting and HyDE.

Both stages are best-effort. Any generation failure is logged and the stage
degrades to pass-through (original query / no hypothetical document), so
enhancement can never fail a request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .constants import (
    HYDE_MAX_TOKENS,
    HYDE_TEMPERATURE,
    REVERSE_RAG_MAX_TOKENS,
    REVERSE_RAG_TEMPERATURE,
)
from .llm_client import GenerationProvider
from .types import RankerMode, ReverseRagMode, RuntimeFlags

logger = logging.getLogger(__name__)

REWRITE_SYSTEM_PROMPT = (
    "You rewrite user questions into concise search queries optimized for a "
    "document search engine. Return only the rewritten query."
)

HYDE_SYSTEM_PROMPT = (
    "You are generating a hypothetical document that could plausibly answer the "
    "user question. Provide a short passage that contains potential statements or facts."
)

_MODE_DESCRIPTORS = {
    ReverseRagMode.PRECISION: "Focus the search terms on the most specific and distinguishing concepts.",
    ReverseRagMode.RECALL: "Include broader synonyms or related topics to cast a wider net.",
}


async def rewrite_query(
    question: str,
    *,
    enabled: bool,
    mode: ReverseRagMode = ReverseRagMode.PRECISION,
    generator: GenerationProvider | None,
) -> str:
    """Rewrite ``question`` toward narrower (precision) or broader (recall) search terms.

    Returns the original question when disabled, blank, or on any failure.
    """
    if not enabled or generator is None or not question or not question.strip():
        return question

    user_prompt = "\n".join([f"Mode: {mode.value} ({_MODE_DESCRIPTORS[mode]})", "Question:", question])
    try:
        rewritten = await generator.generate(
            REWRITE_SYSTEM_PROMPT,
            user_prompt,
            temperature=REVERSE_RAG_TEMPERATURE,
            max_tokens=REVERSE_RAG_MAX_TOKENS,
        )
    except Exception:  # noqa: BLE001
        logger.warning("Reverse query rewrite failed; using original query", exc_info=True)
        return question

    rewritten = (rewritten or "").strip()
    return rewritten if rewritten else question


async def generate_hyde_document(
    query: str,
    *,
    enabled: bool,
    generator: GenerationProvider | None,
) -> Optional[str]:
    """Synthesize a short passage that could plausibly answer ``query``, or None."""
    if not enabled or generator is None or not query or not query.strip():
        return None

    try:
        hyde = await generator.generate(
            HYDE_SYSTEM_PROMPT,
            "\n".join(["Question:", query]),
            temperature=HYDE_TEMPERATURE,
            max_tokens=HYDE_MAX_TOKENS,
        )
    except Exception:  # noqa: BLE001
        logger.warning("HyDE generation failed; embedding the query instead", exc_info=True)
        return None

    hyde = (hyde or "").strip()
    return hyde if hyde else None


@dataclass(frozen=True)
class ReverseRagSummary:
    enabled: bool
    mode: ReverseRagMode
    original: str
    rewritten: str


@dataclass(frozen=True)
class HydeSummary:
    enabled: bool
    generated: Optional[str]


@dataclass(frozen=True)
class EnhancementSummary:
    reverse_rag: ReverseRagSummary
    hyde: HydeSummary
    ranker: RankerMode


def passthrough_summary(question: str, flags: RuntimeFlags) -> EnhancementSummary:
    """Summary for turns where no enhancement ran (non-knowledge intents)."""
    return EnhancementSummary(
        reverse_rag=ReverseRagSummary(
            enabled=flags.reverse_rag_enabled,
            mode=flags.reverse_rag_mode,
            original=question,
            rewritten=question,
        ),
        hyde=HydeSummary(enabled=flags.hyde_enabled, generated=None),
        ranker=flags.ranker_mode,
    )


@dataclass(frozen=True)
class PreRetrievalResult:
    rewritten_query: str
    hyde_document: Optional[str]
    embedding_target: str
    enhancement_summary: EnhancementSummary


async def process_pre_retrieval(
    question: str,
    flags: RuntimeFlags,
    generator: GenerationProvider | None,
) -> PreRetrievalResult:
    """Run rewrite then HyDE (on the rewritten query) and pick the text to embed.

    The embedding target is the HyDE passage when one was generated, else the
    rewritten query.
    """
    rewritten = await rewrite_query(
        question,
        enabled=flags.reverse_rag_enabled,
        mode=flags.reverse_rag_mode,
        generator=generator,
    )
    hyde = await generate_hyde_document(rewritten, enabled=flags.hyde_enabled, generator=generator)
    embedding_target = hyde if hyde is not None else rewritten

    logger.debug(
        "Pre-retrieval: rewrite=%s hyde=%s ranker=%s target_chars=%d",
        rewritten != question,
        hyde is not None,
        flags.ranker_mode.value,
        len(embedding_target),
    )

    return PreRetrievalResult(
        rewritten_query=rewritten,
        hyde_document=hyde,
        embedding_target=embedding_target,
        enhancement_summary=EnhancementSummary(
            reverse_rag=ReverseRagSummary(
                enabled=flags.reverse_rag_enabled,
                mode=flags.reverse_rag_mode,
                original=question,
                rewritten=rewritten,
            ),
            hyde=HydeSummary(enabled=flags.hyde_enabled, generated=hyde),
            ranker=flags.ranker_mode,
        ),
    )
