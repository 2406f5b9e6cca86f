"""Guardrail metadata record attached to chat responses out-of-band.

The record summarizes the routing, history and context decisions of one turn.
It travels as camelCase JSON (URL-encoded when placed in an HTTP header).
"""

from __future__ import annotations

import logging
import math
from typing import Optional
from urllib.parse import quote, unquote

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from .conversation import HistoryWindowResult
from .query_enhancer import EnhancementSummary
from .tokens import TokenCounter
from .types import ContextWindowResult, GuardrailConfig, RankerMode, ReverseRagMode, RoutedQuestion

logger = logging.getLogger(__name__)

GUARDRAIL_META_HEADER = "x-guardrail-meta"


class _MetaModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GuardrailMetaHistory(_MetaModel):
    tokens: int
    budget: int
    trimmed_turns: int
    preserved_turns: int


class GuardrailMetaContext(_MetaModel):
    included: int
    dropped: int
    total_tokens: int
    insufficient: bool
    retrieved: Optional[int] = None
    similarity_threshold: Optional[float] = None
    highest_similarity: Optional[float] = None
    context_token_budget: Optional[int] = None
    context_clip_tokens: Optional[int] = None


class ReverseRagMeta(_MetaModel):
    enabled: bool
    mode: ReverseRagMode
    original: str
    rewritten: str


class HydeMeta(_MetaModel):
    enabled: bool
    generated: Optional[str] = None


class RankerMeta(_MetaModel):
    mode: RankerMode


class GuardrailEnhancements(_MetaModel):
    reverse_rag: Optional[ReverseRagMeta] = None
    hyde: Optional[HydeMeta] = None
    ranker: Optional[RankerMeta] = None


class SummaryConfigMeta(_MetaModel):
    enabled: bool
    trigger_tokens: int
    max_turns: int
    max_chars: int


class SummaryInfoMeta(_MetaModel):
    original_tokens: int
    summary_tokens: int
    trimmed_turns: int
    max_turns: int


class GuardrailMeta(_MetaModel):
    intent: str
    reason: str
    history_tokens: int
    summary_applied: bool
    history: Optional[GuardrailMetaHistory] = None
    context: GuardrailMetaContext
    llm_model: Optional[str] = None
    provider: Optional[str] = None
    embedding_model: Optional[str] = None
    enhancements: Optional[GuardrailEnhancements] = None
    summary_config: Optional[SummaryConfigMeta] = None
    summary_info: Optional[SummaryInfoMeta] = None


def enhancements_from_summary(summary: EnhancementSummary | None) -> GuardrailEnhancements | None:
    if summary is None:
        return None
    return GuardrailEnhancements(
        reverse_rag=ReverseRagMeta(
            enabled=summary.reverse_rag.enabled,
            mode=summary.reverse_rag.mode,
            original=summary.reverse_rag.original,
            rewritten=summary.reverse_rag.rewritten,
        ),
        hyde=HydeMeta(enabled=summary.hyde.enabled, generated=summary.hyde.generated),
        ranker=RankerMeta(mode=summary.ranker),
    )


def build_guardrail_meta(
    routed: RoutedQuestion,
    history: HistoryWindowResult,
    context: ContextWindowResult,
    config: GuardrailConfig,
    token_counter: TokenCounter,
    *,
    enhancements: EnhancementSummary | None = None,
    llm_model: str | None = None,
    embedding_model: str | None = None,
    provider: str | None = "openai",
) -> GuardrailMeta:
    """Assemble the metadata record for one turn.

    ``summary_info`` is present only when a summary memory was produced.
    """
    summary_info = None
    if history.summary_text:
        summary_info = SummaryInfoMeta(
            original_tokens=history.token_count,
            summary_tokens=token_counter.count(history.summary_text),
            trimmed_turns=len(history.trimmed),
            max_turns=config.summary.max_turns,
        )

    highest = context.highest_score if math.isfinite(context.highest_score) else None

    return GuardrailMeta(
        intent=routed.intent.value,
        reason=routed.reason,
        history_tokens=history.token_count,
        summary_applied=bool(history.summary_text),
        history=GuardrailMetaHistory(
            tokens=history.token_count,
            budget=config.history_token_budget,
            trimmed_turns=len(history.trimmed),
            preserved_turns=len(history.preserved),
        ),
        context=GuardrailMetaContext(
            included=len(context.included),
            dropped=context.dropped,
            total_tokens=context.total_tokens,
            insufficient=context.insufficient,
            retrieved=len(context.included) + context.dropped,
            similarity_threshold=config.similarity_threshold,
            highest_similarity=highest,
            context_token_budget=config.rag_context_token_budget,
            context_clip_tokens=config.rag_context_clip_tokens,
        ),
        summary_config=SummaryConfigMeta(
            enabled=config.summary.enabled,
            trigger_tokens=config.summary.trigger_tokens,
            max_turns=config.summary.max_turns,
            max_chars=config.summary.max_chars,
        ),
        summary_info=summary_info,
        enhancements=enhancements_from_summary(enhancements),
        provider=provider,
        llm_model=llm_model,
        embedding_model=embedding_model,
    )


def serialize_guardrail_meta(meta: GuardrailMeta) -> str:
    return meta.model_dump_json(by_alias=True, exclude_none=True)


def encode_guardrail_meta_header(meta: GuardrailMeta) -> str:
    """Serialize and percent-encode for use as an HTTP header value."""
    return quote(serialize_guardrail_meta(meta), safe="")


def deserialize_guardrail_meta(value: str | None) -> GuardrailMeta | None:
    """Parse raw JSON, then URL-decoded JSON; return None if neither parses."""
    if not value:
        return None
    try:
        return GuardrailMeta.model_validate_json(value)
    except ValidationError:
        pass
    try:
        return GuardrailMeta.model_validate_json(unquote(value))
    except ValidationError:
        logger.debug("Unparseable guardrail meta value (%d chars)", len(value))
        return None
