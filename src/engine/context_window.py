"""Retrieval context assembly.

Turns a ranked list of retrieval candidates into the context block handed to
the generation stage:

1. drop empty chunks, stable-sort by score (ties keep retrieval order)
2. chunk-level fingerprint dedup
3. quota sweep: per-document chunk quota starts at 2 and escalates to 6 until
   ``rag_top_k`` chunks are selected; each level is a full, independent pass of
   select_with_quota() and the last pass wins
4. label + clipped text per selected chunk, joined with a separator

Non-knowledge intents skip retrieval entirely and get a fixed fallback block
from build_intent_context_fallback().
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Callable, Generic, Hashable, Optional, Sequence, TypeVar

from .candidates import candidate_source_url, candidate_title, normalize_url, resolve_doc_key
from .constants import (
    CONTEXT_SEPARATOR,
    FINGERPRINT_EDGE_CHARS,
    FINGERPRINT_MIN_CHARS,
    MMR_LITE_PENALTY,
    QUOTA_CEILING,
    QUOTA_START,
    _TRUTHY_ENV_VALUES,
)
from .tokens import TokenCounter, clip_text_to_tokens, get_default_token_counter
from .types import (
    ChatIntent,
    ContextWindowResult,
    GuardrailConfig,
    IncludedCandidate,
    RetrievalCandidate,
    SelectionMetrics,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_WHITESPACE_RE = re.compile(r"\s+")


def _verbose_from_env() -> bool:
    return os.getenv("RAG_DEBUG", "").strip().lower() in _TRUTHY_ENV_VALUES


# ---------------------------------------------------------------------------
# Dedup
# ---------------------------------------------------------------------------


def fingerprint(text: str) -> Optional[str]:
    """Cheap near-duplicate key: ``length:first40:last40`` of normalized text.

    Returns None for texts shorter than 80 normalized characters; those are
    never deduplicated.
    """
    normalized = _WHITESPACE_RE.sub(" ", text or "").strip().lower()
    if len(normalized) < FINGERPRINT_MIN_CHARS:
        return None
    head = normalized[:FINGERPRINT_EDGE_CHARS]
    tail = normalized[-FINGERPRINT_EDGE_CHARS:]
    return f"{len(normalized)}:{head}:{tail}"


@dataclass(frozen=True)
class DedupeResult(Generic[T]):
    selection_unit: str
    input_count: int
    unique_before_dedupe: int
    unique_after_dedupe: int
    dropped_by_dedupe: int
    deduped: tuple[T, ...]


def dedupe_selection_documents(
    items: Sequence[T],
    key_fn: Callable[[T, int], Optional[Hashable]],
    unit: str,
) -> DedupeResult[T]:
    """Keep the first item per key, preserving order.

    Items whose key is None always pass through and each counts as unique.
    """
    seen: set[Hashable] = set()
    deduped: list[T] = []
    unkeyed = 0
    for index, item in enumerate(items):
        key = key_fn(item, index)
        if key is None:
            unkeyed += 1
            deduped.append(item)
            continue
        if key in seen:
            continue
        seen.add(key)
        deduped.append(item)

    return DedupeResult(
        selection_unit=unit,
        input_count=len(items),
        unique_before_dedupe=len(seen) + unkeyed,
        unique_after_dedupe=len(deduped),
        dropped_by_dedupe=len(items) - len(deduped),
        deduped=tuple(deduped),
    )


# ---------------------------------------------------------------------------
# Quota selection
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SelectionEntry:
    candidate: RetrievalCandidate
    doc_key: str
    fingerprint: Optional[str]


@dataclass(frozen=True)
class QuotaSelection:
    quota: int
    selected: tuple[IncludedCandidate, ...]
    total_tokens: int
    dropped_by_quota: int


def select_with_quota(
    entries: Sequence[SelectionEntry],
    quota: int,
    config: GuardrailConfig,
    counter: TokenCounter,
) -> QuotaSelection:
    """One greedy selection pass with a fixed per-document chunk quota.

    Each round picks the unconsumed entry with the highest MMR-lite score
    (score minus 0.15 when its document already has a selected chunk). A pick
    whose clipped text would overflow the context budget is consumed without
    being selected. The pass ends when ``rag_top_k`` entries are selected or
    no eligible entry remains.
    """
    consumed: set[int] = set()
    quota_blocked: set[int] = set()
    used_fingerprints: set[str] = set()
    doc_counts: dict[str, int] = {}
    selected: list[IncludedCandidate] = []
    tokens_used = 0

    while len(selected) < config.rag_top_k:
        best_index = None
        best_score = float("-inf")
        for index, entry in enumerate(entries):
            if index in consumed:
                continue
            doc_count = doc_counts.get(entry.doc_key, 0)
            if doc_count >= quota:
                quota_blocked.add(index)
                continue
            if entry.fingerprint is not None and entry.fingerprint in used_fingerprints:
                consumed.add(index)
                continue
            adjusted = entry.candidate.score - (MMR_LITE_PENALTY if doc_count > 0 else 0.0)
            if adjusted > best_score:
                best_index = index
                best_score = adjusted

        if best_index is None:
            break

        consumed.add(best_index)
        entry = entries[best_index]
        clipped = clip_text_to_tokens(entry.candidate.chunk_text, config.rag_context_clip_tokens, counter)
        if tokens_used + clipped.token_count > config.rag_context_token_budget:
            continue

        tokens_used += clipped.token_count
        doc_counts[entry.doc_key] = doc_counts.get(entry.doc_key, 0) + 1
        if entry.fingerprint is not None:
            used_fingerprints.add(entry.fingerprint)
        selected.append(
            IncludedCandidate(
                candidate=entry.candidate,
                clipped_text=clipped.text,
                clipped=clipped.clipped,
                token_count=clipped.token_count,
                doc_key=entry.doc_key,
            )
        )

    return QuotaSelection(
        quota=quota,
        selected=tuple(selected),
        total_tokens=tokens_used,
        dropped_by_quota=len(quota_blocked),
    )


def run_quota_sweep(
    entries: Sequence[SelectionEntry],
    config: GuardrailConfig,
    counter: TokenCounter,
) -> QuotaSelection:
    """Escalate the per-document quota until ``rag_top_k`` is reached.

    Every level restarts from scratch. The sweep also stops once a pass was
    not limited by the quota, since higher quotas would select the same set.
    """
    selection = select_with_quota(entries, QUOTA_START, config, counter)
    for quota in range(QUOTA_START + 1, QUOTA_CEILING + 1):
        if len(selection.selected) >= config.rag_top_k or selection.dropped_by_quota == 0:
            break
        selection = select_with_quota(entries, quota, config, counter)
    return selection


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------


def build_document_label(candidate: RetrievalCandidate) -> str:
    title = candidate_title(candidate)
    source = normalize_url(candidate_source_url(candidate))
    if title and source:
        return f"{title} ({source})"
    return title or source or ""


def _render_context_block(included: Sequence[IncludedCandidate]) -> str:
    entries = []
    for position, item in enumerate(included, start=1):
        info_line = " ".join(part for part in (f"({position})", build_document_label(item.candidate)) if part)
        entries.append("\n".join(part for part in (info_line, item.clipped_text.strip()) if part))
    return CONTEXT_SEPARATOR.join(entries)


def _empty_result() -> ContextWindowResult:
    return ContextWindowResult(
        context_block="",
        included=(),
        dropped=0,
        total_tokens=0,
        insufficient=True,
        highest_score=0.0,
    )


def build_context_window(
    candidates: Sequence[RetrievalCandidate],
    config: GuardrailConfig,
    *,
    token_counter: TokenCounter | None = None,
    include_verbose_details: Optional[bool] = None,
) -> ContextWindowResult:
    """Assemble the retrieval context block for a knowledge turn.

    Args:
        candidates: Normalized retrieval candidates in retrieval order.
        config: Resolved guardrail config.
        token_counter: Counter used for clipping and budgeting (defaults to tiktoken).
        include_verbose_details: Attach SelectionMetrics to the result.
            Defaults to the RAG_DEBUG environment flag.

    Returns:
        ContextWindowResult. ``insufficient`` is set when nothing was selected
        or the best deduplicated score is below the similarity threshold.
    """
    if include_verbose_details is None:
        include_verbose_details = _verbose_from_env()

    non_empty = [c for c in candidates or [] if c.chunk_text and c.chunk_text.strip()]
    if not non_empty:
        return _empty_result()

    # sorted() is stable, so equal scores keep retrieval order.
    ordered = sorted(non_empty, key=lambda c: c.score, reverse=True)

    chunk_dedupe = dedupe_selection_documents(ordered, lambda c, _i: fingerprint(c.chunk_text), "chunk")
    deduped = list(chunk_dedupe.deduped)
    doc_keys = [resolve_doc_key(c, i) for i, c in enumerate(deduped)]
    entries = [
        SelectionEntry(candidate=c, doc_key=doc_keys[i], fingerprint=fingerprint(c.chunk_text))
        for i, c in enumerate(deduped)
    ]

    counter = token_counter or get_default_token_counter()
    selection = run_quota_sweep(entries, config, counter)
    included = selection.selected

    highest_score = deduped[0].score
    insufficient = highest_score < config.similarity_threshold or len(included) == 0

    doc_dedupe = dedupe_selection_documents(deduped, lambda _c, i: doc_keys[i], "doc")
    metrics = SelectionMetrics(
        selection_unit=chunk_dedupe.selection_unit,
        input_count=chunk_dedupe.input_count,
        unique_before_dedupe=chunk_dedupe.unique_before_dedupe,
        unique_after_dedupe=chunk_dedupe.unique_after_dedupe,
        dropped_by_dedupe=chunk_dedupe.dropped_by_dedupe,
        dropped_by_quota=selection.dropped_by_quota,
        unique_docs=len({item.doc_key for item in included}),
        final_selected_count=len(included),
        quota_start=QUOTA_START,
        quota_end=QUOTA_CEILING,
        quota_end_used=selection.quota,
        mmr_lite=True,
        mmr_penalty=MMR_LITE_PENALTY,
        doc_input_count=doc_dedupe.input_count,
        doc_unique_before_dedupe=doc_dedupe.unique_before_dedupe,
        doc_unique_after_dedupe=doc_dedupe.unique_after_dedupe,
        doc_dropped_by_dedupe=doc_dedupe.dropped_by_dedupe,
    )

    logger.debug(
        "Context window: input=%d deduped=%d selected=%d tokens=%d/%d quota=%d highest=%.3f insufficient=%s",
        metrics.input_count,
        metrics.unique_after_dedupe,
        metrics.final_selected_count,
        selection.total_tokens,
        config.rag_context_token_budget,
        selection.quota,
        highest_score,
        insufficient,
    )
    if include_verbose_details:
        logger.debug("Selection metrics: %s", metrics)

    return ContextWindowResult(
        context_block=_render_context_block(included),
        included=included,
        dropped=len(deduped) - len(included),
        total_tokens=selection.total_tokens,
        insufficient=insufficient,
        highest_score=highest_score,
        selection_metrics=metrics if include_verbose_details else None,
    )


def build_intent_context_fallback(intent: ChatIntent, config: GuardrailConfig) -> ContextWindowResult:
    """Fixed context for turns that skip retrieval."""
    if intent == ChatIntent.CHITCHAT:
        block = config.fallbacks.chitchat
    elif intent == ChatIntent.COMMAND:
        block = config.fallbacks.command
    else:
        block = ""
    return ContextWindowResult(
        context_block=block,
        included=(),
        dropped=0,
        total_tokens=0,
        insufficient=True,
        highest_score=0.0,
    )
