"""Ingestion-time normalization of raw retrieval rows.

Vector-store rows arrive as loosely-typed mappings whose fields may appear under
several names (``doc_id``/``docId``/``documentId``, ``chunk``/``content``/``text``,
``similarity``/``score``). normalize_candidate() maps every known alias onto a
RetrievalCandidate once; downstream code never inspects alternate names.
"""

from __future__ import annotations

import logging
import math
from dataclasses import replace
from typing import Any, Iterable, Mapping

from .constants import DOC_TYPE_WEIGHTS, PERSONA_WEIGHTS
from .types import CandidateMetadata, RetrievalCandidate

logger = logging.getLogger(__name__)

_TEXT_KEYS = ("chunk", "chunk_text", "chunkText", "content", "text")
_SCORE_KEYS = ("similarity", "score", "similarity_score")
_DOC_ID_KEYS = ("doc_id", "docId", "document_id", "documentId")
_SOURCE_URL_KEYS = ("source_url", "sourceUrl")
_KNOWN_META_KEYS = set(_DOC_ID_KEYS) | set(_SOURCE_URL_KEYS) | {
    "url",
    "title",
    "doc_type",
    "docType",
    "persona_type",
    "personaType",
    "is_public",
    "isPublic",
}


def _first_str(source: Mapping[str, Any], keys: Iterable[str]) -> str | None:
    for key in keys:
        value = source.get(key)
        if isinstance(value, str):
            trimmed = value.strip()
            if trimmed:
                return trimmed
    return None


def _finite_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        number = float(value)
    except OverflowError:
        return None
    return number if math.isfinite(number) else None


def _first_number(source: Mapping[str, Any], keys: Iterable[str]) -> float | None:
    for key in keys:
        number = _finite_float(source.get(key))
        if number is not None:
            return number
    return None


def _optional_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    return None


def normalize_metadata(raw: Mapping[str, Any] | None) -> CandidateMetadata:
    meta = dict(raw) if isinstance(raw, Mapping) else {}
    is_public = _optional_bool(meta.get("is_public"))
    if is_public is None:
        is_public = _optional_bool(meta.get("isPublic"))
    return CandidateMetadata(
        doc_id=_first_str(meta, _DOC_ID_KEYS),
        source_url=_first_str(meta, _SOURCE_URL_KEYS),
        url=_first_str(meta, ("url",)),
        title=_first_str(meta, ("title",)),
        doc_type=_first_str(meta, ("doc_type", "docType")),
        persona_type=_first_str(meta, ("persona_type", "personaType")),
        is_public=is_public,
        extra={k: v for k, v in meta.items() if k not in _KNOWN_META_KEYS},
    )


def normalize_candidate(raw: Mapping[str, Any] | RetrievalCandidate) -> RetrievalCandidate:
    """Map a raw vector-store row onto a RetrievalCandidate.

    Missing text becomes "", a missing or non-finite score becomes 0.0.
    """
    if isinstance(raw, RetrievalCandidate):
        return raw
    row = dict(raw) if isinstance(raw, Mapping) else {}
    text = None
    for key in _TEXT_KEYS:
        value = row.get(key)
        if isinstance(value, str):
            text = value
            break
    score = _first_number(row, _SCORE_KEYS)
    return RetrievalCandidate(
        chunk_text=text or "",
        score=score if score is not None else 0.0,
        metadata=normalize_metadata(row.get("metadata")),
        doc_id=_first_str(row, _DOC_ID_KEYS),
        source_url=_first_str(row, _SOURCE_URL_KEYS),
        title=_first_str(row, ("title",)),
    )


def normalize_candidates(rows: Iterable[Mapping[str, Any] | RetrievalCandidate] | None) -> list[RetrievalCandidate]:
    return [normalize_candidate(row) for row in rows or []]


def resolve_doc_key(candidate: RetrievalCandidate, index: int) -> str:
    """Document identity used for per-document quota bookkeeping.

    Precedence: metadata doc id, top-level doc id, metadata source URL,
    top-level source URL, metadata ``url``, else a ``doc:{index}`` placeholder.
    """
    for value in (
        candidate.metadata.doc_id,
        candidate.doc_id,
        candidate.metadata.source_url,
        candidate.source_url,
        candidate.metadata.url,
    ):
        if value:
            return value
    return f"doc:{index}"


def candidate_title(candidate: RetrievalCandidate) -> str | None:
    return candidate.title or candidate.metadata.title


def candidate_source_url(candidate: RetrievalCandidate) -> str | None:
    return candidate.source_url or candidate.metadata.source_url or candidate.metadata.url


def normalize_url(url: str | None) -> str | None:
    if not url:
        return url
    if url.startswith("http://") or url.startswith("https://"):
        return url
    return "https://" + url.lstrip("/")


# ---------------------------------------------------------------------------
# Metadata weighting
# ---------------------------------------------------------------------------


def get_doc_type_weight(doc_type: str | None, overrides: Mapping[str, float] | None = None) -> float:
    if not doc_type:
        return 1.0
    override = _finite_float((overrides or {}).get(doc_type))
    if override is not None:
        return override
    return DOC_TYPE_WEIGHTS.get(doc_type, 1.0)


def get_persona_weight(persona: str | None, overrides: Mapping[str, float] | None = None) -> float:
    if not persona:
        return 1.0
    override = _finite_float((overrides or {}).get(persona))
    if override is not None:
        return override
    return PERSONA_WEIGHTS.get(persona, 1.0)


def compute_metadata_weight(
    meta: CandidateMetadata,
    *,
    doc_type_overrides: Mapping[str, float] | None = None,
    persona_overrides: Mapping[str, float] | None = None,
) -> float:
    return get_doc_type_weight(meta.doc_type, doc_type_overrides) * get_persona_weight(
        meta.persona_type, persona_overrides
    )


def apply_metadata_weights(
    candidates: Iterable[RetrievalCandidate],
    *,
    doc_type_overrides: Mapping[str, float] | None = None,
    persona_overrides: Mapping[str, float] | None = None,
) -> list[RetrievalCandidate]:
    """Scale each score by its doc-type and persona weight.

    Candidates explicitly marked non-public are removed. Output order follows
    input order; the context assembler does the final sort.
    """
    weighted: list[RetrievalCandidate] = []
    filtered = 0
    for candidate in candidates:
        if candidate.metadata.is_public is False:
            filtered += 1
            continue
        weight = compute_metadata_weight(
            candidate.metadata,
            doc_type_overrides=doc_type_overrides,
            persona_overrides=persona_overrides,
        )
        weighted.append(replace(candidate, score=candidate.score * weight))
    if filtered:
        logger.debug("Metadata weighting filtered %d non-public candidates", filtered)
    return weighted
