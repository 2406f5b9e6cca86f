from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ChatIntent(str, Enum):
    KNOWLEDGE = "knowledge"
    CHITCHAT = "chitchat"
    COMMAND = "command"


class Language(str, Enum):
    EN = "en"
    KO = "ko"
    MIXED = "mixed"
    UNKNOWN = "unknown"


class ReverseRagMode(str, Enum):
    PRECISION = "precision"
    RECALL = "recall"


class RankerMode(str, Enum):
    NONE = "none"
    MMR = "mmr"
    COHERE_RERANK = "cohere-rerank"


class SanitizationReason(str, Enum):
    INVALID_TYPE = "invalid-type"
    OUT_OF_RANGE = "out-of-range"
    ROUNDED = "rounded"
    INVALID_ENUM = "invalid-enum"


@dataclass(frozen=True)
class NormalizedQuestion:
    raw: str
    normalized: str
    canonical: str
    language: Language


@dataclass(frozen=True)
class RoutedQuestion:
    question: NormalizedQuestion
    intent: ChatIntent
    confidence: float
    reason: str


@dataclass(frozen=True)
class SummaryConfig:
    enabled: bool
    trigger_tokens: int
    max_chars: int
    max_turns: int


@dataclass(frozen=True)
class FallbackTexts:
    chitchat: str
    command: str


@dataclass(frozen=True)
class GuardrailConfig:
    """Resolved per-request guardrail configuration.

    Built fresh for every request by the config resolver and never mutated
    afterwards; use ``dataclasses.replace`` to derive a variant.
    """

    similarity_threshold: float
    rag_top_k: int
    rag_context_token_budget: int
    rag_context_clip_tokens: int
    history_token_budget: int
    summary: SummaryConfig
    chitchat_keywords: tuple[str, ...] = ()
    fallbacks: FallbackTexts = FallbackTexts(chitchat="", command="")


@dataclass(frozen=True)
class RuntimeFlags:
    reverse_rag_enabled: bool = False
    reverse_rag_mode: ReverseRagMode = ReverseRagMode.PRECISION
    hyde_enabled: bool = False
    ranker_mode: RankerMode = RankerMode.NONE


@dataclass(frozen=True)
class CandidateMetadata:
    doc_id: str | None = None
    source_url: str | None = None
    url: str | None = None
    title: str | None = None
    doc_type: str | None = None
    persona_type: str | None = None
    is_public: bool | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RetrievalCandidate:
    """A single retrieved chunk after alias normalization.

    ``doc_id``/``source_url`` hold values found at the top level of the raw
    record; ``metadata`` holds values found inside its metadata mapping.
    """

    chunk_text: str
    score: float
    metadata: CandidateMetadata = CandidateMetadata()
    doc_id: str | None = None
    source_url: str | None = None
    title: str | None = None


@dataclass(frozen=True)
class IncludedCandidate:
    candidate: RetrievalCandidate
    clipped_text: str
    clipped: bool
    token_count: int
    doc_key: str


@dataclass(frozen=True)
class SelectionMetrics:
    """Telemetry-only counters describing dedup and quota selection."""

    selection_unit: str
    input_count: int
    unique_before_dedupe: int
    unique_after_dedupe: int
    dropped_by_dedupe: int
    dropped_by_quota: int
    unique_docs: int
    final_selected_count: int
    quota_start: int
    quota_end: int
    quota_end_used: int
    mmr_lite: bool
    mmr_penalty: float
    doc_input_count: int = 0
    doc_unique_before_dedupe: int = 0
    doc_unique_after_dedupe: int = 0
    doc_dropped_by_dedupe: int = 0


@dataclass(frozen=True)
class ContextWindowResult:
    context_block: str
    included: tuple[IncludedCandidate, ...]
    dropped: int
    total_tokens: int
    insufficient: bool
    highest_score: float
    selection_metrics: SelectionMetrics | None = None


@dataclass(frozen=True)
class SanitizationChange:
    field: str
    from_value: Any
    to_value: Any
    reason: SanitizationReason


class GuardrailEngineError(RuntimeError):
    """Raised when a guardrail pipeline stage hits an unrecoverable error."""


class EmbeddingError(GuardrailEngineError):
    """Raised when the embedding provider fails."""


class VectorStoreError(GuardrailEngineError):
    """Raised when the vector store lookup fails."""


class GenerationError(GuardrailEngineError):
    """Raised when the generation provider fails."""
