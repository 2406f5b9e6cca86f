"""Per-turn guardrail pipeline.

Stages run in order, each feeding the next:

    settings -> route -> history window -> enhance -> embed -> retrieve
    -> weight -> rerank -> assemble context -> metadata record

Failure policy:
- EmbeddingError / VectorStoreError from the primary retrieval path propagate.
- Query rewrite, HyDE and reranking degrade to pass-through (handled in their
  own modules).
- An unavailable admin config store degrades to compiled defaults.

Two optional TTL caches can short-circuit work: the response cache returns a
whole previous result for an identical conversation and config, the
retrieval cache skips enhancement, embedding and lookup for a repeated
question. The pipeline holds no other per-request state; one instance serves
concurrent turns.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, replace
from typing import Any, Iterable, Optional

from ..common.config_loader import ChatPreset, SessionChatConfig
from .cache import TtlCache, hash_payload
from .candidates import apply_metadata_weights
from .constants import CANDIDATE_MAX, CANDIDATE_MIN, CANDIDATE_MULTIPLIER, RERANK_K_DEFAULT
from .context_window import build_context_window, build_intent_context_fallback
from .conversation import HistoryMessage, HistoryWindowResult, apply_history_window, sanitize_messages
from .guardrail_config import (
    GuardrailSettings,
    GuardrailSettingsLoader,
    resolve_preset,
    resolve_guardrail_config,
    resolve_runtime_flags,
    sanitize_chat_settings,
)
from .guardrail_meta import GuardrailMeta, build_guardrail_meta
from .intent_router import normalize_question, route_question
from .llm_client import GenerationProvider
from .query_enhancer import EnhancementSummary, passthrough_summary, process_pre_retrieval
from .reranker import apply_ranker
from .retrieval import EmbeddingProvider, VectorStore
from .tokens import TokenCounter, get_default_token_counter
from .types import (
    ChatIntent,
    ContextWindowResult,
    EmbeddingError,
    GuardrailConfig,
    RankerMode,
    RoutedQuestion,
    RuntimeFlags,
    SanitizationChange,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GuardrailResult:
    """Everything the generation stage needs from one guardrail pass."""

    preset_id: str
    routed: RoutedQuestion
    history: HistoryWindowResult
    context: ContextWindowResult
    guardrails: GuardrailConfig
    runtime_flags: RuntimeFlags
    enhancements: EnhancementSummary
    meta: GuardrailMeta
    sanitization_changes: tuple[SanitizationChange, ...] = ()
    settings_from_cache: bool = False
    retrieval_cache_hit: Optional[bool] = None
    response_cache_hit: Optional[bool] = None


@dataclass(frozen=True)
class ResolvedTurnSettings:
    preset_id: str
    preset: ChatPreset
    settings: GuardrailSettings
    guardrails: GuardrailConfig
    runtime_flags: RuntimeFlags
    changes: tuple[SanitizationChange, ...]
    from_cache: bool


@dataclass(frozen=True)
class _CachedRetrieval:
    context: ContextWindowResult
    enhancements: EnhancementSummary


def resolve_turn_settings(
    settings_loader: GuardrailSettingsLoader,
    session: SessionChatConfig | None = None,
    *,
    safe_mode: bool = False,
    default_preset: str = "default",
) -> ResolvedTurnSettings:
    """Load admin settings, resolve the session over them and sanitize the result.

    ``default_preset`` applies only when the session names no preset.
    """
    if session is None:
        session = SessionChatConfig()
    if not session.preset_id and default_preset != "default":
        session = session.model_copy(update={"preset_id": default_preset})

    settings_result = settings_loader.load()
    settings = settings_result.settings
    preset_id, preset = resolve_preset(settings, session)
    sanitized = sanitize_chat_settings(
        resolve_guardrail_config(settings, session, safe_mode=safe_mode),
        resolve_runtime_flags(settings, session),
    )
    if sanitized.changes:
        logger.info("Guardrail settings sanitized: %d field(s) changed", len(sanitized.changes))

    return ResolvedTurnSettings(
        preset_id=preset_id,
        preset=preset,
        settings=settings,
        guardrails=sanitized.guardrails,
        runtime_flags=sanitized.runtime_flags,
        changes=sanitized.changes,
        from_cache=settings_result.from_cache,
    )


def candidate_pool_size(top_k: int, minimum: int = CANDIDATE_MIN) -> int:
    """Number of vector-store matches to fetch before reranking."""
    return max(minimum, min(CANDIDATE_MAX, top_k * CANDIDATE_MULTIPLIER))


def rerank_pool_size(top_k: int, candidate_k: int, mode: RankerMode) -> int:
    """Number of candidates the ranker hands to context assembly.

    Without a reranker this is ``top_k``. With one, assembly gets up to
    RERANK_K_DEFAULT items (never fewer than ``top_k``, never more than the
    pool) so deduplication and the per-document quota can backfill.
    """
    if mode == RankerMode.NONE:
        return top_k
    return max(top_k, min(candidate_k, RERANK_K_DEFAULT))


def build_retrieval_cache_key(
    preset_id: str,
    question: str,
    guardrails: GuardrailConfig,
    flags: RuntimeFlags,
    candidate_k: int,
) -> str:
    digest = hash_payload(
        {
            "question": question,
            "preset_id": preset_id,
            "rag_top_k": guardrails.rag_top_k,
            "similarity_threshold": guardrails.similarity_threshold,
            "context_token_budget": guardrails.rag_context_token_budget,
            "clip_tokens": guardrails.rag_context_clip_tokens,
            "candidate_k": candidate_k,
            "reverse_rag_enabled": flags.reverse_rag_enabled,
            "reverse_rag_mode": flags.reverse_rag_mode,
            "hyde_enabled": flags.hyde_enabled,
            "ranker_mode": flags.ranker_mode,
        }
    )
    return f"chat:retrieval:{preset_id}:{digest}"


def build_response_cache_key(
    preset_id: str,
    messages: Iterable[HistoryMessage],
    guardrails: GuardrailConfig,
    flags: RuntimeFlags,
    rag_enabled: bool = True,
) -> str:
    digest = hash_payload(
        {
            "preset_id": preset_id,
            "messages": [[m.role, m.content] for m in messages],
            "guardrails": asdict(guardrails),
            "flags": asdict(flags),
            "rag_enabled": rag_enabled,
        }
    )
    return f"chat:response:{preset_id}:{digest}"


class GuardrailPipeline:
    """Orchestrates routing, history windowing and retrieval context for a chat turn."""

    def __init__(
        self,
        settings_loader: GuardrailSettingsLoader,
        *,
        embedder: EmbeddingProvider,
        vector_store: VectorStore,
        generator: GenerationProvider | None = None,
        token_counter: TokenCounter | None = None,
        retrieval_cache: TtlCache | None = None,
        retrieval_cache_ttl_seconds: float = 0,
        response_cache: TtlCache | None = None,
        response_cache_ttl_seconds: float = 0,
        min_candidates: int = CANDIDATE_MIN,
        llm_model: str | None = None,
        embedding_model: str | None = None,
        include_verbose_details: Optional[bool] = None,
        default_preset: str = "default",
    ):
        self.settings_loader = settings_loader
        self.embedder = embedder
        self.vector_store = vector_store
        self.generator = generator
        self.token_counter = token_counter or get_default_token_counter()
        self.retrieval_cache = retrieval_cache
        self.retrieval_cache_ttl_seconds = retrieval_cache_ttl_seconds
        self.response_cache = response_cache
        self.response_cache_ttl_seconds = response_cache_ttl_seconds
        self.min_candidates = min_candidates
        self.llm_model = llm_model
        self.embedding_model = embedding_model
        self.include_verbose_details = include_verbose_details
        self.default_preset = default_preset

    async def run(
        self,
        messages: Iterable[Any],
        session: SessionChatConfig | None = None,
        *,
        safe_mode: bool = False,
    ) -> GuardrailResult:
        """Run one guardrail pass over a conversation.

        Args:
            messages: Conversation history, oldest first, ending with the
                current user turn (mappings with role/content or HistoryMessage).
            session: Optional per-session overrides.
            safe_mode: Cap context and history budgets for this request.

        Raises:
            ValueError: No user message in ``messages``.
            EmbeddingError, VectorStoreError: Primary retrieval failed.
        """
        history_messages = sanitize_messages(messages)
        user_turns = [m for m in history_messages if m.role == "user"]
        if not user_turns:
            raise ValueError("Conversation contains no user message.")
        question = user_turns[-1].content

        resolved = resolve_turn_settings(
            self.settings_loader, session, safe_mode=safe_mode, default_preset=self.default_preset
        )
        preset_id = resolved.preset_id
        guardrails = resolved.guardrails
        flags = resolved.runtime_flags
        rag_enabled = resolved.preset.rag.enabled

        response_key = None
        if self.response_cache is not None and self.response_cache_ttl_seconds > 0:
            response_key = build_response_cache_key(preset_id, history_messages, guardrails, flags, rag_enabled)
            cached = self.response_cache.get(response_key)
            if cached is not None:
                logger.debug("Response cache hit: preset=%s", preset_id)
                return replace(cached, settings_from_cache=resolved.from_cache, response_cache_hit=True)

        normalized = normalize_question(question)
        routed = route_question(normalized, history_messages, guardrails)
        history = apply_history_window(history_messages, guardrails, token_counter=self.token_counter)

        retrieval_cache_hit: Optional[bool] = None
        if routed.intent == ChatIntent.KNOWLEDGE and rag_enabled:
            context, enhancements, retrieval_cache_hit = await self._retrieve(
                normalized.normalized, preset_id, guardrails, flags, resolved.settings.admin.rag_ranking
            )
        else:
            context = build_intent_context_fallback(routed.intent, guardrails)
            enhancements = passthrough_summary(normalized.normalized, flags)
            if routed.intent == ChatIntent.KNOWLEDGE:
                logger.debug("Retrieval disabled by preset %s", preset_id)
            else:
                logger.debug("Intent fallback: intent=%s", routed.intent.value)

        meta = build_guardrail_meta(
            routed,
            history,
            context,
            guardrails,
            self.token_counter,
            enhancements=enhancements,
            llm_model=self.llm_model,
            embedding_model=self.embedding_model,
        )

        logger.info(
            "Guardrail pass: preset=%s intent=%s history=%d/%d context=%d chunks insufficient=%s cache_hit=%s",
            preset_id,
            routed.intent.value,
            history.token_count,
            guardrails.history_token_budget,
            len(context.included),
            context.insufficient,
            retrieval_cache_hit,
        )

        result = GuardrailResult(
            preset_id=preset_id,
            routed=routed,
            history=history,
            context=context,
            guardrails=guardrails,
            runtime_flags=flags,
            enhancements=enhancements,
            meta=meta,
            sanitization_changes=resolved.changes,
            settings_from_cache=resolved.from_cache,
            retrieval_cache_hit=retrieval_cache_hit,
        )
        if response_key is not None:
            self.response_cache.set(response_key, result, self.response_cache_ttl_seconds)
            result = replace(result, response_cache_hit=False)
        return result

    async def _retrieve(
        self,
        question: str,
        preset_id: str,
        guardrails: GuardrailConfig,
        flags: RuntimeFlags,
        rag_ranking: Any,
    ) -> tuple[ContextWindowResult, EnhancementSummary, Optional[bool]]:
        candidate_k = candidate_pool_size(guardrails.rag_top_k, self.min_candidates)

        cache_key = None
        if self.retrieval_cache is not None and self.retrieval_cache_ttl_seconds > 0:
            cache_key = build_retrieval_cache_key(preset_id, question, guardrails, flags, candidate_k)
            cached = self.retrieval_cache.get(cache_key)
            if cached is not None:
                logger.debug("Retrieval cache hit: preset=%s", preset_id)
                return cached.context, cached.enhancements, True

        pre = await process_pre_retrieval(question, flags, self.generator)

        vectors = await self.embedder.embed([pre.embedding_target], self.embedding_model)
        if not vectors or not vectors[0]:
            raise EmbeddingError("Embedding provider returned no vector for the query.")
        query_embedding = vectors[0]

        matches = await self.vector_store.match(query_embedding, candidate_k, guardrails.similarity_threshold)
        weighted = apply_metadata_weights(
            matches,
            doc_type_overrides=getattr(rag_ranking, "doc_type_weights", None),
            persona_overrides=getattr(rag_ranking, "persona_type_weights", None),
        )
        weighted.sort(key=lambda c: c.score, reverse=True)

        ranked = await apply_ranker(
            weighted,
            mode=flags.ranker_mode,
            max_results=rerank_pool_size(guardrails.rag_top_k, candidate_k, flags.ranker_mode),
            query_embedding=query_embedding,
            embedder=self.embedder,
        )
        context = build_context_window(
            ranked,
            guardrails,
            token_counter=self.token_counter,
            include_verbose_details=self.include_verbose_details,
        )

        logger.debug(
            "Context compression: retrieved=%d weighted=%d ranked=%d included=%d dropped=%d tokens=%d ranker=%s",
            len(matches),
            len(weighted),
            len(ranked),
            len(context.included),
            context.dropped,
            context.total_tokens,
            flags.ranker_mode.value,
        )

        if cache_key is not None:
            self.retrieval_cache.set(
                cache_key,
                _CachedRetrieval(context=context, enhancements=pre.enhancement_summary),
                self.retrieval_cache_ttl_seconds,
            )
            return context, pre.enhancement_summary, False
        return context, pre.enhancement_summary, None
