from __future__ import annotations

import asyncio
import functools
from typing import Any, Iterable

from ..common.config_loader import (
    ConfigStore,
    SessionChatConfig,
    Settings,
    YamlConfigStore,
    load_settings,
)
from ..engine.cache import TtlCache
from ..engine.guardrail_config import GuardrailSettingsLoader
from ..engine.llm_client import GenerationProvider, OpenAIGenerationProvider
from ..engine.pipeline import GuardrailPipeline, GuardrailResult
from ..engine.retrieval import ChromaVectorStore, EmbeddingProvider, OpenAIEmbeddingProvider, VectorStore


def build_pipeline(
    *,
    settings: Settings | None = None,
    store: ConfigStore | None = None,
    embedder: EmbeddingProvider | None = None,
    vector_store: VectorStore | None = None,
    generator: GenerationProvider | None = None,
) -> GuardrailPipeline:
    """Wire the concrete collaborators into a GuardrailPipeline.

    Any collaborator not passed in is built from settings (OpenAI for
    embeddings and generation, Chroma for the vector store, settings.yaml for
    the admin config).
    """
    resolved = settings or load_settings()
    return GuardrailPipeline(
        GuardrailSettingsLoader(store or YamlConfigStore(), ttl_ms=resolved.guardrail_settings_ttl_ms),
        embedder=embedder or OpenAIEmbeddingProvider(resolved.embedding_model),
        vector_store=vector_store
        or ChromaVectorStore.from_path(resolved.vector_store_path, resolved.chroma_collection),
        generator=generator
        or OpenAIGenerationProvider(resolved.chat_model, max_retries=resolved.llm_max_retries),
        retrieval_cache=TtlCache(max_entries=resolved.cache_max_entries),
        retrieval_cache_ttl_seconds=resolved.retrieval_cache_ttl_seconds,
        response_cache=TtlCache(max_entries=resolved.cache_max_entries),
        response_cache_ttl_seconds=resolved.response_cache_ttl_seconds,
        min_candidates=resolved.retrieval_match_count,
        llm_model=resolved.chat_model,
        embedding_model=resolved.embedding_model,
        default_preset=resolved.default_preset,
    )


@functools.lru_cache(maxsize=1)
def get_pipeline() -> GuardrailPipeline:
    """Process-wide pipeline built from settings (shared by the API and CLI)."""
    return build_pipeline()


def _session(session: SessionChatConfig | dict[str, Any] | None) -> SessionChatConfig | None:
    if session is None or isinstance(session, SessionChatConfig):
        return session
    return SessionChatConfig.model_validate(session)


async def prepare_chat_context_async(
    messages: Iterable[Any],
    *,
    session: SessionChatConfig | dict[str, Any] | None = None,
    safe_mode: bool = False,
    pipeline: GuardrailPipeline | None = None,
) -> GuardrailResult:
    return await (pipeline or get_pipeline()).run(messages, _session(session), safe_mode=safe_mode)


def prepare_chat_context(
    messages: Iterable[Any],
    *,
    session: SessionChatConfig | dict[str, Any] | None = None,
    safe_mode: bool = False,
    pipeline: GuardrailPipeline | None = None,
) -> GuardrailResult:
    """Synchronous facade over the pipeline for scripts and the CLI."""
    return asyncio.run(
        prepare_chat_context_async(messages, session=session, safe_mode=safe_mode, pipeline=pipeline)
    )
