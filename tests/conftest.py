"""Pytest configuration and shared fakes for the guardrail engine tests."""

from __future__ import annotations

from typing import Any, Optional

import pytest

from src.common.config_loader import AdminChatConfig, GuardrailDefaults, GuardrailNumericDefaults
from src.engine.candidates import normalize_candidate
from src.engine.types import FallbackTexts, GuardrailConfig, SummaryConfig


class WhitespaceTokenCounter:
    """Deterministic TokenCounter: one token per whitespace-separated word."""

    def count(self, text: str) -> int:
        return len(text.split()) if text else 0

    def truncate_to_tokens(self, text: str, limit: int) -> str:
        if not text or limit <= 0:
            return ""
        return " ".join(text.split()[:limit])


class FakeGenerator:
    """GenerationProvider returning queued responses (or raising queued exceptions)."""

    def __init__(self, *responses: Any):
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    async def generate(self, system_prompt, user_prompt, *, temperature, max_tokens):
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "user_prompt": user_prompt,
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
        )
        response = self.responses.pop(0) if self.responses else ""
        if isinstance(response, BaseException):
            raise response
        return response


class FakeEmbedder:
    """EmbeddingProvider mapping known texts to fixed vectors."""

    def __init__(self, vectors: Optional[dict[str, list[float]]] = None, default=(1.0, 0.0), error=None):
        self.vectors = vectors or {}
        self.default = list(default)
        self.error = error
        self.calls: list[list[str]] = []

    async def embed(self, texts, model=None):
        self.calls.append(list(texts))
        if self.error is not None:
            raise self.error
        return [list(self.vectors.get(text, self.default)) for text in texts]


class FakeVectorStore:
    """VectorStore returning a fixed list of raw rows (normalized on the way out)."""

    def __init__(self, rows=None, error=None):
        self.rows = list(rows or [])
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def match(self, embedding, match_count, similarity_floor, filter=None):
        self.calls.append(
            {
                "embedding": list(embedding),
                "match_count": match_count,
                "similarity_floor": similarity_floor,
                "filter": filter,
            }
        )
        if self.error is not None:
            raise self.error
        return [normalize_candidate(row) for row in self.rows]


class FakeConfigStore:
    def __init__(self, admin: AdminChatConfig | None = None, error: Exception | None = None):
        self.admin = admin or AdminChatConfig()
        self.error = error
        self.calls = 0

    def load_admin_config(self) -> AdminChatConfig:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.admin


class FakeClock:
    def __init__(self, start_ms: int = 1_000_000):
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


def make_guardrail_config(**overrides: Any) -> GuardrailConfig:
    summary = overrides.pop(
        "summary",
        SummaryConfig(enabled=True, trigger_tokens=400, max_chars=600, max_turns=6),
    )
    values: dict[str, Any] = {
        "similarity_threshold": 0.5,
        "rag_top_k": 5,
        "rag_context_token_budget": 1200,
        "rag_context_clip_tokens": 320,
        "history_token_budget": 900,
        "summary": summary,
        "chitchat_keywords": ("hello", "hi", "thanks", "thank you", "good morning"),
        "fallbacks": FallbackTexts(chitchat="CHITCHAT FALLBACK", command="COMMAND FALLBACK"),
    }
    values.update(overrides)
    return GuardrailConfig(**values)


def make_defaults(**numeric_overrides: Any) -> GuardrailDefaults:
    return GuardrailDefaults(
        chitchat_keywords=("hello", "hi", "thanks"),
        fallback_chitchat="compiled chitchat",
        fallback_command="compiled command",
        numeric=GuardrailNumericDefaults(**numeric_overrides),
    )


@pytest.fixture
def counter() -> WhitespaceTokenCounter:
    return WhitespaceTokenCounter()


@pytest.fixture
def config() -> GuardrailConfig:
    return make_guardrail_config()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def _clear_guardrail_env(monkeypatch):
    """Keep compiled guardrail defaults independent of the developer's shell."""
    for key in (
        "RAG_DEBUG",
        "RAG_SIMILARITY_THRESHOLD",
        "RAG_TOP_K",
        "CHAT_CONTEXT_TOKEN_BUDGET",
        "CHAT_CONTEXT_CLIP_TOKENS",
        "CHAT_HISTORY_TOKEN_BUDGET",
        "CHAT_SUMMARY_ENABLED",
        "CHAT_SUMMARY_TRIGGER_TOKENS",
        "CHAT_SUMMARY_MAX_TURNS",
        "CHAT_SUMMARY_MAX_CHARS",
        "CHAT_CHITCHAT_KEYWORDS",
        "CHAT_FALLBACK_CHITCHAT_CONTEXT",
        "CHAT_FALLBACK_COMMAND_CONTEXT",
    ):
        monkeypatch.delenv(key, raising=False)
