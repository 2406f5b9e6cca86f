"""
Unified configuration loader for the guardrail context engine.

This module is the single source of truth for all configuration:
- Settings dataclass (models, vector store, cache TTLs)
- Loading settings from config/settings.yaml with env var overrides
- Compiled-in guardrail defaults (env-overridable, used when the admin
  config store is unavailable)
- Pydantic schemas for admin-managed chat config and per-session overrides
- The YAML-backed admin config store

All code should import configuration from this module, not from settings.yaml directly.
"""

from __future__ import annotations

import functools
import logging
import math
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Optional, Protocol

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

_CONFIG_DIR = Path(__file__).resolve().parents[2] / "config"
_REPO_ROOT = Path(__file__).resolve().parents[2]

ADMIN_CHAT_CONFIG_KEY = "admin_chat_config"


# ─────────────────────────────────────────────────────────────────────────────
# Core Settings Dataclass
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Settings:
    """Application settings - all values loaded from config/settings.yaml.

    This is a frozen dataclass to ensure immutability after loading.
    All values are set at load time from the YAML config with env var overrides.
    """
    # OpenAI settings
    chat_model: str = ""
    embedding_model: str = ""
    llm_max_retries: int = 3

    # Vector store
    vector_store_path: Path = Path("data/vector_store")
    chroma_collection: str = "knowledge_chunks"
    retrieval_match_count: int = 20   # Candidates fetched before reranking

    # Caches
    response_cache_ttl_seconds: int = 300
    retrieval_cache_ttl_seconds: int = 60
    guardrail_settings_ttl_ms: int = 60_000
    cache_max_entries: int = 512     # Per TTL cache, oldest evicted first

    # Preset applied when the session does not name one
    default_preset: str = "default"


# ─────────────────────────────────────────────────────────────────────────────
# Settings Loading Helpers
# ─────────────────────────────────────────────────────────────────────────────


def _env_int(key: str, default: int) -> int:
    val = os.getenv(key)
    return int(val) if val and val.strip() else default


def _validate_settings(settings: Settings) -> None:
    """Validate settings values."""
    if settings.retrieval_match_count < 1:
        raise ValueError(f"rag.match_count must be >= 1 (got {settings.retrieval_match_count})")

    if settings.llm_max_retries < 0:
        raise ValueError(f"openai.max_retries must be >= 0 (got {settings.llm_max_retries})")

    if settings.cache_max_entries < 1:
        raise ValueError(f"cache.max_entries must be >= 1 (got {settings.cache_max_entries})")

    for name in ("response_cache_ttl_seconds", "retrieval_cache_ttl_seconds", "guardrail_settings_ttl_ms"):
        value = getattr(settings, name)
        if value < 0:
            raise ValueError(f"{name} must be >= 0 (got {value})")


def _load_settings_yaml() -> dict[str, Any]:
    """Load raw settings from config/settings.yaml."""
    settings_path = _CONFIG_DIR / "settings.yaml"
    if not settings_path.exists():
        return {}
    with open(settings_path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


@functools.lru_cache(maxsize=1)
def load_settings() -> Settings:
    """Load and validate application settings from config/settings.yaml.

    Environment variables override YAML values:
    - OPENAI_CHAT_MODEL, OPENAI_EMBEDDING_MODEL, OPENAI_MAX_RETRIES
    - RAG_VECTOR_STORE_PATH, RAG_CHROMA_COLLECTION, RAG_MATCH_COUNT
    - CHAT_RESPONSE_CACHE_TTL_SECONDS, CHAT_RETRIEVAL_CACHE_TTL_SECONDS
    - CHAT_GUARDRAIL_SETTINGS_TTL_MS, CHAT_CACHE_MAX_ENTRIES, CHAT_DEFAULT_PRESET

    Returns:
        Settings: Validated, frozen settings object
    """
    load_dotenv()

    config = _load_settings_yaml()

    openai_cfg = config.get("openai", {})
    rag_cfg = config.get("rag", {})
    cache_cfg = config.get("cache", {})
    paths_cfg = config.get("paths", {})

    chat_model = os.getenv("OPENAI_CHAT_MODEL") or openai_cfg.get("chat_model", "")
    embedding_model = os.getenv("OPENAI_EMBEDDING_MODEL") or openai_cfg.get("embedding_model", "")
    llm_max_retries = _env_int("OPENAI_MAX_RETRIES", int(openai_cfg.get("max_retries", 3)))

    vector_store_path = Path(
        os.getenv("RAG_VECTOR_STORE_PATH") or paths_cfg.get("vector_store_path", "data/vector_store")
    )
    if not vector_store_path.is_absolute():
        vector_store_path = _REPO_ROOT / vector_store_path

    chroma_collection = os.getenv("RAG_CHROMA_COLLECTION") or rag_cfg.get("collection", "knowledge_chunks")
    match_count = _env_int("RAG_MATCH_COUNT", int(rag_cfg.get("match_count", 20)))

    response_ttl = _env_int("CHAT_RESPONSE_CACHE_TTL_SECONDS", int(cache_cfg.get("response_ttl_seconds", 300)))
    retrieval_ttl = _env_int("CHAT_RETRIEVAL_CACHE_TTL_SECONDS", int(cache_cfg.get("retrieval_ttl_seconds", 60)))
    guardrail_ttl = _env_int("CHAT_GUARDRAIL_SETTINGS_TTL_MS", int(cache_cfg.get("guardrail_settings_ttl_ms", 60_000)))
    cache_max_entries = _env_int("CHAT_CACHE_MAX_ENTRIES", int(cache_cfg.get("max_entries", 512)))

    default_preset = os.getenv("CHAT_DEFAULT_PRESET") or config.get("chat", {}).get("default_preset", "default")

    settings = Settings(
        chat_model=str(chat_model),
        embedding_model=str(embedding_model),
        llm_max_retries=llm_max_retries,
        vector_store_path=vector_store_path,
        chroma_collection=str(chroma_collection),
        retrieval_match_count=match_count,
        response_cache_ttl_seconds=response_ttl,
        retrieval_cache_ttl_seconds=retrieval_ttl,
        guardrail_settings_ttl_ms=guardrail_ttl,
        cache_max_entries=cache_max_entries,
        default_preset=str(default_preset),
    )

    _validate_settings(settings)
    return settings


def get_settings_yaml() -> dict[str, Any]:
    """Get raw settings dict from YAML."""
    return _load_settings_yaml()


# ─────────────────────────────────────────────────────────────────────────────
# Compiled Guardrail Defaults
# ─────────────────────────────────────────────────────────────────────────────

_DEFAULT_CHITCHAT_KEYWORDS = (
    "hello,hi,how are you,whats up,what is up,tell me a joke,thank you,thanks,"
    "lol,haha,good morning,good evening"
)
_DEFAULT_CHITCHAT_FALLBACK = (
    "This is a light-weight chit-chat turn. Keep the response concise, warm, "
    "and avoid citing the knowledge base."
)
_DEFAULT_COMMAND_FALLBACK = (
    "The user is asking for an action/command. You must politely decline to "
    "execute actions and instead explain what is possible."
)


@dataclass(frozen=True)
class GuardrailNumericDefaults:
    similarity_threshold: float = 0.78
    rag_top_k: int = 5
    rag_context_token_budget: int = 1200
    rag_context_clip_tokens: int = 320
    history_token_budget: int = 900
    summary_enabled: bool = True
    summary_trigger_tokens: int = 400
    summary_max_turns: int = 6
    summary_max_chars: int = 600


@dataclass(frozen=True)
class GuardrailDefaults:
    chitchat_keywords: tuple[str, ...]
    fallback_chitchat: str
    fallback_command: str
    numeric: GuardrailNumericDefaults = field(default_factory=GuardrailNumericDefaults)


def parse_keyword_list(value: str | list[str] | tuple[str, ...] | None) -> tuple[str, ...]:
    """Split a comma/newline list into lowercased, de-duplicated keywords (order kept)."""
    if not value:
        return ()
    entries = list(value) if isinstance(value, (list, tuple)) else re.split(r"\r?\n|,", value)
    normalized = [str(entry).strip().lower() for entry in entries]
    return tuple(dict.fromkeys(entry for entry in normalized if entry))


def normalize_guardrail_text(value: str | None) -> str:
    if not value:
        return ""
    return value.replace("\r\n", "\n").strip()


def _env_number(key: str, default: float) -> float:
    # Unparseable values become NaN and are replaced by the field minimum.
    val = os.getenv(key)
    if val is None or val.strip() == "":
        return float(default)
    try:
        return float(val)
    except ValueError:
        return math.nan


def _ensure_min(value: float, minimum: float) -> int:
    if not math.isfinite(value):
        return int(minimum)
    return int(max(minimum, value))


def get_guardrail_defaults() -> GuardrailDefaults:
    """Build the compiled-in guardrail defaults, applying env overrides.

    Read on every call (not cached) so env changes are visible to tests.
    """
    similarity = _env_number("RAG_SIMILARITY_THRESHOLD", 0.78)
    numeric = GuardrailNumericDefaults(
        similarity_threshold=min(1.0, max(0.0, similarity)) if math.isfinite(similarity) else 0.0,
        rag_top_k=_ensure_min(_env_number("RAG_TOP_K", 5), 1),
        rag_context_token_budget=_ensure_min(_env_number("CHAT_CONTEXT_TOKEN_BUDGET", 1200), 200),
        rag_context_clip_tokens=_ensure_min(_env_number("CHAT_CONTEXT_CLIP_TOKENS", 320), 64),
        history_token_budget=_ensure_min(_env_number("CHAT_HISTORY_TOKEN_BUDGET", 900), 200),
        summary_enabled=os.getenv("CHAT_SUMMARY_ENABLED", "true").strip().lower() != "false",
        summary_trigger_tokens=_ensure_min(_env_number("CHAT_SUMMARY_TRIGGER_TOKENS", 400), 200),
        summary_max_turns=_ensure_min(_env_number("CHAT_SUMMARY_MAX_TURNS", 6), 2),
        summary_max_chars=_ensure_min(_env_number("CHAT_SUMMARY_MAX_CHARS", 600), 200),
    )
    return GuardrailDefaults(
        chitchat_keywords=parse_keyword_list(os.getenv("CHAT_CHITCHAT_KEYWORDS", _DEFAULT_CHITCHAT_KEYWORDS)),
        fallback_chitchat=normalize_guardrail_text(
            os.getenv("CHAT_FALLBACK_CHITCHAT_CONTEXT", _DEFAULT_CHITCHAT_FALLBACK)
        ),
        fallback_command=normalize_guardrail_text(
            os.getenv("CHAT_FALLBACK_COMMAND_CONTEXT", _DEFAULT_COMMAND_FALLBACK)
        ),
        numeric=numeric,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Pydantic Schemas for Admin / Session Chat Config
# ─────────────────────────────────────────────────────────────────────────────

SummaryLevel = Literal["off", "low", "medium", "high"]
RankerId = Literal["none", "mmr", "cohere-rerank"]


class NumericLimit(BaseModel):
    """An admin-editable numeric range with its default."""

    min: float
    max: float
    default: float


class NumericLimitsConfig(BaseModel):
    """Admin numeric limits; a missing entry falls back to the compiled default."""

    rag_top_k: Optional[NumericLimit] = None
    similarity_threshold: Optional[NumericLimit] = None
    context_budget: Optional[NumericLimit] = None
    history_budget: Optional[NumericLimit] = None
    clip_tokens: Optional[NumericLimit] = None


class AllowlistConfig(BaseModel):
    rankers: list[RankerId] = ["none", "mmr"]
    allow_reverse_rag: bool = True
    allow_hyde: bool = True


class GuardrailTextConfig(BaseModel):
    chitchat_keywords: list[str] = []
    fallback_chitchat: str = ""
    fallback_command: str = ""

    @field_validator("chitchat_keywords", mode="before")
    @classmethod
    def ensure_list(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return list(parse_keyword_list(v))
        return list(v)


class SummaryPreset(BaseModel):
    every_n_turns: int = Field(ge=1)


class SummaryPresetsConfig(BaseModel):
    low: SummaryPreset = SummaryPreset(every_n_turns=8)
    medium: SummaryPreset = SummaryPreset(every_n_turns=6)
    high: SummaryPreset = SummaryPreset(every_n_turns=4)


class RagPreset(BaseModel):
    enabled: bool = True
    top_k: Optional[int] = None
    similarity: Optional[float] = None


class ContextPreset(BaseModel):
    token_budget: Optional[int] = None
    history_budget: Optional[int] = None
    clip_tokens: Optional[int] = None


class FeatureFlagsPreset(BaseModel):
    reverse_rag: bool = False
    reverse_rag_mode: Literal["precision", "recall"] = "precision"
    hyde: bool = False
    ranker: RankerId = "none"


class ChatPreset(BaseModel):
    rag: RagPreset = RagPreset()
    context: ContextPreset = ContextPreset()
    features: FeatureFlagsPreset = FeatureFlagsPreset()
    summary_level: Optional[SummaryLevel] = None


class PresetsConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    default: ChatPreset = ChatPreset()
    fast: ChatPreset = ChatPreset()
    high_recall: ChatPreset = Field(default_factory=ChatPreset, alias="highRecall")

    def get(self, preset_id: str | None) -> ChatPreset | None:
        if preset_id == "default":
            return self.default
        if preset_id == "fast":
            return self.fast
        if preset_id in ("highRecall", "high_recall"):
            return self.high_recall
        return None


class RagRankingConfig(BaseModel):
    doc_type_weights: dict[str, float] = {}
    persona_type_weights: dict[str, float] = {}


class AdminChatConfig(BaseModel):
    """Admin-managed chat configuration (the ``admin_chat_config`` section)."""

    numeric_limits: NumericLimitsConfig = NumericLimitsConfig()
    allowlist: AllowlistConfig = AllowlistConfig()
    guardrails: GuardrailTextConfig = GuardrailTextConfig()
    summary_presets: SummaryPresetsConfig = SummaryPresetsConfig()
    presets: PresetsConfig = PresetsConfig()
    rag_ranking: RagRankingConfig = RagRankingConfig()


class SessionFeatures(BaseModel):
    reverse_rag: Optional[bool] = None
    reverse_rag_mode: Optional[str] = None
    hyde: Optional[bool] = None
    ranker: Optional[str] = None


class SessionChatConfig(BaseModel):
    """Per-session overrides sent by the chat client.

    Numeric fields accept any value; the resolver keeps only finite numbers.
    """

    preset_id: Optional[str] = None
    top_k: Optional[Any] = None
    similarity: Optional[Any] = None
    context_token_budget: Optional[Any] = None
    history_token_budget: Optional[Any] = None
    clip_tokens: Optional[Any] = None
    summary_level: Optional[SummaryLevel] = None
    safe_mode: bool = False
    features: SessionFeatures = SessionFeatures()


def parse_admin_chat_config(raw: Any) -> AdminChatConfig:
    """Validate a raw admin config payload.

    Raises:
        ValueError: If the payload is not a mapping or fails validation.
    """
    if raw is None:
        return AdminChatConfig()
    if not isinstance(raw, dict):
        raise ValueError(f"{ADMIN_CHAT_CONFIG_KEY} must be a mapping (got {type(raw).__name__})")
    try:
        return AdminChatConfig.model_validate(raw)
    except ValidationError as e:
        raise ValueError(f"Invalid {ADMIN_CHAT_CONFIG_KEY}: {e.errors()}") from e


class ConfigStore(Protocol):
    def load_admin_config(self) -> AdminChatConfig: ...


class YamlConfigStore:
    """Reads admin chat config from the ``admin_chat_config`` section of settings.yaml."""

    def __init__(self, path: Path | None = None):
        self.path = path or (_CONFIG_DIR / "settings.yaml")

    def load_admin_config(self) -> AdminChatConfig:
        if not self.path.exists():
            raise FileNotFoundError(f"Settings file not found: {self.path}")
        with open(self.path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        return parse_admin_chat_config(raw.get(ADMIN_CHAT_CONFIG_KEY))


def clear_config_cache() -> None:
    """Clear all cached configurations (useful for testing)."""
    load_settings.cache_clear()
