"""Constants for intent routing, context selection, and query enhancement.

The keyword lists control how the guardrail engine classifies user turns.
Command keywords use plain substring matching against the canonical question;
chitchat keywords use prefix matching (see intent_router.matches_chitchat_keyword).
"""

# ---------------------------------------------------------------------------
# Environment helpers
# ---------------------------------------------------------------------------
_TRUTHY_ENV_VALUES = {"1", "true", "yes", "on"}

# ---------------------------------------------------------------------------
# Intent routing
# ---------------------------------------------------------------------------

# Requests to perform an action the assistant must decline.
COMMAND_KEYWORDS: tuple[str, ...] = (
    "delete",
    "reset",
    "ingest",
    "scrape",
    "crawl",
    "deploy",
    "restart",
    "shutdown",
    "drop table",
    "truncate",
    "rm -rf",
    "sudo",
    "build pipeline",
)

DEFAULT_CHITCHAT_KEYWORDS_RAW = (
    "hello,hi,how are you,whats up,what is up,tell me a joke,thank you,thanks,"
    "lol,haha,good morning,good evening"
)

DEFAULT_CHITCHAT_FALLBACK = (
    "This is a light-weight chit-chat turn. Keep the response concise, warm, "
    "and avoid citing the knowledge base."
)

DEFAULT_COMMAND_FALLBACK = (
    "The user is asking for an action/command. You must politely decline to "
    "execute actions and instead explain what is possible."
)

# Remainder words allowed after a chitchat keyword prefix ("hi there").
CHITCHAT_MAX_REMAINDER_WORDS = 2
# Current turns at or below this word count may inherit a chitchat thread.
CHITCHAT_STICKY_MAX_WORDS = 2
# How many earlier user turns are inspected for chitchat stickiness.
CHITCHAT_STICKY_LOOKBACK = 2

ROUTE_CONFIDENCE_EMPTY = 0.2
ROUTE_CONFIDENCE_COMMAND = 0.8
ROUTE_CONFIDENCE_CHITCHAT = 0.75
ROUTE_CONFIDENCE_DEFAULT = 0.6

REASON_EMPTY = "empty_after_normalization"
REASON_COMMAND = "command_keyword_detected"
REASON_CHITCHAT = "chitchat_pattern_detected"
REASON_DEFAULT = "default_knowledge_route"

# ---------------------------------------------------------------------------
# History window
# ---------------------------------------------------------------------------

# Role label + separator tokens added to every message.
MESSAGE_TOKEN_OVERHEAD = 4
SUMMARY_MIN_LINE_CHARS = 32

# ---------------------------------------------------------------------------
# Context selection
# ---------------------------------------------------------------------------

FINGERPRINT_MIN_CHARS = 80
FINGERPRINT_EDGE_CHARS = 40

QUOTA_START = 2
QUOTA_CEILING = 6
MMR_LITE_PENALTY = 0.15

CONTEXT_SEPARATOR = "\n\n---\n\n"
CLIP_ELLIPSIS = "…"

# ---------------------------------------------------------------------------
# Query enhancement and reranking
# ---------------------------------------------------------------------------

REVERSE_RAG_MAX_TOKENS = 64
REVERSE_RAG_TEMPERATURE = 0.2
HYDE_MAX_TOKENS = 220
HYDE_TEMPERATURE = 0.35
MMR_LAMBDA = 0.5

# Candidate pool fetched from the vector store before reranking: top_k * 5 in [20, 80]
CANDIDATE_MULTIPLIER = 5
CANDIDATE_MIN = 20
CANDIDATE_MAX = 80

# Items a reranker (mmr, cohere-rerank) hands to context assembly, capped by the pool
RERANK_K_DEFAULT = 20

# ---------------------------------------------------------------------------
# Metadata weighting
# ---------------------------------------------------------------------------

DOC_TYPE_WEIGHTS: dict[str, float] = {
    "profile": 1.15,
    "project_article": 1.15,
    "kb_article": 1.1,
    "blog_post": 1.0,
    "insight_note": 0.95,
    "other": 0.9,
    "photo": 0.3,
}

PERSONA_WEIGHTS: dict[str, float] = {
    "professional": 1.1,
    "hybrid": 1.0,
    "personal": 0.95,
}

# ---------------------------------------------------------------------------
# Config caching and safe mode
# ---------------------------------------------------------------------------

GUARDRAIL_SETTINGS_CACHE_TTL_MS = 60_000
SAFE_MODE_CONTEXT_TOKEN_CAP = 600
SAFE_MODE_HISTORY_TOKEN_CAP = 300
