"""Guardrail configuration: resolution, sanitization and cached loading.

Three layers feed every request's GuardrailConfig:

1. compiled defaults (env-overridable, see config_loader.get_guardrail_defaults)
2. admin-managed defaults from the ConfigStore, cached for 60 s
3. per-session overrides, overlaid only where the session value is a finite number

sanitize_chat_settings() is a separate, total operation for untrusted input:
it never raises and returns a valid config plus an audit trail of every
field it had to change.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from ..common.config_loader import (
    AdminChatConfig,
    ChatPreset,
    ConfigStore,
    GuardrailDefaults,
    GuardrailNumericDefaults,
    SessionChatConfig,
    get_guardrail_defaults,
    parse_keyword_list,
    normalize_guardrail_text,
)
from .cache import NowFn, SnapshotCache, epoch_ms
from .constants import (
    DEFAULT_CHITCHAT_FALLBACK,
    DEFAULT_CHITCHAT_KEYWORDS_RAW,
    DEFAULT_COMMAND_FALLBACK,
    GUARDRAIL_SETTINGS_CACHE_TTL_MS,
    SAFE_MODE_CONTEXT_TOKEN_CAP,
    SAFE_MODE_HISTORY_TOKEN_CAP,
)
from .types import (
    FallbackTexts,
    GuardrailConfig,
    RankerMode,
    ReverseRagMode,
    RuntimeFlags,
    SanitizationChange,
    SanitizationReason,
    SummaryConfig,
)

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Flag parsing
# ─────────────────────────────────────────────────────────────────────────────


def parse_boolean_flag(value: Any) -> Optional[bool]:
    """Return the boolean for ``True``/``False`` or ``"true"``/``"false"``, else None."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized == "true":
            return True
        if normalized == "false":
            return False
    return None


def parse_reverse_rag_mode(value: Any) -> Optional[ReverseRagMode]:
    if isinstance(value, ReverseRagMode):
        return value
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    if normalized == "precision":
        return ReverseRagMode.PRECISION
    if normalized == "recall":
        return ReverseRagMode.RECALL
    return None


def parse_ranker_mode(value: Any) -> Optional[RankerMode]:
    if isinstance(value, RankerMode):
        return value
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    if normalized == "mmr":
        return RankerMode.MMR
    if normalized in ("cohere-rerank", "cohererank"):
        return RankerMode.COHERE_RERANK
    if normalized == "none":
        return RankerMode.NONE
    return None


def _finite_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        number = float(value)
    except OverflowError:
        # Integers beyond float range
        return None
    if not math.isfinite(number):
        return None
    return number


def _is_oversized_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and _finite_number(value) is None


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


# ─────────────────────────────────────────────────────────────────────────────
# Admin settings (cacheable)
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class GuardrailSettings:
    """Admin defaults merged over compiled defaults. Shared across requests."""

    numeric: GuardrailNumericDefaults
    chitchat_keywords: tuple[str, ...]
    fallback_chitchat: str
    fallback_command: str
    admin: AdminChatConfig


@dataclass(frozen=True)
class GuardrailSettingsResult:
    settings: GuardrailSettings
    from_cache: bool
    degraded: bool = False


def build_guardrail_settings(
    admin: AdminChatConfig | None,
    defaults: GuardrailDefaults,
) -> GuardrailSettings:
    """Merge an admin config (or None when the store is unavailable) over defaults."""
    base = defaults.numeric
    if admin is None:
        return GuardrailSettings(
            numeric=base,
            chitchat_keywords=defaults.chitchat_keywords,
            fallback_chitchat=defaults.fallback_chitchat,
            fallback_command=defaults.fallback_command,
            admin=AdminChatConfig(),
        )

    limits = admin.numeric_limits

    def _limit_default(limit, fallback):
        return limit.default if limit is not None else fallback

    summary_enabled = base.summary_enabled
    summary_max_turns = base.summary_max_turns
    level = admin.presets.default.summary_level
    if level is not None:
        summary_enabled = level != "off"
        if level != "off":
            summary_max_turns = getattr(admin.summary_presets, level).every_n_turns

    numeric = GuardrailNumericDefaults(
        similarity_threshold=float(_limit_default(limits.similarity_threshold, base.similarity_threshold)),
        rag_top_k=int(_limit_default(limits.rag_top_k, base.rag_top_k)),
        rag_context_token_budget=int(_limit_default(limits.context_budget, base.rag_context_token_budget)),
        rag_context_clip_tokens=int(_limit_default(limits.clip_tokens, base.rag_context_clip_tokens)),
        history_token_budget=int(_limit_default(limits.history_budget, base.history_token_budget)),
        summary_enabled=summary_enabled,
        summary_trigger_tokens=base.summary_trigger_tokens,
        summary_max_turns=summary_max_turns,
        summary_max_chars=base.summary_max_chars,
    )

    keywords = parse_keyword_list(admin.guardrails.chitchat_keywords)
    fallback_chitchat = normalize_guardrail_text(admin.guardrails.fallback_chitchat)
    fallback_command = normalize_guardrail_text(admin.guardrails.fallback_command)

    return GuardrailSettings(
        numeric=numeric,
        chitchat_keywords=keywords or defaults.chitchat_keywords,
        fallback_chitchat=fallback_chitchat or defaults.fallback_chitchat,
        fallback_command=fallback_command or defaults.fallback_command,
        admin=admin,
    )


class GuardrailSettingsLoader:
    """Loads admin guardrail settings through a TTL snapshot.

    Expired snapshots are refreshed synchronously by whichever caller sees the
    expiry first; concurrent callers may each refetch. When the store raises,
    compiled defaults are served and a warning is logged once per loader.
    """

    def __init__(
        self,
        store: ConfigStore,
        *,
        ttl_ms: int = GUARDRAIL_SETTINGS_CACHE_TTL_MS,
        now: NowFn = epoch_ms,
        defaults_factory: Callable[[], GuardrailDefaults] = get_guardrail_defaults,
    ):
        self._store = store
        self._cache: SnapshotCache[GuardrailSettingsResult] = SnapshotCache(ttl_ms, now=now)
        self._defaults_factory = defaults_factory
        self._warned = False

    def load(self, *, force_refresh: bool = False) -> GuardrailSettingsResult:
        if not force_refresh:
            cached = self._cache.get()
            if cached is not None:
                return GuardrailSettingsResult(
                    settings=cached.settings, from_cache=True, degraded=cached.degraded
                )

        defaults = self._defaults_factory()
        admin: AdminChatConfig | None
        try:
            admin = self._store.load_admin_config()
        except Exception:  # noqa: BLE001
            if not self._warned:
                logger.warning("Admin chat config unavailable; using compiled guardrail defaults", exc_info=True)
                self._warned = True
            admin = None

        result = GuardrailSettingsResult(
            settings=build_guardrail_settings(admin, defaults),
            from_cache=False,
            degraded=admin is None,
        )
        self._cache.set(result)
        return result

    def invalidate(self) -> None:
        self._cache.clear()


# ─────────────────────────────────────────────────────────────────────────────
# Per-request resolution
# ─────────────────────────────────────────────────────────────────────────────


def resolve_preset(settings: GuardrailSettings, session: SessionChatConfig | None) -> tuple[str, ChatPreset]:
    """Return the applied preset id and preset; unknown ids fall back to ``default``."""
    requested = session.preset_id if session is not None and session.preset_id else "default"
    preset = settings.admin.presets.get(requested)
    if preset is None:
        return "default", settings.admin.presets.default
    return requested, preset


def _overlay(base: float, *candidates: Any) -> float:
    value = base
    for candidate in candidates:
        number = _finite_number(candidate)
        if number is not None:
            value = number
    return value


def resolve_guardrail_config(
    settings: GuardrailSettings,
    session: SessionChatConfig | None = None,
    *,
    safe_mode: bool = False,
) -> GuardrailConfig:
    """Build the per-request GuardrailConfig.

    Layering: admin defaults, then the applied preset, then session overrides.
    Only finite numbers override; anything else keeps the value below it.
    Floors: similarity in [0, 1], top-K >= 1, context >= 200, clip >= 64,
    history >= 200. Safe mode (argument or session flag) then caps the
    context budget at 600 and the history budget at 300 tokens.

    Summary: the session ``summary_level`` wins, then the applied preset's,
    then the admin default computed in build_guardrail_settings().
    """
    numeric = settings.numeric
    _, preset = resolve_preset(settings, session)
    s = session or SessionChatConfig()

    similarity = _overlay(numeric.similarity_threshold, preset.rag.similarity, s.similarity)
    top_k = _overlay(numeric.rag_top_k, preset.rag.top_k, s.top_k)
    context_budget = _overlay(numeric.rag_context_token_budget, preset.context.token_budget, s.context_token_budget)
    clip_tokens = _overlay(numeric.rag_context_clip_tokens, preset.context.clip_tokens, s.clip_tokens)
    history_budget = _overlay(numeric.history_token_budget, preset.context.history_budget, s.history_token_budget)

    summary_enabled = numeric.summary_enabled
    summary_max_turns = numeric.summary_max_turns
    level = s.summary_level or preset.summary_level
    if level is not None:
        summary_enabled = level != "off"
        if level != "off":
            summary_max_turns = getattr(settings.admin.summary_presets, level).every_n_turns

    context_budget = max(200, _round_half_up(context_budget))
    history_budget = max(200, _round_half_up(history_budget))
    if safe_mode or s.safe_mode:
        context_budget = min(context_budget, SAFE_MODE_CONTEXT_TOKEN_CAP)
        history_budget = min(history_budget, SAFE_MODE_HISTORY_TOKEN_CAP)

    return GuardrailConfig(
        similarity_threshold=min(1.0, max(0.0, similarity)),
        rag_top_k=max(1, _round_half_up(top_k)),
        rag_context_token_budget=context_budget,
        rag_context_clip_tokens=max(64, _round_half_up(clip_tokens)),
        history_token_budget=history_budget,
        summary=SummaryConfig(
            enabled=summary_enabled,
            trigger_tokens=max(200, numeric.summary_trigger_tokens),
            max_chars=max(200, numeric.summary_max_chars),
            max_turns=max(2, summary_max_turns),
        ),
        chitchat_keywords=settings.chitchat_keywords,
        fallbacks=FallbackTexts(chitchat=settings.fallback_chitchat, command=settings.fallback_command),
    )


def resolve_runtime_flags(
    settings: GuardrailSettings,
    session: SessionChatConfig | None = None,
) -> RuntimeFlags:
    """Resolve enhancement flags: session features over preset features, gated by the allow-list."""
    _, preset = resolve_preset(settings, session)
    allow = settings.admin.allowlist
    features = session.features if session is not None else None

    reverse_rag = preset.features.reverse_rag
    reverse_mode = parse_reverse_rag_mode(preset.features.reverse_rag_mode) or ReverseRagMode.PRECISION
    hyde = preset.features.hyde
    ranker = parse_ranker_mode(preset.features.ranker) or RankerMode.NONE

    if features is not None:
        if features.reverse_rag is not None:
            reverse_rag = features.reverse_rag
        reverse_mode = parse_reverse_rag_mode(features.reverse_rag_mode) or reverse_mode
        if features.hyde is not None:
            hyde = features.hyde
        ranker = parse_ranker_mode(features.ranker) or ranker

    allowed_rankers = {parse_ranker_mode(r) for r in allow.rankers}
    if ranker != RankerMode.NONE and ranker not in allowed_rankers:
        logger.debug("Ranker %s not in allow-list; using none", ranker.value)
        ranker = RankerMode.NONE

    return RuntimeFlags(
        reverse_rag_enabled=bool(reverse_rag and allow.allow_reverse_rag),
        reverse_rag_mode=reverse_mode,
        hyde_enabled=bool(hyde and allow.allow_hyde),
        ranker_mode=ranker,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Sanitization
# ─────────────────────────────────────────────────────────────────────────────

# (minimum, maximum, integral)
SANITIZE_RANGES: dict[str, tuple[float, float, bool]] = {
    "similarity_threshold": (0.0, 0.9, False),
    "rag_top_k": (1, 20, True),
    "rag_context_token_budget": (256, 8192, True),
    "rag_context_clip_tokens": (64, 1024, True),
    "history_token_budget": (0, 8192, True),
    "summary.trigger_tokens": (200, 4000, True),
    "summary.max_chars": (200, 4000, True),
    "summary.max_turns": (1, 50, True),
}

_SANITIZE_FALLBACKS = GuardrailNumericDefaults()
_SANITIZE_KEYWORDS = parse_keyword_list(DEFAULT_CHITCHAT_KEYWORDS_RAW)


@dataclass(frozen=True)
class SanitizedChatSettings:
    guardrails: GuardrailConfig
    runtime_flags: RuntimeFlags
    changes: tuple[SanitizationChange, ...]


def _get(source: Any, name: str) -> Any:
    if source is None:
        return None
    if isinstance(source, Mapping):
        return source.get(name)
    return getattr(source, name, None)


class _Sanitizer:
    def __init__(self) -> None:
        self.changes: list[SanitizationChange] = []

    def _record(self, field: str, from_value: Any, to_value: Any, reason: SanitizationReason) -> None:
        self.changes.append(SanitizationChange(field=field, from_value=from_value, to_value=to_value, reason=reason))

    def number(self, field: str, value: Any, fallback: float) -> float | int:
        minimum, maximum, integral = SANITIZE_RANGES[field]
        if _is_oversized_int(value):
            result = maximum if value > 0 else minimum
            if integral:
                result = int(result)
            self._record(field, value, result, SanitizationReason.OUT_OF_RANGE)
            return result
        if _finite_number(value) is None:
            result = _round_half_up(fallback) if integral else float(fallback)
            self._record(field, value, result, SanitizationReason.INVALID_TYPE)
            return result

        reason = None
        result: float | int = value
        if integral:
            result = _round_half_up(value)
            if result != value:
                reason = SanitizationReason.ROUNDED
        clamped = min(maximum, max(minimum, result))
        if integral:
            clamped = int(clamped)
        if clamped != result:
            reason = SanitizationReason.OUT_OF_RANGE
        if reason is not None:
            self._record(field, value, clamped, reason)
        return clamped

    def boolean(self, field: str, value: Any, fallback: bool) -> bool:
        if isinstance(value, bool):
            return value
        parsed = parse_boolean_flag(value)
        result = fallback if parsed is None else parsed
        self._record(field, value, result, SanitizationReason.INVALID_TYPE)
        return result

    def keywords(self, field: str, value: Any, fallback: tuple[str, ...]) -> tuple[str, ...]:
        if not isinstance(value, (list, tuple)):
            self._record(field, value, fallback, SanitizationReason.INVALID_TYPE)
            return fallback
        result = tuple(k for k in value if isinstance(k, str))
        if len(result) != len(value):
            self._record(field, value, result, SanitizationReason.INVALID_TYPE)
        return result

    def text(self, field: str, value: Any, fallback: str) -> str:
        if isinstance(value, str) and value.strip():
            return value
        self._record(field, value, fallback, SanitizationReason.INVALID_TYPE)
        return fallback

    def enum(self, field: str, value: Any, parser: Callable[[Any], Any], fallback: Any) -> Any:
        parsed = parser(value)
        if parsed is None:
            self._record(field, value, fallback, SanitizationReason.INVALID_ENUM)
            return fallback
        if type(value) is not type(parsed):
            # Plain or aliased strings are normalized to the enum member.
            if value != parsed:
                self._record(field, value, parsed, SanitizationReason.INVALID_ENUM)
        return parsed


def sanitize_chat_settings(
    guardrails: GuardrailConfig | Mapping[str, Any],
    runtime_flags: RuntimeFlags | Mapping[str, Any] | None = None,
) -> SanitizedChatSettings:
    """Coerce untrusted guardrail config and runtime flags into valid values.

    Never raises. Every altered field produces a SanitizationChange; applying
    the function to its own output produces no changes.

    Args:
        guardrails: A GuardrailConfig or a mapping with the same field names
            (``summary`` may itself be a mapping).
        runtime_flags: A RuntimeFlags or a mapping with the same field names.

    Returns:
        SanitizedChatSettings with the coerced config, flags and audit trail.
    """
    s = _Sanitizer()
    fb = _SANITIZE_FALLBACKS
    if runtime_flags is None:
        runtime_flags = RuntimeFlags()
    summary = _get(guardrails, "summary")

    similarity = s.number("similarity_threshold", _get(guardrails, "similarity_threshold"), fb.similarity_threshold)
    top_k = s.number("rag_top_k", _get(guardrails, "rag_top_k"), fb.rag_top_k)
    context_budget = s.number(
        "rag_context_token_budget", _get(guardrails, "rag_context_token_budget"), fb.rag_context_token_budget
    )
    clip_tokens = s.number(
        "rag_context_clip_tokens", _get(guardrails, "rag_context_clip_tokens"), fb.rag_context_clip_tokens
    )
    history_budget = s.number("history_token_budget", _get(guardrails, "history_token_budget"), fb.history_token_budget)

    summary_config = SummaryConfig(
        enabled=s.boolean("summary.enabled", _get(summary, "enabled"), fb.summary_enabled),
        trigger_tokens=s.number("summary.trigger_tokens", _get(summary, "trigger_tokens"), fb.summary_trigger_tokens),
        max_chars=s.number("summary.max_chars", _get(summary, "max_chars"), fb.summary_max_chars),
        max_turns=s.number("summary.max_turns", _get(summary, "max_turns"), fb.summary_max_turns),
    )

    keywords = s.keywords("chitchat_keywords", _get(guardrails, "chitchat_keywords"), _SANITIZE_KEYWORDS)
    fallbacks = _get(guardrails, "fallbacks")
    fallback_texts = FallbackTexts(
        chitchat=s.text("fallbacks.chitchat", _get(fallbacks, "chitchat"), DEFAULT_CHITCHAT_FALLBACK),
        command=s.text("fallbacks.command", _get(fallbacks, "command"), DEFAULT_COMMAND_FALLBACK),
    )

    flags_default = RuntimeFlags()
    flags = RuntimeFlags(
        reverse_rag_enabled=s.boolean(
            "reverse_rag_enabled", _get(runtime_flags, "reverse_rag_enabled"), flags_default.reverse_rag_enabled
        ),
        reverse_rag_mode=s.enum(
            "reverse_rag_mode",
            _get(runtime_flags, "reverse_rag_mode"),
            parse_reverse_rag_mode,
            flags_default.reverse_rag_mode,
        ),
        hyde_enabled=s.boolean("hyde_enabled", _get(runtime_flags, "hyde_enabled"), flags_default.hyde_enabled),
        ranker_mode=s.enum(
            "ranker_mode", _get(runtime_flags, "ranker_mode"), parse_ranker_mode, flags_default.ranker_mode
        ),
    )

    if s.changes:
        logger.debug("Sanitized %d chat setting(s): %s", len(s.changes), [c.field for c in s.changes])

    return SanitizedChatSettings(
        guardrails=GuardrailConfig(
            similarity_threshold=similarity,
            rag_top_k=top_k,
            rag_context_token_budget=context_budget,
            rag_context_clip_tokens=clip_tokens,
            history_token_budget=history_budget,
            summary=summary_config,
            chitchat_keywords=keywords,
            fallbacks=fallback_texts,
        ),
        runtime_flags=flags,
        changes=tuple(s.changes),
    )
