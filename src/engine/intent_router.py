"""Rule-based intent router for incoming chat turns.

Classifies a user turn into one of:
- KNOWLEDGE: needs retrieval-grounded context (the default)
- CHITCHAT: conversational filler (greetings, thanks) answered without retrieval
- COMMAND: a request to perform an action, which the assistant declines

Rules are evaluated in strict priority order and each carries a fixed
confidence. Both the command substring matcher and the chitchat stickiness rule
are heuristics with known false positives ("sudo" inside a longer word, a short
knowledge follow-up after a greeting) and are kept as-is.
"""

from __future__ import annotations

import re
from typing import Sequence

from .constants import (
    CHITCHAT_MAX_REMAINDER_WORDS,
    CHITCHAT_STICKY_LOOKBACK,
    CHITCHAT_STICKY_MAX_WORDS,
    COMMAND_KEYWORDS,
    REASON_CHITCHAT,
    REASON_COMMAND,
    REASON_DEFAULT,
    REASON_EMPTY,
    ROUTE_CONFIDENCE_CHITCHAT,
    ROUTE_CONFIDENCE_COMMAND,
    ROUTE_CONFIDENCE_DEFAULT,
    ROUTE_CONFIDENCE_EMPTY,
)
from .conversation import HistoryMessage
from .types import ChatIntent, GuardrailConfig, Language, NormalizedQuestion, RoutedQuestion

_WHITESPACE_RE = re.compile(r"\s+")
_NON_CANONICAL_RE = re.compile(r"[^a-z0-9가-힣\s]")
_HANGUL_RE = re.compile(r"[가-힣]")
_LATIN_RE = re.compile(r"[a-zA-Z]")


def detect_language(text: str) -> Language:
    if _HANGUL_RE.search(text):
        return Language.MIXED if _LATIN_RE.search(text) else Language.KO
    if _LATIN_RE.search(text):
        return Language.EN
    return Language.UNKNOWN


def normalize_question(raw: str) -> NormalizedQuestion:
    """Build the normalized and canonical forms of a raw user turn.

    ``normalized`` collapses whitespace; ``canonical`` additionally lowercases
    and replaces everything outside ``[a-z0-9]``, Hangul syllables and
    whitespace with spaces. The canonical form is not re-collapsed, so
    "hi, there" becomes "hi  there".
    """
    raw = raw or ""
    normalized = _WHITESPACE_RE.sub(" ", raw).strip()
    canonical = _NON_CANONICAL_RE.sub(" ", normalized.lower())
    return NormalizedQuestion(
        raw=raw,
        normalized=normalized,
        canonical=canonical,
        language=detect_language(normalized),
    )


def is_command_intent(canonical: str, keywords: Sequence[str] = COMMAND_KEYWORDS) -> bool:
    # Plain substring match: "sudo" also fires inside "pseudocode".
    return any(keyword in canonical for keyword in keywords)


def matches_chitchat_keyword(text: str, keyword: str) -> bool:
    """True when ``text`` starts with ``keyword`` followed by at most two words."""
    if not text or not keyword:
        return False
    if text == keyword:
        return True
    if not text.startswith(keyword):
        return False

    remainder = text[len(keyword):].strip()
    if not remainder:
        return True
    return len(remainder.split()) <= CHITCHAT_MAX_REMAINDER_WORDS


def _prior_user_turns(history: Sequence[HistoryMessage]) -> list[str]:
    user_turns = [msg.content for msg in history if msg.role == "user"]
    if history and history[-1].role == "user" and user_turns:
        # The trailing user message is the turn being routed.
        user_turns = user_turns[:-1]
    recent = user_turns[-CHITCHAT_STICKY_LOOKBACK:]
    return [_WHITESPACE_RE.sub(" ", turn).strip().lower() for turn in recent]


def is_chitchat_intent(
    canonical: str,
    history: Sequence[HistoryMessage],
    keywords: Sequence[str],
) -> bool:
    if any(matches_chitchat_keyword(canonical, keyword) for keyword in keywords):
        return True

    # Sticky chitchat: short follow-ups ("thanks", "ok cool") stay in a
    # chitchat thread when one of the previous user turns was chitchat.
    if len(canonical.split()) > CHITCHAT_STICKY_MAX_WORDS:
        return False

    prior = _prior_user_turns(history)
    if not prior:
        return False
    return any(
        matches_chitchat_keyword(entry, keyword)
        for keyword in keywords
        for entry in prior
    )


def route_question(
    question: NormalizedQuestion,
    history: Sequence[HistoryMessage] | None,
    config: GuardrailConfig,
) -> RoutedQuestion:
    """Route a normalized question to an intent.

    Args:
        question: Output of normalize_question() for the current turn.
        history: Conversation so far, oldest first. May end with the current turn.
        config: Resolved guardrail config (supplies the chitchat keywords).

    Returns:
        RoutedQuestion with a fixed per-rule confidence and a reason code.
    """
    canonical = question.canonical
    if not canonical.strip():
        return RoutedQuestion(
            question=question,
            intent=ChatIntent.KNOWLEDGE,
            confidence=ROUTE_CONFIDENCE_EMPTY,
            reason=REASON_EMPTY,
        )

    if is_command_intent(canonical):
        return RoutedQuestion(
            question=question,
            intent=ChatIntent.COMMAND,
            confidence=ROUTE_CONFIDENCE_COMMAND,
            reason=REASON_COMMAND,
        )

    if is_chitchat_intent(canonical, history or [], config.chitchat_keywords):
        return RoutedQuestion(
            question=question,
            intent=ChatIntent.CHITCHAT,
            confidence=ROUTE_CONFIDENCE_CHITCHAT,
            reason=REASON_CHITCHAT,
        )

    return RoutedQuestion(
        question=question,
        intent=ChatIntent.KNOWLEDGE,
        confidence=ROUTE_CONFIDENCE_DEFAULT,
        reason=REASON_DEFAULT,
    )
