"""Conversation history management for multi-turn chat.

Responsibilities:
- Sanitize raw message payloads into HistoryMessage records
- Select which prior turns fit the history token budget
- Build a best-effort summary memory of the turns that were dropped
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

from .constants import MESSAGE_TOKEN_OVERHEAD, SUMMARY_MIN_LINE_CHARS
from .tokens import TokenCounter, get_default_token_counter
from .types import GuardrailConfig, SummaryConfig

logger = logging.getLogger(__name__)

_ALLOWED_ROLES = {"user", "assistant"}


@dataclass(frozen=True)
class HistoryMessage:
    """A single message in conversation history.

    Attributes:
        role: Either "user" or "assistant"
        content: The message text content
    """
    role: str
    content: str


@dataclass(frozen=True)
class HistoryWindowResult:
    preserved: tuple[HistoryMessage, ...]
    trimmed: tuple[HistoryMessage, ...]
    token_count: int
    summary_text: str | None = None


def sanitize_messages(raw: Iterable[Any] | None) -> list[HistoryMessage]:
    """Keep only well-formed user/assistant messages with non-blank content.

    Accepts mappings with ``role``/``content`` keys or HistoryMessage instances.
    System messages and anything malformed are dropped silently.
    """
    result: list[HistoryMessage] = []
    for entry in raw or []:
        if isinstance(entry, HistoryMessage):
            role, content = entry.role, entry.content
        elif isinstance(entry, dict):
            role, content = entry.get("role"), entry.get("content")
        else:
            continue
        if role not in _ALLOWED_ROLES or not isinstance(content, str):
            continue
        content = content.strip()
        if content:
            result.append(HistoryMessage(role=role, content=content))
    return result


def estimate_message_tokens(message: HistoryMessage, counter: TokenCounter) -> int:
    return counter.count(f"{message.role}: {message.content}") + MESSAGE_TOKEN_OVERHEAD


def build_summary_memory(
    trimmed: Sequence[HistoryMessage],
    summary_config: SummaryConfig,
) -> str | None:
    """Render the most recent trimmed turns as a compact U:/A: transcript.

    Each line gets an equal share of ``max_chars`` (never less than 32 chars)
    and the joined block is hard-truncated to ``max_chars``.
    """
    recent = list(trimmed)[-summary_config.max_turns:] if summary_config.max_turns > 0 else []
    if not recent:
        return None

    per_line_budget = max(SUMMARY_MIN_LINE_CHARS, summary_config.max_chars // len(recent))
    lines = []
    for message in recent:
        prefix = "A" if message.role == "assistant" else "U"
        lines.append(f"{prefix}: {message.content.strip()[:per_line_budget]}")

    summary = "\n".join(lines)[: summary_config.max_chars].strip()
    return summary or None


def apply_history_window(
    messages: Sequence[HistoryMessage],
    config: GuardrailConfig,
    *,
    token_counter: TokenCounter | None = None,
) -> HistoryWindowResult:
    """Select the prior turns that fit ``config.history_token_budget``.

    Walks backwards from the newest message. The newest message is always
    preserved, even when it alone exceeds the budget. Every earlier message is
    kept only if it still fits; the rest are trimmed (a later, smaller message
    may still fit after a larger one was trimmed).

    Args:
        messages: Conversation history, oldest first.
        config: Resolved guardrail config.
        token_counter: Counter used for budgeting (defaults to tiktoken).

    Returns:
        HistoryWindowResult with preserved/trimmed messages in original order.
    """
    if not messages:
        return HistoryWindowResult(preserved=(), trimmed=(), token_count=0, summary_text=None)

    counter = token_counter or get_default_token_counter()
    limit = config.history_token_budget
    preserved: list[HistoryMessage] = []
    trimmed: list[HistoryMessage] = []
    tokens_used = 0
    last_index = len(messages) - 1

    for index in range(last_index, -1, -1):
        message = messages[index]
        token_cost = estimate_message_tokens(message, counter)
        force_include = not preserved or index == last_index

        if force_include or tokens_used + token_cost <= limit:
            preserved.append(message)
            tokens_used = min(limit, tokens_used + token_cost)
        else:
            trimmed.append(message)

    preserved.reverse()
    trimmed.reverse()

    summary_text = None
    if config.summary.enabled and trimmed:
        summary_text = build_summary_memory(trimmed, config.summary)

    logger.debug(
        "History window: preserved=%d trimmed=%d tokens=%d/%d summary=%s",
        len(preserved),
        len(trimmed),
        tokens_used,
        limit,
        summary_text is not None,
    )

    return HistoryWindowResult(
        preserved=tuple(preserved),
        trimmed=tuple(trimmed),
        token_count=tokens_used,
        summary_text=summary_text,
    )
