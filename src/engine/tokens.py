"""Token counting and token-based clipping.

All token budgets in the guardrail engine are measured with a ``TokenCounter``.
The default implementation uses tiktoken's ``cl100k_base`` encoding, the same
encoding the ingestion chunker used to size chunks.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass
from typing import Protocol

from .constants import CLIP_ELLIPSIS


class TokenCounter(Protocol):
    def count(self, text: str) -> int: ...

    def truncate_to_tokens(self, text: str, limit: int) -> str: ...


class TiktokenCounter:
    """TokenCounter backed by a tiktoken encoding."""

    def __init__(self, encoding_name: str = "cl100k_base"):
        from tiktoken import get_encoding

        self.encoding_name = encoding_name
        self._encoding = get_encoding(encoding_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self._encoding.encode(text, disallowed_special=()))

    def truncate_to_tokens(self, text: str, limit: int) -> str:
        if not text or limit <= 0:
            return ""
        tokens = self._encoding.encode(text, disallowed_special=())
        if len(tokens) <= limit:
            return text
        return self._safe_decode(tokens[:limit])

    def _safe_decode(self, tokens: list[int]) -> str:
        # A cut can land inside a multi-byte character; drop tokens until the
        # byte sequence decodes cleanly.
        while tokens:
            try:
                return self._encoding.decode_bytes(tokens).decode("utf-8")
            except UnicodeDecodeError:
                tokens = tokens[:-1]
        return ""


@functools.lru_cache(maxsize=1)
def get_default_token_counter() -> TiktokenCounter:
    return TiktokenCounter()


@dataclass(frozen=True)
class ClippedText:
    text: str
    clipped: bool
    token_count: int


def clip_text_to_tokens(text: str, limit: int, counter: TokenCounter) -> ClippedText:
    """Clip ``text`` to at most ``limit`` tokens, appending an ellipsis when cut.

    The reported token count never exceeds ``limit``; the ellipsis marker is
    not charged against the budget.
    """
    token_count = counter.count(text)
    if token_count <= limit:
        return ClippedText(text=text, clipped=False, token_count=token_count)

    truncated = counter.truncate_to_tokens(text, limit)
    return ClippedText(
        text=f"{truncated}{CLIP_ELLIPSIS}",
        clipped=True,
        token_count=min(limit, counter.count(truncated)),
    )
