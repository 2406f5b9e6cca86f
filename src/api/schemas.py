"""Pydantic schemas for API request/response models.

Single Responsibility: Define data structures for API communication.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from ..common.config_loader import SessionChatConfig


class ChatMessage(BaseModel):
    """A message in the conversation."""

    role: Literal["user", "assistant", "system"] = Field(..., description="Message role")
    content: str = Field(..., description="Message content")


class ChatContextRequest(BaseModel):
    """Request payload for preparing the guardrail context of a chat turn."""

    messages: list[ChatMessage] = Field(
        ...,
        min_length=1,
        description="Conversation so far, oldest first, ending with the current user turn",
    )
    session: SessionChatConfig | None = Field(default=None, description="Per-session overrides")
    safe_mode: bool = Field(default=False, description="Cap context and history budgets")


class IncludedChunk(BaseModel):
    """A retrieved chunk that made it into the context block."""

    doc_key: str
    title: str | None = None
    source_url: str | None = None
    score: float
    token_count: int
    clipped: bool
    text: str


class HistoryWindowSummary(BaseModel):
    preserved: int
    trimmed: int
    token_count: int
    summary_text: str | None = None


class SanitizationChangeOut(BaseModel):
    field: str
    from_value: Any = None
    to_value: Any = None
    reason: str


class ChatContextResponse(BaseModel):
    """Guardrail decisions for one turn. The full metadata record is in the x-guardrail-meta header."""

    preset_id: str
    intent: str
    confidence: float
    reason: str
    language: str
    context_block: str
    insufficient: bool
    highest_score: float
    included: list[IncludedChunk] = Field(default_factory=list)
    dropped: int = 0
    history: HistoryWindowSummary
    sanitization_changes: list[SanitizationChangeOut] = Field(default_factory=list)
    retrieval_cache_hit: bool | None = None
    response_cache_hit: bool | None = None
