"""LLM client for OpenAI API communication.

Single Responsibility: Handle generation API calls (non-streaming and streaming).
No prompt construction, no business logic.

The AsyncOpenAI client is lazily initialized as a singleton (connection pooling).
Use reset_clients() in test teardown to clear it.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import threading
from typing import AsyncIterator, Protocol

import httpx
from openai import AsyncOpenAI, RateLimitError

from .types import GenerationError

logger = logging.getLogger(__name__)

__all__ = [
    "GenerationProvider",
    "OpenAIGenerationProvider",
    "get_async_client",
    "reset_clients",
]

_RETRY_AFTER_RE = re.compile(r"try again in (\d+\.?\d*)s")


class GenerationProvider(Protocol):
    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float,
        max_tokens: int,
    ) -> str: ...


# ---------------------------------------------------------------------------
# Singleton state
# ---------------------------------------------------------------------------
_async_client: AsyncOpenAI | None = None
_async_lock = threading.Lock()


def _build_async_client() -> AsyncOpenAI:
    """Create an AsyncOpenAI client with timeouts and a pooled HTTP client."""
    from ..common.config_loader import get_settings_yaml

    openai_settings = get_settings_yaml().get("openai", {})
    timeout_secs = float(os.getenv("RAG_OPENAI_TIMEOUT_SECS") or openai_settings.get("timeout_secs", 60))
    pool_size = int(openai_settings.get("connection_pool_size", 100))
    keepalive = int(openai_settings.get("keepalive_connections", 20))

    return AsyncOpenAI(
        timeout=timeout_secs,
        max_retries=0,  # rate-limit retries are handled below
        http_client=httpx.AsyncClient(
            limits=httpx.Limits(max_connections=pool_size, max_keepalive_connections=keepalive),
        ),
    )


def get_async_client() -> AsyncOpenAI:
    """Return the singleton async OpenAI client (lazy, thread-safe)."""
    global _async_client  # noqa: PLW0603
    if _async_client is None:
        with _async_lock:
            if _async_client is None:
                _async_client = _build_async_client()
    return _async_client


def reset_clients() -> None:
    """Drop the singleton. Call in test teardown."""
    global _async_client  # noqa: PLW0603
    with _async_lock:
        _async_client = None


def _retry_wait_seconds(exc: Exception, attempt: int) -> float:
    wait_match = _RETRY_AFTER_RE.search(str(exc))
    return float(wait_match.group(1)) + 0.5 if wait_match else float(2 ** attempt)


class OpenAIGenerationProvider:
    """GenerationProvider backed by the OpenAI chat completions API.

    Rate-limit errors are retried with the server-suggested delay (or
    exponential backoff); every other provider error is wrapped in
    GenerationError.
    """

    def __init__(
        self,
        model: str,
        *,
        client: AsyncOpenAI | None = None,
        max_retries: int = 3,
    ):
        self.model = model
        self._client = client
        self.max_retries = max(1, max_retries)

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = get_async_client()
        return self._client

    @staticmethod
    def _messages(system_prompt: str, user_prompt: str) -> list[dict[str, str]]:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})
        return messages

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float,
        max_tokens: int,
    ) -> str:
        last_exc: Exception | None = None
        for attempt in range(self.max_retries):
            try:
                response = await self.client.chat.completions.create(
                    model=self.model,
                    messages=self._messages(system_prompt, user_prompt),
                    temperature=temperature,
                    max_tokens=max_tokens,
                )
                return (response.choices[0].message.content or "").strip()
            except RateLimitError as exc:
                last_exc = exc
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(_retry_wait_seconds(exc, attempt))
                    continue
            except Exception as exc:  # noqa: BLE001
                raise GenerationError("OpenAI generation request failed.") from exc

        raise GenerationError(f"OpenAI rate limit exceeded after {self.max_retries} attempts.") from last_exc

    async def generate_stream(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float,
        max_tokens: int,
    ) -> AsyncIterator[str]:
        """Yield text deltas as they arrive. Only the stream setup is retried."""
        stream = None
        last_exc: Exception | None = None
        for attempt in range(self.max_retries):
            try:
                stream = await self.client.chat.completions.create(
                    model=self.model,
                    messages=self._messages(system_prompt, user_prompt),
                    temperature=temperature,
                    max_tokens=max_tokens,
                    stream=True,
                )
                break
            except RateLimitError as exc:
                last_exc = exc
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(_retry_wait_seconds(exc, attempt))
                    continue
            except Exception as exc:  # noqa: BLE001
                raise GenerationError("OpenAI streaming request failed.") from exc

        if stream is None:
            raise GenerationError(f"OpenAI rate limit exceeded after {self.max_retries} attempts.") from last_exc

        try:
            async for chunk in stream:
                if chunk.choices and chunk.choices[0].delta.content:
                    yield chunk.choices[0].delta.content
        except Exception as exc:  # noqa: BLE001
            raise GenerationError("OpenAI stream interrupted.") from exc
