"""Tests for src/engine/llm_client.py - LLM API communication layer.

Covers:
- Singleton client management (connection pooling)
- Rate limit retry logic with server-suggested delay or exponential backoff
- Error wrapping into GenerationError
- Streaming functionality
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from openai import RateLimitError

from src.engine.llm_client import (
    OpenAIGenerationProvider,
    _retry_wait_seconds,
    get_async_client,
    reset_clients,
)
from src.engine.types import GenerationError


def _rate_limit_error(message="Rate limit exceeded"):
    return RateLimitError(message=message, response=MagicMock(status_code=429), body=None)


def _response(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def _generate(provider, system="sys", user="question"):
    return asyncio.run(provider.generate(system, user, temperature=0.2, max_tokens=64))


class TestAsyncClientSingleton:
    """Tests for the shared AsyncOpenAI client."""

    def setup_method(self):
        reset_clients()

    def teardown_method(self):
        reset_clients()

    def test_client_is_reused(self, monkeypatch):
        """The async client is created once and reused."""
        factory = MagicMock(side_effect=lambda **kwargs: MagicMock())
        monkeypatch.setattr("src.common.config_loader.get_settings_yaml", lambda: {"openai": {"timeout_secs": 5}})
        monkeypatch.setattr("src.engine.llm_client.AsyncOpenAI", factory)

        first = get_async_client()
        second = get_async_client()

        assert first is second
        assert factory.call_count == 1
        assert factory.call_args.kwargs["timeout"] == 5.0
        assert factory.call_args.kwargs["max_retries"] == 0

    def test_reset_drops_client(self, monkeypatch):
        """reset_clients() forces a new client."""
        monkeypatch.setattr("src.common.config_loader.get_settings_yaml", lambda: {})
        monkeypatch.setattr("src.engine.llm_client.AsyncOpenAI", MagicMock(side_effect=lambda **kwargs: MagicMock()))

        first = get_async_client()
        reset_clients()

        assert get_async_client() is not first


class TestRetryWait:
    """Tests for _retry_wait_seconds."""

    def test_uses_server_hint(self):
        """The server's retry hint is rounded up and used."""
        assert _retry_wait_seconds(Exception("Please try again in 1.5s."), 0) == 2.0

    def test_exponential_backoff(self):
        """Without a hint the wait doubles per attempt."""
        assert _retry_wait_seconds(Exception("slow down"), 0) == 1.0
        assert _retry_wait_seconds(Exception("slow down"), 2) == 4.0


class TestGenerate:
    """Tests for OpenAIGenerationProvider.generate."""

    def test_returns_stripped_content(self):
        """Completion text is returned stripped."""
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=_response("  answer \n"))
        provider = OpenAIGenerationProvider("gpt-4o-mini", client=client)

        assert _generate(provider) == "answer"

        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["messages"] == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "question"},
        ]
        assert kwargs["temperature"] == 0.2
        assert kwargs["max_tokens"] == 64

    def test_omits_empty_system_prompt(self):
        """An empty system prompt is not sent."""
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=_response("ok"))
        provider = OpenAIGenerationProvider("gpt-4o-mini", client=client)

        _generate(provider, system="")

        assert client.chat.completions.create.call_args.kwargs["messages"] == [{"role": "user", "content": "question"}]

    def test_none_content(self):
        """A None completion becomes an empty string."""
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=_response(None))
        assert _generate(OpenAIGenerationProvider("m", client=client)) == ""

    def test_rate_limit_retry(self, monkeypatch):
        """Rate limits are retried until a call succeeds."""
        call_count = [0]

        async def mock_create(**kwargs):
            call_count[0] += 1
            if call_count[0] < 3:
                raise _rate_limit_error()
            return _response("Success after retry")

        client = MagicMock()
        client.chat.completions.create = mock_create
        sleep = AsyncMock()
        monkeypatch.setattr("src.engine.llm_client.asyncio.sleep", sleep)

        result = _generate(OpenAIGenerationProvider("m", client=client, max_retries=3))

        assert result == "Success after retry"
        assert call_count[0] == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    def test_rate_limit_exhausted(self, monkeypatch):
        """Exhausted rate-limit retries raise GenerationError."""
        client = MagicMock()
        client.chat.completions.create = AsyncMock(side_effect=_rate_limit_error())
        monkeypatch.setattr("src.engine.llm_client.asyncio.sleep", AsyncMock())

        with pytest.raises(GenerationError, match="after 2 attempts") as exc_info:
            _generate(OpenAIGenerationProvider("m", client=client, max_retries=2))

        assert isinstance(exc_info.value.__cause__, RateLimitError)
        assert client.chat.completions.create.await_count == 2

    def test_other_errors_wrapped_without_retry(self):
        """Non rate-limit errors are wrapped and not retried."""
        client = MagicMock()
        client.chat.completions.create = AsyncMock(side_effect=ValueError("bad request"))

        with pytest.raises(GenerationError) as exc_info:
            _generate(OpenAIGenerationProvider("m", client=client))

        assert isinstance(exc_info.value.__cause__, ValueError)
        assert client.chat.completions.create.await_count == 1


class TestGenerateStream:
    """Tests for OpenAIGenerationProvider.generate_stream."""

    def _collect(self, provider):
        async def collect():
            result = []
            async for chunk in provider.generate_stream("sys", "question", temperature=0.2, max_tokens=64):
                result.append(chunk)
            return result

        return asyncio.run(collect())

    def test_yields_chunks(self):
        """Streaming yields non-empty deltas only."""
        chunks = [
            SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content="Hello "))]),
            SimpleNamespace(choices=[]),
            SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=None))]),
            SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content="async"))]),
        ]

        async def mock_stream():
            for chunk in chunks:
                yield chunk

        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=mock_stream())

        assert self._collect(OpenAIGenerationProvider("m", client=client)) == ["Hello ", "async"]
        assert client.chat.completions.create.call_args.kwargs["stream"] is True

    def test_interrupted_stream(self):
        """A broken stream raises GenerationError."""
        async def broken_stream():
            yield SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content="partial"))])
            raise ConnectionError("reset by peer")

        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=broken_stream())

        with pytest.raises(GenerationError, match="interrupted"):
            self._collect(OpenAIGenerationProvider("m", client=client))

    def test_setup_failure(self):
        """A failed stream request raises GenerationError."""
        client = MagicMock()
        client.chat.completions.create = AsyncMock(side_effect=RuntimeError("boom"))

        with pytest.raises(GenerationError, match="streaming request failed"):
            self._collect(OpenAIGenerationProvider("m", client=client))
