"""Tests for src/engine/query_enhancer.py - query rewriting and HyDE."""

import asyncio

from conftest import FakeGenerator
from src.engine.constants import (
    HYDE_MAX_TOKENS,
    HYDE_TEMPERATURE,
    REVERSE_RAG_MAX_TOKENS,
    REVERSE_RAG_TEMPERATURE,
)
from src.engine.query_enhancer import (
    HYDE_SYSTEM_PROMPT,
    REWRITE_SYSTEM_PROMPT,
    generate_hyde_document,
    passthrough_summary,
    process_pre_retrieval,
    rewrite_query,
)
from src.engine.types import GenerationError, RankerMode, ReverseRagMode, RuntimeFlags


class TestRewriteQuery:
    """Tests for rewrite_query."""

    def test_disabled_returns_original(self):
        """A disabled rewrite returns the question untouched."""
        generator = FakeGenerator("rewritten")
        result = asyncio.run(rewrite_query("what is rag", enabled=False, generator=generator))
        assert result == "what is rag"
        assert generator.calls == []

    def test_no_generator(self):
        """Without a generator the question is returned as-is."""
        assert asyncio.run(rewrite_query("what is rag", enabled=True, generator=None)) == "what is rag"

    def test_blank_question_skips_generation(self):
        """Blank questions are never sent for rewriting."""
        generator = FakeGenerator("rewritten")
        assert asyncio.run(rewrite_query("   ", enabled=True, generator=generator)) == "   "
        assert generator.calls == []

    def test_precision_prompt(self):
        """Precision mode prompt is used by default and output is stripped."""
        generator = FakeGenerator("  rag definition  ")

        result = asyncio.run(rewrite_query("what is rag", enabled=True, generator=generator))

        assert result == "rag definition"
        call = generator.calls[0]
        assert call["system_prompt"] == REWRITE_SYSTEM_PROMPT
        assert call["user_prompt"].startswith("Mode: precision (Focus the search terms")
        assert call["user_prompt"].endswith("Question:\nwhat is rag")
        assert call["temperature"] == REVERSE_RAG_TEMPERATURE
        assert call["max_tokens"] == REVERSE_RAG_MAX_TOKENS

    def test_recall_prompt(self):
        """Recall mode asks for broader synonyms."""
        generator = FakeGenerator("rag, retrieval, grounding")
        asyncio.run(rewrite_query("what is rag", enabled=True, mode=ReverseRagMode.RECALL, generator=generator))
        assert generator.calls[0]["user_prompt"].startswith("Mode: recall (Include broader synonyms")

    def test_failure_returns_original(self, caplog):
        """A failed rewrite logs and returns the original question."""
        generator = FakeGenerator(GenerationError("boom"))
        result = asyncio.run(rewrite_query("what is rag", enabled=True, generator=generator))
        assert result == "what is rag"
        assert "rewrite failed" in caplog.text

    def test_empty_output_returns_original(self):
        """Empty rewrite output keeps the original question."""
        generator = FakeGenerator("   ")
        assert asyncio.run(rewrite_query("what is rag", enabled=True, generator=generator)) == "what is rag"


class TestGenerateHydeDocument:
    """Tests for generate_hyde_document."""

    def test_generates_passage(self):
        """HyDE returns the stripped generated passage."""
        generator = FakeGenerator(" RAG combines retrieval with generation. ")

        result = asyncio.run(generate_hyde_document("what is rag", enabled=True, generator=generator))

        assert result == "RAG combines retrieval with generation."
        call = generator.calls[0]
        assert call["system_prompt"] == HYDE_SYSTEM_PROMPT
        assert call["user_prompt"] == "Question:\nwhat is rag"
        assert call["temperature"] == HYDE_TEMPERATURE
        assert call["max_tokens"] == HYDE_MAX_TOKENS

    def test_disabled(self):
        """Disabled HyDE returns None."""
        assert asyncio.run(generate_hyde_document("q", enabled=False, generator=FakeGenerator("x"))) is None

    def test_failure_and_empty(self):
        """HyDE failures and empty output give None."""
        assert asyncio.run(generate_hyde_document("q", enabled=True, generator=FakeGenerator(RuntimeError()))) is None
        assert asyncio.run(generate_hyde_document("q", enabled=True, generator=FakeGenerator(""))) is None


class TestProcessPreRetrieval:
    """Tests for process_pre_retrieval."""

    def test_all_disabled(self):
        """With no enhancements the question is embedded as-is."""
        generator = FakeGenerator()
        result = asyncio.run(process_pre_retrieval("what is rag", RuntimeFlags(), generator))

        assert result.rewritten_query == "what is rag"
        assert result.hyde_document is None
        assert result.embedding_target == "what is rag"
        assert result.enhancement_summary == passthrough_summary("what is rag", RuntimeFlags())
        assert generator.calls == []

    def test_rewrite_then_hyde_on_rewritten(self):
        """HyDE runs on the rewritten question."""
        generator = FakeGenerator("rag overview", "A passage about RAG.")
        flags = RuntimeFlags(
            reverse_rag_enabled=True,
            reverse_rag_mode=ReverseRagMode.RECALL,
            hyde_enabled=True,
            ranker_mode=RankerMode.MMR,
        )

        result = asyncio.run(process_pre_retrieval("what is rag", flags, generator))

        assert result.rewritten_query == "rag overview"
        assert result.hyde_document == "A passage about RAG."
        assert result.embedding_target == "A passage about RAG."
        assert generator.calls[1]["user_prompt"] == "Question:\nrag overview"

        summary = result.enhancement_summary
        assert summary.reverse_rag.original == "what is rag"
        assert summary.reverse_rag.rewritten == "rag overview"
        assert summary.reverse_rag.mode == ReverseRagMode.RECALL
        assert summary.hyde.generated == "A passage about RAG."
        assert summary.ranker == RankerMode.MMR

    def test_hyde_failure_embeds_rewritten_query(self):
        """A HyDE failure falls back to embedding the rewrite."""
        generator = FakeGenerator("rag overview", RuntimeError("hyde down"))
        flags = RuntimeFlags(reverse_rag_enabled=True, hyde_enabled=True)

        result = asyncio.run(process_pre_retrieval("what is rag", flags, generator))

        assert result.embedding_target == "rag overview"
        assert result.enhancement_summary.hyde.enabled
        assert result.enhancement_summary.hyde.generated is None
