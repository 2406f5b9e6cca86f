"""Tests for the FastAPI surface in src/api."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from conftest import FakeClock, FakeConfigStore, FakeEmbedder, FakeVectorStore, WhitespaceTokenCounter, make_defaults
from src.api.app import create_app
from src.engine.guardrail_config import GuardrailSettingsLoader
from src.engine.guardrail_meta import GUARDRAIL_META_HEADER, deserialize_guardrail_meta
from src.engine.pipeline import GuardrailPipeline
from src.engine.types import EmbeddingError
from src.services.chat import get_pipeline

ROWS = [
    {"chunk": "RAG combines retrieval with generation.", "similarity": 0.9, "metadata": {"doc_id": "rag", "title": "RAG"}},
    {"chunk": "Embeddings map text to vectors.", "similarity": 0.8, "metadata": {"doc_id": "emb"}},
]


def _pipeline(embedder=None):
    loader = GuardrailSettingsLoader(FakeConfigStore(), now=FakeClock(), defaults_factory=make_defaults)
    return GuardrailPipeline(
        loader,
        embedder=embedder or FakeEmbedder(),
        vector_store=FakeVectorStore(ROWS),
        token_counter=WhitespaceTokenCounter(),
        include_verbose_details=False,
    )


@pytest.fixture
def app():
    application = create_app()
    yield application
    application.dependency_overrides.clear()


def _client(app, pipeline):
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    return TestClient(app)


def _body(text="What is retrieval augmented generation?", **extra):
    return {"messages": [{"role": "user", "content": text}], **extra}


class TestApiRoot:
    """Tests for the API root endpoint."""

    def test_root(self, app):
        """API root reports the service name."""
        response = TestClient(app).get("/api")
        assert response.status_code == 200
        assert response.json()["name"] == "Guardrail Context Engine API"


class TestChatContextEndpoint:
    """Tests for POST /api/chat/context."""

    def test_knowledge_turn(self, app):
        """A knowledge question returns ranked chunks and the meta header."""
        client = _client(app, _pipeline())

        response = client.post("/api/chat/context", json=_body())

        assert response.status_code == 200
        data = response.json()
        assert data["preset_id"] == "default"
        assert data["intent"] == "knowledge"
        assert data["language"] == "en"
        assert not data["insufficient"]
        assert [chunk["doc_key"] for chunk in data["included"]] == ["rag", "emb"]
        assert data["included"][0]["title"] == "RAG"
        assert data["context_block"].startswith("(1) RAG\n")
        assert data["history"]["preserved"] == 1
        assert data["sanitization_changes"] == []

        meta = deserialize_guardrail_meta(response.headers[GUARDRAIL_META_HEADER])
        assert meta is not None
        assert meta.intent == "knowledge"
        assert meta.context.included == 2

    def test_chitchat_turn(self, app):
        """Chitchat turns get the fallback context and no chunks."""
        response = _client(app, _pipeline()).post("/api/chat/context", json=_body("hi"))

        assert response.status_code == 200
        data = response.json()
        assert data["intent"] == "chitchat"
        assert data["context_block"] == "compiled chitchat"
        assert data["included"] == []

    def test_session_overrides_are_reported(self, app):
        """Out-of-range session values are clamped and listed in the response."""
        body = _body(session={"similarity": 0.95, "safe_mode": True})

        response = _client(app, _pipeline()).post("/api/chat/context", json=body)

        assert response.status_code == 200
        changes = response.json()["sanitization_changes"]
        assert changes == [
            {"field": "similarity_threshold", "from_value": 0.95, "to_value": 0.9, "reason": "out-of-range"}
        ]

    def test_huge_integer_session_value_is_ignored(self, app):
        """A session integer beyond float range keeps the preset value instead of failing."""
        body = _body(session={"top_k": int("9" * 400)})

        response = _client(app, _pipeline()).post("/api/chat/context", json=body)

        assert response.status_code == 200
        data = response.json()
        assert len(data["included"]) == 2
        assert data["sanitization_changes"] == []

    def test_no_user_message_is_400(self, app):
        """A conversation without a user message is a client error."""
        body = {"messages": [{"role": "system", "content": "you are helpful"}]}
        response = _client(app, _pipeline()).post("/api/chat/context", json=body)
        assert response.status_code == 400
        assert "no user message" in response.json()["detail"]

    def test_provider_failure_is_502(self, app):
        """Embedding failures map to 502 without a meta header."""
        pipeline = _pipeline(embedder=FakeEmbedder(error=EmbeddingError("embeddings down")))

        response = _client(app, pipeline).post("/api/chat/context", json=_body())

        assert response.status_code == 502
        assert "embeddings down" in response.json()["detail"]
        assert GUARDRAIL_META_HEADER not in response.headers

    def test_unexpected_failure_is_500(self, app):
        """Unexpected pipeline errors map to 500."""
        pipeline = MagicMock()
        pipeline.run = AsyncMock(side_effect=RuntimeError("kaboom"))

        response = _client(app, pipeline).post("/api/chat/context", json=_body())

        assert response.status_code == 500
        assert "kaboom" in response.json()["detail"]

    @pytest.mark.parametrize(
        "body",
        [
            {"messages": []},
            {"messages": [{"role": "tool", "content": "x"}]},
            {},
        ],
    )
    def test_invalid_payload_is_422(self, app, body):
        """Malformed request bodies are rejected by validation."""
        response = _client(app, _pipeline()).post("/api/chat/context", json=body)
        assert response.status_code == 422

    def test_cors_exposes_meta_header(self, app):
        """CORS responses expose the guardrail meta header to browsers."""
        client = _client(app, _pipeline())

        response = client.post(
            "/api/chat/context",
            json=_body(),
            headers={"Origin": "http://localhost:5173"},
        )

        exposed = response.headers.get("access-control-expose-headers", "").lower()
        assert GUARDRAIL_META_HEADER in exposed
