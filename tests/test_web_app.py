"""Tests for the FastAPI web application."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from docweave.errors import EmbeddingError, WorkerNotReadyError, WorkerTimeoutError
from docweave.index.context import AssembledContext
from docweave.models import SearchResult
from docweave.web.app import app, configure

client = TestClient(app)


@pytest.fixture
def engine():
    mock_engine = MagicMock()
    mock_engine.workers.is_ready = True
    mock_engine.workers.session_id = 3
    configure(mock_engine)
    yield mock_engine
    configure(None)


class TestHealthEndpoint:
    """Tests for GET /health."""

    def test_idle_without_engine(self) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "idle", "ready": False}

    def test_ready(self, engine: MagicMock) -> None:
        response = client.get("/health")

        assert response.json() == {"status": "ok", "ready": True, "session": 3}


class TestSearchEndpoint:
    """Tests for POST /search endpoint."""

    def test_search_empty_query(self) -> None:
        """Returns 400 for empty query."""
        response = client.post("/search", json={"query": "", "top_k": 10})
        assert response.status_code == 400
        assert "Empty query" in response.json()["detail"]

    def test_search_whitespace_query(self, engine: MagicMock) -> None:
        """Returns 400 for whitespace-only query."""
        response = client.post("/search", json={"query": "   ", "top_k": 10})
        assert response.status_code == 400
        engine.search.assert_not_called()

    def test_search_without_engine(self) -> None:
        response = client.post("/search", json={"query": "postgres"})
        assert response.status_code == 503
        assert response.json()["detail"] == "Index not loaded"

    def test_search_success(self, engine: MagicMock) -> None:
        """Returns search results on success."""
        engine.search.return_value = [
            SearchResult(path="postgres.md", score=0.9, title="postgres", excerpt="MVCC", is_keyword_match=True)
        ]

        response = client.post("/search", json={"query": "  mvcc ", "top_k": 5})

        assert response.status_code == 200
        result = response.json()["results"][0]
        assert result["path"] == "postgres.md"
        assert result["excerpt"] == "MVCC"
        assert result["is_keyword_match"] is True
        assert "anchor_hash" not in result
        engine.search.assert_called_once_with("mvcc", top_k=5)

    def test_top_k_clamped(self, engine: MagicMock) -> None:
        engine.search.return_value = []

        client.post("/search", json={"query": "x", "top_k": 500})
        client.post("/search", json={"query": "x", "top_k": 0})

        assert [c.kwargs["top_k"] for c in engine.search.call_args_list] == [50, 1]

    def test_worker_not_ready(self, engine: MagicMock) -> None:
        engine.search.side_effect = WorkerNotReadyError("Index worker is not running")

        response = client.post("/search", json={"query": "postgres"})

        assert response.status_code == 503

    def test_worker_timeout(self, engine: MagicMock) -> None:
        engine.search.side_effect = WorkerTimeoutError("Worker query timed out")

        response = client.post("/search", json={"query": "postgres"})

        assert response.status_code == 504
        assert "timed out" in response.json()["detail"]

    def test_embedding_failure(self, engine: MagicMock) -> None:
        engine.search.side_effect = EmbeddingError("Embedding failed: provider offline")

        response = client.post("/search", json={"query": "postgres"})

        assert response.status_code == 502
        assert "provider offline" in response.json()["detail"]


class TestContextEndpoint:
    """Tests for POST /context endpoint."""

    def test_context(self, engine: MagicMock) -> None:
        engine.context.return_value = AssembledContext(
            text="--- Document: a.md ---\nbody\n", used_paths=["a.md"], tiers={"a.md": "primary"}
        )

        response = client.post("/context", json={"query": "body", "budget_chars": 2000})

        assert response.status_code == 200
        data = response.json()
        assert data["used_chars"] == len("--- Document: a.md ---\nbody\n")
        assert data["documents"] == [{"path": "a.md", "tier": "primary"}]
        engine.context.assert_called_once_with("body", budget_chars=2000, top_k=20)

    def test_invalid_budget(self, engine: MagicMock) -> None:
        response = client.post("/context", json={"query": "body", "budget_chars": 0})

        assert response.status_code == 400
        engine.context.assert_not_called()

    def test_empty_query(self, engine: MagicMock) -> None:
        assert client.post("/context", json={"query": " "}).status_code == 400


class TestGraphEndpoints:
    """Tests for GET /neighbors and GET /documents."""

    def test_neighbors(self, engine: MagicMock) -> None:
        engine.neighbors.return_value = [
            SearchResult(path="Ontology/Databases.md", score=0.5, excerpt="", is_graph_neighbor=True)
        ]

        response = client.get("/neighbors/notes/postgres.md", params={"mode": "simple"})

        assert response.status_code == 200
        assert response.json()["results"][0]["path"] == "Ontology/Databases.md"
        engine.neighbors.assert_called_once_with("notes/postgres.md", mode="simple")

    def test_neighbors_invalid_mode(self, engine: MagicMock) -> None:
        response = client.get("/neighbors/postgres.md", params={"mode": "sideways"})

        assert response.status_code == 422

    def test_documents(self, engine: MagicMock) -> None:
        engine.documents.return_value = [{"path": "a.md", "mtime": 1.0, "size": 4, "has_content": True}]
        engine.stats.return_value = {"document_count": 1}

        response = client.get("/documents")

        assert response.status_code == 200
        assert response.json() == {
            "documents": [{"path": "a.md", "mtime": 1.0, "size": 4, "has_content": True}],
            "stats": {"document_count": 1},
        }

    def test_documents_without_engine(self) -> None:
        assert client.get("/documents").status_code == 503
