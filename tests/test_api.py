"""API tests for the FastAPI app in LITE MODE."""

import json

import pytest
from fastapi.testclient import TestClient

from conftest import NOW, OWNER, make_entries


@pytest.fixture
def client(monkeypatch, tmp_path):
    """App with no providers configured, serving entries from a temp file."""
    data_file = tmp_path / "journal_entries.json"
    data_file.write_text(json.dumps(make_entries(with_embeddings=False)))

    monkeypatch.setenv("LLM_PROVIDER", "disabled")
    monkeypatch.setenv("EMBEDDING_PROVIDER", "disabled")
    monkeypatch.setenv("SUPABASE_URL", "")
    monkeypatch.setenv("REDIS_URL", "")
    monkeypatch.setenv("JOURNAL_DATA_FILE", str(data_file))

    import main

    with TestClient(main.app) as test_client:
        yield test_client


def ask(client, text, **extra):
    body = {"text": text, "owner_id": OWNER, "now": NOW.isoformat(), **extra}
    return client.post("/api/query", json=body)


class TestHealth:
    """Mode and component status."""

    def test_lite_mode(self, client):
        data = client.get("/api/health").json()
        assert data["status"] == "healthy"
        assert data["mode"] == "LITE"
        assert data["store"]["store"] == "memory"
        assert data["store"]["entries"] == 6
        assert data["llm"] is False
        assert data["llm_provider"] == "disabled"
        assert data["redis"] is False
        assert data["pipeline"]["agents"]["classifier"] is True


class TestQuery:
    """POST /api/query."""

    def test_deterministic_answer(self, client):
        response = ask(client, "How many times did I mention sleep this month?")
        assert response.status_code == 200

        data = response.json()
        assert data["degraded"] is True
        assert data["answer_text"].strip()
        assert len(data["status_summary"].split()) == 5
        assert "x1" not in data["source_record_refs"]
        assert [s["agent"] for s in data["trace"]["stages"]][0] == "classifier"

    def test_trace_can_be_disabled(self, client):
        data = ask(client, "How did I feel today?", trace=False).json()
        assert "trace" not in data

    def test_budget_from_request(self, client):
        data = ask(client, "How did I feel today?", max_latency_ms=2500).json()
        assert data["metadata"]["deadline_ms"] == 2500

    def test_history(self, client):
        history = [{"role": "user", "text": "How was work?"}, {"role": "assistant", "text": "Busy."}]
        assert ask(client, "And sleep?", history=history).status_code == 200

    @pytest.mark.parametrize("extra", [
        {"text": ""},
        {"history": [{"role": "system", "text": "x"}]},
        {"max_parallel": 20},
        {"max_latency_ms": 10},
    ])
    def test_validation_errors(self, client, extra):
        body = {"text": "How did I feel today?", "owner_id": OWNER, **extra}
        assert client.post("/api/query", json=body).status_code == 422

    def test_owner_required(self, client):
        assert client.post("/api/query", json={"text": "How did I feel today?"}).status_code == 422


class TestOperations:
    """Metrics and cache endpoints."""

    def test_metrics_count_runs(self, client):
        assert client.get("/api/metrics").json()["runs"] == 0
        ask(client, "How did I feel today?")
        ask(client, "Who won the world cup?")
        snapshot = client.get("/api/metrics").json()
        assert snapshot["runs"] == 2
        assert "classifier" in snapshot["stage_avg_ms"]

    def test_cache_endpoints(self, client):
        stats = client.get("/api/cache/stats").json()
        assert stats["backend"] == "memory"
        assert client.delete("/api/cache").json() == {"status": "cleared"}
        assert client.get("/api/cache/stats").json()["keys"] == 0
