"""
Tests for the HTTP surface.

Each test installs a fresh coordinator (no LLM) before the lifespan runs,
so nothing leaks between tests and no network is touched.
"""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

import village_guide.app as app_module
from village_guide.app import _state, app
from village_guide.coordinator import CoordinationManager


async def no_sleep(delay: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def client():
    _state.coordinator = CoordinationManager(sleep=no_sleep)
    try:
        with TestClient(app) as c:
            yield c
    finally:
        _state.coordinator = None
        _state.notifications = None


@pytest.fixture
def lenient_client():
    """Client that returns 500 responses instead of raising."""
    _state.coordinator = CoordinationManager(sleep=no_sleep)
    try:
        with TestClient(app, raise_server_exceptions=False) as c:
            yield c
    finally:
        _state.coordinator = None
        _state.notifications = None


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

class TestEndpoints:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["open_circuits"] == []
        assert data["llm_configured"] is False

    def test_process_quick_answer(self, client):
        resp = client.post("/process", json={"content": "门票价格"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["content"] == "东里村免费开放，无需门票。"
        assert data["strategy"] == "quick_answer"
        assert data["cached"] is False
        assert data["input_type"] == "text"

    def test_process_cached_second_time(self, client):
        client.post("/process", json={"content": "郑玉指是谁", "session_id": "s1"})
        resp = client.post("/process", json={"content": "郑玉指是谁", "session_id": "s1"})
        data = resp.json()
        assert data["cached"] is True
        assert data["strategy"] == "similarity_cache"
        assert data["similarity"] == 1.0
        assert data["original_query"] == "郑玉指是谁"

    def test_process_tool_details(self, client):
        resp = client.post("/process", json={"content": "郑玉指是谁"})
        details = resp.json()["details"]
        assert details["tool"] == "get_related_knowledge"
        assert details["category"] == "红色文化"

    def test_process_voice_output(self, client):
        resp = client.post("/process", json={
            "content": "郑玉指是谁", "output_format": "voice",
        })
        assert resp.json()["output_format"] == "voice"

    def test_process_rejects_bad_type(self, client):
        resp = client.post("/process", json={"content": "门票价格", "type": "smell"})
        assert resp.status_code == 422

    def test_metrics(self, client):
        client.post("/process", json={"content": "门票价格"})
        data = client.get("/metrics").json()
        assert data["total_queries"] == 1
        assert "dispatcher" in data

    def test_clear_cache(self, client):
        client.post("/process", json={"content": "门票价格"})
        assert client.post("/cache/clear").json() == {"cleared": True}
        assert len(_state.coordinator.cache) == 0

    def test_notify(self, client):
        resp = client.post("/cache/notify", json={
            "type": "update",
            "knowledge_ids": ["k1"],
            "content": {"id": "k1", "question": "门票多少钱", "answer": "免费"},
        })
        assert resp.status_code == 200
        assert resp.json()["summary"] == "更新 1 个知识项"
        assert _state.notifications.recent_updates()[-1]["knowledge_ids"] == ["k1"]

    def test_notify_rejects_unknown_type(self, client):
        resp = client.post("/cache/notify", json={"type": "explode"})
        assert resp.status_code == 422

    def test_lifespan_starts_preload(self, client):
        assert _state.coordinator._preload_task is not None


# ---------------------------------------------------------------------------
# API key
# ---------------------------------------------------------------------------

class TestApiKey:
    def test_missing_key_rejected(self, client, monkeypatch):
        monkeypatch.setattr(app_module, "_API_KEY", "secret")
        resp = client.post("/process", json={"content": "门票价格"})
        assert resp.status_code == 401
        assert resp.json() == {"detail": "Invalid or missing API key"}

    def test_correct_key_accepted(self, client, monkeypatch):
        monkeypatch.setattr(app_module, "_API_KEY", "secret")
        resp = client.get("/metrics", headers={"X-API-Key": "secret"})
        assert resp.status_code == 200

    def test_health_is_public(self, client, monkeypatch):
        monkeypatch.setattr(app_module, "_API_KEY", "secret")
        assert client.get("/health").status_code == 200


# ---------------------------------------------------------------------------
# Exception handler
# ---------------------------------------------------------------------------

class TestExceptionHandler:
    def test_detail_outside_production(self, lenient_client, monkeypatch):
        monkeypatch.setattr(app_module, "_IS_PRODUCTION", False)
        _state.coordinator.process_input = AsyncMock(side_effect=RuntimeError("boom"))
        resp = lenient_client.post("/process", json={"content": "门票价格"})
        assert resp.status_code == 500
        assert resp.json() == {"detail": "boom"}

    def test_hidden_in_production(self, lenient_client, monkeypatch):
        monkeypatch.setattr(app_module, "_IS_PRODUCTION", True)
        _state.coordinator.process_input = AsyncMock(side_effect=RuntimeError("boom"))
        resp = lenient_client.post("/process", json={"content": "门票价格"})
        assert resp.status_code == 500
        assert resp.json() == {"detail": "Internal server error"}
