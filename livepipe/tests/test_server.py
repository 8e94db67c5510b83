"""Tests for the HTTP surface."""

from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient

from livepipe.common.schemas import IntentResult
from livepipe.pipeline import server
from livepipe.pipeline.task_log import TaskLog


@pytest.fixture
def client():
    return TestClient(server.app)


@pytest.fixture
def fake_pipeline(monkeypatch, tmp_path):
    pipeline = Mock()
    pipeline.running = True
    pipeline.trigger_once = AsyncMock(return_value={"triggered": False})
    pipeline.status.return_value = {"running": True, "mode": "always"}
    pipeline.task_log = TaskLog(tmp_path / "tasks.md")
    monkeypatch.setattr(server, "pipeline", pipeline)
    return pipeline


class TestEndpoints:
    def test_health_before_init(self, client, monkeypatch):
        monkeypatch.setattr(server, "pipeline", None)
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["initialized"] is False

    def test_status_unavailable_before_init(self, client, monkeypatch):
        monkeypatch.setattr(server, "pipeline", None)
        assert client.get("/status").status_code == 503

    def test_status(self, client, fake_pipeline):
        body = client.get("/status").json()
        assert body["running"] is True
        assert "timestamp" in body

    def test_trigger(self, client, fake_pipeline):
        assert client.post("/trigger").json() == {"triggered": False}
        fake_pipeline.trigger_once.assert_awaited_once()

    def test_tasks(self, client, fake_pipeline):
        fake_pipeline.task_log.record(IntentResult(actionable=True, content="Water plants"))

        tasks = client.get("/tasks").json()["tasks"]
        assert tasks[0]["content"] == "Water plants"
        assert tasks[0]["index"] == 0

        assert client.post("/tasks/0/complete").json() == {"status": "completed", "index": 0}
        assert client.post("/tasks/9/complete").status_code == 404
