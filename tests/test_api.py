"""Tests for the FastAPI surface."""
import pytest
from fastapi.testclient import TestClient

import api.main as api_main
from flow.session import CallSessionStore
from tests.builders import edge, flow, node


@pytest.fixture
def client(monkeypatch, executor):
    monkeypatch.setattr(api_main, "flow_executor", executor)
    monkeypatch.setattr(api_main, "session_store", CallSessionStore())
    with TestClient(api_main.app) as test_client:
        yield test_client


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestValidateEndpoint:
    def test_valid(self, client, yes_flow_raw):
        body = client.post("/api/flows/validate", json=yes_flow_raw).json()
        assert body["valid"] is True
        assert body["errors"] == []

    def test_invalid_is_reported_not_rejected(self, client):
        response = client.post("/api/flows/validate", json=flow([node("e", "end")], []))
        assert response.status_code == 200
        codes = {e["code"] for e in response.json()["errors"]}
        assert "NO_START_NODE" in codes


class TestTurnEndpoint:
    def test_turn(self, client, yes_flow_raw):
        response = client.post("/api/turns", json={
            "flow": yes_flow_raw,
            "currentNodeId": "ask",
            "userInput": "yes please",
            "variables": {"plan": "gold"},
            "history": [{"role": "assistant", "content": "Need help?"}],
        })
        assert response.status_code == 200
        body = response.json()
        assert body["response"] == ""
        assert body["action"] == "gather"
        assert body["next_node_id"] == "bye"
        assert body["variables"] == {"plan": "gold"}

    def test_defaults_to_start_node(self, client, yes_flow_raw):
        body = client.post("/api/turns", json={"flow": yes_flow_raw}).json()
        assert body["response"] == "Need help?"
        assert body["next_node_id"] == "ask"

    def test_invalid_graph_is_422(self, client):
        response = client.post("/api/turns", json={"flow": flow([node("e", "end")], [])})
        assert response.status_code == 422
        assert response.json()["validation"]["valid"] is False


class TestCallEndpoints:
    def test_call_lifecycle(self, client, yes_flow_raw):
        created = client.post("/api/test-calls", json={"flow": yes_flow_raw}).json()
        session_id = created["session_id"]
        assert created["result"]["response"] == "Need help?"
        assert created["status"] == "active"

        turn = client.post(f"/api/test-calls/{session_id}/input", json={"text": "yes"}).json()
        assert turn["result"]["response"] == "Bye"
        assert turn["status"] == "ended"

        closed = client.post(f"/api/test-calls/{session_id}/input", json={"text": "hello?"})
        assert closed.status_code == 409

        state = client.get(f"/api/test-calls/{session_id}").json()
        assert state["status"] == "ended"
        assert state["turn_count"] == 1

    def test_hang_up(self, client, yes_flow_raw):
        session_id = client.post("/api/test-calls", json={"flow": yes_flow_raw}).json()["session_id"]
        response = client.delete(f"/api/test-calls/{session_id}")
        assert response.json()["status"] == "hung_up"
        assert client.get(f"/api/test-calls/{session_id}").status_code == 404

    def test_unknown_call_is_404(self, client):
        assert client.post("/api/test-calls/nope/input", json={"text": "hi"}).status_code == 404
        assert client.delete("/api/test-calls/nope").status_code == 404
