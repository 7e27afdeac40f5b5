"""Tests for FastAPI main application."""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from career_guide_api.main import app
from career_guide_api.orchestrator import TurnFailedError


@pytest.fixture
def client():
    """Create test client."""
    with TestClient(app) as client:
        yield client


def start(client, user_id="user-1"):
    response = client.post("/api/v1/conversations", json={"user_id": user_id})
    assert response.status_code == 201
    return response.json()


class TestHealthEndpoint:
    """Tests for health check endpoint."""

    def test_health_check(self, client):
        """Test basic health check."""
        response = client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert data["catalog_size"] >= 10
        assert "version" in data
        assert "active_conversations" in data

    def test_health_check_v1(self, client):
        """Test v1 health endpoint."""
        response = client.get("/api/v1/health")
        assert response.status_code == 200
        assert "status" in response.json()

    def test_health_degraded_without_catalog(self, client):
        from career_guide_api.catalog import CatalogStore, set_catalog

        set_catalog(CatalogStore())
        response = client.get("/health")
        assert response.json()["status"] == "degraded"


class TestConversationEndpoints:
    """Tests for conversation lifecycle endpoints."""

    def test_start_conversation(self, client):
        data = start(client)
        assert data["conversation_id"]
        assert data["message"]
        assert data["phase"] == "intro"
        assert data["status"] == "active"
        assert data["completeness"] == 0
        assert [m["name"] for m in data["milestones"]] == [
            "passions_identified",
            "role_determined",
            "domain_identified",
            "format_determined",
            "specific_job_identified",
        ]

    def test_start_validation(self, client):
        response = client.post("/api/v1/conversations", json={"user_id": ""})
        assert response.status_code == 422

    def test_get_conversation(self, client):
        conversation_id = start(client)["conversation_id"]
        response = client.get(f"/api/v1/conversations/{conversation_id}")
        assert response.status_code == 200
        data = response.json()
        assert data["id"] == conversation_id
        assert data["messages"][0]["role"] == "assistant"

    def test_get_unknown_conversation(self, client):
        response = client.get("/api/v1/conversations/missing")
        assert response.status_code == 404
        assert response.json()["detail"] == "Conversation not found"

    def test_list_user_conversations(self, client):
        first = start(client)["conversation_id"]
        second = start(client)["conversation_id"]
        start(client, "someone-else")

        response = client.get("/api/v1/users/user-1/conversations")
        assert response.status_code == 200
        data = response.json()
        assert [c["id"] for c in data] == [second, first]
        assert data[1]["status"] == "abandoned"

        limited = client.get("/api/v1/users/user-1/conversations", params={"limit": 1})
        assert len(limited.json()) == 1

    def test_pause_and_resume(self, client):
        conversation_id = start(client)["conversation_id"]

        paused = client.post(f"/api/v1/conversations/{conversation_id}/pause")
        assert paused.status_code == 200
        assert paused.json()["status"] == "paused"

        rejected = client.post(
            f"/api/v1/conversations/{conversation_id}/messages", json={"content": "hello"}
        )
        assert rejected.status_code == 409
        assert rejected.json()["detail"] == "Conversation is paused"

        resumed = client.post(f"/api/v1/conversations/{conversation_id}/resume")
        assert resumed.json()["status"] == "active"

    def test_reset(self, client):
        old = start(client)["conversation_id"]
        response = client.post("/api/v1/conversations/reset", json={"user_id": "user-1"})
        assert response.status_code == 201
        assert response.json()["conversation_id"] != old

        old_state = client.get(f"/api/v1/conversations/{old}").json()
        assert old_state["status"] == "abandoned"


class TestMessageEndpoint:
    """Tests for the message endpoint."""

    def test_send_message(self, client):
        conversation_id = start(client)["conversation_id"]
        response = client.post(
            f"/api/v1/conversations/{conversation_id}/messages",
            json={"content": "I really love animals"},
        )
        assert response.status_code == 200

        data = response.json()
        assert data["conversation_id"] == conversation_id
        assert data["message"]
        assert data["phase"] == "discovery"
        assert data["completeness"] > 0

        conversation = client.get(f"/api/v1/conversations/{conversation_id}").json()
        assert len(conversation["messages"]) == 3

    def test_trace_id_header(self, client):
        conversation_id = start(client)["conversation_id"]
        response = client.post(
            f"/api/v1/conversations/{conversation_id}/messages",
            json={"content": "hello"},
            headers={"X-Trace-ID": "trace-123"},
        )
        assert response.headers["X-Trace-ID"] == "trace-123"

    def test_validation_empty_message(self, client):
        conversation_id = start(client)["conversation_id"]
        response = client.post(
            f"/api/v1/conversations/{conversation_id}/messages", json={"content": ""}
        )
        assert response.status_code == 422

    def test_validation_message_too_long(self, client):
        conversation_id = start(client)["conversation_id"]
        response = client.post(
            f"/api/v1/conversations/{conversation_id}/messages", json={"content": "x" * 2001}
        )
        assert response.status_code == 422

    def test_unknown_conversation(self, client):
        response = client.post("/api/v1/conversations/missing/messages", json={"content": "hi"})
        assert response.status_code == 404

    def test_failed_turn_hides_details(self, client):
        conversation_id = start(client)["conversation_id"]
        with patch(
            "career_guide_api.orchestrator.ConversationOrchestrator.process_turn",
            new=AsyncMock(side_effect=TurnFailedError("store exploded")),
        ):
            response = client.post(
                f"/api/v1/conversations/{conversation_id}/messages", json={"content": "hi"}
            )
        assert response.status_code == 500
        assert "exploded" not in response.text


class TestCompletionEndpoints:
    """Tests for completion, profile and recommendation endpoints."""

    def test_complete(self, client):
        conversation_id = start(client)["conversation_id"]
        client.post(
            f"/api/v1/conversations/{conversation_id}/messages",
            json={"content": "I love coding software"},
        )

        response = client.post(
            f"/api/v1/conversations/{conversation_id}/complete", json={"satisfaction": 4}
        )
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert 0 < len(data["recommendations"]) <= 3

        again = client.post(f"/api/v1/conversations/{conversation_id}/complete")
        assert again.status_code == 409

    def test_complete_invalid_rating(self, client):
        conversation_id = start(client)["conversation_id"]
        response = client.post(
            f"/api/v1/conversations/{conversation_id}/complete", json={"satisfaction": 9}
        )
        assert response.status_code == 422

    def test_profile(self, client):
        conversation_id = start(client)["conversation_id"]
        client.post(
            f"/api/v1/conversations/{conversation_id}/messages",
            json={"content": "I really love animals"},
        )

        response = client.get(f"/api/v1/conversations/{conversation_id}/profile")
        assert response.status_code == 200
        data = response.json()
        assert "animals" in [i["domain"] for i in data["interests"]]
        assert len(data["milestones"]) == 5

    def test_recommendations_and_reaction(self, client):
        conversation_id = start(client)["conversation_id"]
        empty = client.get(f"/api/v1/conversations/{conversation_id}/recommendations")
        assert empty.json() == []

        client.post(f"/api/v1/conversations/{conversation_id}/complete")
        recommendations = client.get(
            f"/api/v1/conversations/{conversation_id}/recommendations"
        ).json()
        occupation_id = recommendations[0]["occupation_id"]

        response = client.post(
            f"/api/v1/conversations/{conversation_id}/recommendations/{occupation_id}/reaction",
            json={"reaction": "interested"},
        )
        assert response.status_code == 200
        assert response.json()["user_reaction"] == "interested"

        missing = client.post(
            f"/api/v1/conversations/{conversation_id}/recommendations/nope/reaction",
            json={"reaction": "neutral"},
        )
        assert missing.status_code == 404

        invalid = client.post(
            f"/api/v1/conversations/{conversation_id}/recommendations/{occupation_id}/reaction",
            json={"reaction": "ecstatic"},
        )
        assert invalid.status_code == 422


class TestStatsEndpoint:
    """Tests for conversation statistics."""

    def test_stats(self, client):
        start(client)
        start(client)
        response = client.get("/api/v1/stats")
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert data["by_status"]["active"]["count"] == 1
        assert data["by_status"]["abandoned"]["count"] == 1


class TestMetricsEndpoint:
    """Tests for Prometheus metrics endpoint."""

    def test_metrics_endpoint(self, client):
        """Test that metrics endpoint exists."""
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "conversation_turns_total" in response.text


class TestCORS:
    """Tests for CORS configuration."""

    def test_cors_headers(self, client):
        """Test that CORS headers are present."""
        response = client.options(
            "/api/v1/conversations",
            headers={
                "Origin": "http://localhost:8080",
                "Access-Control-Request-Method": "POST",
            },
        )
        assert response.status_code in [200, 204]
