"""
Tests for the HTTP API.
"""

from contextlib import contextmanager

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from music_rec_engine import api


@pytest.fixture
def client(config, database):
    """Test client over the seeded database."""
    api.configure(config, database)
    with TestClient(api.app) as test_client:
        yield test_client
    api.get_engine().close()
    api._engine = None
    api._store = None


class TestAPI:
    """Tests for the FastAPI routes."""

    def test_health(self, client):
        """Test health endpoint."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_recommendations(self, client):
        """Test personalized recommendations."""
        response = client.get("/api/v1/recommendations/u1", params={"limit": 5})

        assert response.status_code == 200
        data = response.json()
        assert data["user_id"] == "u1"
        assert len(data["recommendations"]) == 5
        for item in data["recommendations"]:
            assert 0.0 <= item["score"] <= 1.0
            assert item["track_id"] != "t07"
            assert item["reason"]

    def test_cold_start_user(self, client):
        """Test that an unknown user still gets recommendations."""
        response = client.get("/api/v1/recommendations/nobody")

        assert response.status_code == 200
        assert response.json()["recommendations"]

    @pytest.mark.parametrize("params", [
        {"limit": 51},
        {"offset": -1},
        {"genre": "polka"},
        {"mood": "sleepy"},
    ])
    def test_invalid_parameters(self, client, params):
        """Test that bad parameters return 400 with an error code."""
        response = client.get("/api/v1/recommendations/u1", params=params)

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_parameter"

    def test_trending(self, client):
        """Test trending endpoint."""
        response = client.get("/api/v1/recommendations/trending", params={"period": "last_7_days"})

        assert response.status_code == 200
        data = response.json()
        assert data["period"] == "last_7_days"
        assert data["recommendations"][0]["track_id"] == "t08"

    def test_trending_unknown_period(self, client):
        """Test rejected trending periods."""
        response = client.get("/api/v1/recommendations/trending", params={"period": "forever"})

        assert response.status_code == 400

    def test_discover(self, client):
        """Test discovery endpoint."""
        response = client.get("/api/v1/recommendations/discover")

        assert response.status_code == 200
        ids = [item["track_id"] for item in response.json()["recommendations"]]
        assert ids == ["t05", "t09"]

    def test_playlist(self, client):
        """Test smart playlist generation."""
        response = client.post("/api/v1/playlists/generate", json={
            "name": "Workout",
            "description": "Sixty minutes",
            "duration_minutes": 60,
        })

        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "Workout"
        assert 54 * 60 <= data["total_duration_seconds"] <= 66 * 60
        assert all(t["recommendation_type"] == "playlist_generation" for t in data["tracks"])

    def test_playlist_invalid_duration(self, client):
        """Test rejected playlist durations."""
        response = client.post("/api/v1/playlists/generate", json={
            "name": "Nothing",
            "duration_minutes": -1,
        })

        assert response.status_code == 400

    def test_generate_and_consume(self, client):
        """Test persisting recommendations and reporting a play."""
        response = client.post("/api/v1/recommendations/u1/generate", json={"limit": 5})

        assert response.status_code == 200
        data = response.json()
        assert data["generated"] == 5
        track_id = data["recommendations"][0]["track_id"]
        assert data["recommendations"][0]["expires_at"].endswith("Z")

        event = {"user_id": "u1", "track_id": track_id, "completion_percentage": 0.9}
        first = client.post("/api/v1/listening-events", json=event)
        second = client.post("/api/v1/listening-events", json=event)

        assert first.json()["consumed"] == 1
        assert second.json()["consumed"] == 0

        stats = client.get("/stats").json()
        assert stats["total_recommendations"] == 5
        assert stats["recommendations_consumed"] == 1

    def test_skipped_play_not_consumed(self, client):
        """Test that a play below the completion threshold consumes nothing."""
        data = client.post("/api/v1/recommendations/u1/generate", json={"limit": 1}).json()
        track_id = data["recommendations"][0]["track_id"]

        response = client.post("/api/v1/listening-events", json={
            "user_id": "u1", "track_id": track_id, "completion_percentage": 0.2,
        })

        assert response.json()["consumed"] == 0

    def test_write_failure_returns_results(self, client, config):
        """Test that a failed write returns 503 with the computed recommendations."""
        class BrokenDatabase:
            def __init__(self, cfg):
                self.config = cfg

            @contextmanager
            def session(self):
                raise OperationalError("INSERT", {}, Exception("disk I/O error"))
                yield

        api.get_store().database = BrokenDatabase(config)

        response = client.post("/api/v1/recommendations/u1/generate", json={"limit": 3})

        assert response.status_code == 503
        data = response.json()
        assert data["retryable"] is True
        assert len(data["recommendations"]) == 3
