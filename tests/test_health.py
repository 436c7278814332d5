"""
Tests for health probes, metrics and the dashboard view selection.
"""

from fastapi.testclient import TestClient

from quickloans.config import Settings
from quickloans.main import create_app
from tests.conftest import VALID_PROFILE, auth_headers, seed_profile


class TestHealth:

    def test_live(self, client):
        response = client.get("/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready_when_configured(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_placeholder_config_starts_but_is_not_ready(self, tmp_path):
        settings = Settings(PLATFORM_URL="", PLATFORM_KEY="", STORAGE_DIR=str(tmp_path), TYPING_SWEEP_INTERVAL=0)
        app = create_app(settings)

        with TestClient(app) as client:
            assert client.get("/health/live").status_code == 200

            response = client.get("/health/ready")
            assert response.status_code == 503
            assert response.json()["reason"] == "Platform not configured"

    def test_placeholder_config_fails_store_calls(self, tmp_path):
        settings = Settings(PLATFORM_URL="", PLATFORM_KEY="", STORAGE_DIR=str(tmp_path), TYPING_SWEEP_INTERVAL=0)
        app = create_app(settings)

        with TestClient(app) as client:
            response = client.get("/profile", headers={"X-Api-Key": "placeholder-key", "X-User-Id": "user-1"})

            assert response.status_code == 503
            assert response.json()["code"] == "store_error"


class TestMetrics:

    def test_metrics_exposed(self, client):
        client.get("/health/live")
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text

    def test_paths_labelled_by_route_template(self, client):
        client.get("/storage/profile-documents/user-1/first-id.png")
        client.get("/storage/profile-documents/user-1/second-id.png")
        client.get("/no-such-route/third-id")

        text = client.get("/metrics").text

        assert 'path="/storage/{bucket}/{object_path:path}"' in text
        assert 'path="unmatched"' in text
        assert "first-id" not in text
        assert "second-id" not in text
        assert "third-id" not in text


class TestDashboard:

    def test_end_user_without_profile(self, client):
        response = client.get("/dashboard", headers=auth_headers("user-1"))

        assert response.status_code == 200
        data = response.json()
        assert data["kind"] == "end_user"
        assert data["profile"] is None
        assert data["profile_complete"] is False

    def test_end_user_with_profile(self, client):
        client.put("/profile", json=VALID_PROFILE, headers=auth_headers("user-1"))

        data = client.get("/dashboard", headers=auth_headers("user-1")).json()

        assert data["kind"] == "end_user"
        assert data["profile_complete"] is True
        assert data["applications"] == []
        assert "users" not in data

    def test_admin_view(self, client, app_platform):
        seed_profile(app_platform, "admin-1", is_admin=True)
        client.put("/profile", json=VALID_PROFILE, headers=auth_headers("user-1"))
        client.get("/chat/conversation", headers=auth_headers("user-1"))

        data = client.get("/dashboard", headers=auth_headers("admin-1")).json()

        assert data["kind"] == "admin"
        assert {u["user_id"] for u in data["users"]} == {"admin-1", "user-1"}
        assert [c["user_id"] for c in data["conversations"]] == ["user-1"]
