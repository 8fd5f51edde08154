"""
API integration tests.

Validate FastAPI endpoints for core flows and error handling.
"""

import urllib.parse

import pytest
from fastapi.testclient import TestClient

from fake_feishu import FakeFeishu
from fake_feishu import build_fake_services
from web.dependencies import get_services
from web.main import app


@pytest.fixture
def fake():
    """Create a fake Feishu platform."""
    return FakeFeishu()


@pytest.fixture
def client(fake):
    """Create a FastAPI test client wired to the fake platform."""
    services = build_fake_services(fake)
    app.dependency_overrides[get_services] = lambda: services
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


class TestSystemAPI:
    """System management API tests."""

    def test_health_check(self, client):
        """Verify health check endpoint."""
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["version"] == "1.0.0"

    def test_get_system_info(self, client):
        """Verify system info endpoint."""
        response = client.get("/api/system/info")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "running"
        assert len(data["features"]) > 0

    def test_get_system_config_masks_secrets(self, client):
        """Verify system config endpoint lists keys and hides secrets."""
        response = client.get("/api/system/config")
        assert response.status_code == 200
        data = response.json()
        for key in [
            "feishu_app_id",
            "feishu_app_secret",
            "feishu_user_access_token",
            "feishu_user_refresh_token",
            "feishu_folder_token",
            "feishu_target_type"
        ]:
            assert key in data
        assert data["feishu_app_secret"] in {None, "****"}
        assert data["feishu_user_access_token"] in {None, "****"}


class TestOAuthAPI:
    """OAuth API tests."""

    def test_authorize_url(self, client):
        """Verify authorize URL carries app id, redirect and state."""
        response = client.get("/api/oauth/authorize-url")
        assert response.status_code == 200
        query = urllib.parse.parse_qs(urllib.parse.urlparse(response.json()["authorize_url"]).query)
        assert query["client_id"] == ["cli_test"]
        assert query["redirect_uri"] == ["http://127.0.0.1:8000/api/oauth/callback"]
        assert query["state"][0]

    def test_callback_success(self, client, fake):
        """Verify a valid callback exchanges the code."""
        authorize_url = client.get("/api/oauth/authorize-url").json()["authorize_url"]
        state = urllib.parse.parse_qs(urllib.parse.urlparse(authorize_url).query)["state"][0]

        response = client.get("/api/oauth/callback", params = {"code": "code_ok", "state": state})

        assert response.status_code == 200
        assert "succeeded" in response.text
        assert "code_ok" not in fake.auth_codes

    def test_callback_state_mismatch(self, client, fake):
        """Verify a callback with a foreign state is rejected."""
        client.get("/api/oauth/authorize-url")

        response = client.get("/api/oauth/callback", params = {"code": "code_ok", "state": "forged"})

        assert response.status_code == 400
        assert "code_ok" in fake.auth_codes

    def test_callback_error(self, client):
        """Verify a denied authorization is reported."""
        response = client.get("/api/oauth/callback", params = {"error": "access_denied"})
        assert response.status_code == 400
        assert "access_denied" in response.text


class TestDocumentsAPI:
    """Document publish and update API tests."""

    def test_publish(self, client, fake):
        """Verify publishing creates a shared document."""
        response = client.post("/api/documents/publish", json = {
            "title": "notes.md",
            "content": "# Notes\nhello",
            "pending_contents": []
        })
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["title"] == "notes"
        assert data["url"] == f"https://feishu.cn/docx/{data['document_id']}"
        assert fake.texts(data["document_id"]) == ["Notes", "hello"]
        assert fake.permissions[data["document_id"]]["link_share_entity"] == "anyone_readable"

    def test_publish_with_callout(self, client, fake):
        """Verify callout pending contents are accepted and bound."""
        placeholder = "__OB_CONTENT_1700000000000_1abcdef__"
        response = client.post("/api/documents/publish", json = {
            "title": "tips",
            "content": f"intro\n{placeholder}",
            "pending_contents": [{
                "placeholder": placeholder,
                "display_name": "Hint",
                "kind": "callout",
                "position": 0,
                "callout": {"callout_type": "tip", "title": "Hint", "content": "be brief", "emoji_id": "bulb"}
            }]
        })
        data = response.json()
        assert data["success"] is True
        assert data["error"] == ""
        assert [item["block_type"] for item in fake.children(data["document_id"])] == [2, 19]

    def test_publish_rejects_unknown_kind(self, client):
        """Verify pending contents with unknown kind are rejected."""
        response = client.post("/api/documents/publish", json = {
            "title": "x",
            "content": "x",
            "pending_contents": [{"placeholder": "p", "kind": "video"}]
        })
        assert response.status_code == 422

    def test_publish_rejects_empty_title(self, client):
        """Verify an empty title is rejected."""
        response = client.post("/api/documents/publish", json = {"title": "", "content": "x"})
        assert response.status_code == 422

    def test_update(self, client, fake):
        """Verify an existing document is overwritten."""
        target = fake.create_document("old")
        response = client.post("/api/documents/update", json = {
            "existing_url": f"https://feishu.cn/docx/{target}",
            "title": "Report",
            "content": "fresh"
        })
        assert response.status_code == 200
        assert response.json()["success"] is True
        assert fake.texts(target) == ["fresh"]

    def test_update_inaccessible_document(self, client):
        """Verify an unreachable document gives a failed result, not an HTTP error."""
        response = client.post("/api/documents/update", json = {
            "existing_url": "https://feishu.cn/docx/missing",
            "title": "Report",
            "content": "fresh"
        })
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert "not accessible" in data["error"]
