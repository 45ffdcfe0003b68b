"""Tests for the HTTP API."""

import json

import pytest
from fastapi.testclient import TestClient

from chatkeep.auth import LocalIdentityProvider
from chatkeep.main import create_app


@pytest.fixture
def identity():
    return LocalIdentityProvider("u1")


@pytest.fixture
def client(settings, identity, provider_factory):
    app = create_app(settings, identity=identity, provider_factory=provider_factory)
    with TestClient(app) as test_client:
        yield test_client


def _events(body: str):
    return [json.loads(line[6:]) for line in body.splitlines() if line.startswith("data: ")]


def _configure(client):
    response = client.put(
        "/api/settings/provider",
        json={"provider": "openrouter", "api_key": "sk-or-1234567890"},
    )
    assert response.status_code == 200


def _new_conversation(client, title="Chat"):
    response = client.post("/api/conversations", json={"title": title})
    assert response.status_code == 200
    return response.json()["id"]


class TestHealth:
    def test_health(self, client):
        assert client.get("/api/health").json()["status"] == "healthy"

    def test_ready_reports_schema(self, client):
        body = client.get("/api/health/ready").json()
        assert body["status"] == "ready"
        assert body["checks"]["schema_version"] == 2


class TestConversationRoutes:
    """Conversation CRUD."""

    def test_create_list_rename_delete(self, client):
        conv_id = _new_conversation(client, "First")

        listed = client.get("/api/conversations").json()
        assert [c["id"] for c in listed] == [conv_id]
        assert listed[0]["message_count"] == 0
        assert listed[0]["app_scope"] == "neural_text"

        renamed = client.put(f"/api/conversations/{conv_id}", json={"title": "Renamed"})
        assert renamed.json()["title"] == "Renamed"

        assert client.delete(f"/api/conversations/{conv_id}").status_code == 200
        assert client.get(f"/api/conversations/{conv_id}").status_code == 404

    def test_unknown_conversation_is_404(self, client):
        assert client.get("/api/conversations/nope").status_code == 404
        assert client.get("/api/messages/nope").status_code == 404

    def test_signed_out_is_401(self, client, identity):
        identity._signed_in = False
        assert client.get("/api/conversations").status_code == 401


class TestMessageRoutes:
    """Sending, listing and regenerating."""

    def test_streaming_send(self, client):
        _configure(client)
        conv_id = _new_conversation(client)

        response = client.post(
            "/api/messages", json={"conversation_id": conv_id, "content": "Hello"}
        )

        assert response.headers["content-type"].startswith("text/event-stream")
        events = _events(response.text)
        assert [e["content"] for e in events if "content" in e] == ["Hi", " there"]
        assert events[-1]["done"] is True
        assert events[-1]["message"]["content"] == "Hi there"

        messages = client.get(f"/api/messages/{conv_id}").json()
        assert [(m["content"], m["is_user"]) for m in messages] == [
            ("Hello", True), ("Hi there", False)
        ]

    def test_non_streaming_send_and_regenerate(self, client, fake_api):
        _configure(client)
        conv_id = _new_conversation(client)

        sent = client.post(
            "/api/messages",
            json={"conversation_id": conv_id, "content": "Hello", "stream": False},
        )
        assert sent.json()["content"] == "Hi there"

        fake_api.reply = "Another take"
        regenerated = client.post(f"/api/messages/regenerate?conversation_id={conv_id}")

        assert regenerated.status_code == 200
        assert regenerated.json()["id"] == sent.json()["id"]
        assert regenerated.json()["content"] == "Another take"

    def test_send_without_provider_is_400(self, client):
        conv_id = _new_conversation(client)

        for stream in (True, False):
            response = client.post(
                "/api/messages",
                json={"conversation_id": conv_id, "content": "Hello", "stream": stream},
            )
            assert response.status_code == 400

    def test_blank_message_is_400(self, client):
        _configure(client)
        conv_id = _new_conversation(client)

        for stream in (True, False):
            response = client.post(
                "/api/messages",
                json={"conversation_id": conv_id, "content": "   ", "stream": stream},
            )
            assert response.status_code == 400
        assert client.get(f"/api/messages/{conv_id}").json() == []

    def test_regenerate_empty_conversation_is_400(self, client):
        _configure(client)
        conv_id = _new_conversation(client)

        response = client.post(f"/api/messages/regenerate?conversation_id={conv_id}")

        assert response.status_code == 400
        assert client.get(f"/api/messages/{conv_id}").json() == []

    def test_regenerate_foreign_conversation_is_404(self, client):
        response = client.post("/api/messages/regenerate?conversation_id=missing")
        assert response.status_code == 404


class TestSettingsRoutes:
    """Provider configuration."""

    def test_key_is_masked(self, client):
        _configure(client)

        body = client.get("/api/settings/provider").json()

        assert body["provider"] == "openrouter"
        assert body["api_key_set"] is True
        assert body["api_key_masked"] == "sk-...7890"
        assert "sk-or-1234567890" not in json.dumps(body)
        assert "openrouter" in body["available_providers"]

    def test_select_and_clear(self, client):
        _configure(client)

        switched = client.post("/api/settings/provider/select", json={"provider": "ollama"}).json()
        assert switched["provider"] == "ollama"
        assert switched["api_key_set"] is False

        back = client.post("/api/settings/provider/select", json={"provider": "openrouter"}).json()
        assert back["api_key_set"] is True

        cleared = client.delete("/api/settings/provider/credential").json()
        assert cleared["provider"] == "openrouter"
        assert cleared["api_key_set"] is False

    def test_unknown_provider_rejected(self, client):
        response = client.put("/api/settings/provider", json={"provider": "nope"})
        assert response.status_code == 400

    def test_invalid_base_url_rejected(self, client):
        response = client.put(
            "/api/settings/provider",
            json={"provider": "ollama", "base_url": "ftp://box"},
        )
        assert response.status_code == 400

    def test_empty_settings(self, client):
        body = client.get("/api/settings/provider").json()
        assert body["provider"] is None
        assert body["api_key_set"] is False
