"""
Tests for the read API.

Tests cover:
- GET /conversations ordering and summaries
- GET /conversations/{id}/messages ordering, pagination and 404
- GET /media path confinement
- Health and metrics endpoints
"""

import json
import shutil
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from social_insight import models  # noqa: F401
from social_insight.main import app
from social_insight.media_pipeline import MediaPipeline
from social_insight.media_store import MediaStore
from social_insight.metrics import route_label
from social_insight.storage import Base


def send_message(client, message_id: str, sender: str, timestamp, text: str, **extra):
    """Helper to ingest one text message via the webhook."""
    message = {"id": message_id, "from": sender, "timestamp": timestamp, "text": {"body": text}}
    message.update(extra)
    body = {"entry": [{"changes": [{"value": {"messages": [message]}}]}]}

    response = client.post(
        "/webhook",
        content=json.dumps(body),
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 200


@pytest.fixture(scope="function")
def client(media_host):
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=app.state.engine)

    with TestClient(app) as test_client:
        app.state.media_pipeline.close()
        app.state.media_pipeline = MediaPipeline(app.state.settings, client=media_host.client())
        yield test_client

    Base.metadata.drop_all(bind=app.state.engine)
    shutil.rmtree(app.state.settings.MEDIA_STORAGE_PATH, ignore_errors=True)


@pytest.fixture
def seeded_client(client):
    """Client with two conversations."""
    messages = [
        ("m1", "5511111111111", 1700000000, "first from one"),
        ("m2", "5522222222222", 1700000100, "first from two"),
        ("m3", "5511111111111", 1700000200, "second from one"),
        ("m4", "5511111111111", 1700000200, "same second as m3"),
        ("m5", "5511111111111", 1699999000, "late arrival, earlier timestamp"),
    ]
    for msg in messages:
        send_message(client, *msg)
    return client


def conversation_id_for(client, wa_id: str) -> int:
    for item in client.get("/conversations").json()["data"]:
        if item["wa_id"] == wa_id:
            return item["id"]
    raise AssertionError(f"conversation {wa_id} not found")


class TestConversationsList:
    """Test GET /conversations."""

    def test_empty_database(self, client):
        response = client.get("/conversations")

        assert response.status_code == 200
        assert response.json() == {"data": []}

    def test_most_recent_activity_first(self, seeded_client):
        data = seeded_client.get("/conversations").json()["data"]

        assert [item["wa_id"] for item in data] == ["5511111111111", "5522222222222"]

    def test_summary_fields(self, seeded_client):
        first = seeded_client.get("/conversations").json()["data"][0]

        assert first["name"] == "+5511111111111"
        assert first["message_count"] == 4
        assert first["last_message_at"] == "2023-11-14T22:16:40Z"
        assert first["last_message_body"] == "same second as m3"
        assert first["channel"] == "whatsapp"

    def test_late_message_does_not_rewind_activity(self, seeded_client):
        data = seeded_client.get("/conversations").json()["data"]
        one = next(item for item in data if item["wa_id"] == "5511111111111")

        assert one["last_message_at"] == "2023-11-14T22:16:40Z"


class TestConversationMessages:
    """Test GET /conversations/{id}/messages."""

    def test_canonical_order(self, seeded_client):
        conversation_id = conversation_id_for(seeded_client, "5511111111111")

        response = seeded_client.get(f"/conversations/{conversation_id}/messages")

        assert response.status_code == 200
        data = response.json()
        assert data["conversation"] == {"id": conversation_id, "name": "+5511111111111"}
        assert [m["wa_message_id"] for m in data["data"]] == ["m5", "m1", "m3", "m4"]
        assert data["total"] == 4

    def test_message_fields(self, seeded_client):
        conversation_id = conversation_id_for(seeded_client, "5522222222222")

        message = seeded_client.get(f"/conversations/{conversation_id}/messages").json()["data"][0]

        assert message["message_body"] == "first from two"
        assert message["sender_phone"] == "5522222222222"
        assert message["sender_name"] == "Unknown"
        assert message["message_type"] == "text"
        assert message["is_from_me"] is False
        assert message["sent_at"] == "2023-11-14T22:15:00Z"
        assert message["media_url"] is None

    def test_pagination(self, seeded_client):
        conversation_id = conversation_id_for(seeded_client, "5511111111111")

        data = seeded_client.get(
            f"/conversations/{conversation_id}/messages", params={"limit": 2, "offset": 1}
        ).json()

        assert [m["wa_message_id"] for m in data["data"]] == ["m1", "m3"]
        assert data["total"] == 4
        assert data["limit"] == 2
        assert data["offset"] == 1

    def test_invalid_limit(self, seeded_client):
        conversation_id = conversation_id_for(seeded_client, "5511111111111")

        response = seeded_client.get(f"/conversations/{conversation_id}/messages", params={"limit": 0})

        assert response.status_code == 422

    def test_unknown_conversation(self, client):
        response = client.get("/conversations/999/messages")

        assert response.status_code == 404
        assert response.json() == {"detail": "Conversation not found"}


class TestMediaEndpoint:
    """Test GET /media/{path}."""

    def test_serves_file_inside_root(self, client):
        root = Path(app.state.settings.MEDIA_STORAGE_PATH)
        target = root / "2023" / "11" / "5511111111111" / "20231114_221320-0001.txt"
        target.parent.mkdir(parents=True)
        target.write_bytes(b"hello")

        response = client.get("/media/2023/11/5511111111111/20231114_221320-0001.txt")

        assert response.status_code == 200
        assert response.content == b"hello"
        assert response.headers["content-type"].startswith("text/plain")

    def test_missing_file(self, client):
        response = client.get("/media/2023/11/nobody/missing.jpg")

        assert response.status_code == 404

    def test_paths_are_confined_to_root(self, tmp_path):
        store = MediaStore(str(tmp_path / "media"))
        (tmp_path / "media").mkdir()
        (tmp_path / "secret.txt").write_text("top secret")

        assert store.resolve("../secret.txt") is None
        assert store.resolve("2023/../../secret.txt") is None
        assert store.resolve("/etc/passwd") is None
        assert store.resolve("") is None
        assert store.resolve("2023/11/a/file.jpg") == (tmp_path / "media" / "2023/11/a/file.jpg").resolve()


class TestHealthAndMetrics:
    """Test health checks and metrics exposition."""

    def test_live(self, client):
        assert client.get("/health/live").json() == {"status": "ok", "reason": None}

    def test_request_id_generated(self, client):
        response = client.get("/health/live")

        assert len(response.headers["X-Request-ID"]) == 36

    def test_request_id_propagated(self, client):
        response = client.get("/health/live", headers={"X-Request-ID": "gateway-delivery-42"})

        assert response.headers["X-Request-ID"] == "gateway-delivery-42"

    def test_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_metrics_exposes_webhook_counter(self, client):
        send_message(client, "m1", "5511111111111", 1700000000, "hi")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "webhook_requests_total" in response.text
        assert "messages_ingested_total" in response.text

    def test_media_metrics_registered(self, client):
        text = client.get("/metrics").text

        assert "social_insight_media_download_seconds" in text
        assert "social_insight_media_stored_bytes_total" in text

    def test_route_labels_are_collapsed(self):
        assert route_label("/media/2023/11/abc/file.jpg") == "/media/{file_path}"
        assert route_label("/conversations/7/messages?limit=5") == "/conversations/{conversation_id}/messages"
        assert route_label("/webhook?hub_mode=subscribe") == "/webhook"
