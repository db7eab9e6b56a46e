"""
Tests for the POST /webhook endpoint.

Tests cover:
- Valid signature with message creation
- Duplicate message handling (idempotency)
- Invalid/missing signature (401)
- Validation errors (422)
"""

import json

import pytest
from fastapi.testclient import TestClient

from chatdigest.main import create_app
from chatdigest.models import Chat, Message

from conftest import TEST_WEBHOOK_SECRET, compute_signature


@pytest.fixture
def client(settings, services):
    """Test client over the per-test database and fake clients."""
    with TestClient(create_app(settings, services)) as test_client:
        yield test_client


@pytest.fixture
def valid_message_body() -> str:
    """Return a valid message JSON body."""
    return json.dumps({
        "transport_id": "true_120363@g.us_3EB0",
        "chat_id": "120363@g.us",
        "chat_name": "Site Team",
        "sender": "Alice",
        "content": "Hello",
        "timestamp": "2025-01-15T10:00:00Z",
    })


def post_signed(client, body: str, secret: str = TEST_WEBHOOK_SECRET):
    return client.post(
        "/webhook",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Signature": compute_signature(body, secret),
        }
    )


class TestWebhookValidSignature:
    """Test webhook with valid signatures."""

    def test_create_message_success(self, client, db, valid_message_body):
        response = post_signed(client, valid_message_body)

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}
        message = db.query(Message).one()
        assert message.transport_id == "true_120363@g.us_3EB0"
        assert message.owner_id == "owner-1"

    def test_duplicate_message_idempotent(self, client, db, valid_message_body):
        """Two deliveries of the same transport_id store exactly one row."""
        response1 = post_signed(client, valid_message_body)
        response2 = post_signed(client, valid_message_body)

        assert response1.status_code == 200
        assert response2.status_code == 200
        assert db.query(Message).count() == 1

    def test_duplicate_refreshes_content(self, client, db, valid_message_body):
        post_signed(client, valid_message_body)
        edited = json.loads(valid_message_body)
        edited["content"] = "Hello (edited)"
        post_signed(client, json.dumps(edited))

        db.expire_all()
        assert db.query(Message).one().content == "Hello (edited)"

    def test_chat_upserted_with_name(self, client, db, valid_message_body):
        post_signed(client, valid_message_body)

        chat = db.get(Chat, "120363@g.us")
        assert chat.display_name == "Site Team"

    def test_unix_timestamp_accepted(self, client, db):
        body = json.dumps({
            "transport_id": "m-epoch",
            "chat_id": "6591234567@c.us",
            "sender": "Bob",
            "content": "hi",
            "timestamp": 1736935200,
        })

        response = post_signed(client, body)

        assert response.status_code == 200
        assert db.query(Message).one().timestamp.isoformat() == "2025-01-15T10:00:00"

    def test_message_without_content(self, client):
        body = json.dumps({
            "transport_id": "m-media",
            "chat_id": "6591234567@c.us",
            "sender": "Bob",
            "timestamp": "2025-01-15T10:00:00Z",
            "media_url": "https://cdn.example/img.jpg",
        })

        assert post_signed(client, body).status_code == 200


class TestWebhookInvalidSignature:
    """Test webhook with invalid or missing signatures."""

    def test_missing_signature_header(self, client, valid_message_body):
        response = client.post(
            "/webhook",
            content=valid_message_body,
            headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 401
        assert response.json() == {"detail": "invalid signature"}

    def test_invalid_signature(self, client, valid_message_body):
        response = client.post(
            "/webhook",
            content=valid_message_body,
            headers={
                "Content-Type": "application/json",
                "X-Signature": "invalid_signature_123"
            }
        )

        assert response.status_code == 401

    def test_signature_with_different_secret(self, client, db, valid_message_body):
        response = post_signed(client, valid_message_body, secret="wrong_secret")

        assert response.status_code == 401
        assert db.query(Message).count() == 0


class TestWebhookValidation:
    """Test request body validation."""

    @pytest.mark.parametrize("missing", ["transport_id", "chat_id", "sender", "timestamp"])
    def test_missing_required_field(self, client, db, valid_message_body, missing):
        body = json.loads(valid_message_body)
        del body[missing]

        response = post_signed(client, json.dumps(body))

        assert response.status_code == 422
        assert db.query(Message).count() == 0

    def test_empty_transport_id_rejected(self, client, db, valid_message_body):
        """Messages without a dedup key are never persisted."""
        body = json.loads(valid_message_body)
        body["transport_id"] = ""

        response = post_signed(client, json.dumps(body))

        assert response.status_code == 422
        assert db.query(Message).count() == 0

    def test_invalid_json(self, client):
        response = post_signed(client, "{not json")

        assert response.status_code == 422
