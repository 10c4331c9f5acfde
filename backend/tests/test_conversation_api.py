from __future__ import annotations

import os

from fastapi.testclient import TestClient

from inbox_web import api as api_module
from inbox_web.broadcaster import UpdateBroadcaster
from inbox_web.conversations import ConversationService
from inbox_web.document_store import InMemoryDocumentBackend
from inbox_web.main import create_app
from inbox_web.platform_sender import PlatformSender, StubPlatformSender
from inbox_web.store import ConversationStore

PREFIX = "/api"


def _client(*, sender: PlatformSender | None = None) -> TestClient:
    os.environ["RUNTIME_SECRET_GUARD_MODE"] = "off"
    os.environ["INBOX_STORE_BACKEND"] = "inmemory"
    os.environ["PLATFORM_SENDER_TYPE"] = "stub"
    from inbox_web.config import get_settings

    api_module._settings = get_settings()
    api_module.conversation_store = ConversationStore(InMemoryDocumentBackend())
    api_module.broadcaster = UpdateBroadcaster()
    api_module.platform_sender = sender or StubPlatformSender(enabled=True)
    api_module.conversation_service = ConversationService(
        store=api_module.conversation_store,
        broadcaster=api_module.broadcaster,
        sender=api_module.platform_sender,
    )
    return TestClient(create_app())


def _inbound(client: TestClient, sender_id: str, text: str, *, timestamp: int | None = None) -> None:
    event: dict = {"sender": {"id": sender_id}, "message": {"text": text}}
    if timestamp is not None:
        event["timestamp"] = timestamp
    response = client.post(
        f"{PREFIX}/webhook",
        json={"object": "page", "entry": [{"id": "page-1", "messaging": [event]}]},
    )
    assert response.status_code == 200


def _connect_facebook(client: TestClient, *, access_token: str = "page-token-1") -> None:
    response = client.post(
        f"{PREFIX}/connections",
        json={
            "platform": "Facebook",
            "connected": True,
            "app_id": "app-1",
            "page_id": "page-1",
            "access_token": access_token,
        },
    )
    assert response.status_code == 200
    assert response.json()["message"] == "Connection updated successfully"


def test_send_message_relays_appends_and_returns_created_message() -> None:
    sender = StubPlatformSender(enabled=True)
    client = _client(sender=sender)
    _inbound(client, "12", "hi, are you open today?")
    _connect_facebook(client)

    response = client.post(f"{PREFIX}/conversations/conv_12/messages", json={"text": "Yes, until 8pm!"})

    assert response.status_code == 201, response.text
    created = response.json()
    assert created["sender"] == "bot"
    assert created["text"] == "Yes, until 8pm!"
    assert created["id"].startswith("msg_bot_")

    conversation = client.get(f"{PREFIX}/conversations/conv_12").json()
    assert conversation["messages"][-1] == created
    assert conversation["last_message_preview"] == "Yes, until 8pm!..."
    assert conversation["timestamp"] == created["timestamp"]
    assert conversation["unread_count"] == 1

    assert len(sender.sent) == 1
    assert sender.sent[0].recipient_id == "12"
    assert sender.sent[0].page_id == "page-1"
    assert sender.sent[0].access_token == "page-token-1"


def test_send_message_unknown_conversation_returns_404() -> None:
    client = _client()
    _connect_facebook(client)

    response = client.post(f"{PREFIX}/conversations/conv_missing/messages", json={"text": "hello"})

    assert response.status_code == 404


def test_send_message_without_platform_credential_returns_400_and_leaves_store() -> None:
    sender = StubPlatformSender(enabled=True)
    client = _client(sender=sender)
    _inbound(client, "13", "hello?")
    before = client.get(f"{PREFIX}/conversations").json()

    response = client.post(f"{PREFIX}/conversations/conv_13/messages", json={"text": "reply"})

    assert response.status_code == 400
    assert client.get(f"{PREFIX}/conversations").json() == before
    assert sender.sent == []


def test_send_message_with_connected_flag_but_blank_token_returns_400() -> None:
    client = _client()
    _inbound(client, "14", "hello?")
    _connect_facebook(client, access_token="   ")

    response = client.post(f"{PREFIX}/conversations/conv_14/messages", json={"text": "reply"})

    assert response.status_code == 400


def test_upstream_failure_returns_500_and_store_is_unchanged() -> None:
    client = _client()
    _inbound(client, "fail-15", "please reply")
    _connect_facebook(client)
    before = client.get(f"{PREFIX}/conversations").json()

    response = client.post(f"{PREFIX}/conversations/conv_fail-15/messages", json={"text": "reply"})

    assert response.status_code == 500
    assert "stub_delivery_failed" in response.json()["detail"]
    assert client.get(f"{PREFIX}/conversations").json() == before


def test_send_message_rejects_blank_text() -> None:
    client = _client()
    _inbound(client, "16", "hello?")
    _connect_facebook(client)

    response = client.post(f"{PREFIX}/conversations/conv_16/messages", json={"text": "   "})

    assert response.status_code == 422


def test_sent_message_is_broadcast_and_failed_send_is_not() -> None:
    with _client() as client:
        _inbound(client, "17", "hi")
        _inbound(client, "fail-17", "hi")
        _connect_facebook(client)

        with client.websocket_connect(f"{PREFIX}/ws") as websocket:
            failed = client.post(f"{PREFIX}/conversations/conv_fail-17/messages", json={"text": "lost"})
            assert failed.status_code == 500
            sent = client.post(f"{PREFIX}/conversations/conv_17/messages", json={"text": "delivered"})
            assert sent.status_code == 201

            frame = websocket.receive_json()

    assert frame["id"] == "conv_17"
    assert frame["messages"][-1]["sender"] == "bot"
    assert frame["messages"][-1]["text"] == "delivered"


def test_conversations_stay_sorted_newest_first() -> None:
    client = _client()
    _inbound(client, "21", "first", timestamp=1767261600000)
    _inbound(client, "22", "second", timestamp=1767261660000)
    _inbound(client, "23", "third", timestamp=1767261720000)
    _connect_facebook(client)

    client.post(f"{PREFIX}/conversations/conv_21/messages", json={"text": "bump"})

    ids = [value["id"] for value in client.get(f"{PREFIX}/conversations").json()]
    assert ids == ["conv_21", "conv_23", "conv_22"]


def test_get_unknown_conversation_returns_404() -> None:
    client = _client()

    response = client.get(f"{PREFIX}/conversations/conv_nope")

    assert response.status_code == 404
