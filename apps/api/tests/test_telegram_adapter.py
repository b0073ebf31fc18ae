from __future__ import annotations

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from supportbridge.core.config import Settings
from supportbridge.main import create_app
from supportbridge.platforms.base import PlatformApiError, SignatureError
from supportbridge.platforms.telegram import SECRET_TOKEN_HEADER, TelegramAdapter
from supportbridge.services.ingest.types import CanonicalEvent, Skip, SkipReason


def _update(**message: object) -> dict:
    return {
        "update_id": 5001,
        "message": {
            "message_id": 77,
            "message_thread_id": 42,
            "chat": {"id": -1001234, "type": "supergroup", "title": "Support"},
            "from": {"id": 999, "is_bot": False, "first_name": "Ada", "last_name": "Lovelace"},
            "text": "any update?",
            **message,
        },
    }


def test_secret_header_enforced_only_when_configured() -> None:
    TelegramAdapter(Settings(TELEGRAM_WEBHOOK_SECRET="")).verify_request(body=b"{}", headers={})

    adapter = TelegramAdapter(Settings(TELEGRAM_WEBHOOK_SECRET="s3cret"))
    adapter.verify_request(body=b"{}", headers={SECRET_TOKEN_HEADER: "s3cret"})
    with pytest.raises(SignatureError):
        adapter.verify_request(body=b"{}", headers={SECRET_TOKEN_HEADER: "wrong"})
    with pytest.raises(SignatureError):
        adapter.verify_request(body=b"{}", headers={})


def test_parse_topic_message_maps_canonical_fields() -> None:
    parsed = TelegramAdapter(Settings()).parse_event(_update())
    assert isinstance(parsed, CanonicalEvent)
    assert parsed.platform_event_id == "5001"
    assert parsed.tenant_hint == "-1001234"
    assert parsed.thread_anchor == "42"
    assert parsed.root_id == "77"
    assert parsed.sender_id == "999"
    assert parsed.sender_name_hint == "Ada Lovelace"


def test_parse_skips_unsupported_updates() -> None:
    adapter = TelegramAdapter(Settings())

    private = adapter.parse_event(_update(chat={"id": 5, "type": "private"}))
    assert isinstance(private, Skip)
    assert private.detail == "Not a supergroup message"

    photo = adapter.parse_event(_update(text=None))
    assert isinstance(photo, Skip)
    assert photo.detail == "No text content"

    added = adapter.parse_event(
        {
            "update_id": 1,
            "my_chat_member": {
                "chat": {"id": -100, "type": "supergroup", "title": "Help Desk"},
                "old_chat_member": {"status": "left"},
                "new_chat_member": {"status": "administrator"},
            },
        }
    )
    assert isinstance(added, Skip)
    assert added.reason == SkipReason.not_a_message_event
    assert added.detail == "Bot added to Help Desk"


def test_bot_api_calls_use_token_path_and_surface_errors() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        if request.url.path.endswith("/getMe"):
            return httpx.Response(200, json={"ok": True, "result": {"id": 4242, "username": "helpbot"}})
        return httpx.Response(400, json={"ok": False, "description": "Bad Request: topic not found"})

    adapter = TelegramAdapter(Settings(TELEGRAM_BOT_TOKEN="123:abc"))
    with httpx.Client(transport=httpx.MockTransport(handler)) as client:
        identity = adapter.get_bot_identity(client=client)
        assert identity.bot_user_id == "4242"
        assert identity.external_name == "helpbot"

        with pytest.raises(PlatformApiError) as excinfo:
            adapter.set_topic_closed(client=client, chat_id="-100", topic_id="7", closed=True)
        assert "topic not found" in excinfo.value.message

    assert seen == ["/bot123:abc/getMe", "/bot123:abc/closeForumTopic"]


def test_webhook_route_checks_secret_and_json(monkeypatch) -> None:
    monkeypatch.setenv("TELEGRAM_WEBHOOK_SECRET", "s3cret")
    client = TestClient(create_app())

    body = json.dumps({"edited_message": {}}).encode()
    assert client.post("/telegram/webhook", content=body).status_code == 401
    assert (
        client.post("/telegram/webhook", content=b"nope", headers={SECRET_TOKEN_HEADER: "s3cret"}).status_code
        == 400
    )
    # No update id: acknowledged without dispatch.
    res = client.post("/telegram/webhook", content=body, headers={SECRET_TOKEN_HEADER: "s3cret"})
    assert res.status_code == 200
