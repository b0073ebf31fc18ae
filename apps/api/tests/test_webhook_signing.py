from __future__ import annotations

import hashlib
import hmac
from uuid import uuid4

import httpx
import orjson

from supportbridge.models.enums import WebhookEventType
from supportbridge.services.webhooks.delivery import deliver
from supportbridge.services.webhooks.dispatch import build_envelope
from supportbridge.services.webhooks.signing import (
    DELIVERY_ID_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    build_signature_header,
    generate_webhook_secret,
    parse_signature_header,
    verify_webhook_signature,
)

SECRET = "whsec_test"


def test_signature_header_format_matches_hmac_of_timestamp_and_body() -> None:
    body = b'{"event":"message.created"}'
    header = build_signature_header(secret=SECRET, timestamp=1700000000, body=body)
    expected = hmac.new(SECRET.encode(), b"1700000000." + body, hashlib.sha256).hexdigest()
    assert header == f"t=1700000000,v1={expected}"
    assert parse_signature_header(header) == (1700000000, [expected])


def test_verify_accepts_fresh_signature_and_rejects_tampering() -> None:
    body = b'{"a":1}'
    header = build_signature_header(secret=SECRET, timestamp=1700000000, body=body)
    assert verify_webhook_signature(body=body, header=header, secret=SECRET, now=1700000100)
    assert not verify_webhook_signature(body=b'{"a":2}', header=header, secret=SECRET, now=1700000100)
    assert not verify_webhook_signature(body=body, header=header, secret="whsec_other", now=1700000100)
    # Outside the tolerance window.
    assert not verify_webhook_signature(body=body, header=header, secret=SECRET, now=1700000301)
    assert not verify_webhook_signature(body=body, header="garbage", secret=SECRET)


def test_generated_secrets_are_prefixed_and_unique() -> None:
    first, second = generate_webhook_secret(), generate_webhook_secret()
    assert first.startswith("whsec_")
    assert len(first) == len("whsec_") + 32
    assert first != second


def test_envelope_wraps_data_with_utc_timestamp() -> None:
    envelope = build_envelope(event=WebhookEventType.ticket_updated, data={"ticketId": "t1"})
    assert envelope["event"] == "ticket.updated"
    assert envelope["timestamp"].endswith("Z")
    assert envelope["data"] == {"ticketId": "t1"}


def test_deliver_posts_signed_compact_json() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(204)

    delivery_id = uuid4()
    payload = {"event": "message.created", "data": {"text": "hi"}}
    with httpx.Client(transport=httpx.MockTransport(handler)) as client:
        result = deliver(
            client=client, delivery_id=delivery_id, url="https://hooks.example.com/in", secret=SECRET, payload=payload
        )

    assert result.success is True
    assert result.status_code == 204
    request = captured[0]
    assert request.content == orjson.dumps(payload)
    assert request.headers["content-type"] == "application/json"
    assert request.headers[DELIVERY_ID_HEADER] == str(delivery_id)
    assert verify_webhook_signature(
        body=request.content, header=request.headers[SIGNATURE_HEADER], secret=SECRET
    )
    assert request.headers[SIGNATURE_HEADER].startswith(f"t={request.headers[TIMESTAMP_HEADER]},v1=")


def test_deliver_reports_non_2xx_and_transport_errors_as_failures() -> None:
    def server_error(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with httpx.Client(transport=httpx.MockTransport(server_error)) as client:
        result = deliver(client=client, delivery_id=uuid4(), url="https://x.test", secret=SECRET, payload={})
    assert result.success is False
    assert result.status_code == 500
    assert result.error == "HTTP 500"

    with httpx.Client(transport=httpx.MockTransport(unreachable)) as client:
        result = deliver(client=client, delivery_id=uuid4(), url="https://x.test", secret=SECRET, payload={})
    assert result.success is False
    assert result.status_code is None
    assert "connection refused" in (result.error or "")
