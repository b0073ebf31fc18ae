from __future__ import annotations

import httpx
from fastapi.testclient import TestClient

from supportbridge.core.config import get_settings
from supportbridge.main import create_app
from supportbridge.platforms.telegram import TelegramAdapter
from supportbridge.services.ingest.processor import process_event
from supportbridge.services.ingest.types import SkipReason


def test_metrics_endpoint_exposes_http_metrics() -> None:
    app = create_app()
    client = TestClient(app)

    assert client.get("/healthz").status_code == 200

    res = client.get("/metrics")
    assert res.status_code == 200
    assert "text/plain" in (res.headers.get("content-type") or "")

    body = res.text
    assert "bridge_http_requests_total" in body
    assert "bridge_http_request_duration_seconds" in body
    assert 'path="/healthz"' in body


def test_metrics_endpoint_can_be_disabled(monkeypatch) -> None:
    monkeypatch.setenv("ENABLE_PROMETHEUS_METRICS", "false")
    get_settings.cache_clear()
    try:
        app = create_app()
        client = TestClient(app)
        assert client.get("/metrics").status_code == 404
    finally:
        get_settings.cache_clear()


def test_metrics_count_inbound_event_outcomes() -> None:
    client = TestClient(create_app())
    update = {
        "update_id": 9001,
        "message": {"message_id": 1, "chat": {"id": 5, "type": "private"}, "text": "hi"},
    }
    with httpx.Client() as http_client:
        # Structural skips return before any database work.
        result = process_event(
            session=None,  # type: ignore[arg-type]
            adapter=TelegramAdapter(get_settings()),
            payload=update,
            http_client=http_client,
        )
    assert result.reason == SkipReason.not_a_message_event

    body = client.get("/metrics").text
    assert 'bridge_inbound_events_total{platform="telegram",outcome="not_a_message_event"}' in body
