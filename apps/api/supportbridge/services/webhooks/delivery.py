from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from uuid import UUID

import httpx
import orjson
from sqlalchemy import text
from sqlalchemy.orm import Session

from supportbridge.core.config import get_settings
from supportbridge.core.metrics import observe_webhook_delivery
from supportbridge.core.middleware import log_event
from supportbridge.models.enums import WebhookDeliveryStatus
from supportbridge.services.webhooks.signing import (
    DELIVERY_ID_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    build_signature_header,
)

logger = logging.getLogger("supportbridge.webhooks")


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    status_code: int | None = None
    error: str | None = None
    duration_ms: int = 0


def deliver(
    *,
    client: httpx.Client,
    delivery_id: UUID,
    url: str,
    secret: str,
    payload: dict,
    timeout_seconds: float | None = None,
) -> DeliveryResult:
    """POST one signed delivery. Never raises for transport failures; they are results."""
    body = orjson.dumps(payload)
    timestamp = int(time.time())
    headers = {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: build_signature_header(secret=secret, timestamp=timestamp, body=body),
        TIMESTAMP_HEADER: str(timestamp),
        DELIVERY_ID_HEADER: str(delivery_id),
    }
    timeout = timeout_seconds or get_settings().WEBHOOK_DELIVERY_TIMEOUT_SECONDS

    started = time.monotonic()
    try:
        res = client.post(url, content=body, headers=headers, timeout=timeout)
    except httpx.HTTPError as e:
        duration_ms = int((time.monotonic() - started) * 1000)
        observe_webhook_delivery(success=False)
        return DeliveryResult(success=False, error=str(e) or type(e).__name__, duration_ms=duration_ms)

    duration_ms = int((time.monotonic() - started) * 1000)
    success = 200 <= res.status_code < 300
    observe_webhook_delivery(success=success)
    return DeliveryResult(
        success=success,
        status_code=res.status_code,
        error=None if success else f"HTTP {res.status_code}",
        duration_ms=duration_ms,
    )


def record_attempt(*, session: Session, delivery_id: UUID, result: DeliveryResult) -> int:
    """Append to the delivery history and bump the attempt counter; returns the new count."""
    row = session.execute(
        text(
            """
            UPDATE webhook_deliveries
            SET attempt_count = attempt_count + 1,
                last_attempt_at = now(),
                last_status_code = :status_code,
                last_error = :error,
                status = CASE WHEN :success THEN 'success'::webhook_delivery_status ELSE status END,
                next_attempt_at = NULL
            WHERE id = :id
            RETURNING attempt_count
            """
        ),
        {
            "id": str(delivery_id),
            "status_code": result.status_code,
            "error": result.error,
            "success": result.success,
        },
    ).one()
    attempt_number = int(row[0])

    session.execute(
        text(
            """
            INSERT INTO webhook_delivery_attempts (
              delivery_id, attempt_number, status_code, error, duration_ms
            )
            VALUES (:delivery_id, :attempt_number, :status_code, :error, :duration_ms)
            """
        ),
        {
            "delivery_id": str(delivery_id),
            "attempt_number": attempt_number,
            "status_code": result.status_code,
            "error": result.error,
            "duration_ms": result.duration_ms,
        },
    )
    logger.info(
        log_event(
            "webhook.delivery.attempted",
            delivery_id=str(delivery_id),
            attempt=attempt_number,
            success=result.success,
            status_code=result.status_code,
            error=result.error,
            duration_ms=result.duration_ms,
        )
    )
    return attempt_number


def schedule_next_attempt(*, session: Session, delivery_id: UUID, at: datetime) -> None:
    session.execute(
        text("UPDATE webhook_deliveries SET next_attempt_at = :at WHERE id = :id"),
        {"id": str(delivery_id), "at": at.astimezone(UTC)},
    )


def mark_delivery_failed(*, session: Session, delivery_id: UUID) -> None:
    session.execute(
        text(
            """
            UPDATE webhook_deliveries
            SET status = :status,
                next_attempt_at = NULL
            WHERE id = :id
              AND status = 'pending'
            """
        ),
        {"id": str(delivery_id), "status": WebhookDeliveryStatus.failed.value},
    )
    logger.warning(log_event("webhook.delivery.failed", delivery_id=str(delivery_id)))
