from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

import orjson
from sqlalchemy import text
from sqlalchemy.orm import Session

from supportbridge.core.middleware import log_event
from supportbridge.models.enums import JobType, WebhookEventType
from supportbridge.worker.queue import WEBHOOK_RETRY_LADDER_SECONDS, enqueue_job

logger = logging.getLogger("supportbridge.webhooks")


def build_envelope(*, event: WebhookEventType, data: dict, now: datetime | None = None) -> dict:
    ts = (now or datetime.now(UTC)).astimezone(UTC)
    return {
        "event": event.value,
        "timestamp": ts.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        "data": data,
    }


def trigger_webhooks(
    *,
    session: Session,
    account_id: UUID,
    ticket_id: UUID | None,
    event: WebhookEventType,
    data: dict,
    message_id: UUID | None = None,
) -> list[UUID]:
    """Create one delivery per enabled endpoint and queue its first attempt."""
    endpoints = (
        session.execute(
            text(
                """
                SELECT id, url, secret
                FROM webhook_endpoints
                WHERE account_id = :account_id
                  AND enabled
                ORDER BY created_at ASC, id ASC
                """
            ),
            {"account_id": str(account_id)},
        )
        .mappings()
        .all()
    )
    if not endpoints:
        return []

    now = datetime.now(UTC)
    envelope = build_envelope(event=event, data=data, now=now)
    first_attempt_at = now + timedelta(seconds=WEBHOOK_RETRY_LADDER_SECONDS[0])
    subject = message_id or ticket_id or account_id
    occurrence = uuid4().hex

    delivery_ids: list[UUID] = []
    for endpoint in endpoints:
        row = session.execute(
            text(
                """
                INSERT INTO webhook_deliveries (
                  endpoint_id,
                  account_id,
                  ticket_id,
                  message_id,
                  url,
                  event_type,
                  idempotency_key,
                  payload,
                  secret_snapshot,
                  next_attempt_at
                )
                VALUES (
                  :endpoint_id,
                  :account_id,
                  :ticket_id,
                  :message_id,
                  :url,
                  :event_type,
                  :idempotency_key,
                  CAST(:payload AS jsonb),
                  :secret,
                  :next_attempt_at
                )
                ON CONFLICT (idempotency_key) DO NOTHING
                RETURNING id
                """
            ),
            {
                "endpoint_id": str(endpoint["id"]),
                "account_id": str(account_id),
                "ticket_id": str(ticket_id) if ticket_id else None,
                "message_id": str(message_id) if message_id else None,
                "url": endpoint["url"],
                "event_type": event.value,
                "idempotency_key": f"{endpoint['id']}:{event.value}:{subject}:{occurrence}",
                "payload": orjson.dumps(envelope).decode("utf-8"),
                "secret": endpoint["secret"],
                "next_attempt_at": first_attempt_at,
            },
        ).first()
        if row is None:
            continue

        delivery_id = UUID(str(row[0]))
        enqueue_job(
            session=session,
            job_type=JobType.webhook_delivery,
            account_id=account_id,
            payload={"delivery_id": str(delivery_id)},
            dedupe_key=f"webhook_delivery:{delivery_id}",
            run_at=first_attempt_at,
        )
        delivery_ids.append(delivery_id)

    logger.info(
        log_event(
            "webhook.triggered",
            account_id=str(account_id),
            webhook_event=event.value,
            deliveries=len(delivery_ids),
        )
    )
    return delivery_ids
