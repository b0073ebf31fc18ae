from __future__ import annotations

from datetime import UTC, datetime, timedelta
from uuid import UUID

import httpx
from sqlalchemy import text
from sqlalchemy.orm import Session

from supportbridge.models.enums import JobType, WebhookDeliveryStatus
from supportbridge.services.webhooks.delivery import (
    deliver,
    mark_delivery_failed,
    record_attempt,
    schedule_next_attempt,
)
from supportbridge.worker.errors import PermanentJobError, RetryableJobError
from supportbridge.worker.queue import job_spec, retry_delay_seconds


def webhook_delivery(*, session: Session, payload: dict, http_client: httpx.Client) -> None:
    delivery_id = UUID(payload["delivery_id"])

    delivery = (
        session.execute(
            text(
                """
            SELECT id, url, secret_snapshot, payload, status, attempt_count
            FROM webhook_deliveries
            WHERE id = :id
            FOR UPDATE
            """
            ),
            {"id": str(delivery_id)},
        )
        .mappings()
        .fetchone()
    )
    if delivery is None:
        raise PermanentJobError("webhook delivery is missing")
    # Terminal deliveries are never attempted again, including on replay.
    if delivery["status"] != WebhookDeliveryStatus.pending.value:
        return

    result = deliver(
        client=http_client,
        delivery_id=delivery_id,
        url=delivery["url"],
        secret=delivery["secret_snapshot"],
        payload=delivery["payload"],
    )
    attempt_number = record_attempt(session=session, delivery_id=delivery_id, result=result)
    if result.success:
        return

    if attempt_number >= job_spec(JobType.webhook_delivery).max_attempts:
        mark_delivery_failed(session=session, delivery_id=delivery_id)
        return

    delay = retry_delay_seconds(job_type=JobType.webhook_delivery, attempts=attempt_number)
    schedule_next_attempt(
        session=session,
        delivery_id=delivery_id,
        at=datetime.now(UTC) + timedelta(seconds=delay),
    )
    # The attempt row and counter above survive; the runner re-queues on the same ladder.
    raise RetryableJobError(result.error or "webhook delivery failed")
