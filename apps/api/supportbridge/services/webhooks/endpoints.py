from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from urllib.parse import urlsplit
from uuid import UUID

from fastapi import HTTPException, status
from sqlalchemy import text
from sqlalchemy.orm import Session

from supportbridge.core.config import get_settings
from supportbridge.models.webhooks import WebhookEndpoint
from supportbridge.services.webhooks.signing import generate_webhook_secret


@dataclass(frozen=True)
class DeliveryHistoryItem:
    id: UUID
    ticket_id: UUID | None
    event_type: str
    status: str
    attempt_count: int
    last_status_code: int | None
    last_attempt_at: datetime | None
    last_error: str | None
    created_at: datetime


@dataclass(frozen=True)
class DeliveryHistoryPage:
    deliveries: list[DeliveryHistoryItem]
    next_cursor: UUID | None


def _validate_endpoint_url(url: str) -> str:
    value = (url or "").strip()
    parts = urlsplit(value)
    if not parts.netloc or parts.scheme not in {"https", "http"}:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook URL")
    # Plain HTTP is only accepted outside production (local receivers, tests).
    if parts.scheme == "http" and get_settings().APP_ENV == "prod":
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Webhook URL must use HTTPS")
    return value


def create_webhook_endpoint(*, session: Session, account_id: UUID, url: str) -> WebhookEndpoint:
    endpoint = WebhookEndpoint(
        account_id=account_id,
        url=_validate_endpoint_url(url),
        secret=generate_webhook_secret(),
    )
    session.add(endpoint)
    session.flush()
    return endpoint


def rotate_webhook_secret(*, session: Session, endpoint_id: UUID) -> str:
    """Replace the endpoint secret. Deliveries already created keep their captured secret."""
    endpoint = session.get(WebhookEndpoint, endpoint_id, with_for_update=True)
    if endpoint is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook endpoint not found")
    endpoint.secret = generate_webhook_secret()
    session.add(endpoint)
    session.flush()
    return endpoint.secret


def get_delivery_history(
    *,
    session: Session,
    endpoint_id: UUID,
    limit: int = 20,
    cursor: UUID | None = None,
) -> DeliveryHistoryPage:
    limit = max(1, min(100, limit))
    cursor_clause = ""
    params: dict[str, object] = {"endpoint_id": str(endpoint_id), "limit": limit + 1}
    if cursor is not None:
        cursor_clause = """
              AND (d.created_at, d.id) < (
                SELECT c.created_at, c.id FROM webhook_deliveries c WHERE c.id = :cursor
              )
        """
        params["cursor"] = str(cursor)

    rows = (
        session.execute(
            text(
                f"""
                SELECT
                  d.id,
                  d.ticket_id,
                  d.event_type,
                  d.status,
                  d.attempt_count,
                  d.last_status_code,
                  d.last_attempt_at,
                  d.last_error,
                  d.created_at
                FROM webhook_deliveries d
                WHERE d.endpoint_id = :endpoint_id
                {cursor_clause}
                ORDER BY d.created_at DESC, d.id DESC
                LIMIT :limit
                """
            ),
            params,
        )
        .mappings()
        .all()
    )

    has_more = len(rows) > limit
    items = [
        DeliveryHistoryItem(
            id=UUID(str(r["id"])),
            ticket_id=UUID(str(r["ticket_id"])) if r["ticket_id"] is not None else None,
            event_type=r["event_type"],
            status=str(r["status"]),
            attempt_count=int(r["attempt_count"]),
            last_status_code=r["last_status_code"],
            last_attempt_at=r["last_attempt_at"],
            last_error=r["last_error"],
            created_at=r["created_at"],
        )
        for r in rows[:limit]
    ]
    return DeliveryHistoryPage(
        deliveries=items,
        next_cursor=items[-1].id if has_more and items else None,
    )
