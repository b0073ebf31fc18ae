from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.orm import Session

from supportbridge.models.enums import Platform


def is_processed(
    *,
    session: Session,
    platform: Platform,
    external_tenant_id: str,
    platform_event_id: str,
) -> bool:
    """Fast-path check; `mark_processed` is the authoritative duplicate signal."""
    row = session.execute(
        text(
            """
            SELECT 1
            FROM event_dedups
            WHERE platform = :platform
              AND external_tenant_id = :external_tenant_id
              AND platform_event_id = :platform_event_id
            """
        ),
        {
            "platform": platform.value,
            "external_tenant_id": external_tenant_id,
            "platform_event_id": platform_event_id,
        },
    ).first()
    return row is not None


def mark_processed(
    *,
    session: Session,
    platform: Platform,
    external_tenant_id: str,
    platform_event_id: str,
    account_id: UUID | None,
) -> bool:
    """Record the event; returns False when another delivery already recorded it."""
    row = session.execute(
        text(
            """
            INSERT INTO event_dedups (platform, external_tenant_id, platform_event_id, account_id)
            VALUES (:platform, :external_tenant_id, :platform_event_id, :account_id)
            ON CONFLICT (platform, external_tenant_id, platform_event_id) DO NOTHING
            RETURNING id
            """
        ),
        {
            "platform": platform.value,
            "external_tenant_id": external_tenant_id,
            "platform_event_id": platform_event_id,
            "account_id": str(account_id) if account_id else None,
        },
    ).first()
    return row is not None


def purge_processed_before(*, session: Session, cutoff: datetime) -> int:
    res = session.execute(
        text("DELETE FROM event_dedups WHERE processed_at < :cutoff"),
        {"cutoff": cutoff},
    )
    return int(res.rowcount or 0)
