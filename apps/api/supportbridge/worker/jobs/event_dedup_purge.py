from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy.orm import Session

from supportbridge.core.config import get_settings
from supportbridge.core.middleware import log_event
from supportbridge.services.ingest.dedupe import purge_processed_before

logger = logging.getLogger("supportbridge.worker")


def event_dedup_purge(*, session: Session, payload: dict) -> None:
    retention_days = int(payload.get("retention_days") or get_settings().EVENT_DEDUP_RETENTION_DAYS)
    cutoff = datetime.now(UTC) - timedelta(days=max(1, retention_days))
    deleted = purge_processed_before(session=session, cutoff=cutoff)
    logger.info(
        log_event(
            "job.event_dedup_purge.done",
            cutoff=cutoff.isoformat(),
            deleted=deleted,
        )
    )
