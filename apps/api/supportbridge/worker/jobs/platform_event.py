from __future__ import annotations

import logging

import httpx
from sqlalchemy.orm import Session

from supportbridge.core.middleware import log_event
from supportbridge.models.enums import Platform
from supportbridge.platforms.registry import get_adapter
from supportbridge.services.ingest.processor import process_event
from supportbridge.worker.errors import PermanentJobError

logger = logging.getLogger("supportbridge.worker")


def platform_event(*, session: Session, payload: dict, http_client: httpx.Client) -> None:
    try:
        platform = Platform(payload["platform"])
        event = payload["event"]
    except (KeyError, ValueError) as e:
        raise PermanentJobError(f"malformed platform event job payload: {e}") from e
    if not isinstance(event, dict):
        raise PermanentJobError("platform event job payload has no event object")

    # Skips are outcomes, not failures: the job succeeds and is never retried.
    result = process_event(
        session=session,
        adapter=get_adapter(platform),
        payload=event,
        http_client=http_client,
        event_id=payload.get("event_id"),
    )
    logger.debug(
        log_event(
            "job.platform_event.done",
            platform=platform.value,
            event_id=payload.get("event_id"),
            outcome=result.outcome,
        )
    )
