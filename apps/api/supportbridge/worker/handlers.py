from __future__ import annotations

from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from supportbridge.models.enums import JobType
from supportbridge.worker.jobs.event_dedup_purge import event_dedup_purge
from supportbridge.worker.jobs.platform_event import platform_event
from supportbridge.worker.jobs.webhook_delivery import webhook_delivery
from supportbridge.worker.queue import PLATFORM_EVENT_JOB_TYPES


def handle_job(
    *,
    session: Session,
    job_id: UUID,
    job_type: JobType,
    payload: dict,
    attempt: int,
    http_client: httpx.Client,
) -> None:
    _ = job_id
    if job_type in PLATFORM_EVENT_JOB_TYPES.values():
        platform_event(session=session, payload=payload, http_client=http_client)
        return
    if job_type == JobType.webhook_delivery:
        webhook_delivery(session=session, payload=payload, http_client=http_client)
        return
    if job_type == JobType.event_dedup_purge:
        event_dedup_purge(session=session, payload=payload)
        return

    raise NotImplementedError(f"Job type not implemented: {job_type.value} (attempt {attempt})")
