from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from supportbridge.core.execution import ExecutionMode
from supportbridge.core.middleware import log_event
from supportbridge.models.enums import Platform
from supportbridge.platforms.registry import get_adapter
from supportbridge.services.ingest.processor import process_event
from supportbridge.services.ingest.types import ProcessResult
from supportbridge.worker.queue import PLATFORM_EVENT_JOB_TYPES, enqueue_job, record_failed_job

logger = logging.getLogger("supportbridge.dispatch")


@dataclass(frozen=True)
class DispatchOutcome:
    mode: ExecutionMode
    job_id: UUID | None = None
    result: ProcessResult | None = None
    dead_letter_job_id: UUID | None = None
    error: str | None = None


def event_dedupe_key(*, platform: Platform, tenant_hint: str, event_id: str) -> str:
    return f"{platform.value}:{tenant_hint}:{event_id}"


def event_job_payload(*, platform: Platform, event_id: str, tenant_hint: str, payload: dict) -> dict:
    return {
        "platform": platform.value,
        "event_id": event_id,
        "tenant_hint": tenant_hint,
        "event": payload,
    }


def dispatch_platform_event(
    *,
    session: Session,
    mode: ExecutionMode,
    platform: Platform,
    payload: dict,
    event_id: str,
    tenant_hint: str,
    http_client: httpx.Client,
) -> DispatchOutcome:
    """Process an authenticated inbound event now (inline) or hand it to the worker (queued).

    Never raises. Inline failures are parked as a failed job, and a failed enqueue or
    dead-letter write is logged and reported through `DispatchOutcome.error`, so the route
    always acknowledges and the platform does not redeliver.
    """
    job_type = PLATFORM_EVENT_JOB_TYPES[platform]
    dedupe_key = event_dedupe_key(platform=platform, tenant_hint=tenant_hint, event_id=event_id)
    job_payload = event_job_payload(
        platform=platform, event_id=event_id, tenant_hint=tenant_hint, payload=payload
    )

    if mode == ExecutionMode.queued:
        try:
            job_id = enqueue_job(
                session=session,
                job_type=job_type,
                account_id=None,
                payload=job_payload,
                dedupe_key=dedupe_key,
            )
            session.commit()
        except Exception as e:
            session.rollback()
            logger.exception(
                log_event("dispatch.event.enqueue_failed", platform=platform.value, event_id=event_id)
            )
            return DispatchOutcome(mode=mode, error=f"{type(e).__name__}: {e}")
        logger.info(
            log_event(
                "dispatch.event.queued",
                platform=platform.value,
                event_id=event_id,
                job_id=str(job_id) if job_id else None,
                already_queued=job_id is None,
            )
        )
        return DispatchOutcome(mode=mode, job_id=job_id)

    try:
        result = process_event(
            session=session,
            adapter=get_adapter(platform),
            payload=payload,
            http_client=http_client,
            event_id=event_id,
        )
        session.commit()
    except Exception as e:
        session.rollback()
        logger.exception(
            log_event("dispatch.event.inline_failed", platform=platform.value, event_id=event_id)
        )
        error = f"{type(e).__name__}: {e}"
        try:
            dead_letter_job_id = record_failed_job(
                session=session,
                job_type=job_type,
                account_id=None,
                payload=job_payload,
                dedupe_key=dedupe_key,
                error=error,
            )
            session.commit()
        except Exception:
            session.rollback()
            # The event is lost; the platform is still acknowledged.
            logger.exception(
                log_event(
                    "dispatch.event.dead_letter_failed",
                    platform=platform.value,
                    event_id=event_id,
                    error=error,
                )
            )
            return DispatchOutcome(mode=mode, error=error)
        return DispatchOutcome(mode=mode, dead_letter_job_id=dead_letter_job_id, error=error)

    return DispatchOutcome(mode=mode, result=result)
