from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import UUID

import orjson
from sqlalchemy import text
from sqlalchemy.orm import Session

from supportbridge.models.enums import JobStatus, JobType, Platform

WEBHOOK_RETRY_LADDER_SECONDS: tuple[float, ...] = (1.0, 5.0, 30.0, 120.0, 600.0)


def exponential_backoff(*, base_seconds: float, cap_seconds: float = 300.0) -> Callable[[int], float]:
    def _backoff(attempts: int) -> float:
        return min(cap_seconds, base_seconds * (2 ** max(0, attempts - 1)))

    return _backoff


def ladder_backoff(ladder: Sequence[float]) -> Callable[[int], float]:
    """Delay after `attempts` failures; the first entry is the delay before the first run."""

    def _backoff(attempts: int) -> float:
        return float(ladder[min(max(0, attempts), len(ladder) - 1)])

    return _backoff


@dataclass(frozen=True)
class JobSpec:
    queue: str
    max_attempts: int
    backoff: Callable[[int], float]
    initial_delay_seconds: float = 0.0


_EVENT_BACKOFF = exponential_backoff(base_seconds=1.0)

JOB_SPECS: dict[JobType, JobSpec] = {
    JobType.slack_event: JobSpec(queue="slack_events", max_attempts=3, backoff=_EVENT_BACKOFF),
    JobType.discord_event: JobSpec(queue="discord_events", max_attempts=3, backoff=_EVENT_BACKOFF),
    JobType.telegram_event: JobSpec(
        queue="telegram_events", max_attempts=3, backoff=_EVENT_BACKOFF
    ),
    JobType.webhook_delivery: JobSpec(
        queue="webhook_delivery",
        max_attempts=len(WEBHOOK_RETRY_LADDER_SECONDS),
        backoff=ladder_backoff(WEBHOOK_RETRY_LADDER_SECONDS),
        initial_delay_seconds=WEBHOOK_RETRY_LADDER_SECONDS[0],
    ),
    JobType.event_dedup_purge: JobSpec(
        queue="maintenance", max_attempts=3, backoff=exponential_backoff(base_seconds=60.0)
    ),
}

PLATFORM_EVENT_JOB_TYPES: dict[Platform, JobType] = {
    Platform.slack: JobType.slack_event,
    Platform.discord: JobType.discord_event,
    Platform.telegram: JobType.telegram_event,
}


def job_spec(job_type: JobType) -> JobSpec:
    return JOB_SPECS[job_type]


def retry_delay_seconds(*, job_type: JobType, attempts: int) -> float:
    return job_spec(job_type).backoff(attempts)


def enqueue_job(
    *,
    session: Session,
    job_type: JobType,
    account_id: UUID | None,
    payload: dict,
    dedupe_key: str | None,
    run_at: datetime | None = None,
) -> UUID | None:
    """Insert a queued job; returns None when an identical job is already queued or running."""
    spec = job_spec(job_type)
    if run_at is None and spec.initial_delay_seconds > 0:
        run_at = datetime.now(UTC) + timedelta(seconds=spec.initial_delay_seconds)

    sql = text(
        """
        INSERT INTO bg_jobs (
          account_id,
          queue,
          type,
          status,
          run_at,
          attempts,
          max_attempts,
          dedupe_key,
          payload,
          created_at,
          updated_at
        )
        VALUES (
          :account_id,
          :queue,
          :type,
          'queued',
          COALESCE(:run_at, now()),
          0,
          :max_attempts,
          :dedupe_key,
          CAST(:payload AS jsonb),
          now(),
          now()
        )
        ON CONFLICT DO NOTHING
        RETURNING id
        """
    )
    res = session.execute(
        sql,
        {
            "account_id": str(account_id) if account_id else None,
            "queue": spec.queue,
            "type": job_type.value,
            "run_at": run_at,
            "max_attempts": spec.max_attempts,
            "dedupe_key": dedupe_key,
            "payload": _json_dumps(payload),
        },
    ).fetchone()
    if res is None:
        return None
    return UUID(str(res[0]))


def record_failed_job(
    *,
    session: Session,
    job_type: JobType,
    account_id: UUID | None,
    payload: dict,
    dedupe_key: str | None,
    error: str,
) -> UUID:
    """Park work that failed outside the worker so it can be inspected and replayed."""
    spec = job_spec(job_type)
    row = session.execute(
        text(
            """
            INSERT INTO bg_jobs (
              account_id,
              queue,
              type,
              status,
              run_at,
              attempts,
              max_attempts,
              last_error,
              dedupe_key,
              payload
            )
            VALUES (
              :account_id,
              :queue,
              :type,
              :status,
              now(),
              1,
              :max_attempts,
              :error,
              :dedupe_key,
              CAST(:payload AS jsonb)
            )
            RETURNING id
            """
        ),
        {
            "account_id": str(account_id) if account_id else None,
            "queue": spec.queue,
            "type": job_type.value,
            "status": JobStatus.failed.value,
            "max_attempts": spec.max_attempts,
            "error": error,
            "dedupe_key": dedupe_key,
            "payload": _json_dumps(payload),
        },
    ).one()
    return UUID(str(row[0]))


def _json_dumps(payload: dict) -> str:
    return orjson.dumps(payload, option=orjson.OPT_SORT_KEYS).decode("utf-8")
