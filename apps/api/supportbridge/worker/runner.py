from __future__ import annotations

import logging
import socket
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from uuid import UUID

import httpx
from sqlalchemy import text
from sqlalchemy.orm import Session

from supportbridge.core.config import get_settings
from supportbridge.core.http import build_http_client
from supportbridge.core.metrics import observe_job
from supportbridge.core.middleware import log_event
from supportbridge.db.session import get_sessionmaker
from supportbridge.models.enums import JobStatus, JobType
from supportbridge.services.webhooks.delivery import mark_delivery_failed
from supportbridge.worker.errors import PermanentJobError, RetryableJobError
from supportbridge.worker.handlers import handle_job
from supportbridge.worker.queue import enqueue_job, retry_delay_seconds

logger = logging.getLogger("supportbridge.worker")

DEDUP_PURGE_DEDUPE_KEY = "event_dedup_purge"


@dataclass(frozen=True)
class WorkerConfig:
    poll_interval_seconds: float = 0.5
    concurrency: int = 2
    # None polls every queue.
    queues: tuple[str, ...] | None = None
    dedup_purge_interval_seconds: float = 3600.0
    worker_id: str = socket.gethostname()
    http_client_factory: Callable[[], httpx.Client] = field(default=build_http_client)


def run_one_job(
    *, config: WorkerConfig, http_client: httpx.Client, job_id: UUID | None = None
) -> bool:
    """Claim and run one due job. The claim, the handler's writes and the outcome commit together.

    `job_id` pins the claim to a single queued job, used when replaying in inline mode.
    """
    session = get_sessionmaker()()
    try:
        job = _claim_next_job(
            session=session, worker_id=config.worker_id, queues=config.queues, job_id=job_id
        )
        if job is None:
            session.commit()
            return False

        job_id = UUID(str(job["id"]))
        job_type = JobType(job["type"])
        attempt = int(job["attempts"]) + 1

        savepoint = session.begin_nested()
        try:
            handle_job(
                session=session,
                job_id=job_id,
                job_type=job_type,
                payload=job["payload"],
                attempt=attempt,
                http_client=http_client,
            )
        except PermanentJobError as e:
            savepoint.rollback()
            _mark_failed(session=session, job_id=job_id, job_type=job_type, error=str(e), permanent=True)
        except RetryableJobError as e:
            savepoint.commit()
            _mark_failed(session=session, job_id=job_id, job_type=job_type, error=str(e), permanent=False)
        except Exception as e:
            savepoint.rollback()
            logger.warning(
                log_event("job.attempt.errored", job_id=str(job_id), job_type=job_type.value),
                exc_info=True,
            )
            _mark_failed(
                session=session,
                job_id=job_id,
                job_type=job_type,
                error=f"{type(e).__name__}: {e}",
                permanent=False,
            )
        else:
            savepoint.commit()
            _mark_succeeded(session=session, job_id=job_id, job_type=job_type)
            _schedule_follow_up_jobs(session=session, config=config, job_type=job_type)

        session.commit()
        return True
    finally:
        session.close()


def run_until_idle(*, config: WorkerConfig, max_jobs: int | None = None) -> int:
    """Drain every job that is currently due, then return how many ran."""
    ran = 0
    with config.http_client_factory() as http_client:
        while max_jobs is None or ran < max_jobs:
            if not run_one_job(config=config, http_client=http_client):
                break
            ran += 1
    return ran


class Worker:
    """Polling threads over the job table with an explicit start/stop lifecycle."""

    def __init__(self, config: WorkerConfig) -> None:
        self.config = config
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        ensure_maintenance_scheduled()
        self._threads = [
            threading.Thread(
                target=self._poll_loop,
                name=f"supportbridge-worker-{i}",
                daemon=True,
            )
            for i in range(max(1, self.config.concurrency))
        ]
        for t in self._threads:
            t.start()
        logger.info(
            log_event(
                "worker.started",
                worker_id=self.config.worker_id,
                concurrency=len(self._threads),
                queues=list(self.config.queues) if self.config.queues else "all",
            )
        )

    def stop(self, timeout: float | None = 30.0) -> bool:
        """Stop polling and wait for in-flight jobs; returns False if a thread is still busy."""
        self._stop.set()
        for t in self._threads:
            t.join(timeout=timeout)
        stopped = not self.running
        logger.info(log_event("worker.stopped", worker_id=self.config.worker_id, clean=stopped))
        return stopped

    def run_until_idle(self, max_jobs: int | None = None) -> int:
        return run_until_idle(config=self.config, max_jobs=max_jobs)

    def _poll_loop(self) -> None:
        with self.config.http_client_factory() as http_client:
            while not self._stop.is_set():
                try:
                    ran = run_one_job(config=self.config, http_client=http_client)
                except Exception:
                    # Claim or bookkeeping failed (database unavailable); back off and retry.
                    logger.exception(log_event("worker.poll.failed", worker_id=self.config.worker_id))
                    ran = False
                if not ran:
                    self._stop.wait(self.config.poll_interval_seconds)


def ensure_maintenance_scheduled() -> None:
    session = get_sessionmaker()()
    try:
        enqueue_job(
            session=session,
            job_type=JobType.event_dedup_purge,
            account_id=None,
            payload={"retention_days": get_settings().EVENT_DEDUP_RETENTION_DAYS},
            dedupe_key=DEDUP_PURGE_DEDUPE_KEY,
        )
        session.commit()
    finally:
        session.close()


def _claim_next_job(
    *,
    session: Session,
    worker_id: str,
    queues: tuple[str, ...] | None,
    job_id: UUID | None = None,
) -> dict | None:
    queue_filter = "AND queue = ANY(:queues)" if queues else ""
    if job_id is not None:
        queue_filter += " AND id = :job_id"
    sql = text(
        f"""
        WITH next_job AS (
          SELECT id
          FROM bg_jobs
          WHERE status = 'queued'
            AND run_at <= now()
            {queue_filter}
          ORDER BY run_at ASC
          FOR UPDATE SKIP LOCKED
          LIMIT 1
        )
        UPDATE bg_jobs
        SET status = 'running',
            locked_at = now(),
            locked_by = :worker_id,
            updated_at = now()
        WHERE id IN (SELECT id FROM next_job)
        RETURNING id, account_id, queue, type, payload, attempts, max_attempts
        """
    )
    params: dict[str, object] = {"worker_id": worker_id}
    if queues:
        params["queues"] = list(queues)
    if job_id is not None:
        params["job_id"] = str(job_id)
    row = session.execute(sql, params).mappings().fetchone()
    if row is None:
        return None
    return dict(row)


def _mark_succeeded(*, session: Session, job_id: UUID, job_type: JobType) -> None:
    session.execute(
        text(
            """
            UPDATE bg_jobs
            SET status = :status,
                attempts = attempts + 1,
                locked_at = NULL,
                locked_by = NULL,
                updated_at = now()
            WHERE id = :id
            """
        ),
        {"id": str(job_id), "status": JobStatus.succeeded.value},
    )
    observe_job(job_type=job_type.value, outcome="succeeded")


def _mark_failed(
    *,
    session: Session,
    job_id: UUID,
    job_type: JobType,
    error: str,
    permanent: bool,
) -> None:
    row = (
        session.execute(
            text("SELECT attempts, max_attempts, payload FROM bg_jobs WHERE id = :id FOR UPDATE"),
            {"id": str(job_id)},
        )
        .mappings()
        .fetchone()
    )
    if row is None:
        return
    attempts = int(row["attempts"]) + 1
    max_attempts = int(row["max_attempts"])

    if permanent or attempts >= max_attempts:
        session.execute(
            text(
                """
                UPDATE bg_jobs
                SET status = :status,
                    attempts = :attempts,
                    last_error = :error,
                    locked_at = NULL,
                    locked_by = NULL,
                    updated_at = now()
                WHERE id = :id
                """
            ),
            {
                "id": str(job_id),
                "status": JobStatus.failed.value,
                "attempts": attempts,
                "error": error,
            },
        )
        observe_job(job_type=job_type.value, outcome="failed")
        logger.error(
            log_event(
                "job.failed",
                job_id=str(job_id),
                job_type=job_type.value,
                attempts=attempts,
                permanent=permanent,
                error=error,
            )
        )
        _fail_webhook_delivery(session=session, job_type=job_type, payload=row["payload"])
        return

    backoff_seconds = retry_delay_seconds(job_type=job_type, attempts=attempts)
    session.execute(
        text(
            """
            UPDATE bg_jobs
            SET status = :status,
                attempts = :attempts,
                last_error = :error,
                run_at = now() + make_interval(secs => :backoff_seconds),
                locked_at = NULL,
                locked_by = NULL,
                updated_at = now()
            WHERE id = :id
            """
        ),
        {
            "id": str(job_id),
            "status": JobStatus.queued.value,
            "attempts": attempts,
            "error": error,
            "backoff_seconds": backoff_seconds,
        },
    )
    observe_job(job_type=job_type.value, outcome="retried")
    logger.warning(
        log_event(
            "job.retry.scheduled",
            job_id=str(job_id),
            job_type=job_type.value,
            attempts=attempts,
            backoff_seconds=backoff_seconds,
            error=error,
        )
    )


def _schedule_follow_up_jobs(*, session: Session, config: WorkerConfig, job_type: JobType) -> None:
    if job_type != JobType.event_dedup_purge:
        return

    run_at = datetime.now(UTC) + timedelta(seconds=max(1.0, config.dedup_purge_interval_seconds))
    enqueue_job(
        session=session,
        job_type=JobType.event_dedup_purge,
        account_id=None,
        payload={"retention_days": get_settings().EVENT_DEDUP_RETENTION_DAYS},
        dedupe_key=DEDUP_PURGE_DEDUPE_KEY,
        run_at=run_at,
    )


def _fail_webhook_delivery(*, session: Session, job_type: JobType, payload: dict | None) -> None:
    # Errors outside the HTTP call burn job attempts without counting on the delivery.
    if job_type != JobType.webhook_delivery or not (payload or {}).get("delivery_id"):
        return
    mark_delivery_failed(session=session, delivery_id=UUID(str(payload["delivery_id"])))
