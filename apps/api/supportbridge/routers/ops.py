from __future__ import annotations

from uuid import UUID

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from supportbridge.core.deps import get_execution_mode
from supportbridge.core.execution import ExecutionMode
from supportbridge.core.http import get_http_client
from supportbridge.core.security import require_ops_token
from supportbridge.db.session import get_session
from supportbridge.schemas.ops import DlqJobsResponse, DlqReplayResponse, DrainResponse
from supportbridge.worker.runner import WorkerConfig, run_one_job, run_until_idle

router = APIRouter(prefix="/ops", tags=["ops"], dependencies=[Depends(require_ops_token)])


@router.get("/jobs/dlq", response_model=DlqJobsResponse)
def dlq_jobs_list(
    limit: int = Query(default=50, ge=1, le=200),
    queue: str | None = Query(default=None),
    session: Session = Depends(get_session),
) -> DlqJobsResponse:
    rows = (
        session.execute(
            text(
                """
            SELECT
              id,
              type,
              queue,
              status,
              attempts,
              max_attempts,
              last_error,
              run_at,
              updated_at,
              payload
            FROM bg_jobs
            WHERE status = 'failed'
              AND (CAST(:queue AS text) IS NULL OR queue = :queue)
            ORDER BY updated_at DESC, id DESC
            LIMIT :limit
            """
            ),
            {"queue": queue, "limit": limit},
        )
        .mappings()
        .all()
    )
    return DlqJobsResponse(
        items=[
            {
                "id": row["id"],
                "type": row["type"],
                "queue": row["queue"],
                "status": row["status"],
                "attempts": row["attempts"],
                "max_attempts": row["max_attempts"],
                "last_error": row["last_error"],
                "run_at": row["run_at"],
                "updated_at": row["updated_at"],
                "payload": row["payload"] or {},
            }
            for row in rows
        ]
    )


@router.post("/jobs/{job_id}/replay", response_model=DlqReplayResponse)
def dlq_job_replay(
    job_id: UUID,
    mode: ExecutionMode = Depends(get_execution_mode),
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
) -> DlqReplayResponse:
    row = (
        session.execute(
            text(
                """
            SELECT id
            FROM bg_jobs
            WHERE id = :id
              AND status = 'failed'
            FOR UPDATE
            """
            ),
            {"id": str(job_id)},
        )
        .mappings()
        .first()
    )
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="DLQ job not found")

    try:
        session.execute(
            text(
                """
                UPDATE bg_jobs
                SET status = 'queued',
                    run_at = now(),
                    attempts = 0,
                    locked_at = NULL,
                    locked_by = NULL,
                    last_error = NULL,
                    updated_at = now()
                WHERE id = :id
                """
            ),
            {"id": str(job_id)},
        )
        session.commit()
    except IntegrityError as e:
        session.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="An identical job is already queued",
        ) from e

    if mode == ExecutionMode.inline:
        # No worker is polling; run the replayed job before responding.
        run_one_job(config=WorkerConfig(), http_client=http_client, job_id=job_id)
        outcome = session.execute(
            text("SELECT status FROM bg_jobs WHERE id = :id"), {"id": str(job_id)}
        ).scalar_one()
        return DlqReplayResponse(status=str(outcome), job_id=job_id)

    return DlqReplayResponse(status="queued", job_id=job_id)


@router.post("/jobs/drain", response_model=DrainResponse)
def drain_due_jobs(max_jobs: int = Query(default=100, ge=1, le=1000)) -> DrainResponse:
    """Cron entry point for deployments without a long-running worker."""
    return DrainResponse(ran=run_until_idle(config=WorkerConfig(), max_jobs=max_jobs))
