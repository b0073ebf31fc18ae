from __future__ import annotations

from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.orm import Session

from supportbridge.models.enums import JobType
from supportbridge.worker.queue import enqueue_job
from supportbridge.worker.runner import DEDUP_PURGE_DEDUPE_KEY, WorkerConfig, run_until_idle


def _insert_dedup(db_session: Session, *, event_id: str, age_days: int) -> None:
    db_session.execute(
        text(
            """
            INSERT INTO event_dedups (platform, external_tenant_id, platform_event_id, processed_at)
            VALUES ('slack', 'T-purge', :event_id, now() - make_interval(days => :age_days))
            """
        ),
        {"event_id": event_id, "age_days": age_days},
    )


def test_purge_drops_only_expired_records_and_reschedules(db_session: Session) -> None:
    old_id = f"Ev{uuid4().hex}"
    fresh_id = f"Ev{uuid4().hex}"
    _insert_dedup(db_session, event_id=old_id, age_days=45)
    _insert_dedup(db_session, event_id=fresh_id, age_days=1)
    enqueue_job(
        session=db_session,
        job_type=JobType.event_dedup_purge,
        account_id=None,
        payload={"retention_days": 30},
        dedupe_key=DEDUP_PURGE_DEDUPE_KEY,
    )
    db_session.commit()

    assert run_until_idle(config=WorkerConfig(dedup_purge_interval_seconds=3600)) == 1

    remaining = db_session.execute(
        text("SELECT platform_event_id FROM event_dedups WHERE external_tenant_id = 'T-purge'")
    ).scalars().all()
    assert remaining == [fresh_id]

    jobs = db_session.execute(
        text("SELECT status FROM bg_jobs WHERE type = 'event_dedup_purge' ORDER BY created_at, status")
    ).scalars().all()
    # The finished run plus the next scheduled one.
    assert sorted(jobs) == ["queued", "succeeded"]
