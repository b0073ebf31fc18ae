from __future__ import annotations

from supportbridge.models.enums import JobType
from supportbridge.worker.queue import (
    PLATFORM_EVENT_JOB_TYPES,
    WEBHOOK_RETRY_LADDER_SECONDS,
    exponential_backoff,
    job_spec,
    retry_delay_seconds,
)


def test_webhook_delivery_follows_fixed_ladder() -> None:
    spec = job_spec(JobType.webhook_delivery)
    assert spec.queue == "webhook_delivery"
    assert spec.max_attempts == 5
    assert spec.initial_delay_seconds == 1.0
    assert WEBHOOK_RETRY_LADDER_SECONDS == (1.0, 5.0, 30.0, 120.0, 600.0)

    delays = [retry_delay_seconds(job_type=JobType.webhook_delivery, attempts=n) for n in range(1, 5)]
    assert delays == [5.0, 30.0, 120.0, 600.0]
    # Past the ladder the last rung repeats.
    assert retry_delay_seconds(job_type=JobType.webhook_delivery, attempts=9) == 600.0


def test_platform_event_jobs_have_own_queues_and_three_attempts() -> None:
    queues = {job_spec(t).queue for t in PLATFORM_EVENT_JOB_TYPES.values()}
    assert queues == {"slack_events", "discord_events", "telegram_events"}
    for job_type in PLATFORM_EVENT_JOB_TYPES.values():
        assert job_spec(job_type).max_attempts == 3
    assert job_spec(JobType.event_dedup_purge).queue == "maintenance"


def test_exponential_backoff_doubles_and_caps() -> None:
    backoff = exponential_backoff(base_seconds=1.0, cap_seconds=10.0)
    assert [backoff(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 10.0]
