from __future__ import annotations

import json
import time
from uuid import uuid4

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select, text
from sqlalchemy.orm import Session

from supportbridge.core.config import get_settings
from supportbridge.core.execution import ExecutionMode
from supportbridge.main import create_app
from supportbridge.models.enums import JobStatus, JobType, Platform
from supportbridge.models.identity import Account, Installation
from supportbridge.models.jobs import BgJob
from supportbridge.models.tickets import Message, Ticket
from supportbridge.platforms.slack import compute_slack_signature
from supportbridge.services import dispatch as dispatch_module
from supportbridge.services.dispatch import dispatch_platform_event, event_dedupe_key
from supportbridge.worker.runner import WorkerConfig, run_until_idle

SIGNING_SECRET = "slack-signing-secret"
OPS_TOKEN = "ops-token"


@pytest.fixture()
def configured(monkeypatch) -> None:
    monkeypatch.setenv("SLACK_SIGNING_SECRET", SIGNING_SECRET)
    monkeypatch.setenv("OPS_API_TOKEN", OPS_TOKEN)
    get_settings.cache_clear()


def _failing_platform_client() -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500)))


def _seed_ticket(db_session: Session, *, team_id: str, thread_ts: str) -> Ticket:
    account = Account(name=f"Account {team_id}", active_platform=Platform.slack)
    db_session.add(account)
    db_session.flush()
    db_session.add(
        Installation(account_id=account.id, platform=Platform.slack, external_id=team_id, bot_user_id="B1")
    )
    ticket = Ticket(account_id=account.id, slack_channel_id="C1", slack_thread_ts=thread_ts)
    db_session.add(ticket)
    db_session.commit()
    return ticket


def _event(*, team_id: str, event_id: str, thread_ts: str = "100.1") -> dict:
    return {
        "type": "event_callback",
        "team_id": team_id,
        "event_id": event_id,
        "event": {"type": "message", "user": "U1", "text": "hi", "thread_ts": thread_ts, "ts": "100.2"},
    }


def _post_signed(client: TestClient, path: str, payload: dict) -> httpx.Response:
    body = json.dumps(payload).encode()
    ts = str(int(time.time()))
    headers = {
        "X-Slack-Request-Timestamp": ts,
        "X-Slack-Signature": compute_slack_signature(signing_secret=SIGNING_SECRET, timestamp=ts, body=body),
        "Content-Type": "application/json",
    }
    return client.post(path, content=body, headers=headers)


def _job_count(db_session: Session) -> int:
    return db_session.execute(select(func.count()).select_from(BgJob)).scalar_one()


def _message_count(db_session: Session, ticket: Ticket) -> int:
    return db_session.execute(
        select(func.count()).select_from(Message).where(Message.ticket_id == ticket.id)
    ).scalar_one()


def test_queued_mode_enqueues_exactly_one_job_and_worker_processes_it(
    db_session: Session, configured: None
) -> None:
    team_id = f"T{uuid4().hex[:8]}"
    ticket = _seed_ticket(db_session, team_id=team_id, thread_ts="100.1")
    client = TestClient(create_app(execution_mode=ExecutionMode.queued))
    payload = _event(team_id=team_id, event_id="EvQ1")

    assert _post_signed(client, "/slack/events", payload).status_code == 200
    # Platform retry of the same event while the first job is still queued.
    assert _post_signed(client, "/slack/events", payload).status_code == 200

    jobs = db_session.execute(select(BgJob)).scalars().all()
    assert len(jobs) == 1
    assert jobs[0].type == JobType.slack_event
    assert jobs[0].queue == "slack_events"
    assert jobs[0].dedupe_key == event_dedupe_key(platform=Platform.slack, tenant_hint=team_id, event_id="EvQ1")
    assert jobs[0].payload["event"] == payload
    # Nothing is processed until a worker runs.
    assert _message_count(db_session, ticket) == 0

    ran = run_until_idle(config=WorkerConfig(http_client_factory=_failing_platform_client))
    assert ran == 1
    db_session.expire_all()
    assert db_session.get(BgJob, jobs[0].id).status == JobStatus.succeeded
    assert _message_count(db_session, ticket) == 1


def test_skipped_events_complete_the_job_without_retry(db_session: Session) -> None:
    dispatch_platform_event(
        session=db_session,
        mode=ExecutionMode.queued,
        platform=Platform.slack,
        payload=_event(team_id="T-nobody", event_id="EvSkip"),
        event_id="EvSkip",
        tenant_hint="T-nobody",
        http_client=_failing_platform_client(),
    )
    assert run_until_idle(config=WorkerConfig(http_client_factory=_failing_platform_client)) == 1
    status = db_session.execute(text("SELECT status, attempts FROM bg_jobs")).mappings().one()
    assert status["status"] == "succeeded"
    assert status["attempts"] == 1


def test_unsigned_discord_interactions_create_no_job(db_session: Session) -> None:
    client = TestClient(create_app(execution_mode=ExecutionMode.queued))
    assert client.post("/discord/events", content=b'{"type":1}').status_code == 401
    toggle = {"type": 3, "guild_id": "G1", "data": {"custom_id": f"toggle_status:{uuid4()}"}}
    assert client.post("/discord/events", content=json.dumps(toggle).encode()).status_code == 401
    assert _job_count(db_session) == 0


def test_inline_failure_is_dead_lettered_and_replayable(
    db_session: Session, configured: None, monkeypatch
) -> None:
    team_id = f"T{uuid4().hex[:8]}"
    ticket = _seed_ticket(db_session, team_id=team_id, thread_ts="100.1")
    client = TestClient(create_app(execution_mode=ExecutionMode.inline))

    def explode(**_: object) -> None:
        raise RuntimeError("database went away")

    monkeypatch.setattr(dispatch_module, "process_event", explode)
    res = _post_signed(client, "/slack/events", _event(team_id=team_id, event_id="EvDLQ"))
    # The platform is still acknowledged.
    assert res.status_code == 200
    monkeypatch.undo()
    monkeypatch.setenv("OPS_API_TOKEN", OPS_TOKEN)
    get_settings.cache_clear()

    failed = db_session.execute(select(BgJob).where(BgJob.status == JobStatus.failed)).scalars().all()
    assert len(failed) == 1
    assert failed[0].type == JobType.slack_event
    assert failed[0].last_error == "RuntimeError: database went away"
    assert _message_count(db_session, ticket) == 0

    auth = {"Authorization": f"Bearer {OPS_TOKEN}"}
    listed = client.get("/ops/jobs/dlq", headers=auth)
    assert listed.status_code == 200
    assert [item["id"] for item in listed.json()["items"]] == [str(failed[0].id)]

    replay = client.post(f"/ops/jobs/{failed[0].id}/replay", headers=auth)
    assert replay.status_code == 200
    assert replay.json() == {"status": "succeeded", "job_id": str(failed[0].id)}
    assert _message_count(db_session, ticket) == 1


def test_ops_routes_require_token(db_session: Session, monkeypatch) -> None:
    client = TestClient(create_app())
    monkeypatch.setenv("OPS_API_TOKEN", "")
    get_settings.cache_clear()
    assert client.get("/ops/jobs/dlq").status_code == 503

    monkeypatch.setenv("OPS_API_TOKEN", OPS_TOKEN)
    get_settings.cache_clear()
    assert client.get("/ops/jobs/dlq").status_code == 401
    assert client.get("/ops/jobs/dlq", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert client.get("/ops/jobs/dlq", headers={"Authorization": f"Bearer {OPS_TOKEN}"}).status_code == 200
    assert (
        client.post(f"/ops/jobs/{uuid4()}/replay", headers={"Authorization": f"Bearer {OPS_TOKEN}"}).status_code
        == 404
    )
