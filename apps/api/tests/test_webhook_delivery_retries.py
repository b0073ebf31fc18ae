from __future__ import annotations

from uuid import UUID

import httpx
from sqlalchemy import select, text
from sqlalchemy.orm import Session

from supportbridge.models.enums import JobStatus, Platform, WebhookDeliveryStatus, WebhookEventType
from supportbridge.models.identity import Account
from supportbridge.models.jobs import BgJob
from supportbridge.models.webhooks import WebhookDelivery, WebhookDeliveryAttempt
from supportbridge.services.webhooks.dispatch import trigger_webhooks
from supportbridge.services.webhooks.endpoints import create_webhook_endpoint, rotate_webhook_secret
from supportbridge.services.webhooks.signing import SIGNATURE_HEADER, verify_webhook_signature
from supportbridge.worker.jobs import webhook_delivery as webhook_delivery_job
from supportbridge.worker.runner import WorkerConfig, run_until_idle


class FlakyReceiver:
    """Answers 500 for the first `failures` requests, then 200."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if len(self.requests) <= self.failures:
            return httpx.Response(500)
        return httpx.Response(200)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self))


def _seed_delivery(db_session: Session) -> tuple[UUID, UUID]:
    account = Account(name="Webhook account", active_platform=Platform.slack)
    db_session.add(account)
    db_session.flush()
    endpoint = create_webhook_endpoint(
        session=db_session, account_id=account.id, url="https://receiver.example.com/hooks"
    )
    [delivery_id] = trigger_webhooks(
        session=db_session,
        account_id=account.id,
        ticket_id=None,
        event=WebhookEventType.ticket_updated,
        data={"accountId": str(account.id), "status": "CLOSED"},
    )
    db_session.commit()
    return delivery_id, endpoint.id


def _run_due_job(db_session: Session, receiver: FlakyReceiver) -> int:
    # Skip the ladder wait so every retry is due immediately.
    db_session.execute(text("UPDATE bg_jobs SET run_at = now() WHERE status = 'queued'"))
    db_session.commit()
    return run_until_idle(config=WorkerConfig(http_client_factory=receiver.client), max_jobs=1)


def _attempts(db_session: Session, delivery_id: UUID) -> list[WebhookDeliveryAttempt]:
    return list(
        db_session.execute(
            select(WebhookDeliveryAttempt)
            .where(WebhookDeliveryAttempt.delivery_id == delivery_id)
            .order_by(WebhookDeliveryAttempt.attempt_number)
        ).scalars()
    )


def test_first_attempt_waits_for_the_ladder(db_session: Session) -> None:
    _seed_delivery(db_session)
    receiver = FlakyReceiver(failures=0)
    assert run_until_idle(config=WorkerConfig(http_client_factory=receiver.client)) == 0
    assert receiver.requests == []


def test_four_failures_then_success(db_session: Session) -> None:
    delivery_id, _ = _seed_delivery(db_session)
    receiver = FlakyReceiver(failures=4)

    for _ in range(5):
        assert _run_due_job(db_session, receiver) == 1

    db_session.expire_all()
    delivery = db_session.get(WebhookDelivery, delivery_id)
    assert delivery.status == WebhookDeliveryStatus.success
    assert delivery.attempt_count == 5
    assert delivery.last_status_code == 200
    assert [a.attempt_number for a in _attempts(db_session, delivery_id)] == [1, 2, 3, 4, 5]
    assert [a.status_code for a in _attempts(db_session, delivery_id)] == [500, 500, 500, 500, 200]

    job = db_session.execute(select(BgJob)).scalars().one()
    assert job.status == JobStatus.succeeded
    # The same delivery id is sent on every attempt.
    assert {r.headers["X-Webhook-ID"] for r in receiver.requests} == {str(delivery_id)}


def test_five_failures_mark_delivery_failed(db_session: Session) -> None:
    delivery_id, _ = _seed_delivery(db_session)
    receiver = FlakyReceiver(failures=100)

    for _ in range(5):
        assert _run_due_job(db_session, receiver) == 1
    # No sixth attempt is ever made.
    assert _run_due_job(db_session, receiver) == 0

    db_session.expire_all()
    delivery = db_session.get(WebhookDelivery, delivery_id)
    assert delivery.status == WebhookDeliveryStatus.failed
    assert delivery.attempt_count == 5
    assert delivery.last_error == "HTTP 500"
    assert len(_attempts(db_session, delivery_id)) == 5
    assert len(receiver.requests) == 5


def test_retry_is_scheduled_on_the_ladder(db_session: Session) -> None:
    delivery_id, _ = _seed_delivery(db_session)
    receiver = FlakyReceiver(failures=1)
    assert _run_due_job(db_session, receiver) == 1

    row = db_session.execute(
        text(
            """
            SELECT
              EXTRACT(EPOCH FROM (j.run_at - now())) AS job_wait,
              EXTRACT(EPOCH FROM (d.next_attempt_at - now())) AS delivery_wait
            FROM bg_jobs j, webhook_deliveries d
            WHERE d.id = :id
            """
        ),
        {"id": str(delivery_id)},
    ).mappings().one()
    # Second rung of the ladder: five seconds after the first failure.
    assert 3 < float(row["job_wait"]) <= 5
    assert 3 < float(row["delivery_wait"]) <= 5


def test_rotation_keeps_captured_secret(db_session: Session) -> None:
    delivery_id, endpoint_id = _seed_delivery(db_session)
    original_secret = db_session.get(WebhookDelivery, delivery_id).secret_snapshot
    new_secret = rotate_webhook_secret(session=db_session, endpoint_id=endpoint_id)
    db_session.commit()
    assert new_secret != original_secret

    receiver = FlakyReceiver(failures=0)
    assert _run_due_job(db_session, receiver) == 1

    [request] = receiver.requests
    header = request.headers[SIGNATURE_HEADER]
    assert verify_webhook_signature(body=request.content, header=header, secret=original_secret)
    assert not verify_webhook_signature(body=request.content, header=header, secret=new_secret)


def test_exhausted_job_fails_the_delivery_when_bookkeeping_errors(db_session: Session, monkeypatch) -> None:
    delivery_id, _ = _seed_delivery(db_session)
    receiver = FlakyReceiver(failures=100)

    def broken_record_attempt(**_: object) -> int:
        raise RuntimeError("attempt insert failed")

    monkeypatch.setattr(webhook_delivery_job, "record_attempt", broken_record_attempt)

    for _ in range(5):
        assert _run_due_job(db_session, receiver) == 1
    assert _run_due_job(db_session, receiver) == 0

    db_session.expire_all()
    job = db_session.execute(select(BgJob)).scalars().one()
    assert job.status == JobStatus.failed
    assert job.last_error == "RuntimeError: attempt insert failed"

    delivery = db_session.get(WebhookDelivery, delivery_id)
    # No attempt was ever recorded, yet the delivery is terminal rather than pending forever.
    assert delivery.attempt_count == 0
    assert delivery.status == WebhookDeliveryStatus.failed
    assert delivery.next_attempt_at is None
