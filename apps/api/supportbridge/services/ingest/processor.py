from __future__ import annotations

import logging
from dataclasses import replace
from functools import lru_cache
from uuid import UUID

import httpx
import orjson
from sqlalchemy import text
from sqlalchemy.orm import Session

from supportbridge.core.config import get_settings
from supportbridge.core.metrics import observe_inbound_event
from supportbridge.core.middleware import log_event
from supportbridge.models.enums import MessageSource, WebhookEventType
from supportbridge.platforms.base import PlatformAdapter
from supportbridge.services.ingest.dedupe import is_processed, mark_processed
from supportbridge.services.ingest.filters import check_own_bot, check_thread_reply
from supportbridge.services.ingest.resolver import AmbiguousTicketMatch, ResolvedTicket, resolve_ticket
from supportbridge.services.ingest.sender_names import SenderNameCache
from supportbridge.services.ingest.types import (
    CanonicalEvent,
    ProcessResult,
    Skip,
    SkipReason,
    skip,
)
from supportbridge.services.installations import load_installation_context
from supportbridge.services.webhooks.dispatch import trigger_webhooks

logger = logging.getLogger("supportbridge.ingest")


@lru_cache(maxsize=1)
def get_sender_name_cache() -> SenderNameCache:
    return SenderNameCache(ttl_seconds=float(get_settings().SENDER_NAME_CACHE_TTL_SECONDS))


def process_event(
    *,
    session: Session,
    adapter: PlatformAdapter,
    payload: dict,
    http_client: httpx.Client,
    event_id: str | None = None,
) -> ProcessResult:
    """Turn one inbound platform event into at most one Message.

    Filters run in a fixed order and short-circuit with a Skip. The message insert, the
    dedup insert and the webhook fan-out share a savepoint, so a concurrent duplicate that
    loses the dedup insert leaves nothing behind. The caller owns the outer transaction.
    """
    parsed = adapter.parse_event(payload)
    if isinstance(parsed, Skip):
        return _skipped(adapter, None, parsed)

    event = parsed
    if event_id:
        event = replace(event, platform_event_id=str(event_id))

    threading_skip = check_thread_reply(event)
    if threading_skip is not None:
        return _skipped(adapter, event, threading_skip)

    if is_processed(
        session=session,
        platform=event.platform,
        external_tenant_id=event.tenant_hint,
        platform_event_id=event.platform_event_id,
    ):
        return _skipped(adapter, event, skip(SkipReason.duplicate_event))

    try:
        ticket = resolve_ticket(
            session=session,
            platform=event.platform,
            external_tenant_id=event.tenant_hint,
            thread_anchor=event.thread_anchor or "",
        )
    except AmbiguousTicketMatch:
        return _skipped(adapter, event, skip(SkipReason.no_matching_ticket, "Ambiguous ticket match"))
    if ticket is None:
        return _skipped(adapter, event, skip(SkipReason.no_matching_ticket))

    bot_skip = check_own_bot(event, bot_user_id=ticket.bot_user_id)
    if bot_skip is not None:
        return _skipped(adapter, event, bot_skip)

    sender_name = resolve_sender_name(
        session=session, adapter=adapter, http_client=http_client, event=event, ticket=ticket
    )

    savepoint = session.begin_nested()
    try:
        message_id = _insert_message(session=session, event=event, ticket=ticket, sender_name=sender_name)
        recorded = mark_processed(
            session=session,
            platform=event.platform,
            external_tenant_id=event.tenant_hint,
            platform_event_id=event.platform_event_id,
            account_id=ticket.account_id,
        )
        if not recorded:
            savepoint.rollback()
            return _skipped(adapter, event, skip(SkipReason.duplicate_event))

        session.execute(
            text("UPDATE tickets SET updated_at = now() WHERE id = :id"),
            {"id": str(ticket.ticket_id)},
        )
        trigger_webhooks(
            session=session,
            account_id=ticket.account_id,
            ticket_id=ticket.ticket_id,
            event=WebhookEventType.message_created,
            data={
                "ticketId": str(ticket.ticket_id),
                "accountId": str(ticket.account_id),
                "messageId": str(message_id),
                "source": event.platform.value,
                "text": event.text,
                "platformUserId": event.sender_id,
                "platformUserName": sender_name,
            },
            message_id=message_id,
        )
        savepoint.commit()
    except Exception:
        if savepoint.is_active:
            savepoint.rollback()
        raise

    observe_inbound_event(platform=event.platform.value, outcome="processed")
    logger.info(
        log_event(
            "ingest.event.processed",
            platform=event.platform.value,
            platform_event_id=event.platform_event_id,
            ticket_id=str(ticket.ticket_id),
            message_id=str(message_id),
        )
    )
    return ProcessResult.done(message_id)


def resolve_sender_name(
    *,
    session: Session,
    adapter: PlatformAdapter,
    http_client: httpx.Client,
    event: CanonicalEvent,
    ticket: ResolvedTicket,
) -> str | None:
    """Best-effort display name; any lookup failure falls back to the raw sender id."""
    if event.sender_name_hint:
        return event.sender_name_hint
    if not event.sender_id:
        return None

    cache = get_sender_name_cache()
    key = (event.platform.value, event.tenant_hint, event.sender_id)
    cached = cache.get(key)
    if cached is not None:
        return cached

    try:
        installation = load_installation_context(
            session=session, account_id=ticket.account_id, platform=event.platform
        )
        name = None
        if installation is not None:
            name = adapter.fetch_sender_name(
                client=http_client,
                installation=installation,
                user_id=event.sender_id,
                tenant_hint=event.tenant_hint,
            )
    except Exception:
        logger.warning(
            log_event(
                "ingest.sender_name.failed",
                platform=event.platform.value,
                sender_id=event.sender_id,
            ),
            exc_info=True,
        )
        return event.sender_id

    if not name:
        return event.sender_id
    cache.put(key, name)
    return name


def _insert_message(
    *,
    session: Session,
    event: CanonicalEvent,
    ticket: ResolvedTicket,
    sender_name: str | None,
) -> UUID:
    row = session.execute(
        text(
            """
            INSERT INTO messages (
              ticket_id,
              account_id,
              source,
              body,
              platform_message_id,
              platform_user_id,
              platform_user_name,
              raw_event
            )
            VALUES (
              :ticket_id,
              :account_id,
              :source,
              :body,
              :platform_message_id,
              :platform_user_id,
              :platform_user_name,
              CAST(:raw_event AS jsonb)
            )
            RETURNING id
            """
        ),
        {
            "ticket_id": str(ticket.ticket_id),
            "account_id": str(ticket.account_id),
            "source": MessageSource(event.platform.value).value,
            "body": event.text,
            "platform_message_id": event.root_id,
            "platform_user_id": event.sender_id,
            "platform_user_name": sender_name,
            "raw_event": _raw_json(event.raw),
        },
    ).one()
    return UUID(str(row[0]))


def _raw_json(raw: dict) -> str:
    return orjson.dumps(raw).decode("utf-8")


def _skipped(adapter: PlatformAdapter, event: CanonicalEvent | None, skipped: Skip) -> ProcessResult:
    observe_inbound_event(platform=adapter.platform.value, outcome=skipped.reason.value)
    logger.info(
        log_event(
            "ingest.event.skipped",
            platform=adapter.platform.value,
            platform_event_id=event.platform_event_id if event else None,
            reason=skipped.reason.value,
            detail=skipped.detail,
        )
    )
    return ProcessResult.skipped(skipped)
