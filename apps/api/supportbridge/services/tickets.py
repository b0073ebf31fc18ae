from __future__ import annotations

import logging
from uuid import UUID

import httpx
from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from supportbridge.core.middleware import log_event
from supportbridge.models.enums import MessageSource, Platform, TicketStatus, WebhookEventType
from supportbridge.models.identity import Account
from supportbridge.models.tickets import Message, Ticket
from supportbridge.platforms.base import PlatformApiError, TicketView
from supportbridge.platforms.discord import DiscordAdapter
from supportbridge.platforms.registry import get_adapter
from supportbridge.platforms.telegram import TelegramAdapter
from supportbridge.services.installations import load_installation_context
from supportbridge.services.webhooks.dispatch import trigger_webhooks

logger = logging.getLogger("supportbridge.tickets")

_NO_MESSAGE = "No message"


def get_ticket(*, session: Session, ticket_id: UUID) -> Ticket | None:
    return session.get(Ticket, ticket_id)


def parse_ticket_id(value: str | None) -> UUID | None:
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


def toggled_status(current: TicketStatus) -> TicketStatus:
    return TicketStatus.OPEN if current == TicketStatus.CLOSED else TicketStatus.CLOSED


def load_ticket_view(*, session: Session, ticket: Ticket) -> TicketView:
    first_message = session.execute(
        select(Message.body)
        .where(Message.ticket_id == ticket.id)
        .order_by(Message.created_at.asc(), Message.id.asc())
        .limit(1)
    ).scalar_one_or_none()
    return TicketView(
        id=ticket.id,
        status=TicketStatus(ticket.status),
        first_message=first_message or ticket.subject or _NO_MESSAGE,
        visitor_email=ticket.visitor_email,
        visitor_name=ticket.visitor_name,
    )


def set_ticket_status(
    *, session: Session, ticket: Ticket, status: TicketStatus, changed_by: str
) -> bool:
    """Persist a status change and emit `ticket.updated`; returns False when nothing changed."""
    previous = TicketStatus(ticket.status)
    if previous == status:
        return False

    ticket.status = status
    session.flush()

    trigger_webhooks(
        session=session,
        account_id=ticket.account_id,
        ticket_id=ticket.id,
        event=WebhookEventType.ticket_updated,
        data={
            "ticketId": str(ticket.id),
            "accountId": str(ticket.account_id),
            "status": status.value,
            "previousStatus": previous.value,
            "changedBy": changed_by,
        },
    )
    logger.info(
        log_event(
            "ticket.status.changed",
            ticket_id=str(ticket.id),
            previous=previous.value,
            status=status.value,
            changed_by=changed_by,
        )
    )
    return True


def sync_ticket_to_platform(
    *,
    session: Session,
    http_client: httpx.Client,
    ticket: Ticket,
    rerender: bool = True,
) -> bool:
    """Mirror the ticket status into its chat thread. Best effort: failures are logged."""
    platform = _ticket_platform(session=session, ticket=ticket)
    if platform is None:
        return False
    installation = load_installation_context(
        session=session, account_id=ticket.account_id, platform=platform
    )
    if installation is None:
        return False

    view = load_ticket_view(session=session, ticket=ticket)
    closed = view.status == TicketStatus.CLOSED
    adapter = get_adapter(platform)
    try:
        if platform == Platform.slack:
            if rerender and ticket.slack_channel_id and ticket.slack_root_message_ts:
                adapter.update_message(
                    client=http_client,
                    installation=installation,
                    channel=ticket.slack_channel_id,
                    message_id=ticket.slack_root_message_ts,
                    ticket=view,
                )
        elif platform == Platform.discord:
            assert isinstance(adapter, DiscordAdapter)
            if rerender and ticket.discord_channel_id and ticket.discord_message_id:
                adapter.update_message(
                    client=http_client,
                    installation=installation,
                    channel=ticket.discord_channel_id,
                    message_id=ticket.discord_message_id,
                    ticket=view,
                )
            if ticket.discord_thread_id:
                adapter.set_thread_archived(
                    client=http_client, thread_id=ticket.discord_thread_id, archived=closed
                )
        elif platform == Platform.telegram:
            assert isinstance(adapter, TelegramAdapter)
            if ticket.telegram_chat_id is None:
                return False
            if rerender and ticket.telegram_message_id is not None:
                adapter.update_message(
                    client=http_client,
                    installation=installation,
                    channel=str(ticket.telegram_chat_id),
                    message_id=str(ticket.telegram_message_id),
                    ticket=view,
                )
            if ticket.telegram_topic_id is not None:
                adapter.set_topic_closed(
                    client=http_client,
                    chat_id=str(ticket.telegram_chat_id),
                    topic_id=str(ticket.telegram_topic_id),
                    closed=closed,
                )
    except (PlatformApiError, httpx.HTTPError):
        logger.warning(
            log_event("ticket.platform_sync.failed", ticket_id=str(ticket.id), platform=platform.value),
            exc_info=True,
        )
        return False
    return True


def post_agent_reply(
    *,
    session: Session,
    http_client: httpx.Client,
    ticket: Ticket,
    text: str,
    author_name: str | None = None,
) -> Message:
    """Relay a dashboard reply into the ticket's thread and record it as a message."""
    platform = _ticket_platform(session=session, ticket=ticket)
    target = _reply_target(ticket=ticket, platform=platform) if platform else None
    if platform is None or target is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Ticket has no chat thread to reply in",
        )
    installation = load_installation_context(
        session=session, account_id=ticket.account_id, platform=platform
    )
    if installation is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Account has no {platform.value} installation",
        )

    channel, thread = target
    relayed = f"*{author_name}:* {text}" if author_name and platform == Platform.slack else text
    try:
        platform_message_id = get_adapter(platform).post_message(
            client=http_client,
            installation=installation,
            channel=channel,
            text=relayed,
            thread=thread,
        )
    except (PlatformApiError, httpx.HTTPError) as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Could not post reply to {platform.value}",
        ) from e

    message = Message(
        ticket_id=ticket.id,
        account_id=ticket.account_id,
        source=MessageSource.agent_dashboard,
        body=text,
        platform_message_id=platform_message_id or None,
        platform_user_name=author_name,
    )
    session.add(message)
    session.flush()

    trigger_webhooks(
        session=session,
        account_id=ticket.account_id,
        ticket_id=ticket.id,
        event=WebhookEventType.message_created,
        data={
            "ticketId": str(ticket.id),
            "accountId": str(ticket.account_id),
            "messageId": str(message.id),
            "source": MessageSource.agent_dashboard.value,
            "text": text,
            "platformUserId": None,
            "platformUserName": author_name,
        },
        message_id=message.id,
    )
    return message


def _ticket_platform(*, session: Session, ticket: Ticket) -> Platform | None:
    account = session.get(Account, ticket.account_id)
    if account is None or account.active_platform is None:
        return None
    return Platform(account.active_platform)


def _reply_target(*, ticket: Ticket, platform: Platform) -> tuple[str, str | None] | None:
    if platform == Platform.slack and ticket.slack_channel_id and ticket.slack_thread_ts:
        return ticket.slack_channel_id, ticket.slack_thread_ts
    if platform == Platform.discord and ticket.discord_thread_id:
        return ticket.discord_thread_id, None
    if platform == Platform.telegram and ticket.telegram_chat_id is not None:
        topic = ticket.telegram_topic_id
        return str(ticket.telegram_chat_id), str(topic) if topic is not None else None
    return None
