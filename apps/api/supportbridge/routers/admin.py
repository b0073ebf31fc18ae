from __future__ import annotations

from uuid import UUID

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from supportbridge.core.http import get_http_client
from supportbridge.core.security import require_ops_token
from supportbridge.db.session import get_session
from supportbridge.models.enums import Platform
from supportbridge.models.identity import Account
from supportbridge.schemas.admin import (
    AgentReplyRequest,
    AgentReplyResponse,
    AuthorizeUrlResponse,
    TelegramGroupRequest,
    TelegramGroupResponse,
    TicketStatusRequest,
    TicketStatusResponse,
)
from supportbridge.schemas.webhooks import (
    WebhookDeliveryHistoryResponse,
    WebhookDeliveryItem,
    WebhookEndpointCreateRequest,
    WebhookEndpointResponse,
    WebhookSecretRotateResponse,
)
from supportbridge.services.installations import register_telegram_group, start_platform_oauth
from supportbridge.services.tickets import (
    get_ticket,
    post_agent_reply,
    set_ticket_status,
    sync_ticket_to_platform,
)
from supportbridge.services.webhooks.endpoints import (
    create_webhook_endpoint,
    get_delivery_history,
    rotate_webhook_secret,
)

router = APIRouter(prefix="/ops", tags=["admin"], dependencies=[Depends(require_ops_token)])


def _require_account(session: Session, account_id: UUID) -> Account:
    account = session.get(Account, account_id)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")
    return account


@router.post("/accounts/{account_id}/installations/{platform}/authorize", response_model=AuthorizeUrlResponse)
def installation_authorize(
    account_id: UUID,
    platform: Platform,
    session: Session = Depends(get_session),
) -> AuthorizeUrlResponse:
    _require_account(session, account_id)
    url = start_platform_oauth(session=session, account_id=account_id, platform=platform)
    session.commit()
    return AuthorizeUrlResponse(authorize_url=url)


@router.post("/accounts/{account_id}/telegram/groups", response_model=TelegramGroupResponse)
def telegram_group_register(
    account_id: UUID,
    payload: TelegramGroupRequest,
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
) -> TelegramGroupResponse:
    _require_account(session, account_id)
    group = register_telegram_group(
        session=session,
        http_client=http_client,
        account_id=account_id,
        chat_id=payload.chat_id,
        chat_title=payload.chat_title,
        is_forum_enabled=payload.is_forum_enabled,
    )
    session.commit()
    return TelegramGroupResponse(
        id=group.id,
        account_id=group.account_id,
        chat_id=group.chat_id,
        chat_title=group.chat_title,
        is_default=group.is_default,
    )


@router.post("/accounts/{account_id}/webhooks", response_model=WebhookEndpointResponse)
def webhook_endpoint_create(
    account_id: UUID,
    payload: WebhookEndpointCreateRequest,
    session: Session = Depends(get_session),
) -> WebhookEndpointResponse:
    _require_account(session, account_id)
    endpoint = create_webhook_endpoint(session=session, account_id=account_id, url=payload.url)
    session.commit()
    return WebhookEndpointResponse(
        id=endpoint.id,
        account_id=endpoint.account_id,
        url=endpoint.url,
        enabled=endpoint.enabled,
        secret=endpoint.secret,
    )


@router.post("/webhooks/{endpoint_id}/rotate-secret", response_model=WebhookSecretRotateResponse)
def webhook_secret_rotate(
    endpoint_id: UUID,
    session: Session = Depends(get_session),
) -> WebhookSecretRotateResponse:
    secret = rotate_webhook_secret(session=session, endpoint_id=endpoint_id)
    session.commit()
    return WebhookSecretRotateResponse(endpoint_id=endpoint_id, secret=secret)


@router.get("/webhooks/{endpoint_id}/deliveries", response_model=WebhookDeliveryHistoryResponse)
def webhook_delivery_history(
    endpoint_id: UUID,
    limit: int = Query(default=20, ge=1, le=100),
    cursor: UUID | None = Query(default=None),
    session: Session = Depends(get_session),
) -> WebhookDeliveryHistoryResponse:
    page = get_delivery_history(session=session, endpoint_id=endpoint_id, limit=limit, cursor=cursor)
    return WebhookDeliveryHistoryResponse(
        items=[
            WebhookDeliveryItem(
                id=d.id,
                ticket_id=d.ticket_id,
                event_type=d.event_type,
                status=d.status,
                attempt_count=d.attempt_count,
                last_status_code=d.last_status_code,
                last_attempt_at=d.last_attempt_at,
                last_error=d.last_error,
                created_at=d.created_at,
            )
            for d in page.deliveries
        ],
        next_cursor=page.next_cursor,
    )


@router.post("/tickets/{ticket_id}/status", response_model=TicketStatusResponse)
def ticket_status_update(
    ticket_id: UUID,
    payload: TicketStatusRequest,
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
) -> TicketStatusResponse:
    ticket = get_ticket(session=session, ticket_id=ticket_id)
    if ticket is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Ticket not found")
    changed = set_ticket_status(
        session=session, ticket=ticket, status=payload.status, changed_by="agent_dashboard"
    )
    session.commit()
    synced = changed and sync_ticket_to_platform(session=session, http_client=http_client, ticket=ticket)
    return TicketStatusResponse(ticket_id=ticket.id, status=payload.status, changed=changed, synced=synced)


@router.post("/tickets/{ticket_id}/messages", response_model=AgentReplyResponse)
def ticket_agent_reply(
    ticket_id: UUID,
    payload: AgentReplyRequest,
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
) -> AgentReplyResponse:
    ticket = get_ticket(session=session, ticket_id=ticket_id)
    if ticket is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Ticket not found")
    message = post_agent_reply(
        session=session,
        http_client=http_client,
        ticket=ticket,
        text=payload.text,
        author_name=payload.author_name,
    )
    session.commit()
    return AgentReplyResponse(message_id=message.id, platform_message_id=message.platform_message_id)
