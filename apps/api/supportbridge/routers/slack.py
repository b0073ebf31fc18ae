from __future__ import annotations

import logging
from urllib.parse import parse_qs
from uuid import UUID

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.orm import Session

from supportbridge.core.config import get_settings
from supportbridge.core.deps import (
    get_execution_mode,
    parse_json_object,
    read_raw_body,
    verify_platform_request,
)
from supportbridge.core.execution import ExecutionMode
from supportbridge.core.http import get_http_client
from supportbridge.core.middleware import log_event
from supportbridge.db.session import get_session
from supportbridge.models.enums import Platform, TicketStatus
from supportbridge.models.tickets import Ticket
from supportbridge.platforms.base import PlatformApiError
from supportbridge.platforms.registry import get_adapter
from supportbridge.platforms.slack import (
    UPDATE_STATUS_ACTION_ID,
    UPDATE_STATUS_MODAL_CALLBACK_ID,
    SlackAdapter,
    selected_modal_status,
)
from supportbridge.services.dispatch import dispatch_platform_event
from supportbridge.services.installations import (
    find_installation_by_external_id,
    installation_context,
)
from supportbridge.services.tickets import (
    get_ticket,
    load_ticket_view,
    parse_ticket_id,
    set_ticket_status,
)

router = APIRouter(prefix="/slack", tags=["slack"])
logger = logging.getLogger("supportbridge.slack")


@router.post("/events")
def slack_events(
    request: Request,
    body: bytes = Depends(read_raw_body),
    mode: ExecutionMode = Depends(get_execution_mode),
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
) -> dict:
    verify_platform_request(get_adapter(Platform.slack), body=body, headers=request.headers)
    payload = parse_json_object(body)

    if payload.get("type") == "url_verification":
        return {"challenge": payload.get("challenge")}

    event_id = payload.get("event_id")
    if payload.get("type") != "event_callback" or not event_id:
        return {"ok": True}

    retry_num = request.headers.get("x-slack-retry-num")
    if retry_num:
        logger.info(
            log_event(
                "slack.event.retry",
                event_id=event_id,
                retry_num=retry_num,
                retry_reason=request.headers.get("x-slack-retry-reason"),
            )
        )

    dispatch_platform_event(
        session=session,
        mode=mode,
        platform=Platform.slack,
        payload=payload,
        event_id=str(event_id),
        tenant_hint=str(payload.get("team_id") or ""),
        http_client=http_client,
    )
    return {"ok": True}


@router.post("/interactive")
def slack_interactive(
    request: Request,
    body: bytes = Depends(read_raw_body),
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
) -> Response:
    adapter = SlackAdapter(get_settings())
    verify_platform_request(adapter, body=body, headers=request.headers)

    form = parse_qs(body.decode("utf-8", errors="replace"))
    raw_payload = (form.get("payload") or [None])[0]
    if not raw_payload:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing payload")
    payload = parse_json_object(raw_payload)

    team_id = (payload.get("team") or {}).get("id")
    installation = (
        find_installation_by_external_id(session=session, platform=Platform.slack, external_id=str(team_id))
        if team_id
        else None
    )
    if installation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Installation not found")

    interaction_type = payload.get("type")
    if interaction_type == "block_actions":
        action = next(
            (a for a in payload.get("actions") or [] if a.get("action_id") == UPDATE_STATUS_ACTION_ID),
            None,
        )
        if action is not None:
            ticket = _load_account_ticket(
                session=session, account_id=installation.account_id, raw_id=action.get("value")
            )
            try:
                adapter.open_status_modal(
                    client=http_client,
                    installation=installation_context(installation),
                    trigger_id=str(payload.get("trigger_id") or ""),
                    ticket_id=str(ticket.id),
                    current_status=TicketStatus(ticket.status),
                )
            except PlatformApiError:
                logger.warning(
                    log_event("slack.status_modal.open_failed", ticket_id=str(ticket.id)),
                    exc_info=True,
                )
        return Response(status_code=status.HTTP_200_OK)

    view = payload.get("view") or {}
    if interaction_type == "view_submission" and view.get("callback_id") == UPDATE_STATUS_MODAL_CALLBACK_ID:
        new_status = selected_modal_status(view)
        if new_status is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No status selected")
        ticket = _load_account_ticket(
            session=session, account_id=installation.account_id, raw_id=view.get("private_metadata")
        )
        changed_by = (payload.get("user") or {}).get("id") or "slack"
        set_ticket_status(session=session, ticket=ticket, status=new_status, changed_by=f"slack:{changed_by}")
        session.commit()

        if ticket.slack_channel_id and ticket.slack_root_message_ts:
            try:
                adapter.update_message(
                    client=http_client,
                    installation=installation_context(installation),
                    channel=ticket.slack_channel_id,
                    message_id=ticket.slack_root_message_ts,
                    ticket=load_ticket_view(session=session, ticket=ticket),
                )
            except PlatformApiError:
                # The status change is committed; a stale root message is only cosmetic.
                logger.warning(
                    log_event("slack.ticket_message.update_failed", ticket_id=str(ticket.id)),
                    exc_info=True,
                )
        # An empty body closes the modal.
        return Response(status_code=status.HTTP_200_OK)

    return Response(status_code=status.HTTP_200_OK)


def _load_account_ticket(*, session: Session, account_id: UUID, raw_id: object) -> Ticket:
    ticket_id = parse_ticket_id(raw_id if isinstance(raw_id, str) else None)
    ticket = get_ticket(session=session, ticket_id=ticket_id) if ticket_id else None
    if ticket is None or ticket.account_id != account_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Ticket not found")
    return ticket
