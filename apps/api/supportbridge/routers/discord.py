from __future__ import annotations

import logging

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request, status
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
from supportbridge.platforms.discord import (
    INTERACTION_COMPONENT,
    INTERACTION_PING,
    RESPONSE_PONG,
    RESPONSE_UPDATE_MESSAGE,
    SIGNED_INTERACTION_TYPES,
    DiscordAdapter,
    parse_toggle_custom_id,
)
from supportbridge.services.dispatch import dispatch_platform_event
from supportbridge.services.installations import find_installation_by_external_id
from supportbridge.services.tickets import (
    get_ticket,
    load_ticket_view,
    parse_ticket_id,
    set_ticket_status,
    sync_ticket_to_platform,
    toggled_status,
)

router = APIRouter(prefix="/discord", tags=["discord"])
logger = logging.getLogger("supportbridge.discord")

# Interaction response type 4 with the ephemeral flag.
_RESPONSE_CHANNEL_MESSAGE = 4
_EPHEMERAL = 64


@router.post("/events")
def discord_events(
    request: Request,
    body: bytes = Depends(read_raw_body),
    mode: ExecutionMode = Depends(get_execution_mode),
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
) -> dict:
    adapter = DiscordAdapter(get_settings())
    verify_platform_request(adapter, body=body, headers=request.headers)
    payload = parse_json_object(body)

    # Only forwarded gateway events may arrive unsigned.
    if payload.get("type") in SIGNED_INTERACTION_TYPES and not adapter.is_signed(request.headers):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    if payload.get("type") == INTERACTION_PING:
        return {"type": RESPONSE_PONG}

    if payload.get("type") == INTERACTION_COMPONENT:
        return _toggle_ticket_status(
            adapter=adapter, session=session, http_client=http_client, interaction=payload
        )

    data = payload.get("d")
    if payload.get("t") == "MESSAGE_CREATE" and isinstance(data, dict) and data.get("id"):
        dispatch_platform_event(
            session=session,
            mode=mode,
            platform=Platform.discord,
            payload=payload,
            event_id=str(data["id"]),
            tenant_hint=str(data.get("guild_id") or ""),
            http_client=http_client,
        )
    return {"ok": True}


def _toggle_ticket_status(
    *,
    adapter: DiscordAdapter,
    session: Session,
    http_client: httpx.Client,
    interaction: dict,
) -> dict:
    ticket_id = parse_ticket_id(parse_toggle_custom_id((interaction.get("data") or {}).get("custom_id")))
    if ticket_id is None:
        return _ephemeral("Unknown action")

    guild_id = interaction.get("guild_id")
    installation = (
        find_installation_by_external_id(
            session=session, platform=Platform.discord, external_id=str(guild_id)
        )
        if guild_id
        else None
    )
    ticket = get_ticket(session=session, ticket_id=ticket_id)
    if installation is None or ticket is None or ticket.account_id != installation.account_id:
        return _ephemeral("Ticket not found")

    member_user = (interaction.get("member") or {}).get("user") or interaction.get("user") or {}
    new_status = toggled_status(TicketStatus(ticket.status))
    set_ticket_status(
        session=session,
        ticket=ticket,
        status=new_status,
        changed_by=f"discord:{member_user.get('id') or 'unknown'}",
    )
    session.commit()

    # The interaction response re-renders the message itself; only the thread state is synced here.
    sync_ticket_to_platform(session=session, http_client=http_client, ticket=ticket, rerender=False)
    logger.info(
        log_event("discord.ticket.toggled", ticket_id=str(ticket.id), status=new_status.value)
    )
    return {
        "type": RESPONSE_UPDATE_MESSAGE,
        "data": adapter.render_ticket_message(load_ticket_view(session=session, ticket=ticket)),
    }


def _ephemeral(content: str) -> dict:
    return {"type": _RESPONSE_CHANNEL_MESSAGE, "data": {"content": content, "flags": _EPHEMERAL}}
