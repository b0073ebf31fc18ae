from __future__ import annotations

import httpx
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from supportbridge.core.deps import (
    get_execution_mode,
    parse_json_object,
    read_raw_body,
    verify_platform_request,
)
from supportbridge.core.execution import ExecutionMode
from supportbridge.core.http import get_http_client
from supportbridge.db.session import get_session
from supportbridge.models.enums import Platform
from supportbridge.platforms.registry import get_adapter
from supportbridge.services.dispatch import dispatch_platform_event

router = APIRouter(prefix="/telegram", tags=["telegram"])


@router.post("/webhook")
def telegram_webhook(
    request: Request,
    body: bytes = Depends(read_raw_body),
    mode: ExecutionMode = Depends(get_execution_mode),
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
) -> dict:
    verify_platform_request(get_adapter(Platform.telegram), body=body, headers=request.headers)
    update = parse_json_object(body)

    update_id = update.get("update_id")
    if update_id is None:
        return {"ok": True}

    dispatch_platform_event(
        session=session,
        mode=mode,
        platform=Platform.telegram,
        payload=update,
        event_id=str(update_id),
        tenant_hint=_chat_id(update),
        http_client=http_client,
    )
    return {"ok": True}


def _chat_id(update: dict) -> str:
    for key in ("message", "my_chat_member"):
        section = update.get(key)
        if isinstance(section, dict):
            chat_id = (section.get("chat") or {}).get("id")
            if chat_id is not None:
                return str(chat_id)
    return ""
