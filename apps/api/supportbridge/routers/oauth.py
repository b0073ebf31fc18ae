from __future__ import annotations

import logging

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from supportbridge.core.config import get_settings
from supportbridge.core.http import get_http_client
from supportbridge.core.middleware import log_event
from supportbridge.db.session import get_session
from supportbridge.models.enums import Platform
from supportbridge.services.installations import complete_platform_oauth

router = APIRouter(tags=["oauth"])
logger = logging.getLogger("supportbridge.oauth")


@router.get("/slack/oauth/callback")
def slack_oauth_callback(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
) -> RedirectResponse:
    return _complete_and_redirect(
        session=session,
        http_client=http_client,
        platform=Platform.slack,
        code=code,
        state=state,
        error=error,
    )


@router.get("/discord/oauth/callback")
def discord_oauth_callback(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    session: Session = Depends(get_session),
    http_client: httpx.Client = Depends(get_http_client),
) -> RedirectResponse:
    return _complete_and_redirect(
        session=session,
        http_client=http_client,
        platform=Platform.discord,
        code=code,
        state=state,
        error=error,
    )


def _complete_and_redirect(
    *,
    session: Session,
    http_client: httpx.Client,
    platform: Platform,
    code: str | None,
    state: str | None,
    error: str | None,
) -> RedirectResponse:
    settings_url = f"{get_settings().FRONTEND_URL.rstrip('/')}/settings/integrations"
    if error:
        logger.info(log_event("oauth.callback.denied", platform=platform.value, error=error))
        return RedirectResponse(
            f"{settings_url}?platform={platform.value}&status=denied",
            status_code=status.HTTP_302_FOUND,
        )
    if not code or not state:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing code or state")

    try:
        installation = complete_platform_oauth(
            session=session, http_client=http_client, platform=platform, state=state, code=code
        )
    except HTTPException as e:
        # The state was consumed before the exchange failed; keep it consumed.
        if e.status_code == status.HTTP_502_BAD_GATEWAY:
            session.commit()
        raise
    session.commit()

    logger.info(
        log_event(
            "oauth.installation.stored",
            platform=platform.value,
            account_id=str(installation.account_id),
            external_id=installation.external_id,
        )
    )
    return RedirectResponse(
        f"{settings_url}?platform={platform.value}&status=installed",
        status_code=status.HTTP_302_FOUND,
    )
