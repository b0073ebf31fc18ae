from __future__ import annotations

from datetime import UTC, datetime, timedelta
from urllib.parse import urlencode
from uuid import UUID

import httpx
from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from supportbridge.core.config import get_settings
from supportbridge.core.crypto import decrypt_token, encrypt_token, installation_token_aad
from supportbridge.core.security import new_random_token
from supportbridge.models.enums import Platform
from supportbridge.models.identity import Account, Installation, TelegramGroupConfig
from supportbridge.models.oauth import OAuthState
from supportbridge.platforms.base import InstallationContext, InstallationGrant, PlatformApiError
from supportbridge.platforms.registry import get_adapter
from supportbridge.platforms.telegram import TelegramAdapter

SLACK_AUTHORIZE_URL = "https://slack.com/oauth/v2/authorize"
DISCORD_AUTHORIZE_URL = "https://discord.com/oauth2/authorize"

SLACK_BOT_SCOPES = (
    "channels:history",
    "channels:join",
    "channels:read",
    "chat:write",
    "groups:history",
    "groups:read",
    "users:read",
)
# Send Messages, Create Public Threads, Send Messages in Threads, Manage Threads, Read History.
DISCORD_BOT_PERMISSIONS = "326417591296"

OAUTH_STATE_TTL = timedelta(minutes=10)


def oauth_redirect_uri(platform: Platform) -> str:
    return f"{get_settings().API_BASE_URL}/{platform.value}/oauth/callback"


def start_platform_oauth(*, session: Session, account_id: UUID, platform: Platform) -> str:
    settings = get_settings()
    if platform == Platform.slack:
        client_id = settings.SLACK_CLIENT_ID
    elif platform == Platform.discord:
        client_id = settings.DISCORD_CLIENT_ID
    else:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{platform.value} does not use OAuth installs",
        )
    if not client_id:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{platform.value} OAuth is not configured",
        )

    state = new_random_token()
    session.add(
        OAuthState(
            account_id=account_id,
            platform=platform,
            state=state,
            expires_at=datetime.now(UTC) + OAUTH_STATE_TTL,
        )
    )
    session.flush()

    redirect_uri = oauth_redirect_uri(platform)
    if platform == Platform.slack:
        query = {
            "client_id": client_id,
            "scope": ",".join(SLACK_BOT_SCOPES),
            "redirect_uri": redirect_uri,
            "state": state,
        }
        return f"{SLACK_AUTHORIZE_URL}?{urlencode(query)}"

    query = {
        "client_id": client_id,
        "permissions": DISCORD_BOT_PERMISSIONS,
        "scope": "bot",
        "response_type": "code",
        "redirect_uri": redirect_uri,
        "state": state,
    }
    return f"{DISCORD_AUTHORIZE_URL}?{urlencode(query)}"


def complete_platform_oauth(
    *,
    session: Session,
    http_client: httpx.Client,
    platform: Platform,
    state: str,
    code: str,
) -> Installation:
    now = datetime.now(UTC)
    oauth_state = (
        session.execute(
            select(OAuthState)
            .where(OAuthState.state == state, OAuthState.platform == platform)
            .with_for_update()
        )
        .scalars()
        .first()
    )
    if oauth_state is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid OAuth state")
    if oauth_state.used_at is not None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="OAuth state already used")
    if oauth_state.expires_at <= now:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="OAuth state expired")

    # One-time use even when the exchange below fails.
    oauth_state.used_at = now
    session.add(oauth_state)
    session.flush()

    adapter = get_adapter(platform)
    try:
        grant = adapter.exchange_oauth_code(
            client=http_client, code=code, redirect_uri=oauth_redirect_uri(platform)
        )
    except PlatformApiError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"{platform.value} OAuth exchange failed: {e.message}",
        ) from e

    return store_installation(
        session=session, account_id=oauth_state.account_id, platform=platform, grant=grant
    )


def store_installation(
    *,
    session: Session,
    account_id: UUID,
    platform: Platform,
    grant: InstallationGrant,
) -> Installation:
    """Upsert the account's installation for `platform` and make it the routing platform."""
    encrypted = None
    if grant.access_token:
        encrypted = encrypt_token(
            token=grant.access_token,
            aad=installation_token_aad(account_id=account_id, platform=platform.value),
        )

    installation = (
        session.execute(
            select(Installation).where(
                Installation.account_id == account_id,
                Installation.platform == platform,
            )
        )
        .scalars()
        .first()
    )
    if installation is None:
        installation = Installation(account_id=account_id, platform=platform, external_id=grant.external_id)
    installation.external_id = grant.external_id
    installation.external_name = grant.external_name
    installation.bot_user_id = grant.bot_user_id
    installation.encrypted_access_token = encrypted
    installation.scopes = grant.scopes
    session.add(installation)

    account = session.get(Account, account_id)
    if account is not None:
        account.active_platform = platform
        session.add(account)

    session.flush()
    return installation


def register_telegram_group(
    *,
    session: Session,
    http_client: httpx.Client,
    account_id: UUID,
    chat_id: int,
    chat_title: str | None = None,
    is_forum_enabled: bool = True,
) -> TelegramGroupConfig:
    """Link a supergroup the bot was added to. The bot identity doubles as the installation."""
    try:
        grant = TelegramAdapter(get_settings()).get_bot_identity(client=http_client)
    except PlatformApiError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"telegram bot lookup failed: {e.message}",
        ) from e
    store_installation(session=session, account_id=account_id, platform=Platform.telegram, grant=grant)

    existing = session.execute(
        select(TelegramGroupConfig).where(TelegramGroupConfig.account_id == account_id)
    ).scalars().all()
    group = next((g for g in existing if g.chat_id == chat_id), None)
    if group is None:
        group = TelegramGroupConfig(account_id=account_id, chat_id=chat_id, is_default=not existing)
    group.chat_title = chat_title
    group.is_forum_enabled = is_forum_enabled
    session.add(group)
    session.flush()
    return group


def find_installation_by_external_id(
    *, session: Session, platform: Platform, external_id: str
) -> Installation | None:
    return (
        session.execute(
            select(Installation)
            .join(Account, Account.id == Installation.account_id)
            .where(
                Installation.platform == platform,
                Installation.external_id == external_id,
                Account.active_platform == platform,
            )
            .order_by(Installation.installed_at.desc())
        )
        .scalars()
        .first()
    )


def installation_context(installation: Installation) -> InstallationContext:
    token = None
    if installation.encrypted_access_token:
        token = decrypt_token(
            blob=installation.encrypted_access_token,
            aad=installation_token_aad(
                account_id=installation.account_id, platform=installation.platform.value
            ),
        )
    return InstallationContext(
        account_id=installation.account_id,
        platform=installation.platform,
        external_id=installation.external_id,
        bot_user_id=installation.bot_user_id,
        access_token=token,
    )


def load_installation_context(
    *, session: Session, account_id: UUID, platform: Platform
) -> InstallationContext | None:
    installation = (
        session.execute(
            select(Installation).where(
                Installation.account_id == account_id,
                Installation.platform == platform,
            )
        )
        .scalars()
        .first()
    )
    if installation is None:
        return None
    return installation_context(installation)
