from __future__ import annotations

import asyncio
import logging
import threading

import discord

from supportbridge.core.config import Settings, get_settings
from supportbridge.core.execution import ExecutionMode
from supportbridge.core.http import build_http_client
from supportbridge.core.metrics import observe_inbound_event
from supportbridge.core.middleware import log_event
from supportbridge.db.session import get_sessionmaker
from supportbridge.models.enums import Platform
from supportbridge.platforms.discord import DiscordAdapter
from supportbridge.services.dispatch import DispatchOutcome, dispatch_platform_event
from supportbridge.services.ingest.types import Skip

logger = logging.getLogger("supportbridge.discord.gateway")


def message_create_payload(message: discord.Message) -> dict:
    """Gateway message in the `{t, d}` shape accepted by `/discord/events`, plus the channel type."""
    reference = message.reference
    return {
        "t": "MESSAGE_CREATE",
        "d": {
            "id": str(message.id),
            "type": message.type.value,
            "content": message.content,
            "channel_id": str(message.channel.id),
            "channel_type": message.channel.type.value,
            "guild_id": str(message.guild.id) if message.guild else None,
            "timestamp": message.created_at.isoformat(),
            "author": {
                "id": str(message.author.id),
                "username": message.author.name,
                "global_name": message.author.global_name,
                "bot": message.author.bot,
            },
            "message_reference": (
                {
                    "message_id": str(reference.message_id) if reference.message_id else None,
                    "channel_id": str(reference.channel_id) if reference.channel_id else None,
                    "guild_id": str(reference.guild_id) if reference.guild_id else None,
                }
                if reference
                else None
            ),
        },
    }


def forward_gateway_event(payload: dict, *, settings: Settings | None = None) -> DispatchOutcome | None:
    """Queue a gateway MESSAGE_CREATE for the event workers.

    Messages that can never become a ticket reply (outside threads, direct messages) are
    counted and dropped here so they do not create jobs.
    """
    parsed = DiscordAdapter(settings or get_settings()).parse_event(payload)
    if isinstance(parsed, Skip):
        observe_inbound_event(platform=Platform.discord.value, outcome=parsed.reason.value)
        return None

    session = get_sessionmaker()()
    try:
        with build_http_client() as http_client:
            return dispatch_platform_event(
                session=session,
                mode=ExecutionMode.queued,
                platform=Platform.discord,
                payload=payload,
                event_id=parsed.platform_event_id,
                tenant_hint=parsed.tenant_hint,
                http_client=http_client,
            )
    finally:
        session.close()


class DiscordGatewayClient(discord.Client):
    def __init__(self) -> None:
        intents = discord.Intents.default()
        intents.guilds = True
        intents.guild_messages = True
        # Privileged; must be enabled for the application in the developer portal.
        intents.message_content = True
        super().__init__(intents=intents)

    async def on_ready(self) -> None:
        logger.info(
            log_event(
                "discord.gateway.ready",
                user=str(self.user) if self.user else None,
                guilds=len(self.guilds),
            )
        )

    async def on_message(self, message: discord.Message) -> None:
        if self.user is not None and message.author.id == self.user.id:
            return
        # Database work is blocking; keep it off the gateway heartbeat loop.
        await asyncio.to_thread(forward_gateway_event, message_create_payload(message))

    async def on_disconnect(self) -> None:
        logger.warning(log_event("discord.gateway.disconnected"))

    async def on_resumed(self) -> None:
        logger.info(log_event("discord.gateway.resumed"))


class DiscordGateway:
    """Runs the gateway client on its own event loop thread beside the job pollers."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._client: DiscordGatewayClient | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        if self.running:
            return True
        token = self.settings.DISCORD_BOT_TOKEN
        if not token:
            logger.warning(log_event("discord.gateway.disabled", reason="missing_bot_token"))
            return False

        self._loop = asyncio.new_event_loop()
        self._client = DiscordGatewayClient()
        self._thread = threading.Thread(
            target=self._run,
            args=(token,),
            name="supportbridge-discord-gateway",
            daemon=True,
        )
        self._thread.start()
        logger.info(log_event("discord.gateway.started"))
        return True

    def stop(self, timeout: float | None = 10.0) -> None:
        if self._client is None or self._loop is None or not self.running:
            return
        asyncio.run_coroutine_threadsafe(self._client.close(), self._loop)
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        logger.info(log_event("discord.gateway.stopped", clean=not self.running))

    def _run(self, token: str) -> None:
        assert self._loop is not None and self._client is not None
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(self._client.start(token))
        except (discord.LoginFailure, discord.PrivilegedIntentsRequired):
            logger.exception(log_event("discord.gateway.login_failed"))
        finally:
            self._loop.close()
