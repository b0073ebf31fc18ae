from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from supportbridge.core.config import Settings
from supportbridge.models.enums import Platform, TicketStatus
from supportbridge.platforms.base import (
    InstallationContext,
    InstallationGrant,
    PlatformApiError,
    SignatureError,
    TicketView,
    dashboard_url,
    header,
)
from supportbridge.services.ingest.types import CanonicalEvent, Skip, SkipReason, skip

INTERACTION_PING = 1
INTERACTION_COMPONENT = 3
SIGNED_INTERACTION_TYPES = frozenset({INTERACTION_PING, INTERACTION_COMPONENT})
RESPONSE_PONG = 1
RESPONSE_UPDATE_MESSAGE = 7

TOGGLE_STATUS_PREFIX = "toggle_status:"

# Public and private threads; support replies only ever arrive in one.
THREAD_CHANNEL_TYPES = frozenset({11, 12})

_STATUS_COLORS: dict[TicketStatus, int] = {
    TicketStatus.OPEN: 0x3B82F6,
    TicketStatus.CLOSED: 0x6B7280,
}


class DiscordAdapter:
    platform = Platform.discord

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def verify_request(self, *, body: bytes, headers: Mapping[str, str]) -> None:
        signature = header(headers, "X-Signature-Ed25519")
        timestamp = header(headers, "X-Signature-Timestamp")
        # Forwarded gateway events are unsigned. Interactions must also pass `is_signed`.
        if not signature or not timestamp:
            return

        public_key = self.settings.DISCORD_PUBLIC_KEY
        if not public_key:
            raise SignatureError("DISCORD_PUBLIC_KEY is not configured")

        try:
            key = Ed25519PublicKey.from_public_bytes(bytes.fromhex(public_key))
            key.verify(bytes.fromhex(signature), timestamp.encode("utf-8") + body)
        except (InvalidSignature, ValueError) as e:
            raise SignatureError("Discord signature mismatch") from e

    def is_signed(self, headers: Mapping[str, str]) -> bool:
        return bool(header(headers, "X-Signature-Ed25519") and header(headers, "X-Signature-Timestamp"))

    def parse_event(self, payload: dict) -> CanonicalEvent | Skip:
        data = payload.get("d")
        if payload.get("t") != "MESSAGE_CREATE" or not isinstance(data, dict):
            return skip(SkipReason.not_a_message_event, "Not a MESSAGE_CREATE event")

        author = data.get("author")
        if not isinstance(author, dict) or not data.get("id"):
            return skip(SkipReason.not_a_message_event)

        # Direct messages have no guild and are never support threads.
        guild_id = data.get("guild_id")
        if not guild_id:
            return skip(SkipReason.not_a_thread_reply, "No guild ID in event")

        # Raw gateway payloads carry no channel type; the gateway runner adds it.
        channel_type = data.get("channel_type")
        if channel_type is not None and channel_type not in THREAD_CHANNEL_TYPES:
            return skip(SkipReason.not_a_thread_reply, "Not a thread channel")

        return CanonicalEvent(
            platform=self.platform,
            platform_event_id=str(data["id"]),
            tenant_hint=str(guild_id),
            thread_anchor=data.get("channel_id"),
            root_id=str(data["id"]),
            sender_id=author.get("id"),
            bot_marker=bool(author.get("bot")),
            text=data.get("content") or "",
            sender_name_hint=author.get("global_name") or author.get("username") or None,
            raw=payload,
        )

    def fetch_sender_name(
        self,
        *,
        client: httpx.Client,
        installation: InstallationContext,
        user_id: str,
        tenant_hint: str,
    ) -> str | None:
        _ = (installation, tenant_hint)
        data = self._request(client, "GET", f"/users/{user_id}")
        return data.get("global_name") or data.get("username") or None

    def post_message(
        self,
        *,
        client: httpx.Client,
        installation: InstallationContext,
        channel: str,
        text: str,
        thread: str | None = None,
    ) -> str:
        _ = installation
        # Messages posted to a thread's channel id land in the thread.
        data = self._request(client, "POST", f"/channels/{thread or channel}/messages", json={"content": text})
        return str(data.get("id") or "")

    def update_message(
        self,
        *,
        client: httpx.Client,
        installation: InstallationContext,
        channel: str,
        message_id: str,
        ticket: TicketView,
    ) -> None:
        _ = installation
        self._request(
            client,
            "PATCH",
            f"/channels/{channel}/messages/{message_id}",
            json=self.render_ticket_message(ticket),
        )

    def set_thread_archived(self, *, client: httpx.Client, thread_id: str, archived: bool) -> None:
        # Unarchiving also unlocks so agents can reply again.
        self._request(
            client,
            "PATCH",
            f"/channels/{thread_id}",
            json={"archived": archived, "locked": archived},
        )

    def render_ticket_message(self, ticket: TicketView) -> dict:
        return {
            "embeds": [build_ticket_embed(ticket)],
            "components": [
                build_status_button(ticket),
                build_dashboard_button(
                    dashboard_url(frontend_url=self.settings.FRONTEND_URL, ticket_id=ticket.id)
                ),
            ],
        }

    def exchange_oauth_code(
        self, *, client: httpx.Client, code: str, redirect_uri: str
    ) -> InstallationGrant:
        res = client.post(
            f"{self.settings.DISCORD_API_BASE_URL}/oauth2/token",
            data={
                "client_id": self.settings.DISCORD_CLIENT_ID,
                "client_secret": self.settings.DISCORD_CLIENT_SECRET,
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
            },
        )
        if res.status_code >= 400:
            raise PlatformApiError(
                platform=self.platform, status_code=res.status_code, message=_error_message(res)
            )
        data = res.json()
        guild = data.get("guild") or {}
        if not guild.get("id"):
            raise PlatformApiError(
                platform=self.platform, status_code=res.status_code, message="OAuth response has no guild"
            )

        bot_user_id = None
        if self.settings.DISCORD_BOT_TOKEN:
            bot_user_id = self._request(client, "GET", "/users/@me").get("id")

        return InstallationGrant(
            external_id=str(guild["id"]),
            external_name=guild.get("name"),
            bot_user_id=str(bot_user_id) if bot_user_id else None,
            access_token=data.get("access_token"),
            scopes=data.get("scope"),
        )

    def _request(self, client: httpx.Client, method: str, path: str, *, json: dict | None = None) -> dict:
        token = self.settings.DISCORD_BOT_TOKEN
        if not token:
            raise PlatformApiError(
                platform=self.platform, status_code=None, message="DISCORD_BOT_TOKEN is not configured"
            )
        res = client.request(
            method,
            f"{self.settings.DISCORD_API_BASE_URL}{path}",
            headers={"Authorization": f"Bot {token}"},
            json=json,
        )
        if res.status_code >= 400:
            raise PlatformApiError(
                platform=self.platform, status_code=res.status_code, message=_error_message(res)
            )
        if res.status_code == 204 or not res.content:
            return {}
        return res.json()


def _error_message(res: httpx.Response) -> str:
    try:
        data = res.json()
    except ValueError:
        return res.text[:200] or "request failed"
    if isinstance(data, dict):
        return str(data.get("error_description") or data.get("message") or data.get("error") or data)
    return str(data)


def parse_toggle_custom_id(custom_id: str | None) -> str | None:
    if not custom_id or not custom_id.startswith(TOGGLE_STATUS_PREFIX):
        return None
    return custom_id[len(TOGGLE_STATUS_PREFIX) :] or None


def build_ticket_embed(ticket: TicketView) -> dict:
    fields = []
    if ticket.visitor_name:
        fields.append({"name": "Name", "value": ticket.visitor_name, "inline": True})
    if ticket.visitor_email:
        fields.append({"name": "Email", "value": ticket.visitor_email, "inline": True})
    fields.append({"name": "Status", "value": ticket.status.value, "inline": True})

    return {
        "title": "🎫 Support Ticket",
        "description": ticket.first_message,
        "color": _STATUS_COLORS.get(ticket.status, _STATUS_COLORS[TicketStatus.OPEN]),
        "fields": fields,
        "footer": {"text": "Reply in this thread to respond"},
        "timestamp": datetime.now(UTC).isoformat(),
    }


def build_status_button(ticket: TicketView) -> dict:
    is_open = ticket.status == TicketStatus.OPEN
    return {
        "type": 1,
        "components": [
            {
                "type": 2,
                "style": 2 if is_open else 3,
                "label": "Close Ticket" if is_open else "Reopen Ticket",
                "custom_id": f"{TOGGLE_STATUS_PREFIX}{ticket.id}",
            }
        ],
    }


def build_dashboard_button(url: str) -> dict:
    return {
        "type": 1,
        "components": [{"type": 2, "style": 5, "label": "View in Dashboard", "url": url}],
    }
