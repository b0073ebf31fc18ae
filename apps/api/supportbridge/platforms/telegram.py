from __future__ import annotations

import hmac
from collections.abc import Mapping
from html import escape

import httpx

from supportbridge.core.config import Settings
from supportbridge.models.enums import Platform, TicketStatus
from supportbridge.platforms.base import (
    InstallationContext,
    InstallationGrant,
    PlatformApiError,
    SignatureError,
    TicketView,
    header,
)
from supportbridge.services.ingest.types import CanonicalEvent, Skip, SkipReason, skip

SECRET_TOKEN_HEADER = "X-Telegram-Bot-Api-Secret-Token"


class TelegramAdapter:
    platform = Platform.telegram

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def verify_request(self, *, body: bytes, headers: Mapping[str, str]) -> None:
        _ = body
        expected = self.settings.TELEGRAM_WEBHOOK_SECRET
        if not expected:
            return
        provided = header(headers, SECRET_TOKEN_HEADER) or ""
        if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
            raise SignatureError("Telegram secret token mismatch")

    def parse_event(self, payload: dict) -> CanonicalEvent | Skip:
        member_update = payload.get("my_chat_member")
        if isinstance(member_update, dict):
            return _describe_membership_update(member_update)

        message = payload.get("message")
        if not isinstance(message, dict) or payload.get("update_id") is None:
            return skip(SkipReason.not_a_message_event, "Unsupported update type")

        chat = message.get("chat") or {}
        if chat.get("type") != "supergroup" or chat.get("id") is None:
            return skip(SkipReason.not_a_message_event, "Not a supergroup message")
        if not message.get("text"):
            return skip(SkipReason.not_a_message_event, "No text content")

        sender = message.get("from") or {}
        topic_id = message.get("message_thread_id")
        return CanonicalEvent(
            platform=self.platform,
            platform_event_id=str(payload["update_id"]),
            tenant_hint=str(chat["id"]),
            thread_anchor=str(topic_id) if topic_id is not None else None,
            root_id=str(message["message_id"]) if message.get("message_id") is not None else None,
            sender_id=str(sender["id"]) if sender.get("id") is not None else None,
            bot_marker=bool(sender.get("is_bot")),
            text=message["text"],
            sender_name_hint=full_name(sender),
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
        _ = installation
        result = self._call(client, "getChatMember", {"chat_id": tenant_hint, "user_id": user_id})
        return full_name(result.get("user") or {})

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
        body: dict[str, object] = {"chat_id": channel, "text": text}
        if thread:
            body["message_thread_id"] = int(thread)
        result = self._call(client, "sendMessage", body)
        return str(result.get("message_id") or "")

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
        self._call(
            client,
            "editMessageText",
            {
                "chat_id": channel,
                "message_id": int(message_id),
                "text": build_ticket_text(ticket),
                "parse_mode": "HTML",
            },
        )

    def set_topic_closed(
        self, *, client: httpx.Client, chat_id: str, topic_id: str, closed: bool
    ) -> None:
        self._call(
            client,
            "closeForumTopic" if closed else "reopenForumTopic",
            {"chat_id": chat_id, "message_thread_id": int(topic_id)},
        )

    def get_bot_identity(self, *, client: httpx.Client) -> InstallationGrant:
        me = self._call(client, "getMe", {})
        return InstallationGrant(
            external_id=str(me["id"]),
            external_name=me.get("username"),
            bot_user_id=str(me["id"]),
            access_token=None,
            scopes=None,
        )

    def exchange_oauth_code(
        self, *, client: httpx.Client, code: str, redirect_uri: str
    ) -> InstallationGrant:
        _ = (client, code, redirect_uri)
        raise PlatformApiError(
            platform=self.platform,
            status_code=None,
            message="Telegram installs by adding the bot to a group; there is no OAuth exchange",
        )

    def _call(self, client: httpx.Client, method: str, body: dict) -> dict:
        token = self.settings.TELEGRAM_BOT_TOKEN
        if not token:
            raise PlatformApiError(
                platform=self.platform, status_code=None, message="TELEGRAM_BOT_TOKEN is not configured"
            )
        res = client.post(f"{self.settings.TELEGRAM_API_BASE_URL}/bot{token}/{method}", json=body)
        try:
            data = res.json()
        except ValueError:
            data = {}
        if res.status_code >= 400 or not data.get("ok"):
            raise PlatformApiError(
                platform=self.platform,
                status_code=res.status_code,
                message=f"{method}: {data.get('description') or 'request failed'}",
            )
        result = data.get("result")
        return result if isinstance(result, dict) else {}


def _describe_membership_update(update: dict) -> Skip:
    new_status = (update.get("new_chat_member") or {}).get("status")
    old_status = (update.get("old_chat_member") or {}).get("status")
    chat = update.get("chat") or {}
    added = new_status in {"member", "administrator"} and old_status in {None, "left", "kicked"}
    if added and chat.get("type") == "supergroup":
        return skip(SkipReason.not_a_message_event, f"Bot added to {chat.get('title') or chat.get('id')}")
    return skip(SkipReason.not_a_message_event, "Not a bot addition event")


def full_name(user: dict) -> str | None:
    parts = [p for p in (user.get("first_name"), user.get("last_name")) if p]
    return " ".join(parts) or None


def build_ticket_text(ticket: TicketView) -> str:
    lines = [f"🎫 <b>Support Ticket</b> ({ticket.status.value})", ""]
    if ticket.visitor_name:
        lines.append(f"<b>Name:</b> {escape(ticket.visitor_name, quote=False)}")
    if ticket.visitor_email:
        lines.append(f"<b>Email:</b> {escape(ticket.visitor_email, quote=False)}")
    lines.extend(["", "<b>Message:</b>", escape(ticket.first_message, quote=False)])
    if ticket.status == TicketStatus.CLOSED:
        lines.extend(["", "🔒 This ticket is closed"])
    else:
        lines.extend(["", "💬 Reply in this topic to respond"])
    return "\n".join(lines)
