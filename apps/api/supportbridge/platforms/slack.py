from __future__ import annotations

import hashlib
import hmac
import time
from collections.abc import Mapping

import httpx

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

# Subtypes that still represent a new chat message (agent relays arrive as bot_message).
ALLOWED_SUBTYPES: frozenset[str] = frozenset({"bot_message"})

UPDATE_STATUS_ACTION_ID = "update_status"
UPDATE_STATUS_MODAL_CALLBACK_ID = "update_status_modal"


def compute_slack_signature(*, signing_secret: str, timestamp: str, body: bytes) -> str:
    basestring = b"v0:" + timestamp.encode("utf-8") + b":" + body
    digest = hmac.new(signing_secret.encode("utf-8"), basestring, hashlib.sha256).hexdigest()
    return f"v0={digest}"


class SlackAdapter:
    platform = Platform.slack

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def verify_request(
        self,
        *,
        body: bytes,
        headers: Mapping[str, str],
        now: float | None = None,
    ) -> None:
        secret = self.settings.SLACK_SIGNING_SECRET
        timestamp = header(headers, "X-Slack-Request-Timestamp")
        signature = header(headers, "X-Slack-Signature")
        if not secret or not timestamp or not signature:
            raise SignatureError("Missing Slack signature headers or signing secret")

        try:
            request_ts = int(timestamp)
        except ValueError as e:
            raise SignatureError("Malformed Slack request timestamp") from e

        current = time.time() if now is None else now
        if abs(int(current) - request_ts) > self.settings.SLACK_SIGNATURE_TOLERANCE_SECONDS:
            raise SignatureError("Slack request timestamp outside tolerance")

        expected = compute_slack_signature(signing_secret=secret, timestamp=timestamp, body=body)
        if not hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
            raise SignatureError("Slack signature mismatch")

    def parse_event(self, payload: dict) -> CanonicalEvent | Skip:
        event = payload.get("event")
        if payload.get("type") != "event_callback" or not isinstance(event, dict):
            return skip(SkipReason.not_a_message_event, "Not an event callback")
        if event.get("type") != "message":
            return skip(SkipReason.not_a_message_event)

        subtype = event.get("subtype")
        if subtype and subtype not in ALLOWED_SUBTYPES:
            return skip(SkipReason.unsupported_subtype, f"Skipping subtype: {subtype}")

        tenant = payload.get("team_id") or event.get("team")
        if not tenant:
            return skip(SkipReason.not_a_message_event, "No team ID in event")

        ts = event.get("ts")
        return CanonicalEvent(
            platform=self.platform,
            platform_event_id=str(payload.get("event_id") or ts or ""),
            tenant_hint=str(tenant),
            thread_anchor=event.get("thread_ts") or None,
            root_id=ts,
            sender_id=event.get("user"),
            bot_marker=bool(event.get("bot_id")),
            text=event.get("text") or "",
            subtype=subtype,
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
        _ = tenant_hint
        data = self._call(client, installation, "users.info", form={"user": user_id})
        user = data.get("user") or {}
        profile = user.get("profile") or {}
        return profile.get("display_name") or user.get("real_name") or user.get("name") or None

    def post_message(
        self,
        *,
        client: httpx.Client,
        installation: InstallationContext,
        channel: str,
        text: str,
        thread: str | None = None,
    ) -> str:
        body: dict[str, object] = {"channel": channel, "text": text}
        if thread:
            body["thread_ts"] = thread
        data = self._call(client, installation, "chat.postMessage", json=body)
        return str(data.get("ts") or "")

    def update_message(
        self,
        *,
        client: httpx.Client,
        installation: InstallationContext,
        channel: str,
        message_id: str,
        ticket: TicketView,
    ) -> None:
        title = f"🎫 Support Ticket ({ticket.status.value})"
        self._call(
            client,
            installation,
            "chat.update",
            json={
                "channel": channel,
                "ts": message_id,
                "text": title,
                "blocks": build_ticket_blocks(
                    ticket, dashboard=dashboard_url(frontend_url=self.settings.FRONTEND_URL, ticket_id=ticket.id)
                ),
            },
        )

    def open_status_modal(
        self,
        *,
        client: httpx.Client,
        installation: InstallationContext,
        trigger_id: str,
        ticket_id: str,
        current_status: TicketStatus,
    ) -> None:
        self._call(
            client,
            installation,
            "views.open",
            json={"trigger_id": trigger_id, "view": build_status_modal(ticket_id, current_status)},
        )

    def exchange_oauth_code(
        self, *, client: httpx.Client, code: str, redirect_uri: str
    ) -> InstallationGrant:
        res = client.post(
            f"{self.settings.SLACK_API_BASE_URL}/oauth.v2.access",
            data={
                "client_id": self.settings.SLACK_CLIENT_ID,
                "client_secret": self.settings.SLACK_CLIENT_SECRET,
                "code": code,
                "redirect_uri": redirect_uri,
            },
        )
        data = _raise_for_slack_error(res, method="oauth.v2.access")
        team = data.get("team") or {}
        if not team.get("id"):
            raise PlatformApiError(
                platform=self.platform, status_code=res.status_code, message="OAuth response has no team"
            )
        return InstallationGrant(
            external_id=str(team["id"]),
            external_name=team.get("name"),
            bot_user_id=data.get("bot_user_id"),
            access_token=data.get("access_token"),
            scopes=data.get("scope"),
        )

    def _call(
        self,
        client: httpx.Client,
        installation: InstallationContext,
        method: str,
        *,
        json: dict | None = None,
        form: dict | None = None,
    ) -> dict:
        if not installation.access_token:
            raise PlatformApiError(
                platform=self.platform, status_code=None, message="Installation has no access token"
            )
        res = client.post(
            f"{self.settings.SLACK_API_BASE_URL}/{method}",
            headers={"Authorization": f"Bearer {installation.access_token}"},
            json=json,
            data=form,
        )
        return _raise_for_slack_error(res, method=method)


def _raise_for_slack_error(res: httpx.Response, *, method: str) -> dict:
    if res.status_code >= 400:
        raise PlatformApiError(
            platform=Platform.slack, status_code=res.status_code, message=f"{method} failed"
        )
    data = res.json()
    # The Web API reports most failures as 200 with ok=false.
    if not data.get("ok"):
        raise PlatformApiError(
            platform=Platform.slack,
            status_code=res.status_code,
            message=f"{method}: {data.get('error') or 'unknown_error'}",
        )
    return data


def build_ticket_blocks(ticket: TicketView, *, dashboard: str) -> list[dict]:
    fields = []
    if ticket.visitor_email:
        fields.append({"type": "mrkdwn", "text": f"*Email:* {ticket.visitor_email}"})
    if ticket.visitor_name:
        fields.append({"type": "mrkdwn", "text": f"*Name:* {ticket.visitor_name}"})
    fields.append({"type": "mrkdwn", "text": f"*Status:* {ticket.status.value}"})

    return [
        {
            "type": "header",
            "text": {
                "type": "plain_text",
                "text": f"🎫 Support Ticket ({ticket.status.value})",
                "emoji": True,
            },
        },
        {"type": "section", "text": {"type": "mrkdwn", "text": ticket.first_message}},
        {"type": "section", "fields": fields},
        {
            "type": "actions",
            "elements": [
                {
                    "type": "button",
                    "text": {"type": "plain_text", "text": "Update Status", "emoji": True},
                    "value": str(ticket.id),
                    "action_id": UPDATE_STATUS_ACTION_ID,
                }
            ],
        },
        {"type": "divider"},
        {
            "type": "context",
            "elements": [
                {
                    "type": "mrkdwn",
                    "text": f"<{dashboard}|View in Dashboard> • Reply in this thread to respond",
                }
            ],
        },
    ]


def build_status_modal(ticket_id: str, current_status: TicketStatus) -> dict:
    def _option(value: str) -> dict:
        return {"text": {"type": "plain_text", "text": value}, "value": value}

    return {
        "type": "modal",
        "callback_id": UPDATE_STATUS_MODAL_CALLBACK_ID,
        "private_metadata": ticket_id,
        "title": {"type": "plain_text", "text": "Update Ticket Status"},
        "submit": {"type": "plain_text", "text": "Update"},
        "close": {"type": "plain_text", "text": "Cancel"},
        "blocks": [
            {
                "type": "input",
                "block_id": "status_block",
                "label": {"type": "plain_text", "text": "Select new status"},
                "element": {
                    "type": "static_select",
                    "action_id": "status_selection",
                    "initial_option": _option(current_status.value),
                    "options": [_option(s.value) for s in TicketStatus],
                },
            }
        ],
    }


def selected_modal_status(view: dict) -> TicketStatus | None:
    try:
        value = view["state"]["values"]["status_block"]["status_selection"]["selected_option"]["value"]
    except (KeyError, TypeError):
        return None
    try:
        return TicketStatus(value)
    except ValueError:
        return None
