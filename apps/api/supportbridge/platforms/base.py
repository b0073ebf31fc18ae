from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

import httpx

from supportbridge.models.enums import Platform, TicketStatus
from supportbridge.services.ingest.types import CanonicalEvent, Skip


class SignatureError(Exception):
    pass


class PlatformApiError(Exception):
    def __init__(self, *, platform: Platform, status_code: int | None, message: str) -> None:
        super().__init__(f"{platform.value} API error ({status_code}): {message}")
        self.platform = platform
        self.status_code = status_code
        self.message = message


@dataclass(frozen=True)
class InstallationGrant:
    external_id: str
    external_name: str | None
    bot_user_id: str | None
    access_token: str | None
    scopes: str | None


@dataclass(frozen=True)
class InstallationContext:
    """Decrypted installation credentials used for outbound platform calls."""

    account_id: UUID
    platform: Platform
    external_id: str
    bot_user_id: str | None
    access_token: str | None


@dataclass(frozen=True)
class TicketView:
    id: UUID
    status: TicketStatus
    first_message: str
    visitor_email: str | None = None
    visitor_name: str | None = None


class PlatformAdapter(Protocol):
    platform: Platform

    def verify_request(self, *, body: bytes, headers: Mapping[str, str]) -> None: ...

    def parse_event(self, payload: dict) -> CanonicalEvent | Skip: ...

    def fetch_sender_name(
        self,
        *,
        client: httpx.Client,
        installation: InstallationContext,
        user_id: str,
        tenant_hint: str,
    ) -> str | None: ...

    def post_message(
        self,
        *,
        client: httpx.Client,
        installation: InstallationContext,
        channel: str,
        text: str,
        thread: str | None = None,
    ) -> str: ...

    def update_message(
        self,
        *,
        client: httpx.Client,
        installation: InstallationContext,
        channel: str,
        message_id: str,
        ticket: TicketView,
    ) -> None: ...

    def exchange_oauth_code(
        self, *, client: httpx.Client, code: str, redirect_uri: str
    ) -> InstallationGrant: ...


def header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    value = (value or "").strip()
    return value or None


def dashboard_url(*, frontend_url: str, ticket_id: UUID) -> str:
    return f"{frontend_url.rstrip('/')}/tickets/{ticket_id}"
