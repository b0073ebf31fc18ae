from __future__ import annotations

from uuid import UUID

from pydantic import BaseModel, Field

from supportbridge.models.enums import TicketStatus


class AuthorizeUrlResponse(BaseModel):
    authorize_url: str


class TelegramGroupRequest(BaseModel):
    chat_id: int
    chat_title: str | None = None
    is_forum_enabled: bool = True


class TelegramGroupResponse(BaseModel):
    id: UUID
    account_id: UUID
    chat_id: int
    chat_title: str | None
    is_default: bool


class TicketStatusRequest(BaseModel):
    status: TicketStatus


class TicketStatusResponse(BaseModel):
    ticket_id: UUID
    status: TicketStatus
    changed: bool
    synced: bool


class AgentReplyRequest(BaseModel):
    text: str = Field(min_length=1, max_length=4000)
    author_name: str | None = None


class AgentReplyResponse(BaseModel):
    message_id: UUID
    platform_message_id: str | None
