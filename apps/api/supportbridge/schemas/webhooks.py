from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel


class WebhookEndpointCreateRequest(BaseModel):
    url: str


class WebhookEndpointResponse(BaseModel):
    id: UUID
    account_id: UUID
    url: str
    enabled: bool
    secret: str


class WebhookSecretRotateResponse(BaseModel):
    endpoint_id: UUID
    secret: str


class WebhookDeliveryItem(BaseModel):
    id: UUID
    ticket_id: UUID | None
    event_type: str
    status: str
    attempt_count: int
    last_status_code: int | None
    last_attempt_at: datetime | None
    last_error: str | None
    created_at: datetime


class WebhookDeliveryHistoryResponse(BaseModel):
    items: list[WebhookDeliveryItem]
    next_cursor: UUID | None
