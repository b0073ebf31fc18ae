from __future__ import annotations

import enum


class Platform(enum.StrEnum):
    slack = "slack"
    discord = "discord"
    telegram = "telegram"


class TicketStatus(enum.StrEnum):
    OPEN = "OPEN"
    PENDING = "PENDING"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


class MessageSource(enum.StrEnum):
    visitor = "visitor"
    slack = "slack"
    discord = "discord"
    telegram = "telegram"
    agent_dashboard = "agent_dashboard"
    system = "system"


class WebhookEventType(enum.StrEnum):
    ticket_created = "ticket.created"
    message_created = "message.created"
    ticket_updated = "ticket.updated"


class WebhookDeliveryStatus(enum.StrEnum):
    pending = "pending"
    success = "success"
    failed = "failed"


class JobStatus(enum.StrEnum):
    queued = "queued"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"
    cancelled = "cancelled"


class JobType(enum.StrEnum):
    slack_event = "slack_event"
    discord_event = "discord_event"
    telegram_event = "telegram_event"
    webhook_delivery = "webhook_delivery"
    event_dedup_purge = "event_dedup_purge"
