from __future__ import annotations

import enum
from dataclasses import dataclass, field
from uuid import UUID

from supportbridge.models.enums import Platform


class SkipReason(enum.StrEnum):
    not_a_message_event = "not_a_message_event"
    unsupported_subtype = "unsupported_subtype"
    not_a_thread_reply = "not_a_thread_reply"
    duplicate_event = "duplicate_event"
    no_matching_ticket = "no_matching_ticket"
    message_from_own_bot = "message_from_own_bot"


_DEFAULT_DETAILS: dict[SkipReason, str] = {
    SkipReason.not_a_message_event: "Not a message event",
    SkipReason.unsupported_subtype: "Unsupported subtype",
    SkipReason.not_a_thread_reply: "Not a thread reply",
    SkipReason.duplicate_event: "Duplicate event",
    SkipReason.no_matching_ticket: "No matching ticket found",
    SkipReason.message_from_own_bot: "Message from our bot",
}


@dataclass(frozen=True)
class Skip:
    reason: SkipReason
    detail: str


def skip(reason: SkipReason, detail: str | None = None) -> Skip:
    return Skip(reason=reason, detail=detail or _DEFAULT_DETAILS[reason])


@dataclass(frozen=True)
class CanonicalEvent:
    """Platform-agnostic message event produced by an adapter."""

    platform: Platform
    platform_event_id: str
    # Slack team id, Discord guild id or Telegram chat id.
    tenant_hint: str
    thread_anchor: str | None
    # Id of the message itself; equal to the anchor for thread starters.
    root_id: str | None
    sender_id: str | None
    bot_marker: bool
    text: str
    subtype: str | None = None
    sender_name_hint: str | None = None
    raw: dict = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class ProcessResult:
    processed: bool
    message_id: UUID | None = None
    reason: SkipReason | None = None
    detail: str | None = None

    @classmethod
    def done(cls, message_id: UUID) -> ProcessResult:
        return cls(processed=True, message_id=message_id)

    @classmethod
    def skipped(cls, skipped: Skip) -> ProcessResult:
        return cls(processed=False, reason=skipped.reason, detail=skipped.detail)

    @property
    def outcome(self) -> str:
        return "processed" if self.processed else str(self.reason)
