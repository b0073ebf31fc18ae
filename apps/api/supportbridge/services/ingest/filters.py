from __future__ import annotations

from supportbridge.services.ingest.types import CanonicalEvent, Skip, SkipReason, skip


def check_thread_reply(event: CanonicalEvent) -> Skip | None:
    # A thread starter carries its own id as the anchor.
    if not event.thread_anchor:
        return skip(SkipReason.not_a_thread_reply)
    if event.root_id is not None and event.thread_anchor == event.root_id:
        return skip(SkipReason.not_a_thread_reply)
    return None


def check_own_bot(event: CanonicalEvent, *, bot_user_id: str | None) -> Skip | None:
    if event.bot_marker:
        return skip(SkipReason.message_from_own_bot)
    if bot_user_id and event.sender_id == bot_user_id:
        return skip(SkipReason.message_from_own_bot)
    return None
