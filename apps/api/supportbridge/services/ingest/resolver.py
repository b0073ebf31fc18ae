from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.orm import Session

from supportbridge.core.middleware import log_event
from supportbridge.models.enums import Platform, TicketStatus

logger = logging.getLogger("supportbridge.ingest")


class AmbiguousTicketMatch(Exception):
    def __init__(self, *, platform: Platform, external_tenant_id: str, thread_anchor: str, ticket_ids: list[UUID]):
        super().__init__(
            f"{len(ticket_ids)} tickets match {platform.value} anchor {thread_anchor} "
            f"in tenant {external_tenant_id}"
        )
        self.platform = platform
        self.external_tenant_id = external_tenant_id
        self.thread_anchor = thread_anchor
        self.ticket_ids = ticket_ids


@dataclass(frozen=True)
class ResolvedTicket:
    ticket_id: UUID
    account_id: UUID
    status: TicketStatus
    bot_user_id: str | None


# Every lookup is scoped by the account's active platform and by the installation
# (or Telegram group) that owns the external tenant id carried by the event.
_SLACK_SQL = """
    SELECT t.id, t.account_id, t.status, i.bot_user_id
    FROM tickets t
    JOIN accounts a ON a.id = t.account_id
    JOIN installations i ON i.account_id = a.id AND i.platform = 'slack'
    WHERE a.active_platform = 'slack'
      AND i.external_id = :tenant
      AND t.slack_thread_ts = :anchor
    LIMIT 2
"""

_DISCORD_SQL = """
    SELECT t.id, t.account_id, t.status, i.bot_user_id
    FROM tickets t
    JOIN accounts a ON a.id = t.account_id
    JOIN installations i ON i.account_id = a.id AND i.platform = 'discord'
    WHERE a.active_platform = 'discord'
      AND i.external_id = :tenant
      AND t.discord_thread_id = :anchor
    LIMIT 2
"""

_TELEGRAM_SQL = """
    SELECT t.id, t.account_id, t.status, i.bot_user_id
    FROM tickets t
    JOIN accounts a ON a.id = t.account_id
    JOIN telegram_group_configs g ON g.account_id = a.id AND g.chat_id = t.telegram_chat_id
    LEFT JOIN installations i ON i.account_id = a.id AND i.platform = 'telegram'
    WHERE a.active_platform = 'telegram'
      AND t.telegram_chat_id = :tenant
      AND t.telegram_topic_id = :anchor
    LIMIT 2
"""


def resolve_ticket(
    *,
    session: Session,
    platform: Platform,
    external_tenant_id: str,
    thread_anchor: str,
) -> ResolvedTicket | None:
    if platform == Platform.slack:
        sql, params = _SLACK_SQL, {"tenant": external_tenant_id, "anchor": thread_anchor}
    elif platform == Platform.discord:
        sql, params = _DISCORD_SQL, {"tenant": external_tenant_id, "anchor": thread_anchor}
    else:
        try:
            params = {"tenant": int(external_tenant_id), "anchor": int(thread_anchor)}
        except ValueError:
            return None
        sql = _TELEGRAM_SQL

    rows = session.execute(text(sql), params).mappings().all()
    if not rows:
        return None
    if len(rows) > 1:
        ticket_ids = [UUID(str(r["id"])) for r in rows]
        logger.error(
            log_event(
                "ticket.resolve.ambiguous",
                platform=platform.value,
                external_tenant_id=external_tenant_id,
                thread_anchor=thread_anchor,
                ticket_ids=[str(t) for t in ticket_ids],
            )
        )
        raise AmbiguousTicketMatch(
            platform=platform,
            external_tenant_id=external_tenant_id,
            thread_anchor=thread_anchor,
            ticket_ids=ticket_ids,
        )

    row = rows[0]
    return ResolvedTicket(
        ticket_id=UUID(str(row["id"])),
        account_id=UUID(str(row["account_id"])),
        status=TicketStatus(row["status"]),
        bot_user_id=row["bot_user_id"],
    )
