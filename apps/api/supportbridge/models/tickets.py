from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import BigInteger, DateTime, Enum, ForeignKey, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from supportbridge.models.base import Base
from supportbridge.models.enums import MessageSource, TicketStatus


class Ticket(Base):
    __tablename__ = "tickets"

    id: Mapped[UUID] = mapped_column(primary_key=True, server_default=text("gen_random_uuid()"))
    account_id: Mapped[UUID] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )

    status: Mapped[TicketStatus] = mapped_column(
        Enum(TicketStatus, name="ticket_status", create_type=False),
        nullable=False,
        server_default=text("'OPEN'"),
    )
    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    visitor_email: Mapped[str | None] = mapped_column(Text, nullable=True)
    visitor_name: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Exactly one anchor set is populated, matching the account's active platform.
    slack_channel_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    slack_thread_ts: Mapped[str | None] = mapped_column(Text, nullable=True)
    slack_root_message_ts: Mapped[str | None] = mapped_column(Text, nullable=True)

    discord_channel_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    discord_thread_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    discord_message_id: Mapped[str | None] = mapped_column(Text, nullable=True)

    telegram_chat_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    telegram_topic_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    telegram_message_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[UUID] = mapped_column(primary_key=True, server_default=text("gen_random_uuid()"))
    ticket_id: Mapped[UUID] = mapped_column(
        ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False
    )
    account_id: Mapped[UUID] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    source: Mapped[MessageSource] = mapped_column(
        Enum(MessageSource, name="message_source", create_type=False), nullable=False
    )
    body: Mapped[str] = mapped_column(Text, nullable=False)

    platform_message_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    platform_user_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    platform_user_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_event: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )
