from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import DateTime, Enum, ForeignKey, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from supportbridge.models.base import Base
from supportbridge.models.enums import Platform


class EventDedup(Base):
    __tablename__ = "event_dedups"

    id: Mapped[UUID] = mapped_column(primary_key=True, server_default=text("gen_random_uuid()"))
    platform: Mapped[Platform] = mapped_column(
        Enum(Platform, name="platform", create_type=False), nullable=False
    )
    # Slack team id, Discord guild id or Telegram chat id carried by the event.
    external_tenant_id: Mapped[str] = mapped_column(Text, nullable=False)
    platform_event_id: Mapped[str] = mapped_column(Text, nullable=False)
    account_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=True
    )
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )
