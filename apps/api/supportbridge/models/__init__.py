from __future__ import annotations

from supportbridge.models.base import Base as Base  # noqa: F401
from supportbridge.models.enums import (  # noqa: F401
    JobStatus,
    JobType,
    MessageSource,
    Platform,
    TicketStatus,
    WebhookDeliveryStatus,
    WebhookEventType,
)
from supportbridge.models.events import EventDedup  # noqa: F401
from supportbridge.models.identity import (  # noqa: F401
    Account,
    ChannelConfig,
    Installation,
    TelegramGroupConfig,
)
from supportbridge.models.jobs import BgJob  # noqa: F401
from supportbridge.models.oauth import OAuthState  # noqa: F401
from supportbridge.models.tickets import Message, Ticket  # noqa: F401
from supportbridge.models.webhooks import (  # noqa: F401
    WebhookDelivery,
    WebhookDeliveryAttempt,
    WebhookEndpoint,
)
