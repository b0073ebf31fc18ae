from __future__ import annotations

from supportbridge.core.config import Settings, get_settings
from supportbridge.models.enums import Platform
from supportbridge.platforms.base import PlatformAdapter
from supportbridge.platforms.discord import DiscordAdapter
from supportbridge.platforms.slack import SlackAdapter
from supportbridge.platforms.telegram import TelegramAdapter

_ADAPTERS: dict[Platform, type] = {
    Platform.slack: SlackAdapter,
    Platform.discord: DiscordAdapter,
    Platform.telegram: TelegramAdapter,
}


def get_adapter(platform: Platform, *, settings: Settings | None = None) -> PlatformAdapter:
    return _ADAPTERS[platform](settings or get_settings())
