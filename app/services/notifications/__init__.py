"""
Notification Channel Factory

Returns the in-process or Redis channel broker based on ENV_MODE.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from functools import lru_cache

from app.core.config import get_settings
from app.services.notifications.base import (
    BaseChannelBroker,
    BaseCuePlayer,
    SubscriptionHandle,
)
from app.services.notifications.fanout import NotificationFanout
from app.services.notifications.feed import NotificationFeed
from app.services.notifications.mock import InMemoryChannelBroker, SilentCuePlayer

logger = logging.getLogger(__name__)


@lru_cache()
def get_channel_broker() -> BaseChannelBroker:
    """Get the configured channel broker (cached)."""
    settings = get_settings()

    if settings.is_development:
        logger.info("Channel Broker: Using InMemoryChannelBroker (development mode)")
        return InMemoryChannelBroker()

    from app.services.notifications.real import RedisChannelBroker

    logger.info(f"Channel Broker: Using RedisChannelBroker ({settings.env_mode.value} mode)")
    return RedisChannelBroker(settings)


def reset_channel_broker() -> None:
    """Clear the cached broker instance."""
    get_channel_broker.cache_clear()


__all__ = [
    "get_channel_broker",
    "reset_channel_broker",
    "BaseChannelBroker",
    "BaseCuePlayer",
    "InMemoryChannelBroker",
    "NotificationFanout",
    "NotificationFeed",
    "SilentCuePlayer",
    "SubscriptionHandle",
]
