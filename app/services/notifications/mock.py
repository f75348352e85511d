"""
In-Process Channel Broker

Delivers published notifications straight to subscribers in the same
process. Used in development mode and by the test suite; delivery is
complete by the time publish() returns.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from typing import Iterable, Optional

from app.models import NotificationKind
from app.services.notifications.base import (
    BaseChannelBroker,
    BaseCuePlayer,
    NotificationCallback,
    SubscriptionHandle,
)
from app.services.store.base import Notification

logger = logging.getLogger(__name__)


class InMemoryChannelBroker(BaseChannelBroker):
    """Dictionary of topic -> subscriptions."""

    def __init__(self):
        self._subscriptions: dict[str, dict[str, tuple[SubscriptionHandle, NotificationCallback]]] = {}
        logger.info("InMemoryChannelBroker initialized")

    @property
    def provider_name(self) -> str:
        return "memory"

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscriptions.get(topic, {}))

    async def subscribe(
        self,
        topic: str,
        callback: NotificationCallback,
        event_filter: Optional[Iterable[NotificationKind]] = None,
    ) -> SubscriptionHandle:
        kinds = frozenset(event_filter) if event_filter is not None else None
        handle = SubscriptionHandle(topic=topic, kinds=kinds)
        self._subscriptions.setdefault(topic, {})[handle.id] = (handle, callback)
        logger.debug(f"Subscribed {handle.id} to {topic}")
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        topic_subs = self._subscriptions.get(handle.topic)
        if topic_subs and topic_subs.pop(handle.id, None) is not None:
            logger.debug(f"Unsubscribed {handle.id} from {handle.topic}")
            if not topic_subs:
                del self._subscriptions[handle.topic]

    async def publish(self, topic: str, notification: Notification) -> None:
        # Copy: callbacks may unsubscribe while we iterate
        for handle, callback in list(self._subscriptions.get(topic, {}).values()):
            if not handle.accepts(notification):
                continue
            try:
                await callback(notification)
            except Exception as e:
                logger.warning(f"Subscriber {handle.id} on {topic} failed: {e}")

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        self._subscriptions.clear()


class SilentCuePlayer(BaseCuePlayer):
    """Cue player for servers and tests: records instead of playing."""

    def __init__(self):
        self.played: list[str] = []

    async def play(self, notification: Notification) -> None:
        self.played.append(notification.id)
        logger.debug(f"Cue for notification {notification.id} ({notification.kind.value})")
