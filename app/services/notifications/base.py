"""
Notification Channel Abstract Base Classes

Defines the publish/subscribe primitive the fan-out runs on, and the
audible cue a live notification triggers on the receiving device.

Design Pattern: Strategy Pattern
    - InMemoryChannelBroker in development and tests
    - RedisChannelBroker in staging/production

Author: Khalil Bannouri
Version: 4.0.0
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Optional

from app.models import NotificationKind
from app.services.store.base import Notification

NotificationCallback = Callable[[Notification], Awaitable[None]]


@dataclass(frozen=True)
class SubscriptionHandle:
    """Returned by subscribe(); pass it back to unsubscribe()."""
    topic: str
    kinds: Optional[frozenset[NotificationKind]] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def accepts(self, notification: Notification) -> bool:
        return self.kinds is None or notification.kind in self.kinds


class BaseChannelBroker(ABC):
    """
    Abstract base class for channel brokers.

    Delivery is at-least-once; subscribers de-duplicate by notification id.
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        pass

    @abstractmethod
    async def subscribe(
        self,
        topic: str,
        callback: NotificationCallback,
        event_filter: Optional[Iterable[NotificationKind]] = None,
    ) -> SubscriptionHandle:
        """
        Start delivering notifications published on `topic`.

        Args:
            topic: Channel name, e.g. "restaurant:r1"
            callback: Awaited once per delivered notification
            event_filter: Only these kinds are delivered (all when None)
        """
        pass

    @abstractmethod
    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Stop delivery for `handle`. Unknown handles are ignored."""
        pass

    @abstractmethod
    async def publish(self, topic: str, notification: Notification) -> None:
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        pass

    async def close(self) -> None:
        """Drop every subscription and release connections."""
        return None


class BaseCuePlayer(ABC):
    """Plays the alert sound for a live notification."""

    @abstractmethod
    async def play(self, notification: Notification) -> None:
        pass
