"""
Redis Channel Broker

Fans notifications out across processes with Redis pub/sub. Each
subscription owns a PubSub connection and a reader task that decodes
messages and awaits the subscriber's callback.

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import json
import logging
from typing import Iterable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from app.core.config import Settings, get_settings
from app.core.exceptions import TransientError
from app.models import NotificationKind
from app.services.notifications.base import (
    BaseChannelBroker,
    NotificationCallback,
    SubscriptionHandle,
)
from app.services.store.base import Notification, within_budget

logger = logging.getLogger(__name__)


class RedisChannelBroker(BaseChannelBroker):
    """
    Redis pub/sub implementation.

    Messages are the JSON form of Notification.to_dict().
    """

    def __init__(self, settings: Optional[Settings] = None, client: Optional[redis.Redis] = None):
        self.settings = settings or get_settings()
        self._client = client or redis.from_url(self.settings.redis_url, decode_responses=True)
        self._readers: dict[str, tuple[SubscriptionHandle, redis.client.PubSub, asyncio.Task]] = {}
        logger.info("RedisChannelBroker initialized")

    @property
    def provider_name(self) -> str:
        return "redis"

    async def subscribe(
        self,
        topic: str,
        callback: NotificationCallback,
        event_filter: Optional[Iterable[NotificationKind]] = None,
    ) -> SubscriptionHandle:
        kinds = frozenset(event_filter) if event_filter is not None else None
        handle = SubscriptionHandle(topic=topic, kinds=kinds)
        pubsub = self._client.pubsub()
        try:
            await within_budget(pubsub.subscribe(topic), self.settings.store_timeout_seconds, "channel subscribe")
        except RedisError as e:
            await self._discard(pubsub)
            raise TransientError(f"Could not subscribe to {topic}: {e}") from e
        except BaseException:
            # Timeouts and cancellation must not leak the connection either
            await self._discard(pubsub)
            raise

        task = asyncio.create_task(self._read(handle, pubsub, callback))
        self._readers[handle.id] = (handle, pubsub, task)
        logger.debug(f"Subscribed {handle.id} to {topic}")
        return handle

    @staticmethod
    async def _discard(pubsub: redis.client.PubSub) -> None:
        try:
            await pubsub.aclose()
        except RedisError as e:
            logger.debug(f"Ignoring error while closing pubsub: {e}")

    async def _read(
        self,
        handle: SubscriptionHandle,
        pubsub: redis.client.PubSub,
        callback: NotificationCallback,
    ) -> None:
        try:
            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                try:
                    notification = Notification.from_dict(json.loads(message["data"]))
                except (ValueError, KeyError) as e:
                    logger.warning(f"Dropping malformed message on {handle.topic}: {e}")
                    continue
                if not handle.accepts(notification):
                    continue
                try:
                    await callback(notification)
                except Exception as e:
                    logger.warning(f"Subscriber {handle.id} on {handle.topic} failed: {e}")
        except RedisError as e:
            logger.warning(f"Channel reader for {handle.topic} stopped: {e}")

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        entry = self._readers.pop(handle.id, None)
        if entry is None:
            return
        _, pubsub, task = entry
        task.cancel()
        try:
            await pubsub.unsubscribe(handle.topic)
            await pubsub.aclose()
        except RedisError as e:
            logger.debug(f"Ignoring error while closing subscription {handle.id}: {e}")
        logger.debug(f"Unsubscribed {handle.id} from {handle.topic}")

    async def publish(self, topic: str, notification: Notification) -> None:
        payload = json.dumps(notification.to_dict())
        try:
            await within_budget(
                self._client.publish(topic, payload),
                self.settings.store_timeout_seconds,
                "channel publish",
            )
        except RedisError as e:
            raise TransientError(f"Could not publish to {topic}: {e}") from e

    async def health_check(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        for entry in list(self._readers.values()):
            await self.unsubscribe(entry[0])
        await self._client.aclose()
