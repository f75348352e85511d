"""
Notification Feed

A subscriber's bounded, de-duplicated view of one channel. Attaching
subscribes first and fetches history second; live events that arrive
while the fetch is in flight are buffered and merged by id afterwards,
so nothing published around attach time is lost or shown twice.

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import replace
from typing import Awaitable, Callable, Iterable, Optional

from app.models import NotificationKind, ReadState
from app.services.notifications.base import BaseChannelBroker, BaseCuePlayer, SubscriptionHandle
from app.services.notifications.fanout import NotificationFanout
from app.services.store import Notification, Scope

logger = logging.getLogger(__name__)

LiveListener = Callable[[Notification], Awaitable[None]]

# Ids remembered for de-duplication, as a multiple of the view limit
SEEN_IDS_FACTOR = 4


class NotificationFeed:
    """
    Live view of one scope, newest first, at most `limit` entries.

    Usage:
        async with NotificationFeed(fanout, broker, Scope.customer("c1")) as feed:
            print(feed.unread_count)
    """

    def __init__(
        self,
        fanout: NotificationFanout,
        broker: BaseChannelBroker,
        scope: Scope,
        cue_player: Optional[BaseCuePlayer] = None,
        limit: Optional[int] = None,
        kinds: Optional[Iterable[NotificationKind]] = None,
        on_live: Optional[LiveListener] = None,
    ):
        self.fanout = fanout
        self.broker = broker
        self.scope = scope
        self.cue_player = cue_player
        self.limit = fanout.settings.notification_history_limit if limit is None else limit
        self.kinds = frozenset(kinds) if kinds is not None else None
        self.on_live = on_live

        self._items: list[Notification] = []
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._buffer: list[Notification] = []
        self._loading = False
        self._handle: Optional[SubscriptionHandle] = None
        self._cue_tasks: set[asyncio.Task] = set()

    @property
    def attached(self) -> bool:
        return self._handle is not None

    @property
    def items(self) -> list[Notification]:
        return list(self._items)

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self._items if n.is_unread)

    async def __aenter__(self) -> "NotificationFeed":
        await self.attach()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.detach()

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def attach(self) -> list[Notification]:
        """Subscribe, load history and return the initial view."""
        if self._handle is not None:
            return self.items

        self._loading = True
        self._handle = await self.broker.subscribe(self.scope.topic, self._receive, self.kinds)
        try:
            history = await self.fanout.recent(self.scope, limit=self.limit)
        except Exception:
            await self.detach()
            raise

        history = [n for n in history if self._wanted(n)]
        self._items = []
        self._seen.clear()
        self._merge(history)
        fetched_ids = {n.id for n in history}

        buffered, self._buffer = self._buffer, []
        self._loading = False
        for notification in buffered:
            if notification.id not in fetched_ids:
                await self._accept_live(notification)

        logger.debug(f"Feed attached to {self.scope.topic} with {len(self._items)} notification(s)")
        return self.items

    async def detach(self) -> None:
        """Stop delivery. The current view stays readable."""
        handle, self._handle = self._handle, None
        self._loading = False
        self._buffer = []
        if handle is not None:
            await self.broker.unsubscribe(handle)
            logger.debug(f"Feed detached from {self.scope.topic}")

    async def refetch(self) -> list[Notification]:
        """Reload history and merge it into the current view."""
        history = await self.fanout.recent(self.scope, limit=self.limit)
        fresh = {n.id: n for n in history if self._wanted(n)}
        # Refresh read state of entries still present
        self._items = [fresh.pop(n.id, n) for n in self._items]
        self._merge(fresh.values())
        return self.items

    # =========================================================================
    # EVENTS
    # =========================================================================

    def _wanted(self, notification: Notification) -> bool:
        return self.kinds is None or notification.kind in self.kinds

    def _merge(self, notifications: Iterable[Notification]) -> None:
        for notification in notifications:
            if notification.id in self._seen:
                continue
            self._remember(notification.id)
            self._items.append(notification)
        self._items.sort(key=lambda n: n.created_at, reverse=True)
        del self._items[self.limit:]

    def _remember(self, notification_id: str) -> None:
        self._seen[notification_id] = None
        capacity = max(self.limit, 1) * SEEN_IDS_FACTOR
        while len(self._seen) > capacity:
            self._seen.popitem(last=False)

    async def _receive(self, notification: Notification) -> None:
        if self._handle is None:
            return
        if self._loading:
            self._buffer.append(notification)
            return
        await self._accept_live(notification)

    async def _accept_live(self, notification: Notification) -> None:
        if notification.id in self._seen:
            return
        self._merge([notification])
        if all(n.id != notification.id for n in self._items):
            return
        self._play_cue(notification)
        if self.on_live is not None:
            await self.on_live(notification)

    def _play_cue(self, notification: Notification) -> None:
        if self.cue_player is None:
            return
        task = asyncio.create_task(self._safe_play(notification))
        self._cue_tasks.add(task)
        task.add_done_callback(self._cue_tasks.discard)

    async def _safe_play(self, notification: Notification) -> None:
        try:
            await self.cue_player.play(notification)
        except Exception as e:
            logger.debug(f"Notification cue failed: {e}")

    # =========================================================================
    # READ STATE
    # =========================================================================

    async def mark_read(self, notification_id: str) -> Notification:
        updated = await self.fanout.mark_read(notification_id)
        self._items = [updated if n.id == notification_id else n for n in self._items]
        return updated

    async def mark_all_read(self) -> list[str]:
        ids = set(await self.fanout.mark_all_read(self.scope))
        self._items = [
            replace(n, read_state=ReadState.READ) if n.id in ids else n
            for n in self._items
        ]
        return sorted(ids)
