"""
In-Memory Order Store

Keeps orders, notifications and loyalty summaries in process memory.
Used in development mode (ENV_MODE=development) and throughout the test
suite to:
    - Run the full checkout -> scan -> complete flow without PostgreSQL
    - Exercise compare-and-set races deterministically
    - Simulate a slow or unavailable store (latency / failure_rate)

Behavior:
    - qr_token uniqueness enforced by a token index (no silent overwrite)
    - compare_and_set_status is atomic with respect to other coroutines
    - Optional simulated latency and failures raise TransientError

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import logging
import random
from dataclasses import replace
from datetime import datetime
from typing import Iterable, Optional

from app.core.exceptions import ConflictError, DuplicateTokenError, TransientError, ValidationError
from app.models import OrderStatus, ReadState
from app.services.store.base import (
    BaseOrderStore,
    LoyaltySummary,
    Notification,
    Order,
    Scope,
)

logger = logging.getLogger(__name__)


class InMemoryOrderStore(BaseOrderStore):
    """
    Dictionary-backed implementation of the order store.

    Attributes:
        failure_rate: Probability that a call raises TransientError (0.0-1.0)
        min_latency: Minimum simulated response time in seconds
        max_latency: Maximum simulated response time in seconds
    """

    def __init__(
        self,
        failure_rate: float = 0.0,
        min_latency: float = 0.0,
        max_latency: float = 0.0,
    ):
        self.failure_rate = failure_rate
        self.min_latency = min_latency
        self.max_latency = max(max_latency, min_latency)

        self._orders: dict[str, Order] = {}
        self._order_ids_by_token: dict[str, str] = {}
        self._notifications: dict[str, Notification] = {}
        self._summaries: dict[str, LoyaltySummary] = {}
        self._lock = asyncio.Lock()

        logger.info(
            f"InMemoryOrderStore initialized "
            f"(failure_rate={failure_rate:.0%}, "
            f"latency={self.min_latency}-{self.max_latency}s)"
        )

    @property
    def provider_name(self) -> str:
        return "memory"

    async def _simulate(self) -> None:
        """Simulate network latency and outages."""
        if self.max_latency > 0:
            await asyncio.sleep(random.uniform(self.min_latency, self.max_latency))
        if self.failure_rate and random.random() < self.failure_rate:
            raise TransientError("Simulated store outage")

    # -- orders ---------------------------------------------------------------

    async def insert_order(self, order: Order) -> Order:
        await self._simulate()
        async with self._lock:
            if order.qr_token in self._order_ids_by_token:
                raise DuplicateTokenError(f"QR token already issued: {order.qr_token}")
            if order.id in self._orders:
                raise ConflictError(f"Order {order.id} already exists")
            self._orders[order.id] = order
            self._order_ids_by_token[order.qr_token] = order.id
        return order

    async def get_order(self, order_id: str) -> Optional[Order]:
        await self._simulate()
        return self._orders.get(order_id)

    async def get_order_by_token(self, qr_token: str) -> Optional[Order]:
        await self._simulate()
        order_id = self._order_ids_by_token.get(qr_token)
        return self._orders.get(order_id) if order_id else None

    async def compare_and_set_status(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        updated_at: datetime,
    ) -> Optional[Order]:
        await self._simulate()
        async with self._lock:
            current = self._orders.get(order_id)
            if current is None or current.status != expected:
                return None
            updated = replace(current, status=new, updated_at=updated_at)
            self._orders[order_id] = updated
            return updated

    async def query_orders(
        self,
        *,
        customer_id: Optional[str] = None,
        restaurant_id: Optional[str] = None,
        statuses: Optional[Iterable[OrderStatus]] = None,
    ) -> list[Order]:
        await self._simulate()
        wanted = set(statuses) if statuses is not None else None
        return [
            order
            for order in self._orders.values()
            if (customer_id is None or order.customer_id == customer_id)
            and (restaurant_id is None or order.restaurant_id == restaurant_id)
            and (wanted is None or order.status in wanted)
        ]

    # -- notifications --------------------------------------------------------

    async def insert_notification(self, notification: Notification) -> Notification:
        await self._simulate()
        async with self._lock:
            if notification.id in self._notifications:
                raise ConflictError(f"Notification {notification.id} already exists")
            self._notifications[notification.id] = notification
        return notification

    async def get_notification(self, notification_id: str) -> Optional[Notification]:
        await self._simulate()
        return self._notifications.get(notification_id)

    async def list_notifications(
        self,
        scope: Scope,
        limit: Optional[int] = None,
        unread_only: bool = False,
    ) -> list[Notification]:
        await self._simulate()
        matching = [
            n for n in self._notifications.values()
            if n.scope == scope and (not unread_only or n.is_unread)
        ]
        matching.sort(key=lambda n: n.created_at, reverse=True)
        return matching if limit is None else matching[:limit]

    async def update_read_state(
        self,
        notification_ids: Iterable[str],
        state: ReadState,
    ) -> int:
        if state != ReadState.READ:
            raise ValidationError("Notifications can only be marked as read")
        await self._simulate()
        changed = 0
        async with self._lock:
            for notification_id in notification_ids:
                current = self._notifications.get(notification_id)
                if current is not None and current.is_unread:
                    self._notifications[notification_id] = replace(current, read_state=state)
                    changed += 1
        return changed

    async def count_unread(self, scope: Scope) -> int:
        await self._simulate()
        return sum(1 for n in self._notifications.values() if n.scope == scope and n.is_unread)

    # -- loyalty --------------------------------------------------------------

    async def get_loyalty_summary(self, customer_id: str) -> Optional[LoyaltySummary]:
        await self._simulate()
        return self._summaries.get(customer_id)

    async def upsert_loyalty_summary(self, summary: LoyaltySummary) -> LoyaltySummary:
        await self._simulate()
        async with self._lock:
            current = self._summaries.get(summary.customer_id)
            # Completed orders never revert, so a lower count is a stale compute
            if current is not None and current.total_completed_orders > summary.total_completed_orders:
                return current
            self._summaries[summary.customer_id] = summary
            return summary

    async def health_check(self) -> bool:
        """In-memory store is always healthy."""
        return True
