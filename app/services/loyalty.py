"""
Loyalty Aggregator

Derives a customer's badge, points and spend from their completed orders.
The stored summary is a cache: recomputing from orders is the ground
truth, and every accepted transition to `completed` refreshes it.

Badge thresholds (completed orders):
    0       Newbie
    1-4     Explorer
    5-9     Preferred
    10-29   Loyal Customer
    30+     Super Customer

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Iterable, Optional

from app.core.config import LoyaltyRefreshMode, Settings, get_settings
from app.models import LoyaltyBadge, OrderStatus
from app.services.ledger import OrderEventListener
from app.services.store import BaseOrderStore, LoyaltySummary, Order, utcnow, within_budget

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BadgeInfo:
    label: str
    description: str
    icon: str


BADGE_INFO: dict[LoyaltyBadge, BadgeInfo] = {
    LoyaltyBadge.NEWBIE: BadgeInfo(
        "Newbie", "Start your journey and unlock exclusive dining perks.", "sparkles"
    ),
    LoyaltyBadge.EXPLORER: BadgeInfo(
        "Explorer", "You are discovering new places. Keep exploring.", "compass"
    ),
    LoyaltyBadge.PREFERRED: BadgeInfo(
        "Preferred", "A valued guest with consistent fine dining choices.", "star"
    ),
    LoyaltyBadge.LOYAL_CUSTOMER: BadgeInfo(
        "Loyal Customer", "One of our most loyal guests. Thank you for dining with us.", "shield"
    ),
    LoyaltyBadge.SUPER_CUSTOMER: BadgeInfo(
        "Super Customer", "Elite status. Enjoy priority perks and curated experiences.", "crown"
    ),
}


def badge_for(completed_orders: int) -> LoyaltyBadge:
    """Badge tier for a number of completed orders. Never decreases as n grows."""
    if completed_orders <= 0:
        return LoyaltyBadge.NEWBIE
    if completed_orders <= 4:
        return LoyaltyBadge.EXPLORER
    if completed_orders <= 9:
        return LoyaltyBadge.PREFERRED
    if completed_orders <= 29:
        return LoyaltyBadge.LOYAL_CUSTOMER
    return LoyaltyBadge.SUPER_CUSTOMER


def summarize(customer_id: str, orders: Iterable[Order], points_divisor: int = 100000) -> LoyaltySummary:
    """Build a summary from a customer's orders; only completed ones count."""
    completed = [o for o in orders if o.customer_id == customer_id and o.status == OrderStatus.COMPLETED]
    total_spent = sum((o.total_amount for o in completed), Decimal("0"))
    return LoyaltySummary(
        customer_id=customer_id,
        total_points=int(total_spent // points_divisor),
        total_completed_orders=len(completed),
        total_spent=total_spent,
        current_badge=badge_for(len(completed)),
        updated_at=utcnow(),
    )


class LoyaltyAggregator(OrderEventListener):
    """Reads and refreshes loyalty summaries."""

    def __init__(self, store: BaseOrderStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()

    async def _call(self, awaitable, operation: str):
        return await within_budget(awaitable, self.settings.store_timeout_seconds, operation)

    async def compute(self, customer_id: str) -> LoyaltySummary:
        """Recompute from completed orders without touching the cache."""
        orders = await self._call(
            self.store.query_orders(customer_id=customer_id, statuses=[OrderStatus.COMPLETED]),
            "order query",
        )
        return summarize(customer_id, orders, self.settings.loyalty_points_divisor)

    def _is_fresh(self, summary: LoyaltySummary) -> bool:
        ttl = self.settings.loyalty_cache_ttl_seconds
        if ttl is None:
            return True
        return utcnow() - summary.updated_at <= timedelta(seconds=ttl)

    async def get_summary(self, customer_id: str) -> LoyaltySummary:
        """Cached summary when present and fresh, else a recomputed one (not persisted)."""
        cached = await self._call(self.store.get_loyalty_summary(customer_id), "loyalty lookup")
        if cached is not None and self._is_fresh(cached):
            return cached
        return await self.compute(customer_id)

    async def refresh(self, customer_id: str) -> LoyaltySummary:
        """
        Recompute and persist the summary.

        Returns the cached summary, which is a concurrent refresh's result
        when that one saw more completed orders.
        """
        computed = await self.compute(customer_id)
        summary = await self._call(self.store.upsert_loyalty_summary(computed), "loyalty upsert")
        if summary is not computed:
            logger.debug(f"Kept newer loyalty summary for {customer_id}")
        logger.info(
            f"Loyalty for {customer_id}: {summary.total_completed_orders} completed, "
            f"{summary.total_points} points, badge={summary.current_badge.value}"
        )
        return summary

    async def status_changed(self, order: Order, previous: OrderStatus) -> None:
        if order.status != OrderStatus.COMPLETED:
            return

        if self.settings.loyalty_refresh_mode == LoyaltyRefreshMode.DEFERRED:
            from app.tasks import refresh_loyalty_summary

            refresh_loyalty_summary.delay(order.customer_id)
            logger.debug(f"Queued loyalty refresh for {order.customer_id}")
            return

        await self.refresh(order.customer_id)
