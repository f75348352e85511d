"""
Order Store Factory

Returns the in-memory or PostgreSQL store based on ENV_MODE.

Usage:
    from app.services.store import get_order_store

    store = get_order_store()
    order = await store.get_order(order_id)

Environment Switching:
    - ENV_MODE=development → InMemoryOrderStore
    - ENV_MODE=staging / production → SQLAlchemyOrderStore

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from functools import lru_cache

from app.core.config import get_settings
from app.services.store.base import (
    BaseOrderStore,
    LoyaltySummary,
    Notification,
    Order,
    OrderItem,
    Reservation,
    Scope,
    utcnow,
    within_budget,
)
from app.services.store.memory import InMemoryOrderStore

logger = logging.getLogger(__name__)


@lru_cache()
def get_order_store() -> BaseOrderStore:
    """Get the configured order store (cached)."""
    settings = get_settings()

    if settings.is_development:
        logger.info("Order Store: Using InMemoryOrderStore (development mode)")
        return InMemoryOrderStore()

    from app.services.store.sql import SQLAlchemyOrderStore

    logger.info(f"Order Store: Using SQLAlchemyOrderStore ({settings.env_mode.value} mode)")
    return SQLAlchemyOrderStore()


def reset_order_store() -> None:
    """Clear the cached store instance."""
    get_order_store.cache_clear()


__all__ = [
    "get_order_store",
    "reset_order_store",
    "BaseOrderStore",
    "InMemoryOrderStore",
    "LoyaltySummary",
    "Notification",
    "Order",
    "OrderItem",
    "Reservation",
    "Scope",
    "utcnow",
    "within_budget",
]
