"""
                        Services Module

Contains the ordering core, wired once per process. Backends follow the
hybrid architecture pattern: in-memory implementations in development,
PostgreSQL and Redis in staging/production.

Services:
    - store: Order, notification and loyalty persistence
    - qr_tokens: QR token issuance and scan resolution
    - ledger: Order creation and the fulfillment state machine
    - notifications: Channel fan-out and subscriber feeds
    - loyalty: Badge and points aggregation
    - scanning: Staff scan verification sessions
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from app.core.config import Settings, get_settings
from app.services.ledger import OrderLedger
from app.services.loyalty import LoyaltyAggregator
from app.services.notifications import (
    BaseChannelBroker,
    NotificationFanout,
    get_channel_broker,
    reset_channel_broker,
)
from app.services.qr_tokens import QRTokenService
from app.services.scanning import VerificationSessionRegistry
from app.services.store import BaseOrderStore, get_order_store, reset_order_store


@dataclass
class OrderingServices:
    settings: Settings
    store: BaseOrderStore
    broker: BaseChannelBroker
    tokens: QRTokenService
    ledger: OrderLedger
    fanout: NotificationFanout
    loyalty: LoyaltyAggregator
    scans: VerificationSessionRegistry

    async def close(self) -> None:
        await self.scans.close_all()
        await self.broker.close()
        await self.store.close()


def build_services(
    store: Optional[BaseOrderStore] = None,
    broker: Optional[BaseChannelBroker] = None,
    settings: Optional[Settings] = None,
) -> OrderingServices:
    """Wire the ordering core. Fan-out runs before loyalty on every event."""
    settings = settings or get_settings()
    store = store or get_order_store()
    broker = broker or get_channel_broker()

    tokens = QRTokenService(store, settings)
    fanout = NotificationFanout(store, broker, settings)
    loyalty = LoyaltyAggregator(store, settings)
    ledger = OrderLedger(store, tokens, settings, listeners=[fanout, loyalty])

    return OrderingServices(
        settings=settings,
        store=store,
        broker=broker,
        tokens=tokens,
        ledger=ledger,
        fanout=fanout,
        loyalty=loyalty,
        scans=VerificationSessionRegistry(tokens, ledger),
    )


@lru_cache()
def get_services() -> OrderingServices:
    """Get the process-wide services (cached)."""
    return build_services()


def reset_services() -> None:
    """Clear cached services and the backends they were built on."""
    get_services.cache_clear()
    reset_order_store()
    reset_channel_broker()


__all__ = [
    "OrderingServices",
    "build_services",
    "get_services",
    "reset_services",
]
