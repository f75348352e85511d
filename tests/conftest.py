"""
Shared fixtures: in-memory backends, a wired service container and a
per-test event loop for driving the async services from sync tests.
"""

import asyncio
import os
from decimal import Decimal

os.environ["ENV_MODE"] = "development"

import pytest

from app.core.config import Settings, get_settings
from app.models import OrderType
from app.services import build_services, reset_services
from app.services.notifications import InMemoryChannelBroker
from app.services.store import InMemoryOrderStore, OrderItem


ITEMS = [
    OrderItem("m1", "Mohinga", 2, Decimal("3500.00")),
    OrderItem("m2", "Lime Juice", 1, Decimal("1500.00")),
]


def make_settings(**overrides) -> Settings:
    return Settings(env_mode="development", **overrides)


@pytest.fixture(autouse=True)
def _fresh_singletons():
    get_settings.cache_clear()
    reset_services()
    yield
    reset_services()
    get_settings.cache_clear()


@pytest.fixture
def run():
    loop = asyncio.new_event_loop()
    yield loop.run_until_complete
    loop.close()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def store():
    return InMemoryOrderStore()


@pytest.fixture
def broker():
    return InMemoryChannelBroker()


@pytest.fixture
def services(store, broker, settings):
    return build_services(store=store, broker=broker, settings=settings)


@pytest.fixture
def place_order(services):
    """Returns a coroutine factory creating a paid order with sensible defaults."""

    def _place(**overrides):
        kwargs = dict(
            customer_id="cust-1",
            restaurant_id="rest-1",
            order_type=OrderType.DINE_IN,
            items=ITEMS,
            payment_method="kbzpay",
        )
        kwargs.update(overrides)
        return services.ledger.create(**kwargs)

    return _place
