"""
Order Store Abstract Base Class

Defines the records the ordering core reads and writes, and the interface
contract every backing store must implement. Both InMemoryOrderStore and
SQLAlchemyOrderStore honour the same guarantees:

    - qr_token is unique across all orders (DuplicateTokenError on collision)
    - status is only changed by compare_and_set_status
    - notification read_state only moves unread -> read

Design Pattern: Strategy Pattern
    - Development and tests run against the in-memory store
    - Staging/production run against PostgreSQL

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Awaitable, Iterable, Optional, TypeVar

from app.core.exceptions import TransientError
from app.models import (
    LoyaltyBadge,
    NotificationKind,
    OrderStatus,
    OrderType,
    ReadState,
    ScopeKind,
)

T = TypeVar("T")


def utcnow() -> datetime:
    """Timezone-aware current time used for every stored timestamp."""
    return datetime.now(timezone.utc)


async def within_budget(awaitable: Awaitable[T], seconds: float, operation: str) -> T:
    """
    Await a store or channel call under the caller's time budget.

    A call that does not answer in time is reported as TransientError;
    it may still have been applied, so callers must re-read, not assume.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as e:
        raise TransientError(f"{operation} timed out after {seconds}s") from e


# =============================================================================
# ORDER RECORDS
# =============================================================================

@dataclass(frozen=True)
class OrderItem:
    """One line of an order. Prices are decimals, never floats."""
    item_id: str
    name: str
    quantity: int
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "name": self.name,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrderItem":
        return cls(
            item_id=str(data["item_id"]),
            name=data["name"],
            quantity=int(data["quantity"]),
            unit_price=Decimal(str(data["unit_price"])),
        )


@dataclass(frozen=True)
class Reservation:
    """Dine-in booking details."""
    reservation_date: Optional[date] = None
    reservation_time: Optional[time] = None
    party_size: Optional[int] = None


@dataclass(frozen=True)
class Order:
    """
    A customer's purchase from one restaurant.

    Attributes:
        id: Opaque identifier assigned at creation
        items: Ordered, non-empty sequence of order lines
        total_amount: Sum of quantity x unit_price, computed server-side
        payment_method: Label only, no payment is processed
        qr_token: Unique, immutable scan token
    """
    id: str
    customer_id: str
    restaurant_id: str
    order_type: OrderType
    items: tuple[OrderItem, ...]
    total_amount: Decimal
    payment_method: str
    status: OrderStatus
    qr_token: str
    created_at: datetime
    updated_at: datetime
    reservation: Optional[Reservation] = None


# =============================================================================
# NOTIFICATION RECORDS
# =============================================================================

@dataclass(frozen=True)
class Scope:
    """A notification channel: one restaurant or one customer."""
    kind: ScopeKind
    id: str

    @classmethod
    def restaurant(cls, restaurant_id: str) -> "Scope":
        return cls(ScopeKind.RESTAURANT, restaurant_id)

    @classmethod
    def customer(cls, customer_id: str) -> "Scope":
        return cls(ScopeKind.CUSTOMER, customer_id)

    @property
    def topic(self) -> str:
        return f"{self.kind.value}:{self.id}"

    def __str__(self) -> str:
        return self.topic


@dataclass(frozen=True)
class Notification:
    """An event addressed to one channel. Ordered by created_at."""
    id: str
    scope: Scope
    kind: NotificationKind
    title: str
    message: str
    created_at: datetime
    read_state: ReadState = ReadState.UNREAD
    order_id: Optional[str] = None
    blog_post_id: Optional[str] = None
    reply_content: Optional[str] = None

    @property
    def is_unread(self) -> bool:
        return self.read_state == ReadState.UNREAD

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "scope_kind": self.scope.kind.value,
            "scope_id": self.scope.id,
            "kind": self.kind.value,
            "title": self.title,
            "message": self.message,
            "created_at": self.created_at.isoformat(),
            "read_state": self.read_state.value,
            "order_id": self.order_id,
            "blog_post_id": self.blog_post_id,
            "reply_content": self.reply_content,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Notification":
        return cls(
            id=data["id"],
            scope=Scope(ScopeKind(data["scope_kind"]), data["scope_id"]),
            kind=NotificationKind(data["kind"]),
            title=data["title"],
            message=data["message"],
            created_at=datetime.fromisoformat(data["created_at"]),
            read_state=ReadState(data.get("read_state", ReadState.UNREAD.value)),
            order_id=data.get("order_id"),
            blog_post_id=data.get("blog_post_id"),
            reply_content=data.get("reply_content"),
        )


# =============================================================================
# LOYALTY RECORDS
# =============================================================================

@dataclass(frozen=True)
class LoyaltySummary:
    """Derived loyalty standing of one customer."""
    customer_id: str
    total_points: int
    total_completed_orders: int
    total_spent: Decimal
    current_badge: LoyaltyBadge
    updated_at: datetime = field(default_factory=utcnow)


# =============================================================================
# STORE CONTRACT
# =============================================================================

class BaseOrderStore(ABC):
    """
    Abstract base class for order stores.

    Every method is a suspension point; implementations raise
    TransientError when the backend is unreachable, never return a
    guessed result.
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the store name (e.g. "memory", "postgresql")."""
        pass

    # -- orders ---------------------------------------------------------------

    @abstractmethod
    async def insert_order(self, order: Order) -> Order:
        """
        Persist a new order together with its token.

        Raises:
            DuplicateTokenError: qr_token already belongs to another order
            ConflictError: order id already exists
        """
        pass

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_order_by_token(self, qr_token: str) -> Optional[Order]:
        """Exact-match lookup on qr_token."""
        pass

    @abstractmethod
    async def compare_and_set_status(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        updated_at: datetime,
    ) -> Optional[Order]:
        """
        Set status to `new` only if it is currently `expected`.

        Returns:
            The updated order, or None when the persisted status differed
            (or the order does not exist).
        """
        pass

    @abstractmethod
    async def query_orders(
        self,
        *,
        customer_id: Optional[str] = None,
        restaurant_id: Optional[str] = None,
        statuses: Optional[Iterable[OrderStatus]] = None,
    ) -> list[Order]:
        """Coarse keyed lookup; finer predicates are applied by the caller."""
        pass

    # -- notifications --------------------------------------------------------

    @abstractmethod
    async def insert_notification(self, notification: Notification) -> Notification:
        pass

    @abstractmethod
    async def get_notification(self, notification_id: str) -> Optional[Notification]:
        pass

    @abstractmethod
    async def list_notifications(
        self,
        scope: Scope,
        limit: Optional[int] = None,
        unread_only: bool = False,
    ) -> list[Notification]:
        """Most recent first, at most `limit` entries (all when None)."""
        pass

    @abstractmethod
    async def update_read_state(
        self,
        notification_ids: Iterable[str],
        state: ReadState,
    ) -> int:
        """
        Move notifications to `state`.

        Only unread -> read is a valid move; returns how many rows changed.
        """
        pass

    @abstractmethod
    async def count_unread(self, scope: Scope) -> int:
        pass

    # -- loyalty --------------------------------------------------------------

    @abstractmethod
    async def get_loyalty_summary(self, customer_id: str) -> Optional[LoyaltySummary]:
        pass

    @abstractmethod
    async def upsert_loyalty_summary(self, summary: LoyaltySummary) -> LoyaltySummary:
        """
        Store `summary` unless the stored one counts more completed orders.

        Returns the summary that is cached after the call.
        """
        pass

    # -- lifecycle ------------------------------------------------------------

    @abstractmethod
    async def health_check(self) -> bool:
        """Verify the backend is reachable."""
        pass

    async def close(self) -> None:
        """Release connections. No-op by default."""
        return None
