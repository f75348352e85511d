"""
Order Ledger

Owns Order records and the fulfillment state machine:

    paid ──► preparing ──► ready ──► served ──► completed
      │          │           │  └──────────────► completed
      └──────────┴───────────┴─────────┴───────► cancelled

`completed` and `cancelled` are terminal. Asking for the status an order
already has is an accepted no-op, so staff retries and double scans are
safe.

Every status write is a compare-and-set against the status read just
before it. When two requests race, the loser re-reads the order and
either finds its goal already reached (no-op), finds it unreachable
(ConflictError), or tries again.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import date, timezone, tzinfo
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional, Sequence, Union

from app.core.config import Settings, get_settings
from app.core.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from app.models import ActorRole, OrderStatus, OrderType
from app.services.qr_tokens import QRTokenService
from app.services.store import (
    BaseOrderStore,
    Order,
    OrderItem,
    Reservation,
    utcnow,
    within_budget,
)

logger = logging.getLogger(__name__)


# =============================================================================
# STATE MACHINE
# =============================================================================

ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PAID: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.READY, OrderStatus.CANCELLED}),
    OrderStatus.READY: frozenset({OrderStatus.SERVED, OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.SERVED: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})

PAYMENT_METHODS = frozenset({"mpu", "kbzpay", "wavepay", "cash", "card"})


def can_transition(current: OrderStatus, requested: OrderStatus) -> bool:
    """True when `requested` is a legal next status (same status excluded)."""
    return requested in ALLOWED_TRANSITIONS[current]


def check_permission(role: ActorRole, order: Order, requested: OrderStatus) -> None:
    """
    Customers may only cancel an order that has not started preparing;
    staff and admins may request any status.
    """
    if role in (ActorRole.RESTAURANT_STAFF, ActorRole.ADMIN):
        return
    if requested != OrderStatus.CANCELLED:
        raise PermissionDeniedError(f"Customers cannot mark an order as {requested.value}")
    if order.status not in (OrderStatus.PAID, OrderStatus.CANCELLED):
        raise PermissionDeniedError("Orders can only be cancelled by the customer before preparation starts")


# =============================================================================
# LISTENERS & FILTERS
# =============================================================================

class OrderEventListener:
    """
    Receives ledger events after they are committed.

    Listener failures never undo or fail the committed change.
    """

    async def order_created(self, order: Order) -> None:
        return None

    async def status_changed(self, order: Order, previous: OrderStatus) -> None:
        return None


@dataclass(frozen=True)
class OrderFilters:
    """Pure predicates for order listings. Unset fields match everything."""
    order_type: Optional[OrderType] = None
    status: Optional[OrderStatus] = None
    on_date: Optional[date] = None
    tz: tzinfo = timezone.utc

    def matches(self, order: Order) -> bool:
        if self.order_type is not None and order.order_type != self.order_type:
            return False
        if self.status is not None and order.status != self.status:
            return False
        if self.on_date is not None and order.created_at.astimezone(self.tz).date() != self.on_date:
            return False
        return True


# =============================================================================
# LEDGER
# =============================================================================

class OrderLedger:
    """
    The only writer of Order.status.

    Attributes:
        store: Backing order store
        tokens: Issues the order's QR token at creation
        listeners: Notified after creation and accepted transitions
    """

    def __init__(
        self,
        store: BaseOrderStore,
        tokens: QRTokenService,
        settings: Optional[Settings] = None,
        listeners: Iterable[OrderEventListener] = (),
    ):
        self.store = store
        self.tokens = tokens
        self.settings = settings or get_settings()
        self._listeners: list[OrderEventListener] = list(listeners)

    def add_listener(self, listener: OrderEventListener) -> None:
        self._listeners.append(listener)

    async def _call(self, awaitable, operation: str):
        return await within_budget(awaitable, self.settings.store_timeout_seconds, operation)

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create(
        self,
        customer_id: str,
        restaurant_id: str,
        order_type: Union[OrderType, str],
        items: Sequence[OrderItem],
        payment_method: str,
        reservation: Optional[Reservation] = None,
    ) -> Order:
        """
        Check out a cart.

        The total is recomputed from the items; the order and its QR token
        become visible in a single insert.

        Raises:
            ValidationError: empty cart, bad quantity/price, bad reservation
            ConflictError: no unique token could be issued
            TransientError: store did not answer within budget
        """
        if not customer_id or not restaurant_id:
            raise ValidationError("customer_id and restaurant_id are required")

        try:
            order_type = OrderType(order_type)
        except ValueError:
            raise ValidationError(f"Unknown order type: {order_type}")

        method = (payment_method or "").strip().lower()
        if method not in PAYMENT_METHODS:
            raise ValidationError(f"Unsupported payment method: {payment_method}")

        lines = self._validate_items(items)
        total = sum((item.line_total for item in lines), Decimal("0"))
        if total <= 0:
            raise ValidationError("Order total must be greater than zero")

        if reservation is not None:
            if order_type != OrderType.DINE_IN:
                raise ValidationError("Reservations are only accepted for dine-in orders")
            if reservation.party_size is not None and reservation.party_size < 1:
                raise ValidationError("Party size must be at least 1")

        now = utcnow()
        draft = Order(
            id=str(uuid.uuid4()),
            customer_id=customer_id,
            restaurant_id=restaurant_id,
            order_type=order_type,
            items=lines,
            total_amount=total,
            payment_method=method,
            status=OrderStatus.PAID,
            qr_token="",
            created_at=now,
            updated_at=now,
            reservation=reservation,
        )

        async def persist(token: str) -> Order:
            return await self._call(
                self.store.insert_order(replace(draft, qr_token=token)),
                "order insert",
            )

        order = await self.tokens.issue(persist)
        logger.info(
            f"Order {order.id} created for restaurant {restaurant_id} "
            f"({order_type.value}, {len(lines)} items, total={total})"
        )

        for listener in self._listeners:
            try:
                await listener.order_created(order)
            except Exception as e:
                logger.warning(f"Listener {type(listener).__name__} failed on order_created: {e}")

        return order

    @staticmethod
    def _validate_items(items: Sequence[OrderItem]) -> tuple[OrderItem, ...]:
        if not items:
            raise ValidationError("Cart is empty")

        lines = []
        for item in items:
            if not isinstance(item.quantity, int) or isinstance(item.quantity, bool) or item.quantity <= 0:
                raise ValidationError(f"Quantity for '{item.name}' must be a positive integer")
            try:
                price = Decimal(str(item.unit_price))
            except InvalidOperation:
                raise ValidationError(f"Invalid price for '{item.name}'")
            if not price.is_finite() or price < 0:
                raise ValidationError(f"Price for '{item.name}' must not be negative")
            if price.as_tuple().exponent < -2:
                raise ValidationError(f"Price for '{item.name}' has more than 2 decimal places")
            if not item.name or len(item.name) > 100:
                raise ValidationError("Item name must be 1-100 characters")
            lines.append(replace(item, unit_price=price))
        return tuple(lines)

    # =========================================================================
    # TRANSITION
    # =========================================================================

    async def transition(
        self,
        order_id: str,
        requested_status: Union[OrderStatus, str],
        actor_role: Union[ActorRole, str],
    ) -> Order:
        """
        Move an order to `requested_status`.

        Raises:
            NotFoundError: unknown order id
            PermissionDeniedError: role may not request this status
            ConflictError: edge not allowed from the persisted status
            TransientError: store did not answer within budget
        """
        try:
            requested = OrderStatus(requested_status)
        except ValueError:
            raise ValidationError(f"Unknown order status: {requested_status}")
        try:
            role = ActorRole(actor_role)
        except ValueError:
            raise PermissionDeniedError(f"Unknown actor role: {actor_role}")

        order = await self._load(order_id)

        for _ in range(self.settings.transition_max_attempts):
            check_permission(role, order, requested)

            if order.status == requested:
                logger.debug(f"Order {order_id} already {requested.value}, nothing to do")
                return order

            if not can_transition(order.status, requested):
                raise ConflictError(
                    f"Order {order_id} is {order.status.value} and cannot move to {requested.value}"
                )

            updated = await self._call(
                self.store.compare_and_set_status(order_id, order.status, requested, utcnow()),
                "status update",
            )
            if updated is not None:
                logger.info(
                    f"Order {order_id}: {order.status.value} -> {requested.value} (by {role.value})"
                )
                await self._emit_status_changed(updated, order.status)
                return updated

            logger.info(f"Order {order_id} changed concurrently, re-reading")
            order = await self._load(order_id)

        raise ConflictError(f"Order {order_id} kept changing, transition to {requested.value} abandoned")

    async def _emit_status_changed(self, order: Order, previous: OrderStatus) -> None:
        for listener in self._listeners:
            try:
                await listener.status_changed(order, previous)
            except Exception as e:
                logger.warning(f"Listener {type(listener).__name__} failed on status_changed: {e}")

    # =========================================================================
    # READ PROJECTIONS
    # =========================================================================

    async def _load(self, order_id: str) -> Order:
        order = await self._call(self.store.get_order(order_id), "order lookup")
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        return order

    async def get(self, order_id: str) -> Order:
        return await self._load(order_id)

    async def list_by_restaurant(
        self,
        restaurant_id: str,
        filters: Optional[OrderFilters] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Order]:
        """Orders of one restaurant, newest first."""
        orders = await self._call(
            self.store.query_orders(restaurant_id=restaurant_id, statuses=self._statuses(filters)),
            "order query",
        )
        return self._project(orders, filters, limit, offset)

    async def list_by_customer(
        self,
        customer_id: str,
        filters: Optional[OrderFilters] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Order]:
        """Orders of one customer, newest first."""
        orders = await self._call(
            self.store.query_orders(customer_id=customer_id, statuses=self._statuses(filters)),
            "order query",
        )
        return self._project(orders, filters, limit, offset)

    @staticmethod
    def _statuses(filters: Optional[OrderFilters]) -> Optional[list[OrderStatus]]:
        if filters is not None and filters.status is not None:
            return [filters.status]
        return None

    @staticmethod
    def _project(
        orders: Iterable[Order],
        filters: Optional[OrderFilters],
        limit: Optional[int],
        offset: int,
    ) -> list[Order]:
        filters = filters or OrderFilters()
        selected = sorted(
            (order for order in orders if filters.matches(order)),
            key=lambda order: order.created_at,
            reverse=True,
        )
        end = None if limit is None else offset + limit
        return selected[offset:end]
