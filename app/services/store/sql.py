"""
PostgreSQL Order Store

Production implementation on SQLAlchemy's async engine (psycopg driver).

Guarantees come from the database itself:
    - UNIQUE index on orders.qr_token rejects colliding tokens
    - Status changes are a single conditional UPDATE ... WHERE status = :expected
    - Read state only moves through UPDATE ... WHERE read_state = 'unread'

Connection failures and driver timeouts are reported as TransientError.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Iterator, Optional

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import ConflictError, DuplicateTokenError, TransientError, ValidationError
from app.database import get_session_maker
from app.models import (
    LoyaltySummaryRow,
    NotificationRow,
    OrderRow,
    OrderStatus,
    ReadState,
)
from app.services.store.base import (
    BaseOrderStore,
    LoyaltySummary,
    Notification,
    Order,
    OrderItem,
    Reservation,
    Scope,
)

logger = logging.getLogger(__name__)


# =============================================================================
# ROW <-> RECORD MAPPING
# =============================================================================

def _order_to_row(order: Order) -> OrderRow:
    reservation = order.reservation or Reservation()
    return OrderRow(
        id=order.id,
        customer_id=order.customer_id,
        restaurant_id=order.restaurant_id,
        order_type=order.order_type,
        order_items=[item.to_dict() for item in order.items],
        total_amount=order.total_amount,
        payment_method=order.payment_method,
        status=order.status,
        qr_token=order.qr_token,
        reservation_date=reservation.reservation_date,
        reservation_time=reservation.reservation_time,
        party_size=reservation.party_size,
        created_at=order.created_at,
        updated_at=order.updated_at,
    )


def _row_to_order(row: OrderRow) -> Order:
    reservation = None
    if row.reservation_date or row.reservation_time or row.party_size:
        reservation = Reservation(
            reservation_date=row.reservation_date,
            reservation_time=row.reservation_time,
            party_size=row.party_size,
        )
    return Order(
        id=row.id,
        customer_id=row.customer_id,
        restaurant_id=row.restaurant_id,
        order_type=row.order_type,
        items=tuple(OrderItem.from_dict(item) for item in row.order_items),
        total_amount=Decimal(row.total_amount),
        payment_method=row.payment_method,
        status=row.status,
        qr_token=row.qr_token,
        created_at=row.created_at,
        updated_at=row.updated_at,
        reservation=reservation,
    )


def _notification_to_row(notification: Notification) -> NotificationRow:
    return NotificationRow(
        id=notification.id,
        scope_kind=notification.scope.kind,
        scope_id=notification.scope.id,
        kind=notification.kind,
        order_id=notification.order_id,
        blog_post_id=notification.blog_post_id,
        title=notification.title,
        message=notification.message,
        reply_content=notification.reply_content,
        read_state=notification.read_state,
        created_at=notification.created_at,
    )


def _row_to_notification(row: NotificationRow) -> Notification:
    return Notification(
        id=row.id,
        scope=Scope(row.scope_kind, row.scope_id),
        kind=row.kind,
        title=row.title,
        message=row.message,
        created_at=row.created_at,
        read_state=row.read_state,
        order_id=row.order_id,
        blog_post_id=row.blog_post_id,
        reply_content=row.reply_content,
    )


def _row_to_summary(row: LoyaltySummaryRow) -> LoyaltySummary:
    return LoyaltySummary(
        customer_id=row.customer_id,
        total_points=row.total_points,
        total_completed_orders=row.total_completed_orders,
        total_spent=Decimal(row.total_spent),
        current_badge=row.current_badge,
        updated_at=row.updated_at,
    )


@contextmanager
def _backend_errors() -> Iterator[None]:
    """Translate connection-level failures into TransientError."""
    try:
        yield
    except (OperationalError, InterfaceError) as e:
        logger.warning(f"Store unavailable: {e}")
        raise TransientError("Order store unavailable", detail=str(e)) from e
    except DBAPIError as e:
        if e.connection_invalidated:
            logger.warning(f"Store connection lost: {e}")
            raise TransientError("Order store connection lost", detail=str(e)) from e
        raise


class SQLAlchemyOrderStore(BaseOrderStore):
    """Order store backed by PostgreSQL."""

    def __init__(self, session_maker: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_maker = session_maker or get_session_maker()
        logger.info("SQLAlchemyOrderStore initialized")

    @property
    def provider_name(self) -> str:
        return "postgresql"

    # -- orders ---------------------------------------------------------------

    async def insert_order(self, order: Order) -> Order:
        with _backend_errors():
            async with self._session_maker() as session:
                session.add(_order_to_row(order))
                try:
                    await session.commit()
                except IntegrityError as e:
                    await session.rollback()
                    if "qr_token" in str(e.orig):
                        raise DuplicateTokenError(f"QR token already issued: {order.qr_token}") from e
                    raise ConflictError(f"Order {order.id} already exists") from e
        return order

    async def get_order(self, order_id: str) -> Optional[Order]:
        with _backend_errors():
            async with self._session_maker() as session:
                row = await session.get(OrderRow, order_id)
                return _row_to_order(row) if row else None

    async def get_order_by_token(self, qr_token: str) -> Optional[Order]:
        with _backend_errors():
            async with self._session_maker() as session:
                result = await session.execute(
                    select(OrderRow).where(OrderRow.qr_token == qr_token)
                )
                row = result.scalar_one_or_none()
                return _row_to_order(row) if row else None

    async def compare_and_set_status(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        updated_at: datetime,
    ) -> Optional[Order]:
        with _backend_errors():
            async with self._session_maker() as session:
                result = await session.execute(
                    update(OrderRow)
                    .where(OrderRow.id == order_id, OrderRow.status == expected)
                    .values(status=new, updated_at=updated_at)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                if result.rowcount != 1:
                    return None
                row = await session.get(OrderRow, order_id, populate_existing=True)
                return _row_to_order(row) if row else None

    async def query_orders(
        self,
        *,
        customer_id: Optional[str] = None,
        restaurant_id: Optional[str] = None,
        statuses: Optional[Iterable[OrderStatus]] = None,
    ) -> list[Order]:
        query = select(OrderRow).order_by(OrderRow.created_at.desc())
        if customer_id is not None:
            query = query.where(OrderRow.customer_id == customer_id)
        if restaurant_id is not None:
            query = query.where(OrderRow.restaurant_id == restaurant_id)
        if statuses is not None:
            query = query.where(OrderRow.status.in_(list(statuses)))

        with _backend_errors():
            async with self._session_maker() as session:
                result = await session.execute(query)
                return [_row_to_order(row) for row in result.scalars().all()]

    # -- notifications --------------------------------------------------------

    async def insert_notification(self, notification: Notification) -> Notification:
        with _backend_errors():
            async with self._session_maker() as session:
                session.add(_notification_to_row(notification))
                try:
                    await session.commit()
                except IntegrityError as e:
                    await session.rollback()
                    raise ConflictError(f"Notification {notification.id} already exists") from e
        return notification

    async def get_notification(self, notification_id: str) -> Optional[Notification]:
        with _backend_errors():
            async with self._session_maker() as session:
                row = await session.get(NotificationRow, notification_id)
                return _row_to_notification(row) if row else None

    async def list_notifications(
        self,
        scope: Scope,
        limit: Optional[int] = None,
        unread_only: bool = False,
    ) -> list[Notification]:
        query = (
            select(NotificationRow)
            .where(
                NotificationRow.scope_kind == scope.kind,
                NotificationRow.scope_id == scope.id,
            )
            .order_by(NotificationRow.created_at.desc())
            .limit(limit)
        )
        if unread_only:
            query = query.where(NotificationRow.read_state == ReadState.UNREAD)

        with _backend_errors():
            async with self._session_maker() as session:
                result = await session.execute(query)
                return [_row_to_notification(row) for row in result.scalars().all()]

    async def update_read_state(
        self,
        notification_ids: Iterable[str],
        state: ReadState,
    ) -> int:
        if state != ReadState.READ:
            raise ValidationError("Notifications can only be marked as read")
        ids = list(notification_ids)
        if not ids:
            return 0

        with _backend_errors():
            async with self._session_maker() as session:
                result = await session.execute(
                    update(NotificationRow)
                    .where(
                        NotificationRow.id.in_(ids),
                        NotificationRow.read_state == ReadState.UNREAD,
                    )
                    .values(read_state=state)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                return result.rowcount

    async def count_unread(self, scope: Scope) -> int:
        with _backend_errors():
            async with self._session_maker() as session:
                result = await session.execute(
                    select(func.count(NotificationRow.id)).where(
                        NotificationRow.scope_kind == scope.kind,
                        NotificationRow.scope_id == scope.id,
                        NotificationRow.read_state == ReadState.UNREAD,
                    )
                )
                return result.scalar() or 0

    # -- loyalty --------------------------------------------------------------

    async def get_loyalty_summary(self, customer_id: str) -> Optional[LoyaltySummary]:
        with _backend_errors():
            async with self._session_maker() as session:
                row = await session.get(LoyaltySummaryRow, customer_id)
                return _row_to_summary(row) if row else None

    async def upsert_loyalty_summary(self, summary: LoyaltySummary) -> LoyaltySummary:
        values = {
            "customer_id": summary.customer_id,
            "total_points": summary.total_points,
            "total_completed_orders": summary.total_completed_orders,
            "total_spent": summary.total_spent,
            "current_badge": summary.current_badge,
            "updated_at": summary.updated_at,
        }
        stmt = pg_insert(LoyaltySummaryRow).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[LoyaltySummaryRow.customer_id],
            set_={key: value for key, value in values.items() if key != "customer_id"},
            where=LoyaltySummaryRow.total_completed_orders <= stmt.excluded.total_completed_orders,
        ).returning(LoyaltySummaryRow.customer_id)

        with _backend_errors():
            async with self._session_maker() as session:
                written = (await session.execute(stmt)).first()
                await session.commit()
                if written is not None:
                    return summary
                # A newer summary is already stored
                row = await session.get(LoyaltySummaryRow, summary.customer_id)
                return _row_to_summary(row)

    # -- lifecycle ------------------------------------------------------------

    async def health_check(self) -> bool:
        try:
            async with self._session_maker() as session:
                await session.execute(select(func.now()))
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    async def close(self) -> None:
        from app.database import dispose_db
        await dispose_db()
