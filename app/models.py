"""
SQLAlchemy Database Models

Tables backing the order ledger:
- Orders with a unique QR token and a compare-and-set status column
- Channel-scoped notifications with read state
- Cached per-customer loyalty summaries

Author: Khalil Bannouri
Version: 4.0.0
"""

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    DateTime,
    Date,
    Time,
    Text,
    Enum,
    JSON,
    Index,
)
from app.database import Base
import enum


class OrderStatus(str, enum.Enum):
    """Order status workflow."""
    PAID = "paid"
    PREPARING = "preparing"
    READY = "ready"
    SERVED = "served"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class OrderType(str, enum.Enum):
    """Order type - Dine-in or Takeaway."""
    DINE_IN = "dine_in"
    TAKEAWAY = "takeaway"


class ActorRole(str, enum.Enum):
    """Who is asking for a status change."""
    CUSTOMER = "customer"
    RESTAURANT_STAFF = "restaurant_staff"
    ADMIN = "admin"


class ScopeKind(str, enum.Enum):
    """Notification channel families."""
    RESTAURANT = "restaurant"
    CUSTOMER = "customer"


class NotificationKind(str, enum.Enum):
    ORDER_CREATED = "order_created"
    STATUS_CHANGED = "status_changed"
    COMMENT_REPLY = "comment_reply"
    RATING_PROMPT = "rating_prompt"


class ReadState(str, enum.Enum):
    UNREAD = "unread"
    READ = "read"


class LoyaltyBadge(str, enum.Enum):
    """Tier labels, lowest first."""
    NEWBIE = "Newbie"
    EXPLORER = "Explorer"
    PREFERRED = "Preferred"
    LOYAL_CUSTOMER = "Loyal Customer"
    SUPER_CUSTOMER = "Super Customer"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class OrderRow(Base):
    """
    Main Order table - one row per checkout.

    Status is only ever written through a conditional UPDATE on the
    expected current status.
    """
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True)

    customer_id = Column(String(64), nullable=False, index=True)
    restaurant_id = Column(String(64), nullable=False, index=True)

    order_type = Column(
        Enum(OrderType, name="order_type", values_callable=_enum_values),
        nullable=False,
    )

    # JSON list of {item_id, name, quantity, unit_price}
    order_items = Column(JSON, nullable=False)
    total_amount = Column(Numeric(14, 2), nullable=False)
    payment_method = Column(String(32), nullable=False)

    status = Column(
        Enum(OrderStatus, name="order_status", values_callable=_enum_values),
        default=OrderStatus.PAID,
        nullable=False,
        index=True,
    )

    qr_token = Column(String(64), nullable=False, unique=True, index=True)

    # Dine-in reservation
    reservation_date = Column(Date, nullable=True)
    reservation_time = Column(Time, nullable=True)
    party_size = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_orders_restaurant_status_created_at", "restaurant_id", "status", "created_at"),
    )

    def __repr__(self):
        return f"<Order {self.id} - {self.order_type.value} - {self.status.value}>"


class NotificationRow(Base):
    """Notifications addressed to one restaurant or one customer channel."""
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True)

    scope_kind = Column(
        Enum(ScopeKind, name="notification_scope", values_callable=_enum_values),
        nullable=False,
    )
    scope_id = Column(String(64), nullable=False)

    kind = Column(
        Enum(NotificationKind, name="notification_kind", values_callable=_enum_values),
        nullable=False,
    )
    order_id = Column(String(36), nullable=True, index=True)
    blog_post_id = Column(String(64), nullable=True)

    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    reply_content = Column(Text, nullable=True)

    read_state = Column(
        Enum(ReadState, name="notification_read_state", values_callable=_enum_values),
        default=ReadState.UNREAD,
        nullable=False,
    )

    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_notifications_scope_created_at", "scope_kind", "scope_id", "created_at"),
    )

    def __repr__(self):
        return f"<Notification {self.id} - {self.scope_kind.value}:{self.scope_id} - {self.kind.value}>"


class LoyaltySummaryRow(Base):
    """Cached loyalty aggregate. Recomputable from completed orders."""
    __tablename__ = "customer_loyalty_summary"

    customer_id = Column(String(64), primary_key=True)
    total_points = Column(Integer, nullable=False, default=0)
    total_completed_orders = Column(Integer, nullable=False, default=0)
    total_spent = Column(Numeric(16, 2), nullable=False, default=0)
    current_badge = Column(
        Enum(LoyaltyBadge, name="loyalty_badge", values_callable=_enum_values),
        nullable=False,
        default=LoyaltyBadge.NEWBIE,
    )
    updated_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<LoyaltySummary {self.customer_id} - {self.current_badge.value}>"
