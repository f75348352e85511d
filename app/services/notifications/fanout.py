"""
Notification Fan-out

Turns ledger events into persisted notifications and publishes them on
per-scope channels:

    restaurant:{id}  order_created, status_changed (cancelled only)
    customer:{id}    status_changed, comment_reply, rating_prompt

Every notification is written to the store before it is published, so a
subscriber that misses a live event still finds it on its next fetch.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from app.core.config import Settings, get_settings
from app.core.exceptions import NotFoundError, ValidationError
from app.models import NotificationKind, OrderStatus, ReadState
from app.services.ledger import OrderEventListener
from app.services.notifications.base import BaseChannelBroker
from app.services.store import BaseOrderStore, Notification, Order, Scope, utcnow, within_budget

logger = logging.getLogger(__name__)


STATUS_MESSAGES = {
    OrderStatus.PREPARING: ("Order is being prepared", "The kitchen has started on your order."),
    OrderStatus.READY: ("Order is ready", "Your order is ready. Show your QR code to the staff."),
    OrderStatus.SERVED: ("Order served", "Your order has been served. Enjoy your meal!"),
    OrderStatus.COMPLETED: ("Order completed", "Thank you! Your order is complete."),
    OrderStatus.CANCELLED: ("Order cancelled", "Your order has been cancelled."),
}


def _short(order_id: str) -> str:
    return order_id[:8].upper()


class NotificationFanout(OrderEventListener):
    """
    Publishes notifications and manages their read state.

    Attributes:
        store: Persists notifications
        broker: Delivers them to live subscribers
    """

    def __init__(
        self,
        store: BaseOrderStore,
        broker: BaseChannelBroker,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.broker = broker
        self.settings = settings or get_settings()
        self._last_created_at: Optional[datetime] = None

    async def _call(self, awaitable, operation: str):
        return await within_budget(awaitable, self.settings.store_timeout_seconds, operation)

    def _next_timestamp(self) -> datetime:
        # Strictly increasing so created_at ordering matches publish order
        now = utcnow()
        if self._last_created_at is not None and now <= self._last_created_at:
            now = self._last_created_at + timedelta(microseconds=1)
        self._last_created_at = now
        return now

    # =========================================================================
    # PUBLISHING
    # =========================================================================

    async def publish(
        self,
        scope: Scope,
        kind: NotificationKind,
        title: str,
        message: str,
        order_id: Optional[str] = None,
        blog_post_id: Optional[str] = None,
        reply_content: Optional[str] = None,
    ) -> Notification:
        """Persist a notification, then deliver it on the scope's channel."""
        notification = Notification(
            id=str(uuid.uuid4()),
            scope=scope,
            kind=kind,
            title=title,
            message=message,
            created_at=self._next_timestamp(),
            order_id=order_id,
            blog_post_id=blog_post_id,
            reply_content=reply_content,
        )
        await self._call(self.store.insert_notification(notification), "notification insert")
        await self.broker.publish(scope.topic, notification)
        logger.info(f"Notification {kind.value} -> {scope.topic}")
        return notification

    async def order_created(self, order: Order) -> None:
        await self.publish(
            Scope.restaurant(order.restaurant_id),
            NotificationKind.ORDER_CREATED,
            "New order received",
            f"Order #{_short(order.id)}: {len(order.items)} item(s), "
            f"{order.total_amount} {self.settings.currency} ({order.order_type.value.replace('_', '-')})",
            order_id=order.id,
        )

    async def status_changed(self, order: Order, previous: OrderStatus) -> None:
        title, message = STATUS_MESSAGES[order.status]
        await self.publish(
            Scope.customer(order.customer_id),
            NotificationKind.STATUS_CHANGED,
            title,
            f"Order #{_short(order.id)}: {message}",
            order_id=order.id,
        )

        if order.status == OrderStatus.CANCELLED:
            await self.publish(
                Scope.restaurant(order.restaurant_id),
                NotificationKind.STATUS_CHANGED,
                "Order cancelled",
                f"Order #{_short(order.id)} was cancelled while {previous.value}.",
                order_id=order.id,
            )

        if order.status == OrderStatus.COMPLETED and self.settings.rating_prompt_on_completion:
            await self.publish(
                Scope.customer(order.customer_id),
                NotificationKind.RATING_PROMPT,
                "How was your meal?",
                "Rate your experience to help the restaurant improve.",
                order_id=order.id,
            )

    async def notify_comment_reply(
        self,
        customer_id: str,
        blog_post_id: str,
        reply_content: str,
        restaurant_name: Optional[str] = None,
    ) -> Notification:
        """A restaurant replied to a customer's comment on one of its posts."""
        if not customer_id or not blog_post_id:
            raise ValidationError("customer_id and blog_post_id are required")
        if not reply_content or not reply_content.strip():
            raise ValidationError("Reply content must not be empty")

        author = restaurant_name or "The restaurant"
        return await self.publish(
            Scope.customer(customer_id),
            NotificationKind.COMMENT_REPLY,
            f"{author} replied to your comment",
            reply_content.strip()[:140],
            blog_post_id=blog_post_id,
            reply_content=reply_content.strip(),
        )

    # =========================================================================
    # READING
    # =========================================================================

    async def recent(self, scope: Scope, limit: Optional[int] = None) -> list[Notification]:
        """Most recent notifications of a channel, newest first."""
        limit = self.settings.notification_history_limit if limit is None else limit
        return await self._call(self.store.list_notifications(scope, limit=limit), "notification fetch")

    async def get(self, notification_id: str) -> Notification:
        notification = await self._call(self.store.get_notification(notification_id), "notification lookup")
        if notification is None:
            raise NotFoundError(f"Notification {notification_id} not found")
        return notification

    async def mark_read(self, notification_id: str) -> Notification:
        """Mark one notification read. Marking it again changes nothing."""
        notification = await self.get(notification_id)
        if notification.is_unread:
            await self._call(
                self.store.update_read_state([notification_id], ReadState.READ),
                "notification update",
            )
        return await self.get(notification_id)

    async def mark_all_read(self, scope: Scope) -> list[str]:
        """
        Mark the scope's currently unread notifications as read.

        Notifications published after the snapshot stay unread.

        Returns:
            Ids that were unread at call time
        """
        unread = await self._call(
            self.store.list_notifications(scope, unread_only=True),
            "notification fetch",
        )
        ids = [n.id for n in unread]
        if ids:
            changed = await self._call(self.store.update_read_state(ids, ReadState.READ), "notification update")
            logger.info(f"Marked {changed} notification(s) read on {scope.topic}")
        return ids

    async def unread_count(self, scope: Scope) -> int:
        return await self._call(self.store.count_unread(scope), "unread count")
