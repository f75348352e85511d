"""
Pydantic Schemas for Request/Response Validation

Covers checkout, status transitions, QR scans, notifications and
loyalty summaries.

Author: Khalil Bannouri
Version: 4.0.0
"""

from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, List, Optional, Union

from pydantic import BaseModel, Field, field_validator

from app.models import (
    LoyaltyBadge,
    NotificationKind,
    OrderStatus,
    OrderType,
    ReadState,
    ScopeKind,
)
from app.services.store import Notification, OrderItem, Reservation


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class OrderItemIn(BaseModel):
    """Single cart line."""
    item_id: str = Field(..., min_length=1, max_length=64, examples=["menu-42"])
    name: str = Field(..., min_length=1, max_length=100, examples=["Mohinga"])
    quantity: int = Field(..., ge=1, le=99, examples=[2])
    unit_price: Decimal = Field(..., ge=0, decimal_places=2, examples=["12500.00"])

    def to_item(self) -> OrderItem:
        return OrderItem(self.item_id, self.name, self.quantity, self.unit_price)


class ReservationIn(BaseModel):
    """Dine-in booking details."""
    reservation_date: Optional[date] = Field(None, examples=["2026-10-24"])
    reservation_time: Optional[time] = Field(None, examples=["19:30"])
    party_size: Optional[int] = Field(None, ge=1, le=50, examples=[4])

    def to_reservation(self) -> Reservation:
        return Reservation(self.reservation_date, self.reservation_time, self.party_size)


class OrderCreate(BaseModel):
    """Checkout request. The customer comes from the x-user-id header."""
    restaurant_id: str = Field(..., min_length=1, max_length=64)
    order_type: OrderType = Field(default=OrderType.DINE_IN, examples=["dine_in"])
    items: List[OrderItemIn] = Field(..., min_length=1)
    payment_method: str = Field(..., examples=["kbzpay", "wavepay", "mpu", "cash", "card"])
    reservation: Optional[ReservationIn] = None

    @field_validator("payment_method")
    @classmethod
    def normalize_payment_method(cls, v: str) -> str:
        return v.strip().lower()


class TransitionRequest(BaseModel):
    status: OrderStatus = Field(..., examples=["preparing"])


class ScanRequest(BaseModel):
    """A scanned QR payload: the raw text, or the parsed JSON object."""
    payload: Union[str, dict[str, Any]] = Field(..., examples=["ALAN-3F9A0C1B7E2D4A6C8B0E1F23"])


class CommentReplyCreate(BaseModel):
    customer_id: str = Field(..., min_length=1)
    blog_post_id: str = Field(..., min_length=1)
    reply_content: str = Field(..., min_length=1, max_length=2000)
    restaurant_name: Optional[str] = Field(None, max_length=100)


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class OrderItemResponse(BaseModel):
    item_id: str
    name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal

    class Config:
        from_attributes = True


class ReservationResponse(BaseModel):
    reservation_date: Optional[date]
    reservation_time: Optional[time]
    party_size: Optional[int]

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    """Response schema for a single order."""
    id: str
    customer_id: str
    restaurant_id: str
    order_type: OrderType
    items: List[OrderItemResponse]
    total_amount: Decimal
    payment_method: str
    status: OrderStatus
    qr_token: str
    created_at: datetime
    updated_at: datetime
    reservation: Optional[ReservationResponse] = None

    class Config:
        from_attributes = True


class OrderListResponse(BaseModel):
    """Response for listing multiple orders."""
    total: int
    orders: List[OrderResponse]


class NotificationResponse(BaseModel):
    id: str
    scope_kind: ScopeKind
    scope_id: str
    kind: NotificationKind
    title: str
    message: str
    created_at: datetime
    read_state: ReadState
    order_id: Optional[str] = None
    blog_post_id: Optional[str] = None
    reply_content: Optional[str] = None

    @classmethod
    def from_notification(cls, notification: Notification) -> "NotificationResponse":
        return cls.model_validate(notification.to_dict())


class NotificationListResponse(BaseModel):
    unread_count: int
    notifications: List[NotificationResponse]


class UnreadCountResponse(BaseModel):
    unread_count: int


class MarkAllReadResponse(BaseModel):
    marked: int
    notification_ids: List[str]


class LoyaltySummaryResponse(BaseModel):
    customer_id: str
    total_points: int
    total_completed_orders: int
    total_spent: Decimal
    current_badge: LoyaltyBadge
    badge_label: str
    badge_description: str
    badge_icon: str
    updated_at: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    store: str
    channels: str
    timestamp: datetime
