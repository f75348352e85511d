"""
FastAPI Application Entry Point

Restaurant Order Fulfillment - Hybrid Architecture
Runs on in-memory backends in development and on PostgreSQL + Redis in
staging/production.

Endpoints:
    - POST /api/orders: Checkout (creates a paid order with its QR token)
    - GET  /api/orders/{id}: Single order, /qr.svg renders its QR code
    - POST /api/orders/{id}/transition: Move an order through fulfillment
    - GET  /api/restaurants/{id}/orders: Restaurant order board
    - GET  /api/customers/{id}/orders: Customer order history
    - POST /api/scan/resolve, /api/scan/complete: Staff QR verification
    - /api/notifications/...: Channel history and read state
    - GET  /api/customers/{id}/loyalty: Loyalty badge and points
    - WS   /ws/notifications/{scope}/{id}: Live channel
    - WS   /ws/scanner/{staff_client_id}: Scan session
    - GET  /health: System health check

Identity comes from the x-user-id / x-user-role headers.

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from app.core.config import get_settings, setup_logging
from app.core.exceptions import OrderingError, PermissionDeniedError, ValidationError
from app.database import init_db
from app.models import ActorRole, OrderStatus, OrderType, ScopeKind
from app.schemas import (
    CommentReplyCreate,
    ErrorResponse,
    HealthResponse,
    LoyaltySummaryResponse,
    MarkAllReadResponse,
    NotificationListResponse,
    NotificationResponse,
    OrderCreate,
    OrderListResponse,
    OrderResponse,
    ScanRequest,
    TransitionRequest,
    UnreadCountResponse,
)
from app.services import OrderingServices, get_services
from app.services.ledger import OrderFilters
from app.services.loyalty import BADGE_INFO
from app.services.notifications import NotificationFeed
from app.services.scanning import ManualScanCapture
from app.services.store import Notification, Order, Scope

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    if settings.use_real_services:
        await init_db()
        logger.info("✅ Database initialized")

        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"⚠️ Missing production config: {missing}")

    services = get_services()
    logger.info(f"✅ Order Store: {services.store.provider_name}")
    logger.info(f"✅ Channel Broker: {services.broker.provider_name}")
    logger.info("✅ Application ready!")

    yield  # Application runs

    logger.info("Shutting down...")
    await services.close()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Order fulfillment, QR verification, notification fan-out and loyalty "
        "for the restaurant ordering app."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# DEPENDENCIES
# =============================================================================

@dataclass(frozen=True)
class Actor:
    user_id: Optional[str]
    role: ActorRole

    @property
    def is_staff(self) -> bool:
        return self.role in (ActorRole.RESTAURANT_STAFF, ActorRole.ADMIN)


def _parse_role(value: Optional[str]) -> ActorRole:
    try:
        return ActorRole((value or ActorRole.CUSTOMER.value).strip().lower())
    except ValueError:
        raise PermissionDeniedError(f"Unknown role: {value}")


async def get_actor(
    x_user_id: Optional[str] = Header(None, alias="x-user-id"),
    x_user_role: Optional[str] = Header(None, alias="x-user-role"),
) -> Actor:
    return Actor(user_id=x_user_id, role=_parse_role(x_user_role))


def ordering_services() -> OrderingServices:
    return get_services()


def require_staff(actor: Actor) -> None:
    if not actor.is_staff:
        raise PermissionDeniedError("Restaurant staff role required")


def require_self_or_staff(actor: Actor, customer_id: str) -> None:
    if not actor.is_staff and actor.user_id != customer_id:
        raise PermissionDeniedError("Customers can only access their own records")


def _scope(kind: str, scope_id: str) -> Scope:
    try:
        return Scope(ScopeKind(kind), scope_id)
    except ValueError:
        raise ValidationError(f"Unknown channel kind: {kind}")


def _order_list(orders: list[Order]) -> OrderListResponse:
    return OrderListResponse(
        total=len(orders),
        orders=[OrderResponse.model_validate(o) for o in orders],
    )


def _filters(
    order_type: Optional[OrderType],
    status: Optional[OrderStatus],
    on_date: Optional[date],
) -> OrderFilters:
    return OrderFilters(order_type=order_type, status=status, on_date=on_date)


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"🍜 Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(services: OrderingServices = Depends(ordering_services)) -> HealthResponse:
    """Verify the order store and channel broker are reachable."""
    store_status = "healthy" if await services.store.health_check() else "unhealthy"
    channel_status = "healthy" if await services.broker.health_check() else "unhealthy"

    overall = "operational" if store_status == channel_status == "healthy" else "degraded"
    if overall != "operational":
        logger.warning(f"Health check degraded: store={store_status}, channels={channel_status}")

    return HealthResponse(
        status=overall,
        store=store_status,
        channels=channel_status,
        timestamp=datetime.now(timezone.utc),
    )


# =============================================================================
# ORDER API ENDPOINTS
# =============================================================================

@app.post(
    "/api/orders",
    response_model=OrderResponse,
    status_code=201,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    tags=["Orders"],
    summary="Checkout",
)
async def create_order(
    order_data: OrderCreate,
    actor: Actor = Depends(get_actor),
    services: OrderingServices = Depends(ordering_services),
) -> OrderResponse:
    """Create a paid order for the calling customer and issue its QR token."""
    if not actor.user_id:
        raise ValidationError("x-user-id header is required to place an order")

    order = await services.ledger.create(
        customer_id=actor.user_id,
        restaurant_id=order_data.restaurant_id,
        order_type=order_data.order_type,
        items=[item.to_item() for item in order_data.items],
        payment_method=order_data.payment_method,
        reservation=order_data.reservation.to_reservation() if order_data.reservation else None,
    )
    return OrderResponse.model_validate(order)


@app.get(
    "/api/orders/{order_id}",
    response_model=OrderResponse,
    responses={404: {"model": ErrorResponse}},
    tags=["Orders"],
)
async def get_order(
    order_id: str,
    services: OrderingServices = Depends(ordering_services),
) -> OrderResponse:
    """Get a specific order by ID."""
    return OrderResponse.model_validate(await services.ledger.get(order_id))


@app.get(
    "/api/orders/{order_id}/qr.svg",
    response_class=Response,
    tags=["Orders"],
)
async def get_order_qr(
    order_id: str,
    services: OrderingServices = Depends(ordering_services),
) -> Response:
    """The order's QR code as SVG; the encoded payload is the raw token."""
    order = await services.ledger.get(order_id)
    return Response(content=services.tokens.render_svg(order.qr_token), media_type="image/svg+xml")


@app.post(
    "/api/orders/{order_id}/transition",
    response_model=OrderResponse,
    responses={
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
    tags=["Orders"],
)
async def transition_order(
    order_id: str,
    body: TransitionRequest,
    actor: Actor = Depends(get_actor),
    services: OrderingServices = Depends(ordering_services),
) -> OrderResponse:
    """Request a status change. Requesting the current status is a no-op."""
    if not actor.is_staff:
        order = await services.ledger.get(order_id)
        require_self_or_staff(actor, order.customer_id)

    order = await services.ledger.transition(order_id, body.status, actor.role)
    return OrderResponse.model_validate(order)


@app.get(
    "/api/restaurants/{restaurant_id}/orders",
    response_model=OrderListResponse,
    tags=["Orders"],
)
async def list_restaurant_orders(
    restaurant_id: str,
    order_type: Optional[OrderType] = Query(None),
    status: Optional[OrderStatus] = Query(None),
    on_date: Optional[date] = Query(None, alias="date"),
    skip: int = Query(0, ge=0),
    limit: Optional[int] = Query(None, ge=1, le=500),
    actor: Actor = Depends(get_actor),
    services: OrderingServices = Depends(ordering_services),
) -> OrderListResponse:
    """Restaurant order board, newest first."""
    require_staff(actor)
    orders = await services.ledger.list_by_restaurant(
        restaurant_id, _filters(order_type, status, on_date), limit=limit, offset=skip
    )
    return _order_list(orders)


@app.get(
    "/api/customers/{customer_id}/orders",
    response_model=OrderListResponse,
    tags=["Orders"],
)
async def list_customer_orders(
    customer_id: str,
    order_type: Optional[OrderType] = Query(None),
    status: Optional[OrderStatus] = Query(None),
    on_date: Optional[date] = Query(None, alias="date"),
    skip: int = Query(0, ge=0),
    limit: Optional[int] = Query(None, ge=1, le=500),
    actor: Actor = Depends(get_actor),
    services: OrderingServices = Depends(ordering_services),
) -> OrderListResponse:
    """A customer's order history, newest first."""
    require_self_or_staff(actor, customer_id)
    orders = await services.ledger.list_by_customer(
        customer_id, _filters(order_type, status, on_date), limit=limit, offset=skip
    )
    return _order_list(orders)


# =============================================================================
# SCAN ENDPOINTS
# =============================================================================

@app.post(
    "/api/scan/resolve",
    response_model=OrderResponse,
    responses={404: {"model": ErrorResponse}},
    tags=["Scanning"],
)
async def resolve_scan(
    body: ScanRequest,
    actor: Actor = Depends(get_actor),
    services: OrderingServices = Depends(ordering_services),
) -> OrderResponse:
    """Look up the order behind a scanned QR code."""
    require_staff(actor)
    return OrderResponse.model_validate(await services.tokens.resolve(body.payload))


@app.post(
    "/api/scan/complete",
    response_model=OrderResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Scanning"],
)
async def complete_scan(
    body: ScanRequest,
    actor: Actor = Depends(get_actor),
    services: OrderingServices = Depends(ordering_services),
) -> OrderResponse:
    """Resolve a scanned code and mark its order completed. Scanning twice is harmless."""
    require_staff(actor)
    order = await services.tokens.resolve(body.payload)
    order = await services.ledger.transition(order.id, OrderStatus.COMPLETED, actor.role)
    return OrderResponse.model_validate(order)


# =============================================================================
# NOTIFICATION ENDPOINTS
# =============================================================================

@app.post(
    "/api/notifications/comment-reply",
    response_model=NotificationResponse,
    status_code=201,
    tags=["Notifications"],
)
async def comment_reply(
    body: CommentReplyCreate,
    actor: Actor = Depends(get_actor),
    services: OrderingServices = Depends(ordering_services),
) -> NotificationResponse:
    """Notify a customer that a restaurant replied to their comment."""
    require_staff(actor)
    notification = await services.fanout.notify_comment_reply(
        body.customer_id, body.blog_post_id, body.reply_content, body.restaurant_name
    )
    return NotificationResponse.from_notification(notification)


@app.post(
    "/api/notifications/{notification_id}/read",
    response_model=NotificationResponse,
    responses={404: {"model": ErrorResponse}},
    tags=["Notifications"],
)
async def mark_notification_read(
    notification_id: str,
    services: OrderingServices = Depends(ordering_services),
) -> NotificationResponse:
    return NotificationResponse.from_notification(await services.fanout.mark_read(notification_id))


@app.get(
    "/api/notifications/{scope_kind}/{scope_id}",
    response_model=NotificationListResponse,
    tags=["Notifications"],
)
async def list_notifications(
    scope_kind: str,
    scope_id: str,
    limit: Optional[int] = Query(None, ge=1, le=200),
    services: OrderingServices = Depends(ordering_services),
) -> NotificationListResponse:
    """Most recent notifications of one channel."""
    scope = _scope(scope_kind, scope_id)
    notifications = await services.fanout.recent(scope, limit)
    return NotificationListResponse(
        unread_count=await services.fanout.unread_count(scope),
        notifications=[NotificationResponse.from_notification(n) for n in notifications],
    )


@app.get(
    "/api/notifications/{scope_kind}/{scope_id}/unread-count",
    response_model=UnreadCountResponse,
    tags=["Notifications"],
)
async def unread_count(
    scope_kind: str,
    scope_id: str,
    services: OrderingServices = Depends(ordering_services),
) -> UnreadCountResponse:
    return UnreadCountResponse(unread_count=await services.fanout.unread_count(_scope(scope_kind, scope_id)))


@app.post(
    "/api/notifications/{scope_kind}/{scope_id}/read-all",
    response_model=MarkAllReadResponse,
    tags=["Notifications"],
)
async def mark_all_read(
    scope_kind: str,
    scope_id: str,
    services: OrderingServices = Depends(ordering_services),
) -> MarkAllReadResponse:
    ids = await services.fanout.mark_all_read(_scope(scope_kind, scope_id))
    return MarkAllReadResponse(marked=len(ids), notification_ids=ids)


# =============================================================================
# LOYALTY ENDPOINTS
# =============================================================================

@app.get(
    "/api/customers/{customer_id}/loyalty",
    response_model=LoyaltySummaryResponse,
    tags=["Loyalty"],
)
async def get_loyalty(
    customer_id: str,
    actor: Actor = Depends(get_actor),
    services: OrderingServices = Depends(ordering_services),
) -> LoyaltySummaryResponse:
    require_self_or_staff(actor, customer_id)
    summary = await services.loyalty.get_summary(customer_id)
    info = BADGE_INFO[summary.current_badge]
    return LoyaltySummaryResponse(
        customer_id=summary.customer_id,
        total_points=summary.total_points,
        total_completed_orders=summary.total_completed_orders,
        total_spent=summary.total_spent,
        current_badge=summary.current_badge,
        badge_label=info.label,
        badge_description=info.description,
        badge_icon=info.icon,
        updated_at=summary.updated_at,
    )


# =============================================================================
# WEBSOCKETS
# =============================================================================

def _event(kind: str, **data: Any) -> dict[str, Any]:
    return {"type": kind, **data}


def _notification_json(notification: Notification) -> dict[str, Any]:
    return NotificationResponse.from_notification(notification).model_dump(mode="json")


@app.websocket("/ws/notifications/{scope_kind}/{scope_id}")
async def notifications_ws(websocket: WebSocket, scope_kind: str, scope_id: str) -> None:
    """
    Stream one channel: a `subscribed` frame, the `snapshot` of recent
    notifications, then one `notification` frame per live event.
    """
    try:
        scope = Scope(ScopeKind(scope_kind), scope_id)
    except ValueError:
        await websocket.close(code=1008)
        return

    await websocket.accept()
    services = get_services()
    queue: asyncio.Queue[Notification] = asyncio.Queue()

    async def enqueue(notification: Notification) -> None:
        queue.put_nowait(notification)

    feed = NotificationFeed(services.fanout, services.broker, scope, on_live=enqueue)

    async def sender() -> None:
        while True:
            notification = await queue.get()
            await websocket.send_json(_event("notification", notification=_notification_json(notification)))

    sender_task: Optional[asyncio.Task] = None
    try:
        await feed.attach()
        await websocket.send_json(_event("subscribed", channel=scope.topic))
        await websocket.send_json(_event(
            "snapshot",
            unread_count=feed.unread_count,
            notifications=[_notification_json(n) for n in feed.items],
        ))
        sender_task = asyncio.create_task(sender())

        while True:
            message = await websocket.receive_json()
            if message.get("action") == "mark_all_read":
                ids = await feed.mark_all_read()
                await websocket.send_json(_event("marked_read", notification_ids=ids))
    except WebSocketDisconnect:
        logger.debug(f"Notification socket for {scope.topic} disconnected")
    finally:
        if sender_task is not None:
            sender_task.cancel()
        await feed.detach()


@app.websocket("/ws/scanner/{staff_client_id}")
async def scanner_ws(websocket: WebSocket, staff_client_id: str) -> None:
    """
    Scan session for one staff device.

    Client frames: {"payload": <scanned value>} and {"action": "confirm"}.
    Payloads sent after a code has resolved get a "closed" frame; confirm
    still applies to the resolved order.
    Opening a second socket for the same device ends the first session.
    """
    try:
        role = _parse_role(websocket.headers.get("x-user-role"))
    except PermissionDeniedError:
        role = ActorRole.CUSTOMER
    if role == ActorRole.CUSTOMER:
        await websocket.close(code=1008)
        return

    await websocket.accept()
    services = get_services()
    capture = ManualScanCapture()
    session = await services.scans.start(staff_client_id, capture, role)
    await websocket.send_json(_event("scanning", staff_client_id=staff_client_id))

    try:
        while True:
            message = await websocket.receive_json()
            if session.closed:
                await websocket.send_json(_event("closed"))
                break

            if "payload" in message:
                accepted = await capture.submit(message["payload"])
                if not accepted:
                    # Capture stops after the first resolved code
                    await websocket.send_json(_event("closed"))
                elif session.result is not None:
                    order = OrderResponse.model_validate(session.result.order).model_dump(mode="json")
                    await websocket.send_json(_event("resolved", order=order))
                elif session.last_error is not None:
                    await websocket.send_json(_event("error", **session.last_error.to_dict()))
            elif message.get("action") == "confirm":
                try:
                    order = await session.confirm()
                except OrderingError as e:
                    await websocket.send_json(_event("error", **e.to_dict()))
                    continue
                await websocket.send_json(_event(
                    "completed",
                    order=OrderResponse.model_validate(order).model_dump(mode="json"),
                ))
    except WebSocketDisconnect:
        logger.debug(f"Scanner socket for {staff_client_id} disconnected")
    finally:
        if services.scans.get(staff_client_id) is session:
            await services.scans.stop(staff_client_id)


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(OrderingError)
async def ordering_exception_handler(request: Request, exc: OrderingError) -> JSONResponse:
    """Map expected ordering failures to their HTTP status."""
    if exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


# =============================================================================
# DEVELOPMENT SERVER
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
