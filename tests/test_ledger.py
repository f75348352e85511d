"""
Tests for app.services.ledger: order creation and the fulfillment state machine.
"""

import asyncio
import re
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from app.core.exceptions import (
    ConflictError,
    NotFoundError,
    OrderingError,
    PermissionDeniedError,
    TransientError,
    ValidationError,
)
from app.models import ActorRole, NotificationKind, OrderStatus, OrderType
from app.services import build_services
from app.services.ledger import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    OrderEventListener,
    OrderFilters,
    can_transition,
)
from app.services.store import InMemoryOrderStore, OrderItem, Reservation, Scope
from tests.conftest import ITEMS, make_settings

STAFF = ActorRole.RESTAURANT_STAFF
CUSTOMER = ActorRole.CUSTOMER

LEGAL_EDGES = {
    (OrderStatus.PAID, OrderStatus.PREPARING),
    (OrderStatus.PAID, OrderStatus.CANCELLED),
    (OrderStatus.PREPARING, OrderStatus.READY),
    (OrderStatus.PREPARING, OrderStatus.CANCELLED),
    (OrderStatus.READY, OrderStatus.SERVED),
    (OrderStatus.READY, OrderStatus.COMPLETED),
    (OrderStatus.READY, OrderStatus.CANCELLED),
    (OrderStatus.SERVED, OrderStatus.COMPLETED),
    (OrderStatus.SERVED, OrderStatus.CANCELLED),
}


def _status_changes(run, store, customer_id="cust-1"):
    notifications = run(store.list_notifications(Scope.customer(customer_id)))
    return [n for n in notifications if n.kind == NotificationKind.STATUS_CHANGED]


class TestStateMachine:
    def test_closure(self):
        for current in OrderStatus:
            for requested in OrderStatus:
                assert can_transition(current, requested) == ((current, requested) in LEGAL_EDGES)

    def test_terminal_statuses_have_no_edges(self):
        assert TERMINAL_STATUSES == {OrderStatus.COMPLETED, OrderStatus.CANCELLED}
        for status in TERMINAL_STATUSES:
            assert ALLOWED_TRANSITIONS[status] == frozenset()

    def test_every_status_has_an_entry(self):
        assert set(ALLOWED_TRANSITIONS) == set(OrderStatus)


class TestCreate:
    def test_creates_paid_order_with_server_total(self, run, place_order):
        order = run(place_order())
        assert order.status == OrderStatus.PAID
        assert order.total_amount == Decimal("8500.00")
        assert order.payment_method == "kbzpay"
        assert len(order.items) == 2

    def test_scenario_a_total(self, run, place_order):
        order = run(place_order(items=[OrderItem("m1", "Tea Leaf Salad", 2, Decimal("5000"))]))
        assert order.total_amount == Decimal("10000")

    def test_issues_prefixed_token(self, run, place_order):
        order = run(place_order())
        assert re.fullmatch(r"ALAN-[0-9A-F]{24}", order.qr_token)

    def test_tokens_are_unique(self, run, place_order):
        tokens = {run(place_order()).qr_token for _ in range(20)}
        assert len(tokens) == 20

    def test_notifies_restaurant(self, run, place_order, store):
        order = run(place_order())
        notifications = run(store.list_notifications(Scope.restaurant("rest-1")))
        assert [n.kind for n in notifications] == [NotificationKind.ORDER_CREATED]
        assert notifications[0].order_id == order.id

    def test_payment_method_is_normalized(self, run, place_order):
        assert run(place_order(payment_method=" WavePay ")).payment_method == "wavepay"

    def test_dine_in_reservation_kept(self, run, place_order):
        reservation = Reservation(party_size=4)
        order = run(place_order(reservation=reservation))
        assert order.reservation == reservation

    @pytest.mark.parametrize(
        "overrides,match",
        [
            ({"items": []}, "empty"),
            ({"items": [OrderItem("m1", "Mohinga", 0, Decimal("3500"))]}, "Quantity"),
            ({"items": [OrderItem("m1", "Mohinga", 1, Decimal("-1"))]}, "negative"),
            ({"items": [OrderItem("m1", "Water", 1, Decimal("0"))]}, "greater than zero"),
            ({"payment_method": "bitcoin"}, "payment method"),
            ({"customer_id": ""}, "required"),
            ({"order_type": "delivery"}, "order type"),
            ({"order_type": OrderType.TAKEAWAY, "reservation": Reservation(party_size=2)}, "dine-in"),
            ({"reservation": Reservation(party_size=0)}, "Party size"),
        ],
    )
    def test_rejects_invalid_checkout(self, run, place_order, store, overrides, match):
        with pytest.raises(ValidationError, match=match):
            run(place_order(**overrides))
        assert run(store.query_orders()) == []


class TestTransition:
    def test_scenario_a_full_lifecycle(self, run, place_order, services, store):
        order = run(place_order())
        for status in (OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.SERVED, OrderStatus.COMPLETED):
            order = run(services.ledger.transition(order.id, status, STAFF))
            assert order.status == status

        assert len(_status_changes(run, store)) == 4

    def test_scenario_b_skipping_is_rejected(self, run, place_order, services):
        order = run(place_order())
        with pytest.raises(ConflictError):
            run(services.ledger.transition(order.id, OrderStatus.SERVED, STAFF))
        assert run(services.ledger.get(order.id)).status == OrderStatus.PAID

    def test_same_status_is_a_silent_no_op(self, run, place_order, services, store):
        order = run(place_order())
        first = run(services.ledger.transition(order.id, OrderStatus.PREPARING, STAFF))
        second = run(services.ledger.transition(order.id, OrderStatus.PREPARING, STAFF))
        assert second == first
        assert len(_status_changes(run, store)) == 1

    def test_ready_may_complete_directly(self, run, place_order, services):
        order = run(place_order())
        run(services.ledger.transition(order.id, OrderStatus.PREPARING, STAFF))
        run(services.ledger.transition(order.id, OrderStatus.READY, STAFF))
        done = run(services.ledger.transition(order.id, OrderStatus.COMPLETED, STAFF))
        assert done.status == OrderStatus.COMPLETED

    @pytest.mark.parametrize("terminal", [OrderStatus.COMPLETED, OrderStatus.CANCELLED])
    def test_terminal_states_are_final(self, run, place_order, services, terminal):
        order = run(place_order())
        if terminal == OrderStatus.COMPLETED:
            run(services.ledger.transition(order.id, OrderStatus.PREPARING, STAFF))
            run(services.ledger.transition(order.id, OrderStatus.READY, STAFF))
        run(services.ledger.transition(order.id, terminal, STAFF))

        for status in OrderStatus:
            if status == terminal:
                continue
            with pytest.raises(ConflictError):
                run(services.ledger.transition(order.id, status, ActorRole.ADMIN))

    def test_scenario_e_completed_again_is_idempotent(self, run, place_order, services):
        order = run(place_order())
        for status in (OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.COMPLETED):
            run(services.ledger.transition(order.id, status, STAFF))
        again = run(services.ledger.transition(order.id, OrderStatus.COMPLETED, STAFF))
        assert again.status == OrderStatus.COMPLETED

    def test_scenario_e_cancelled_cannot_complete(self, run, place_order, services):
        order = run(place_order())
        run(services.ledger.transition(order.id, OrderStatus.CANCELLED, STAFF))
        with pytest.raises(ConflictError):
            run(services.ledger.transition(order.id, OrderStatus.COMPLETED, STAFF))

    def test_unknown_order(self, run, services):
        with pytest.raises(NotFoundError):
            run(services.ledger.transition("missing", OrderStatus.PREPARING, STAFF))

    def test_completion_prompts_for_rating(self, run, place_order, services, store):
        order = run(place_order())
        for status in (OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.COMPLETED):
            run(services.ledger.transition(order.id, status, STAFF))
        kinds = [n.kind for n in run(store.list_notifications(Scope.customer("cust-1")))]
        assert kinds.count(NotificationKind.RATING_PROMPT) == 1


class TestPermissions:
    def test_customer_may_cancel_paid_order(self, run, place_order, services, store):
        order = run(place_order())
        cancelled = run(services.ledger.transition(order.id, OrderStatus.CANCELLED, CUSTOMER))
        assert cancelled.status == OrderStatus.CANCELLED

        restaurant = run(store.list_notifications(Scope.restaurant("rest-1")))
        assert [n.kind for n in restaurant] == [NotificationKind.STATUS_CHANGED, NotificationKind.ORDER_CREATED]

    def test_customer_cannot_cancel_once_preparing(self, run, place_order, services):
        order = run(place_order())
        run(services.ledger.transition(order.id, OrderStatus.PREPARING, STAFF))
        with pytest.raises(PermissionDeniedError):
            run(services.ledger.transition(order.id, OrderStatus.CANCELLED, CUSTOMER))

    def test_customer_cannot_advance_fulfillment(self, run, place_order, services):
        order = run(place_order())
        with pytest.raises(PermissionDeniedError):
            run(services.ledger.transition(order.id, OrderStatus.PREPARING, CUSTOMER))

    def test_unknown_role_is_denied(self, run, place_order, services):
        order = run(place_order())
        with pytest.raises(PermissionDeniedError):
            run(services.ledger.transition(order.id, OrderStatus.PREPARING, "waiter"))

    def test_non_cancel_status_changes_stay_off_restaurant_channel(self, run, place_order, services, store):
        order = run(place_order())
        run(services.ledger.transition(order.id, OrderStatus.PREPARING, STAFF))
        restaurant = run(store.list_notifications(Scope.restaurant("rest-1")))
        assert [n.kind for n in restaurant] == [NotificationKind.ORDER_CREATED]


class TestConcurrency:
    @pytest.fixture
    def slow_services(self, broker, settings):
        store = InMemoryOrderStore(min_latency=0.001, max_latency=0.003)
        return build_services(store=store, broker=broker, settings=settings)

    def test_scenario_c_concurrent_ready(self, run, slow_services):
        ledger = slow_services.ledger
        order = run(ledger.create("cust-1", "rest-1", OrderType.DINE_IN, ITEMS, "cash"))
        run(ledger.transition(order.id, OrderStatus.PREPARING, STAFF))

        async def race():
            return await asyncio.gather(
                ledger.transition(order.id, OrderStatus.READY, STAFF),
                ledger.transition(order.id, OrderStatus.READY, STAFF),
            )

        first, second = run(race())
        assert first.status == second.status == OrderStatus.READY

        changes = _status_changes(run, slow_services.store)
        assert [n.title for n in changes].count("Order is ready") == 1

    def test_cancel_races_preparation(self, run, slow_services):
        ledger = slow_services.ledger
        order = run(ledger.create("cust-1", "rest-1", OrderType.DINE_IN, ITEMS, "cash"))

        async def race():
            return await asyncio.gather(
                ledger.transition(order.id, OrderStatus.PREPARING, STAFF),
                ledger.transition(order.id, OrderStatus.CANCELLED, CUSTOMER),
                return_exceptions=True,
            )

        results = run(race())
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1 and isinstance(losers[0], OrderingError)

        final = run(ledger.get(order.id))
        assert final.status == winners[0].status
        assert len(_status_changes(run, slow_services.store)) == 1

    def test_gives_up_after_repeated_lost_races(self, run, broker):
        class AlwaysLosingStore(InMemoryOrderStore):
            attempts = 0

            async def compare_and_set_status(self, *args, **kwargs):
                AlwaysLosingStore.attempts += 1
                return None

        settings = make_settings(transition_max_attempts=3)
        services = build_services(store=AlwaysLosingStore(), broker=broker, settings=settings)
        order = run(services.ledger.create("cust-1", "rest-1", OrderType.DINE_IN, ITEMS, "cash"))

        with pytest.raises(ConflictError):
            run(services.ledger.transition(order.id, OrderStatus.PREPARING, STAFF))
        assert AlwaysLosingStore.attempts == 3
        assert run(services.ledger.get(order.id)).status == OrderStatus.PAID


class TestFailures:
    def test_unavailable_store_is_transient(self, run, broker, settings):
        services = build_services(store=InMemoryOrderStore(failure_rate=1.0), broker=broker, settings=settings)
        with pytest.raises(TransientError):
            run(services.ledger.create("cust-1", "rest-1", OrderType.DINE_IN, ITEMS, "cash"))

    def test_slow_store_times_out(self, run, broker):
        class HangingStore(InMemoryOrderStore):
            async def get_order(self, order_id):
                await asyncio.sleep(1)

        services = build_services(
            store=HangingStore(), broker=broker, settings=make_settings(store_timeout_seconds=0.01)
        )
        with pytest.raises(TransientError, match="timed out"):
            run(services.ledger.get("any"))

    def test_listener_failure_does_not_undo_transition(self, run, place_order, services):
        class Broken(OrderEventListener):
            async def status_changed(self, order, previous):
                raise RuntimeError("listener down")

        services.ledger.add_listener(Broken())
        order = run(place_order())
        updated = run(services.ledger.transition(order.id, OrderStatus.PREPARING, STAFF))
        assert updated.status == OrderStatus.PREPARING
        assert run(services.ledger.get(order.id)).status == OrderStatus.PREPARING


class TestListing:
    def _seed(self, run, place_order, services):
        dine_in = run(place_order())
        takeaway = run(place_order(order_type=OrderType.TAKEAWAY))
        other_customer = run(place_order(customer_id="cust-2"))
        other_restaurant = run(place_order(restaurant_id="rest-2"))
        run(services.ledger.transition(takeaway.id, OrderStatus.PREPARING, STAFF))
        return dine_in, takeaway, other_customer, other_restaurant

    def test_restaurant_board_newest_first(self, run, place_order, services):
        dine_in, takeaway, other_customer, _ = self._seed(run, place_order, services)
        orders = run(services.ledger.list_by_restaurant("rest-1"))
        assert {o.id for o in orders} == {dine_in.id, takeaway.id, other_customer.id}
        stamps = [o.created_at for o in orders]
        assert stamps == sorted(stamps, reverse=True)

    def test_customer_history(self, run, place_order, services):
        dine_in, takeaway, _, other_restaurant = self._seed(run, place_order, services)
        orders = run(services.ledger.list_by_customer("cust-1"))
        assert {o.id for o in orders} == {dine_in.id, takeaway.id, other_restaurant.id}

    def test_filters(self, run, place_order, services):
        _, takeaway, _, _ = self._seed(run, place_order, services)
        by_type = run(services.ledger.list_by_restaurant("rest-1", OrderFilters(order_type=OrderType.TAKEAWAY)))
        by_status = run(services.ledger.list_by_restaurant("rest-1", OrderFilters(status=OrderStatus.PREPARING)))
        assert [o.id for o in by_type] == [takeaway.id]
        assert [o.id for o in by_status] == [takeaway.id]

    def test_date_filter(self, run, place_order, services):
        self._seed(run, place_order, services)
        today = datetime.now(timezone.utc).date()
        assert len(run(services.ledger.list_by_restaurant("rest-1", OrderFilters(on_date=today)))) == 3
        assert run(services.ledger.list_by_restaurant("rest-1", OrderFilters(on_date=today.replace(year=2000)))) == []

    def test_pagination_is_restartable(self, run, place_order, services):
        self._seed(run, place_order, services)
        everything = run(services.ledger.list_by_restaurant("rest-1"))
        page_one = run(services.ledger.list_by_restaurant("rest-1", limit=2))
        page_two = run(services.ledger.list_by_restaurant("rest-1", limit=2, offset=2))
        assert page_one + page_two == everything

    def test_filters_are_pure(self, run, place_order):
        order = run(place_order(order_type=OrderType.TAKEAWAY))
        filters = OrderFilters(order_type=OrderType.TAKEAWAY, status=OrderStatus.PAID)
        assert filters.matches(order)
        assert filters.matches(order)
        assert not OrderFilters(order_type=OrderType.DINE_IN).matches(order)
