"""
Tests for app.tasks: Celery task bodies run in-process.
"""

from decimal import Decimal

import app.tasks as tasks
from app.models import ActorRole, LoyaltyBadge, OrderStatus, OrderType
from app.services.store import OrderItem


class TestRefreshLoyaltySummary:
    def test_recomputes_and_stores(self, run, services, store, monkeypatch):
        order = run(services.ledger.create(
            "cust-1", "rest-1", OrderType.TAKEAWAY, [OrderItem("m1", "Feast", 1, Decimal("300000"))], "card"
        ))
        for status in (OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.COMPLETED):
            run(services.ledger.transition(order.id, status, ActorRole.RESTAURANT_STAFF))
        monkeypatch.setattr(tasks, "get_order_store", lambda: store)

        result = tasks.refresh_loyalty_summary.run("cust-1")

        assert result["total_points"] == 3
        assert result["total_completed_orders"] == 1
        assert result["current_badge"] == LoyaltyBadge.EXPLORER.value
        stored = run(store.get_loyalty_summary("cust-1"))
        assert stored.total_spent == Decimal("300000")


class TestHealthCheck:
    def test_reports_healthy(self):
        result = tasks.health_check.run()
        assert result["status"] == "healthy"
        assert result["worker"] == "celery"
