"""
Celery Tasks
Background work that must not hold up a status transition.
"""

import asyncio
import logging
from datetime import datetime, timezone

from app.celery_worker import celery_app
from app.core.exceptions import TransientError
from app.services.loyalty import LoyaltyAggregator
from app.services.store import get_order_store, reset_order_store

logger = logging.getLogger(__name__)


async def _refresh(customer_id: str) -> dict:
    store = get_order_store()
    try:
        summary = await LoyaltyAggregator(store).refresh(customer_id)
    finally:
        # Each task run has its own event loop; never reuse connections across runs
        await store.close()
        reset_order_store()

    return {
        'customer_id': summary.customer_id,
        'total_points': summary.total_points,
        'total_completed_orders': summary.total_completed_orders,
        'total_spent': str(summary.total_spent),
        'current_badge': summary.current_badge.value,
    }


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(TransientError,),
    retry_backoff=True
)
def refresh_loyalty_summary(self, customer_id: str) -> dict:
    """
    Recompute and store a customer's loyalty summary.

    Queued on completion when LOYALTY_REFRESH_MODE=deferred.
    """
    logger.info(f"Task {self.request.id}: refreshing loyalty for {customer_id}")
    return asyncio.run(_refresh(customer_id))


@celery_app.task
def health_check() -> dict:
    """
    Simple health check task to verify Celery is working.
    """
    return {
        'status': 'healthy',
        'worker': 'celery',
        'timestamp': datetime.now(timezone.utc).isoformat()
    }
