"""
Celery Worker Configuration
Redis-backed worker for background work queued by the ordering core,
currently deferred loyalty refreshes.

Run: celery -A app.celery_worker worker --loglevel=info
"""

from celery import Celery

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    'ordering_worker',
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=['app.tasks']
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    task_default_queue='ordering',
    # A loyalty refresh is a handful of queries; anything longer is stuck
    task_soft_time_limit=30,
    task_time_limit=60,

    worker_prefetch_multiplier=1,
    result_expires=3600,

    # Refreshes are idempotent, so redelivery after a crash is safe
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    broker_connection_retry_on_startup=True,
)


if __name__ == '__main__':
    celery_app.start()
