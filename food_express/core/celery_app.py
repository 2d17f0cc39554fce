"""
Food Express Order Service - Celery application

Uses Redis as both broker and result backend.
Workers run in a separate container (orders-worker) and recompute stats
rollups after deliveries.
"""
from celery import Celery
from food_express.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "food_express",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["food_express.tasks.stats_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,           # Only ack after task completes (fault-tolerant)
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_ignore_result=True,       # callers never wait on a refresh
)
