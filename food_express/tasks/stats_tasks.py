"""
Food Express Order Service - Celery tasks (stats refresh)

Dispatched after every delivery. Recomputes the driver's and the
restaurant's rollups for every window from the order table and re-caches
them, so the stats endpoints stay fresh without recomputing on read.
"""
import asyncio
import logging
from functools import lru_cache

import redis
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from food_express.core.celery_app import celery_app
from food_express.core.config import get_settings
from food_express.domain.stats import (
    DRIVER,
    RESTAURANT,
    StatsCache,
    driver_stats,
    restaurant_stats,
    stats_key,
    window_start,
)
from food_express.models.order import Order, OrderStatus
from food_express.schemas.order import OrderSnapshot
from food_express.schemas.stats import StatsWindow

settings = get_settings()
logger = logging.getLogger(__name__)


@lru_cache()
def _sync_engine():
    # Sync engine for Celery (Celery tasks are not async-native)
    return create_engine(settings.sync_database_url, pool_pre_ping=True)


@lru_cache()
def _sync_redis() -> redis.Redis:
    return redis.Redis.from_url(settings.redis_url, decode_responses=True)


def _compute_and_cache(session: Session, cache: redis.Redis, kind: str, subject_id: str) -> dict[str, str]:
    """Recompute every window for one subject and write it to the cache."""
    if kind == DRIVER:
        stmt = select(Order).where(Order.driver_id == subject_id, Order.status == OrderStatus.DELIVERED)
        rollup = driver_stats
    elif kind == RESTAURANT:
        stmt = select(Order).where(Order.restaurant_id == subject_id)
        rollup = restaurant_stats
    else:
        raise ValueError(f"Unknown stats kind '{kind}'")

    orders = list(session.scalars(stmt).all())
    written = {}
    for window in StatsWindow:
        payload = rollup(orders, subject_id, since=window_start(window)).model_dump_json()
        cache.setex(stats_key(kind, subject_id, window), settings.STATS_CACHE_TTL_SECONDS, payload)
        written[window.value] = payload
    logger.info("Stats refreshed for %s %s", kind, subject_id)
    return written


def _refresh(task, kind: str, subject_id: str) -> None:
    try:
        with Session(_sync_engine()) as session:
            _compute_and_cache(session, _sync_redis(), kind, subject_id)
    except Exception as exc:
        logger.exception("Stats refresh for %s %s failed", kind, subject_id)
        raise task.retry(exc=exc)


@celery_app.task(name="refresh_driver_stats", bind=True, max_retries=3, default_retry_delay=5, acks_late=True)
def refresh_driver_stats(self, driver_id: str) -> None:
    _refresh(self, DRIVER, driver_id)


@celery_app.task(name="refresh_restaurant_stats", bind=True, max_retries=3, default_retry_delay=5, acks_late=True)
def refresh_restaurant_stats(self, restaurant_id: str) -> None:
    _refresh(self, RESTAURANT, restaurant_id)


async def schedule_stats_refresh(order: OrderSnapshot, cache: StatsCache | None = None) -> None:
    """
    DeliveryMatcher.on_delivered hook: drop the cached rollups the delivery
    made stale, then queue both refreshes without blocking the loop. With the
    broker down the next read recomputes from the store.
    """
    if cache is not None:
        await cache.forget(order)
    for task, subject_id in (
        (refresh_driver_stats, order.driver_id),
        (refresh_restaurant_stats, order.restaurant_id),
    ):
        if subject_id is None:
            continue
        try:
            await asyncio.to_thread(task.apply_async, args=[subject_id], retry=False)
        except Exception as exc:
            logger.warning("Could not queue %s for %s: %s", task.name, subject_id, exc)
