"""
Food Express Order Service - Stats Aggregator

Rollups are pure functions of the order list, so they can be recomputed at
any time; Redis only caches them. Keys: stats:{kind}:{subject_id}:{window}.
"""
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from food_express.core.config import get_settings
from food_express.db import order_store
from food_express.db.order_store import OrderQuery
from food_express.models.order import OrderStatus
from food_express.schemas.order import OrderSnapshot
from food_express.schemas.stats import DriverStats, RestaurantStats, StatsWindow

settings = get_settings()
logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
STATS_KEY = "stats:{kind}:{subject_id}:{window}"
DRIVER = "driver"
RESTAURANT = "restaurant"

_IN_KITCHEN = {OrderStatus.PLACED, OrderStatus.PREPARING}


def _utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def window_start(window: StatsWindow, now: datetime | None = None) -> datetime | None:
    """today = since UTC midnight, week = last 7 days, all = no bound."""
    now = _utc(now) or datetime.now(tz=timezone.utc)
    if window is StatsWindow.TODAY:
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if window is StatsWindow.WEEK:
        return now - timedelta(days=7)
    return None


def _within(moment: datetime | None, since: datetime | None) -> bool:
    if since is None:
        return True
    moment = _utc(moment)
    return moment is not None and moment >= since


def driver_stats(
    orders: Iterable[Any],
    driver_id: str,
    since: datetime | None = None,
    fee_share: float | None = None,
) -> DriverStats:
    """Deliveries completed by ``driver_id`` since ``since`` and what they earned."""
    share = Decimal(str(settings.DRIVER_FEE_SHARE if fee_share is None else fee_share))
    since = _utc(since)
    count = 0
    fees = Decimal("0")
    for order in orders:
        if order.status is not OrderStatus.DELIVERED or order.driver_id != driver_id:
            continue
        if not _within(order.delivered_at, since):
            continue
        count += 1
        fees += Decimal(order.delivery_fee)
    return DriverStats(count=count, earnings=(fees * share).quantize(CENTS))


def restaurant_stats(
    orders: Iterable[Any],
    restaurant_id: str,
    since: datetime | None = None,
) -> RestaurantStats:
    """
    count/revenue over orders delivered in the window; the order mix
    (total, in kitchen, cancelled) over orders created in the window.
    """
    since = _utc(since)
    count = total_orders = pending = cancelled = 0
    revenue = Decimal("0")
    for order in orders:
        if order.restaurant_id != restaurant_id:
            continue
        if order.status is OrderStatus.DELIVERED and _within(order.delivered_at, since):
            count += 1
            revenue += Decimal(order.total)
        if not _within(order.created_at, since):
            continue
        total_orders += 1
        if order.status in _IN_KITCHEN:
            pending += 1
        elif order.status is OrderStatus.CANCELLED:
            cancelled += 1

    rate = round(cancelled / total_orders, 4) if total_orders else 0.0
    return RestaurantStats(
        count=count,
        revenue=revenue.quantize(CENTS),
        total_orders=total_orders,
        pending_orders=pending,
        cancelled_orders=cancelled,
        cancellation_rate=rate,
    )


async def load_driver_stats(
    db: AsyncSession, driver_id: str, window: StatsWindow = StatsWindow.ALL
) -> DriverStats:
    orders = await order_store.list_orders(
        db, OrderQuery(statuses=frozenset({OrderStatus.DELIVERED}), driver_id=driver_id)
    )
    stats = driver_stats(orders, driver_id, since=window_start(window))
    await db.rollback()
    return stats


async def load_restaurant_stats(
    db: AsyncSession, restaurant_id: str, window: StatsWindow = StatsWindow.ALL
) -> RestaurantStats:
    orders = await order_store.list_orders(db, OrderQuery(restaurant_id=restaurant_id))
    stats = restaurant_stats(orders, restaurant_id, since=window_start(window))
    await db.rollback()
    return stats


def stats_key(kind: str, subject_id: str, window: StatsWindow) -> str:
    return STATS_KEY.format(kind=kind, subject_id=subject_id, window=window.value)


class StatsCache:
    """Read-through cache for rollups. Misses and Redis failures fall back to the store."""

    def __init__(self, redis: aioredis.Redis, ttl: int | None = None):
        self.redis = redis
        self.ttl = ttl or settings.STATS_CACHE_TTL_SECONDS

    async def get(self, kind: str, subject_id: str, window: StatsWindow) -> str | None:
        try:
            return await self.redis.get(stats_key(kind, subject_id, window))
        except Exception as exc:
            logger.warning("Stats cache read failed for %s %s: %s", kind, subject_id, exc)
            return None

    async def set(self, kind: str, subject_id: str, window: StatsWindow, payload: str) -> None:
        try:
            await self.redis.setex(stats_key(kind, subject_id, window), self.ttl, payload)
        except Exception as exc:
            logger.warning("Stats cache write failed for %s %s: %s", kind, subject_id, exc)

    async def driver(self, db: AsyncSession, driver_id: str, window: StatsWindow) -> tuple[DriverStats, bool]:
        cached = await self.get(DRIVER, driver_id, window)
        if cached is not None:
            return DriverStats.model_validate_json(cached), True
        stats = await load_driver_stats(db, driver_id, window)
        await self.set(DRIVER, driver_id, window, stats.model_dump_json())
        return stats, False

    async def restaurant(
        self, db: AsyncSession, restaurant_id: str, window: StatsWindow
    ) -> tuple[RestaurantStats, bool]:
        cached = await self.get(RESTAURANT, restaurant_id, window)
        if cached is not None:
            return RestaurantStats.model_validate_json(cached), True
        stats = await load_restaurant_stats(db, restaurant_id, window)
        await self.set(RESTAURANT, restaurant_id, window, stats.model_dump_json())
        return stats, False

    async def forget(self, order: OrderSnapshot) -> None:
        """Drop every cached window of the order's driver and restaurant."""
        subjects = [(RESTAURANT, order.restaurant_id)]
        if order.driver_id is not None:
            subjects.append((DRIVER, order.driver_id))
        keys = [stats_key(kind, subject_id, window) for kind, subject_id in subjects for window in StatsWindow]
        try:
            await self.redis.delete(*keys)
        except Exception as exc:
            logger.warning("Stats cache invalidation for order %s failed: %s", order.order_number, exc)
