"""
Stats Aggregator tests: pure rollups, windows and the Redis read-through cache.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from food_express.domain.stats import (
    DRIVER,
    RESTAURANT,
    StatsCache,
    driver_stats,
    restaurant_stats,
    stats_key,
    window_start,
)
from food_express.models.order import OrderStatus
from food_express.schemas.stats import DriverStats, StatsWindow

NOW = datetime(2026, 3, 18, 15, 30, tzinfo=timezone.utc)


def order(status, driver_id=None, restaurant_id="rest-1", fee="40.00", total="360.00", created=None, delivered=None):
    return SimpleNamespace(
        status=status,
        driver_id=driver_id,
        restaurant_id=restaurant_id,
        delivery_fee=Decimal(fee),
        total=Decimal(total),
        created_at=created or NOW - timedelta(hours=1),
        delivered_at=delivered,
    )


def test_driver_with_no_deliveries_has_zero_stats():
    orders = [
        order(OrderStatus.PICKED, driver_id="driver-1"),
        order(OrderStatus.DELIVERED, driver_id="driver-2", delivered=NOW),
    ]

    assert driver_stats(orders, "driver-1") == DriverStats(count=0, earnings=Decimal("0"))
    assert driver_stats([], "driver-1") == DriverStats(count=0, earnings=Decimal("0"))


def test_driver_earnings_are_the_delivery_fees():
    orders = [
        order(OrderStatus.DELIVERED, driver_id="driver-1", fee="40.00", delivered=NOW),
        order(OrderStatus.DELIVERED, driver_id="driver-1", fee="25.50", delivered=NOW - timedelta(days=2)),
    ]

    stats = driver_stats(orders, "driver-1", fee_share=1.0)

    assert stats.count == 2
    assert stats.earnings == Decimal("65.50")


def test_driver_fee_share_is_applied():
    orders = [order(OrderStatus.DELIVERED, driver_id="driver-1", fee="50.00", delivered=NOW)]

    assert driver_stats(orders, "driver-1", fee_share=0.8).earnings == Decimal("40.00")


def test_driver_stats_respect_the_window():
    orders = [
        order(OrderStatus.DELIVERED, driver_id="driver-1", delivered=NOW),
        order(OrderStatus.DELIVERED, driver_id="driver-1", delivered=NOW - timedelta(days=1)),
        order(OrderStatus.DELIVERED, driver_id="driver-1", delivered=NOW - timedelta(days=30)),
    ]

    assert driver_stats(orders, "driver-1", since=window_start(StatsWindow.TODAY, NOW)).count == 1
    assert driver_stats(orders, "driver-1", since=window_start(StatsWindow.WEEK, NOW)).count == 2
    assert driver_stats(orders, "driver-1", since=window_start(StatsWindow.ALL, NOW)).count == 3


def test_naive_timestamps_are_treated_as_utc():
    naive = NOW.replace(tzinfo=None)
    orders = [order(OrderStatus.DELIVERED, driver_id="driver-1", delivered=naive)]

    assert driver_stats(orders, "driver-1", since=window_start(StatsWindow.TODAY, NOW)).count == 1


def test_window_boundaries():
    assert window_start(StatsWindow.TODAY, NOW) == datetime(2026, 3, 18, tzinfo=timezone.utc)
    assert window_start(StatsWindow.WEEK, NOW) == NOW - timedelta(days=7)
    assert window_start(StatsWindow.ALL, NOW) is None


def test_restaurant_stats():
    orders = [
        order(OrderStatus.DELIVERED, total="100.00", delivered=NOW),
        order(OrderStatus.DELIVERED, total="60.00", delivered=NOW),
        order(OrderStatus.PLACED),
        order(OrderStatus.PREPARING),
        order(OrderStatus.CANCELLED),
        order(OrderStatus.DELIVERED, restaurant_id="rest-2", delivered=NOW),
    ]

    stats = restaurant_stats(orders, "rest-1")

    assert stats.count == 2
    assert stats.revenue == Decimal("160.00")
    assert stats.total_orders == 5
    assert stats.pending_orders == 2
    assert stats.cancelled_orders == 1
    assert stats.cancellation_rate == 0.2


def test_restaurant_with_no_orders_has_zero_stats():
    stats = restaurant_stats([], "rest-1")

    assert stats.count == 0
    assert stats.revenue == Decimal("0")
    assert stats.cancellation_rate == 0.0


def test_rollups_are_repeatable():
    orders = [order(OrderStatus.DELIVERED, driver_id="driver-1", delivered=NOW)]

    assert driver_stats(orders, "driver-1") == driver_stats(orders, "driver-1")


# ─── Store + cache ─────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_cache_miss_computes_from_the_store_then_hits(db, fake_redis, driver, place_order):
    await place_order(OrderStatus.DELIVERED, driver=driver)
    cache = StatsCache(fake_redis, ttl=60)

    stats, cached = await cache.driver(db, driver.id, StatsWindow.ALL)
    assert (stats.count, stats.earnings, cached) == (1, Decimal("40.00"), False)
    assert stats_key(DRIVER, driver.id, StatsWindow.ALL) in fake_redis.data

    again, cached = await cache.driver(db, driver.id, StatsWindow.ALL)
    assert cached is True
    assert again == stats


@pytest.mark.asyncio
async def test_restaurant_stats_from_the_store(db, fake_redis, driver, place_order):
    await place_order(OrderStatus.DELIVERED, driver=driver)
    await place_order(OrderStatus.PREPARING)
    cache = StatsCache(fake_redis)

    stats, _ = await cache.restaurant(db, "rest-1", StatsWindow.TODAY)

    assert stats.count == 1
    assert stats.revenue == Decimal("360.00")
    assert stats.total_orders == 2
    assert stats.pending_orders == 1


@pytest.mark.asyncio
async def test_cache_outage_falls_back_to_the_store(db, driver, place_order):
    class DownRedis:
        async def get(self, key):
            raise ConnectionError("down")

        async def setex(self, key, ttl, value):
            raise ConnectionError("down")

    await place_order(OrderStatus.DELIVERED, driver=driver)

    stats, cached = await StatsCache(DownRedis()).driver(db, driver.id, StatsWindow.ALL)

    assert stats.count == 1
    assert cached is False


@pytest.mark.asyncio
async def test_forget_drops_only_the_orders_subjects(fake_redis, driver, other_driver, place_order):
    delivered = await place_order(OrderStatus.DELIVERED, driver=driver)
    cache = StatsCache(fake_redis)
    for window in StatsWindow:
        await cache.set(DRIVER, driver.id, window, "{}")
        await cache.set(RESTAURANT, "rest-1", window, "{}")
    await cache.set(DRIVER, other_driver.id, StatsWindow.ALL, "{}")
    await cache.set(RESTAURANT, "rest-2", StatsWindow.ALL, "{}")

    await cache.forget(delivered)

    assert sorted(fake_redis.data) == sorted(
        [stats_key(DRIVER, other_driver.id, StatsWindow.ALL), stats_key(RESTAURANT, "rest-2", StatsWindow.ALL)]
    )


@pytest.mark.asyncio
async def test_forget_survives_a_cache_outage(fake_redis, driver, place_order):
    delivered = await place_order(OrderStatus.DELIVERED, driver=driver)
    cache = StatsCache(fake_redis)
    await cache.set(DRIVER, driver.id, StatsWindow.ALL, "{}")
    fake_redis.failing_prefix = "stats:"

    await cache.forget(delivered)

    assert stats_key(DRIVER, driver.id, StatsWindow.ALL) in fake_redis.data
