"""
Change feed tests: subscriptions, live view reconciliation and the Redis relay.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from food_express.core.events import (
    PROCESS_ORIGIN,
    LiveOrderView,
    OrderChange,
    OrderEventBus,
    RedisEventRelay,
)
from food_express.db.order_store import OrderQuery
from food_express.main import app, lifespan
from food_express.models.order import OrderStatus
from food_express.schemas.order import OrderSnapshot

T0 = datetime(2026, 3, 18, 12, 0, tzinfo=timezone.utc)
OFFERS = OrderQuery(statuses=frozenset({OrderStatus.READY}), unclaimed=True)


def snapshot(order_id="o-1", status=OrderStatus.READY, version=4, driver_id=None, minutes=0) -> OrderSnapshot:
    return OrderSnapshot(
        id=order_id,
        order_number=f"#{order_id.upper()}",
        customer_id="cust-1",
        restaurant_id="rest-1",
        restaurant_name="Habesha Kitchen",
        driver_id=driver_id,
        driver_name=None,
        status=status,
        items=[],
        subtotal=Decimal("320.00"),
        delivery_fee=Decimal("40.00"),
        total=Decimal("360.00"),
        delivery_address="Bole",
        phone_number="+251911000000",
        special_instructions=None,
        tx_ref=f"tx-{order_id}",
        cancellation_reason=None,
        version_id=version,
        created_at=T0 + timedelta(minutes=minutes),
        updated_at=T0 + timedelta(minutes=minutes),
    )


def change(after, before=None, origin=PROCESS_ORIGIN) -> OrderChange:
    return OrderChange(before=before, after=after, origin=origin)


# ─── Bus ───────────────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_subscribers_only_get_matching_changes():
    bus = OrderEventBus()
    seen = []
    bus.subscribe(OrderQuery(restaurant_id="rest-1"), seen.append)
    bus.subscribe(OrderQuery(restaurant_id="rest-2"), lambda c: pytest.fail("wrong restaurant"))

    await bus.publish(change(snapshot()))

    assert len(seen) == 1


@pytest.mark.asyncio
async def test_leaving_a_query_is_still_delivered():
    bus = OrderEventBus()
    seen = []
    bus.subscribe(OFFERS, seen.append)

    before = snapshot(version=4)
    after = snapshot(status=OrderStatus.PICKED, driver_id="driver-1", version=5)
    await bus.publish(change(after, before))

    assert seen and seen[0].after.status is OrderStatus.PICKED


@pytest.mark.asyncio
async def test_no_callback_after_unsubscribe():
    bus = OrderEventBus()
    seen = []
    subscription = bus.subscribe(OFFERS, seen.append)
    subscription.unsubscribe()
    subscription.unsubscribe()  # idempotent

    await bus.publish(change(snapshot()))

    assert seen == []
    assert bus.subscriber_count == 0


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_block_others():
    bus = OrderEventBus()
    seen = []

    def broken(_change):
        raise RuntimeError("boom")

    async def async_listener(c):
        seen.append(c)

    bus.subscribe(OFFERS, broken)
    bus.subscribe(OFFERS, async_listener)

    await bus.publish(change(snapshot()))

    assert len(seen) == 1


@pytest.mark.asyncio
async def test_relay_failure_never_reaches_the_writer():
    class BrokenRelay:
        async def publish(self, change):
            raise ConnectionError("redis down")

    bus = OrderEventBus(relay=BrokenRelay())
    seen = []
    bus.subscribe(OFFERS, seen.append)

    await bus.publish(change(snapshot()))

    assert len(seen) == 1


# ─── Live view ─────────────────────────────────────────────────────────────────
def test_view_ignores_events_older_than_its_copy():
    view = LiveOrderView(OFFERS)
    view.load([snapshot(version=4)])

    view.apply(change(snapshot(status=OrderStatus.PICKED, driver_id="d-1", version=5)))
    view.apply(change(snapshot(version=4)))  # late duplicate of the pre-claim state

    assert view.orders() == []


def test_view_load_does_not_resurrect_a_claimed_order():
    view = LiveOrderView(OFFERS)
    view.apply(change(snapshot(status=OrderStatus.PICKED, driver_id="d-1", version=5)))

    view.load([snapshot(version=4)])

    assert view.get("o-1") is None


def test_view_orders_newest_first_and_notifies():
    updates = []
    view = LiveOrderView(OFFERS, on_update=updates.append)

    view.apply(change(snapshot("o-1", minutes=0)))
    view.apply(change(snapshot("o-2", minutes=5)))

    assert [o.id for o in view.orders()] == ["o-2", "o-1"]
    assert [len(u) for u in updates] == [1, 2]


def test_detached_view_reports_closed():
    view = LiveOrderView(OFFERS)
    assert view.closed
    view.attach(OrderEventBus())
    assert not view.closed
    view.close()
    assert view.closed


# ─── Redis relay ───────────────────────────────────────────────────────────────
class FakePubSub:
    def __init__(self, messages):
        self.messages = list(messages)
        self.closed = False

    async def subscribe(self, channel):
        self.channel = channel

    async def get_message(self, ignore_subscribe_messages=True, timeout=1.0):
        if self.messages:
            return self.messages.pop(0)
        await asyncio.sleep(0.01)
        return None

    async def unsubscribe(self, channel):
        pass

    async def aclose(self):
        self.closed = True


class PubSubRedis:
    def __init__(self, messages):
        self.pubsub_instance = FakePubSub(messages)
        self.published = []

    def pubsub(self):
        return self.pubsub_instance

    async def publish(self, channel, message):
        self.published.append((channel, message))


@pytest.mark.asyncio
async def test_relay_redispatches_foreign_changes_only():
    foreign = change(snapshot("o-remote"), origin="other-instance")
    own = change(snapshot("o-local"))
    redis = PubSubRedis(
        [
            {"type": "message", "data": "not json"},
            {"type": "message", "data": own.model_dump_json()},
            {"type": "message", "data": foreign.model_dump_json()},
        ]
    )
    relay = RedisEventRelay(redis, channel="orders:test")
    bus = OrderEventBus()
    seen = []
    bus.subscribe(OFFERS, seen.append)

    task = asyncio.create_task(relay.run(bus))
    for _ in range(50):
        if seen:
            break
        await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert [c.after.id for c in seen] == ["o-remote"]
    assert redis.pubsub_instance.closed


@pytest.mark.asyncio
async def test_relay_publishes_json_to_its_channel():
    redis = PubSubRedis([])
    relay = RedisEventRelay(redis, channel="orders:test")

    await relay.publish(change(snapshot()))

    channel, message = redis.published[0]
    assert channel == "orders:test"
    assert OrderChange.model_validate_json(message).after.id == "o-1"


class DroppedPubSub(FakePubSub):
    """A subscription whose connection is reset on the first read."""

    async def get_message(self, ignore_subscribe_messages=True, timeout=1.0):
        raise RedisConnectionError("Connection reset by peer")

    async def unsubscribe(self, channel):
        raise RedisConnectionError("Connection closed by server")


class FlakyRedis(PubSubRedis):
    def __init__(self, subscriptions):
        super().__init__([])
        self.subscriptions = list(subscriptions)
        self.handed_out = []

    def pubsub(self):
        pubsub = self.subscriptions.pop(0) if self.subscriptions else FakePubSub([])
        self.handed_out.append(pubsub)
        return pubsub


@pytest.mark.asyncio
async def test_relay_resubscribes_after_losing_redis():
    foreign = change(snapshot("o-remote"), origin="other-instance")
    redis = FlakyRedis(
        [
            DroppedPubSub([]),
            DroppedPubSub([]),
            FakePubSub([{"type": "message", "data": foreign.model_dump_json()}]),
        ]
    )
    relay = RedisEventRelay(redis, channel="orders:test", reconnect_delay=0.01, max_reconnect_delay=0.02)
    bus = OrderEventBus()
    seen = []
    bus.subscribe(OFFERS, seen.append)

    task = asyncio.create_task(relay.run(bus))
    for _ in range(100):
        if seen:
            break
        await asyncio.sleep(0.01)

    assert not task.done()
    assert [c.after.id for c in seen] == ["o-remote"]
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(redis.handed_out) == 3
    assert redis.handed_out[-1].closed


@pytest.mark.asyncio
async def test_shutdown_completes_after_the_relay_crashed(engine, monkeypatch, caplog):
    class CrashingRelay:
        channel = "orders:test"

        async def run(self, bus):
            raise RuntimeError("subscriber registry corrupted")

    closed = []

    async def close_redis():
        closed.append(True)

    monkeypatch.setattr("food_express.main.engine", engine)
    monkeypatch.setattr("food_express.main.close_redis", close_redis)
    monkeypatch.setattr(app.state, "event_relay", CrashingRelay())

    with caplog.at_level(logging.ERROR, logger="food_express.main"):
        async with lifespan(app):
            await asyncio.sleep(0.01)

    assert closed == [True]
    assert "relay had stopped with an error" in caplog.text
