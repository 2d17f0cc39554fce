"""
Food Express Order Service - Order change feed

Architecture:
  - Every committed order write publishes an OrderChange on the in-process bus
  - The bus forwards it to Redis channel ORDER_EVENTS_CHANNEL
  - RedisEventRelay listens on that channel and re-dispatches changes that
    other processes published, so every live view sees every write
  - LiveOrderView keeps a client-side cache keyed by order id, fed only by
    change events, used by SSE feeds and the delivery matcher
"""
import asyncio
import inspect
import json
import logging
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable

import redis.asyncio as aioredis
from pydantic import BaseModel, ValidationError
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from food_express.core.config import get_settings
from food_express.db.order_store import OrderQuery
from food_express.schemas.order import OrderSnapshot

settings = get_settings()
logger = logging.getLogger(__name__)

PROCESS_ORIGIN = uuid.uuid4().hex

# Failures the relay survives by resubscribing
RELAY_CONNECTION_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)


class OrderChange(BaseModel):
    before: OrderSnapshot | None = None
    after: OrderSnapshot
    origin: str = PROCESS_ORIGIN


ChangeCallback = Callable[[OrderChange], Awaitable[None] | None]


class Subscription:
    """Handle returned by OrderEventBus.subscribe. No callback fires after unsubscribe()."""

    def __init__(self, bus: "OrderEventBus", query: OrderQuery, callback: ChangeCallback):
        self.id = uuid.uuid4().hex
        self.query = query
        self.callback = callback
        self.active = True
        self._bus = bus

    def wants(self, change: OrderChange) -> bool:
        return self.query.matches(change.after) or self.query.matches(change.before)

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._bus._remove(self)


class OrderEventBus:
    def __init__(self, relay: "RedisEventRelay | None" = None):
        self._subscriptions: dict[str, Subscription] = {}
        self.relay = relay

    def subscribe(self, query: OrderQuery, callback: ChangeCallback) -> Subscription:
        subscription = Subscription(self, query, callback)
        self._subscriptions[subscription.id] = subscription
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.id, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def publish(self, change: OrderChange) -> None:
        """Deliver locally, then hand to the relay. Never raises."""
        await self.dispatch(change)
        if self.relay is not None:
            try:
                await self.relay.publish(change)
            except Exception as exc:
                # Remote views catch up on their next reload; the write itself is committed
                logger.warning("Order change relay failed for %s: %s", change.after.id, exc)

    async def dispatch(self, change: OrderChange) -> None:
        for subscription in list(self._subscriptions.values()):
            if not subscription.active or not subscription.wants(change):
                continue
            try:
                result = subscription.callback(change)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Order change subscriber %s failed", subscription.id)


def _created_key(order: OrderSnapshot) -> datetime:
    return order.created_at


class LiveOrderView:
    """
    Local cache of the orders matching ``query``, re-derived from change events.

    Events carry the row's version_id; an event older than what the view
    already holds is ignored, so a late initial load or an out-of-order relay
    message cannot resurrect a stale copy.
    """

    def __init__(
        self,
        query: OrderQuery,
        on_update: Callable[[list[OrderSnapshot]], Any] | None = None,
    ):
        self.query = query
        self.on_update = on_update
        self._orders: dict[str, OrderSnapshot] = {}
        self._versions: dict[str, int] = {}
        self._subscription: Subscription | None = None

    def attach(self, bus: OrderEventBus) -> "LiveOrderView":
        self._subscription = bus.subscribe(self.query, self.apply)
        return self

    def load(self, orders: list[OrderSnapshot]) -> None:
        for order in orders:
            self._accept(order)

    def apply(self, change: OrderChange) -> None:
        if self._accept(change.after) and self.on_update is not None:
            self.on_update(self.orders())

    def _accept(self, order: OrderSnapshot) -> bool:
        if order.version_id < self._versions.get(order.id, 0):
            return False
        self._versions[order.id] = order.version_id
        if self.query.matches(order):
            self._orders[order.id] = order
        else:
            self._orders.pop(order.id, None)
        return True

    def orders(self) -> list[OrderSnapshot]:
        return sorted(self._orders.values(), key=_created_key, reverse=True)

    def get(self, order_id: str) -> OrderSnapshot | None:
        return self._orders.get(order_id)

    @property
    def closed(self) -> bool:
        return self._subscription is None or not self._subscription.active

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()


class RedisEventRelay:
    """Bridges the in-process bus and the Redis channel shared by all service instances."""

    def __init__(
        self,
        redis: aioredis.Redis,
        channel: str | None = None,
        reconnect_delay: float | None = None,
        max_reconnect_delay: float | None = None,
    ):
        self.redis = redis
        self.channel = channel or settings.ORDER_EVENTS_CHANNEL
        self.reconnect_delay = (
            reconnect_delay if reconnect_delay is not None else settings.EVENT_RELAY_RECONNECT_SECONDS
        )
        self.max_reconnect_delay = (
            max_reconnect_delay if max_reconnect_delay is not None else settings.EVENT_RELAY_RECONNECT_MAX_SECONDS
        )

    async def publish(self, change: OrderChange) -> None:
        await self.redis.publish(self.channel, change.model_dump_json())

    async def run(self, bus: OrderEventBus) -> None:
        """Re-dispatch foreign changes until cancelled, resubscribing after connection loss."""
        delay = self.reconnect_delay
        while True:
            pubsub = self.redis.pubsub()
            try:
                await pubsub.subscribe(self.channel)
                delay = self.reconnect_delay
                await self._pump(pubsub, bus)
            except RELAY_CONNECTION_ERRORS as exc:
                logger.warning(
                    "Order change relay lost %s (%s), resubscribing in %.1fs", self.channel, exc, delay
                )
            finally:
                await self._close(pubsub)
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.max_reconnect_delay)

    async def _pump(self, pubsub, bus: OrderEventBus) -> None:
        while True:
            message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            if not message or message["type"] != "message":
                await asyncio.sleep(0)
                continue
            try:
                change = OrderChange.model_validate(json.loads(message["data"]))
            except (ValueError, ValidationError) as exc:
                logger.warning("Dropping malformed order change on %s: %s", self.channel, exc)
                continue
            if change.origin == PROCESS_ORIGIN:
                continue
            await bus.dispatch(change)

    async def _close(self, pubsub) -> None:
        try:
            await pubsub.unsubscribe(self.channel)
            await pubsub.aclose()
        except RELAY_CONNECTION_ERRORS as exc:
            # The connection is already gone; nothing left to release
            logger.debug("Closing relay pubsub on %s failed: %s", self.channel, exc)
