"""
Food Express Order Service - Delivery Matcher

Offers are orders that are ready and have no driver. Accepting one is the
single-winner claim in OrderLifecycle.claim; the winning write moves the order
out of the offers query, so every open offers view drops it on the next change
event.
"""
import inspect
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from food_express.core.errors import Forbidden
from food_express.core.events import LiveOrderView
from food_express.core.security import Actor
from food_express.db import order_store
from food_express.db.order_store import OrderQuery
from food_express.domain.lifecycle import OrderLifecycle
from food_express.models.order import ActorRole, OrderStatus
from food_express.schemas.order import OrderSnapshot

logger = logging.getLogger(__name__)

OFFERS_QUERY = OrderQuery(statuses=frozenset({OrderStatus.READY}), unclaimed=True)

DeliveredHook = Callable[[OrderSnapshot], Awaitable[None] | None]


def active_query(driver_id: str) -> OrderQuery:
    return OrderQuery(statuses=frozenset({OrderStatus.PICKED}), driver_id=driver_id)


class DeliveryMatcher:
    def __init__(
        self,
        lifecycle: OrderLifecycle,
        on_delivered: DeliveredHook | None = None,
    ):
        self.lifecycle = lifecycle
        self.on_delivered = on_delivered

    async def _load(self, db: AsyncSession, query: OrderQuery) -> list[OrderSnapshot]:
        orders = await order_store.list_orders(db, query)
        snapshots = [OrderSnapshot.model_validate(o) for o in orders]
        await db.rollback()
        return snapshots

    async def available_offers(self, db: AsyncSession) -> list[OrderSnapshot]:
        return await self._load(db, OFFERS_QUERY)

    async def active_deliveries(self, db: AsyncSession, driver_id: str) -> list[OrderSnapshot]:
        return await self._load(db, active_query(driver_id))

    async def open_offers_view(
        self,
        db: AsyncSession,
        on_update: Callable[[list[OrderSnapshot]], Any] | None = None,
    ) -> LiveOrderView:
        """Live list of open offers. The caller must close() it."""
        return await self.lifecycle.open_view(db, OFFERS_QUERY, on_update)

    async def open_active_view(
        self,
        db: AsyncSession,
        driver_id: str,
        on_update: Callable[[list[OrderSnapshot]], Any] | None = None,
    ) -> LiveOrderView:
        return await self.lifecycle.open_view(db, active_query(driver_id), on_update)

    async def accept_delivery(
        self,
        db: AsyncSession,
        order_id: str,
        driver: Actor,
        driver_name: str | None = None,
    ) -> OrderSnapshot:
        return await self.lifecycle.claim(db, order_id, driver, driver_name=driver_name)

    async def complete_delivery(self, db: AsyncSession, order_id: str, driver: Actor) -> OrderSnapshot:
        """picked -> delivered for the driver holding the order, then refresh stats."""
        if driver.role is not ActorRole.DRIVER:
            raise Forbidden("Only drivers can complete deliveries.")
        delivered = await self.lifecycle.update_status(
            db,
            order_id,
            OrderStatus.DELIVERED,
            driver,
            note="Delivered",
            expected_status=OrderStatus.PICKED,
        )
        if self.on_delivered is not None:
            try:
                result = self.on_delivered(delivered)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                # Stats are recomputable; the delivery itself is committed
                logger.warning("Stats refresh after delivery of %s failed: %s", delivered.order_number, exc)
        return delivered
