"""
Food Express Order Service - Order Lifecycle Manager

The only writer of Order.status. Every transition:
  1. reads the authoritative row
  2. validates (current, target, role) against core.transitions and the
     actor's ownership of the order
  3. writes with a compare-and-set on (status, version_id)
  4. appends a history row in the same transaction
  5. publishes an OrderChange after commit

A lost compare-and-set is retried from step 1, so a caller acting on a stale
view fails validation instead of overwriting a concurrent transition.
"""
import logging
import uuid
from decimal import Decimal
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from food_express.core.errors import (
    AlreadyClaimed,
    Forbidden,
    InvalidOrder,
    InvalidTransition,
    NotFound,
    OrderError,
    ReasonRequired,
)
from food_express.core.events import LiveOrderView, OrderChange, OrderEventBus
from food_express.core.optimistic_lock import StaleDataError, with_optimistic_retry
from food_express.core.security import SYSTEM_ACTOR, Actor
from food_express.core.transitions import require_transition
from food_express.db import order_store
from food_express.db.order_store import OrderQuery
from food_express.domain.refunds import open_refund
from food_express.models.order import (
    ActorRole,
    Order,
    OrderItem,
    OrderStatus,
    OrderStatusHistory,
    utcnow,
)
from food_express.schemas.order import CheckoutRequest, OrderSnapshot

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")

# Column stamped when an order enters each status
_STATUS_TIMESTAMPS = {
    OrderStatus.PLACED: "placed_at",
    OrderStatus.PREPARING: "preparing_at",
    OrderStatus.READY: "ready_at",
    OrderStatus.PICKED: "picked_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}


def _new_order_number() -> str:
    return "#" + uuid.uuid4().hex[:8].upper()


def priced_total(draft: CheckoutRequest) -> tuple[Decimal, Decimal, Decimal]:
    """(subtotal, delivery_fee, total) for a draft; InvalidOrder if the client total disagrees."""
    subtotal = sum((item.price * item.quantity for item in draft.items), Decimal("0")).quantize(CENTS)
    delivery_fee = draft.delivery_fee.quantize(CENTS)
    total = (subtotal + delivery_fee).quantize(CENTS)
    if draft.total is not None and draft.total.quantize(CENTS) != total:
        raise InvalidOrder(
            f"Order total {draft.total} does not match items plus delivery fee ({total})."
        )
    return subtotal, delivery_fee, total


def visible_to(order: OrderSnapshot, actor: Actor) -> bool:
    """Whether ``actor`` may read ``order``. Drivers also see open offers."""
    if actor.role in (ActorRole.ADMIN, ActorRole.SYSTEM):
        return True
    if actor.role is ActorRole.CUSTOMER:
        return order.customer_id == actor.id
    if actor.role is ActorRole.RESTAURANT:
        return order.restaurant_id == actor.restaurant_id
    if actor.role is ActorRole.DRIVER:
        if order.driver_id == actor.id:
            return True
        return order.status is OrderStatus.READY and order.driver_id is None
    return False


def query_for(actor: Actor, statuses: frozenset[OrderStatus] | None = None) -> OrderQuery:
    """The order list an actor is entitled to see."""
    if actor.role is ActorRole.CUSTOMER:
        return OrderQuery(statuses=statuses, customer_id=actor.id)
    if actor.role is ActorRole.RESTAURANT:
        return OrderQuery(statuses=statuses, restaurant_id=actor.restaurant_id)
    if actor.role is ActorRole.DRIVER:
        return OrderQuery(statuses=statuses, driver_id=actor.id)
    return OrderQuery(statuses=statuses)


def _check_ownership(order: Order, actor: Actor) -> None:
    if actor.role is ActorRole.RESTAURANT and order.restaurant_id != actor.restaurant_id:
        raise Forbidden("This order belongs to another restaurant.")
    if actor.role is ActorRole.CUSTOMER and order.customer_id != actor.id:
        raise Forbidden("This order belongs to another customer.")
    if actor.role is ActorRole.DRIVER and order.driver_id != actor.id:
        raise Forbidden("This order is assigned to another driver.")


class OrderLifecycle:
    def __init__(self, events: OrderEventBus | None = None):
        self.events = events if events is not None else OrderEventBus()

    async def _publish(self, before: OrderSnapshot | None, after: OrderSnapshot) -> None:
        await self.events.publish(OrderChange(before=before, after=after))

    @staticmethod
    async def _snapshot(db: AsyncSession, order_id: str) -> OrderSnapshot:
        order = await order_store.get_order(db, order_id)
        return OrderSnapshot.model_validate(order)

    # ── Reads ────────────────────────────────────────────────────────────────

    async def get_order(self, db: AsyncSession, order_id: str, actor: Actor) -> OrderSnapshot:
        order = await order_store.get_order(db, order_id)
        if order is None:
            await db.rollback()
            raise NotFound(f"Order '{order_id}' not found.")
        snapshot = OrderSnapshot.model_validate(order)
        await db.rollback()
        if not visible_to(snapshot, actor):
            raise Forbidden("You may not view this order.")
        return snapshot

    async def list_orders(
        self,
        db: AsyncSession,
        actor: Actor,
        statuses: frozenset[OrderStatus] | None = None,
        limit: int | None = None,
    ) -> list[OrderSnapshot]:
        orders = await order_store.list_orders(db, query_for(actor, statuses), limit=limit)
        snapshots = [OrderSnapshot.model_validate(o) for o in orders]
        await db.rollback()
        return snapshots

    async def open_view(
        self,
        db: AsyncSession,
        query: OrderQuery,
        on_update: Callable[[list[OrderSnapshot]], Any] | None = None,
    ) -> LiveOrderView:
        """Live, self-updating list of the orders matching ``query``. The caller must close() it."""
        # Subscribe before loading so no change committed in between is missed;
        # the view's version check discards anything the load already covers.
        view = LiveOrderView(query, on_update=on_update).attach(self.events)
        try:
            orders = await order_store.list_orders(db, query)
            view.load([OrderSnapshot.model_validate(o) for o in orders])
            await db.rollback()
        except Exception:
            view.close()
            raise
        return view

    # ── Creation ─────────────────────────────────────────────────────────────

    async def create_order(
        self,
        db: AsyncSession,
        draft: CheckoutRequest,
        customer: Actor,
        tx_ref: str,
    ) -> OrderSnapshot:
        """Insert a pending order for a checkout draft paid under ``tx_ref``."""
        if customer.role is not ActorRole.CUSTOMER:
            raise Forbidden("Only customers can place orders.")

        subtotal, delivery_fee, total = priced_total(draft)

        now = utcnow()
        order = Order(
            id=str(uuid.uuid4()),
            order_number=_new_order_number(),
            customer_id=customer.id,
            restaurant_id=draft.restaurant_id,
            restaurant_name=draft.restaurant_name,
            status=OrderStatus.PENDING,
            subtotal=subtotal,
            delivery_fee=delivery_fee,
            total=total,
            delivery_address=draft.delivery_address,
            phone_number=draft.phone_number,
            special_instructions=draft.special_instructions,
            tx_ref=tx_ref,
            version_id=1,
            created_at=now,
            updated_at=now,
        )
        order.items = [
            OrderItem(
                position=position,
                menu_item_id=item.menu_item_id,
                name=item.name,
                price=item.price,
                quantity=item.quantity,
            )
            for position, item in enumerate(draft.items)
        ]
        order.history = [
            OrderStatusHistory(
                from_status=None,
                status=OrderStatus.PENDING,
                actor_id=customer.id,
                actor_role=customer.role,
                note="Order created",
                created_at=now,
            )
        ]
        db.add(order)
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            raise InvalidOrder(f"An order already exists for payment reference '{tx_ref}'.")
        snapshot = OrderSnapshot.model_validate(order)
        await db.commit()

        logger.info("Order %s created for customer=%s tx_ref=%s", snapshot.order_number, customer.id, tx_ref)
        await self._publish(None, snapshot)
        return snapshot

    # ── Transitions ──────────────────────────────────────────────────────────

    @with_optimistic_retry()
    async def _apply_transition(
        self,
        db: AsyncSession,
        order_id: str,
        target: OrderStatus,
        actor: Actor,
        note: str,
        expected_status: OrderStatus | None,
        reason: str | None = None,
    ) -> tuple[OrderSnapshot, OrderSnapshot]:
        order = await order_store.get_order(db, order_id)
        if order is None:
            await db.rollback()
            raise NotFound(f"Order '{order_id}' not found.")

        current = order.status
        try:
            if expected_status is not None and expected_status is not current:
                raise InvalidTransition(
                    f"Order is '{current.value}', not '{expected_status.value}'. Refresh and retry.",
                    current=current.value,
                    target=target.value,
                )
            edge = require_transition(current, target, actor.role)
            if edge.via_claim:
                raise InvalidTransition(
                    "Orders are picked up by accepting the delivery offer.",
                    current=current.value,
                    target=target.value,
                )
            _check_ownership(order, actor)
        except OrderError:
            await db.rollback()
            raise

        before = OrderSnapshot.model_validate(order)
        now = utcnow()
        values = {"status": target, "updated_at": now, _STATUS_TIMESTAMPS[target]: now}
        refund = None
        if target is OrderStatus.CANCELLED:
            values.update(
                cancellation_reason=reason,
                cancelled_by=actor.id,
                driver_id=None,
                driver_name=None,
            )
            if current is not OrderStatus.PENDING:
                refund = open_refund(order, reason, actor.id, now)

        await order_store.compare_and_set(db, order.id, current, order.version_id, values)
        db.add(
            OrderStatusHistory(
                order_id=order.id,
                from_status=current,
                status=target,
                actor_id=actor.id,
                actor_role=actor.role,
                note=note or reason or "",
                created_at=now,
            )
        )
        if refund is not None:
            db.add(refund)
        await db.flush()
        after = await self._snapshot(db, order_id)
        await db.commit()
        return before, after

    async def update_status(
        self,
        db: AsyncSession,
        order_id: str,
        new_status: OrderStatus,
        actor: Actor,
        note: str = "",
        expected_status: OrderStatus | None = None,
    ) -> OrderSnapshot:
        """Move an order along one edge of the transition table."""
        return await self._transition(db, order_id, new_status, actor, note, expected_status)

    async def _transition(
        self,
        db: AsyncSession,
        order_id: str,
        new_status: OrderStatus,
        actor: Actor,
        note: str,
        expected_status: OrderStatus | None,
        reason: str | None = None,
    ) -> OrderSnapshot:
        try:
            before, after = await self._apply_transition(
                db, order_id, new_status, actor, note, expected_status, reason=reason
            )
        except StaleDataError:
            raise InvalidTransition(
                "Order kept changing while we tried to update it. Refresh and retry.",
                target=new_status.value,
            )

        logger.info(
            "Order %s: %s -> %s by %s:%s",
            after.order_number, before.status.value, after.status.value, actor.role.value, actor.id,
        )
        await self._publish(before, after)
        return after

    async def cancel_order(
        self,
        db: AsyncSession,
        order_id: str,
        reason: str,
        actor: Actor,
        expected_status: OrderStatus | None = None,
    ) -> OrderSnapshot:
        """Cancel with a mandatory reason; a paid order also gets a pending refund."""
        if not reason or not reason.strip():
            raise ReasonRequired("A cancellation reason is required.")
        return await self._transition(
            db,
            order_id,
            OrderStatus.CANCELLED,
            actor,
            note="",
            expected_status=expected_status,
            reason=reason.strip(),
        )

    async def confirm_payment(
        self, db: AsyncSession, order_id: str, note: str = "Payment confirmed"
    ) -> OrderSnapshot:
        """
        pending -> placed as the system actor, exactly once.

        If the order already moved past pending (a concurrent or earlier
        reconciliation won) the current snapshot is returned unchanged.
        """
        try:
            return await self.update_status(
                db, order_id, OrderStatus.PLACED, SYSTEM_ACTOR, note, expected_status=OrderStatus.PENDING
            )
        except InvalidTransition:
            order = await order_store.get_order(db, order_id)
            if order is None:
                await db.rollback()
                raise NotFound(f"Order '{order_id}' not found.")
            snapshot = OrderSnapshot.model_validate(order)
            await db.rollback()
            if snapshot.status is OrderStatus.PENDING:
                raise
            if snapshot.status is OrderStatus.CANCELLED:
                logger.warning("Verified payment landed on cancelled order %s", snapshot.order_number)
            return snapshot

    async def claim(
        self,
        db: AsyncSession,
        order_id: str,
        driver: Actor,
        driver_name: str | None = None,
    ) -> OrderSnapshot:
        """
        Single-winner ready -> picked assignment.

        Exactly one of any number of concurrent claims succeeds; the others get
        AlreadyClaimed. Re-claiming an order the driver already holds returns
        it unchanged.
        """
        edge = require_transition(OrderStatus.READY, OrderStatus.PICKED, driver.role)

        order = await order_store.get_order(db, order_id)
        if order is None:
            await db.rollback()
            raise NotFound(f"Order '{order_id}' not found.")
        before = OrderSnapshot.model_validate(order)
        if before.driver_id == driver.id:
            await db.rollback()
            return before

        now = utcnow()
        claimed = await order_store.claim_if_unclaimed(
            db,
            order_id,
            {
                "status": edge.target,
                "driver_id": driver.id,
                "driver_name": driver_name or driver.name,
                "picked_at": now,
                "updated_at": now,
            },
        )
        if not claimed:
            # Diagnose against the row as it is now, not as we first read it
            order = await order_store.get_order(db, order_id)
            current = OrderSnapshot.model_validate(order)
            await db.rollback()
            if current.driver_id == driver.id:
                return current
            if current.driver_id is not None:
                logger.info("Order %s already claimed by another driver", current.order_number)
                raise AlreadyClaimed("Another driver already accepted this order.")
            raise InvalidTransition(
                f"Order is '{current.status.value}' and cannot be accepted.",
                current=current.status.value,
                target=edge.target.value,
            )

        db.add(
            OrderStatusHistory(
                order_id=order_id,
                from_status=edge.source,
                status=edge.target,
                actor_id=driver.id,
                actor_role=driver.role,
                note="Accepted for delivery",
                created_at=now,
            )
        )
        await db.flush()
        after = await self._snapshot(db, order_id)
        await db.commit()

        logger.info("Order %s claimed by driver %s", after.order_number, driver.id)
        await self._publish(before, after)
        return after
