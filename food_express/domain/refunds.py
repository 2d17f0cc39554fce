"""
Food Express Order Service - Refunds

A refund is opened in two places:
  - OrderLifecycle.cancel_order, in the cancelling transaction, when the
    order was already paid
  - PaymentReconciler, when a verified payment lands on an order that was
    cancelled while still unpaid
Admins then settle it: pending -> approved | rejected, approved -> completed.
"""
import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from food_express.core.errors import Forbidden, InvalidTransition, NotFound
from food_express.core.security import SYSTEM_ACTOR, Actor
from food_express.db import order_store, refund_store
from food_express.models.order import ActorRole, Order, OrderStatus, Refund, RefundStatus, utcnow
from food_express.schemas.refund import RefundSnapshot

logger = logging.getLogger(__name__)

LATE_PAYMENT_REASON = "Payment received after the order was cancelled"

REFUND_TRANSITIONS: dict[RefundStatus, frozenset[RefundStatus]] = {
    RefundStatus.PENDING: frozenset({RefundStatus.APPROVED, RefundStatus.REJECTED}),
    RefundStatus.APPROVED: frozenset({RefundStatus.COMPLETED}),
}


def open_refund(order: Order, reason: str, initiated_by: str, now: datetime | None = None) -> Refund:
    """A pending refund of the full order total. The caller adds it to its session."""
    return Refund(
        order_id=order.id,
        customer_id=order.customer_id,
        amount=order.total,
        reason=reason,
        status=RefundStatus.PENDING,
        initiated_by=initiated_by,
        created_at=now or utcnow(),
    )


class RefundService:
    async def refund_late_payment(
        self, db: AsyncSession, order_id: str, reason: str = LATE_PAYMENT_REASON
    ) -> tuple[RefundSnapshot, bool]:
        """
        Make sure a cancelled order that turned out to be paid has a refund.

        Returns (refund, created). Safe to repeat: an order never gets a
        second refund, however many reconciliations race here.
        """
        order = await order_store.get_order(db, order_id)
        if order is None:
            await db.rollback()
            raise NotFound(f"Order '{order_id}' not found.")
        if order.status is not OrderStatus.CANCELLED:
            status = order.status.value
            await db.rollback()
            raise InvalidTransition(
                f"Order is '{status}'; only cancelled orders are refunded.", current=status
            )

        existing = await refund_store.get_refund_for_order(db, order_id)
        if existing is not None:
            snapshot = RefundSnapshot.model_validate(existing)
            await db.rollback()
            return snapshot, False

        refund = open_refund(order, reason, SYSTEM_ACTOR.id)
        order_number = order.order_number
        db.add(refund)
        try:
            await db.flush()
        except IntegrityError:
            # A concurrent reconciliation opened it first
            await db.rollback()
            existing = await refund_store.get_refund_for_order(db, order_id)
            snapshot = RefundSnapshot.model_validate(existing)
            await db.rollback()
            return snapshot, False
        snapshot = RefundSnapshot.model_validate(refund)
        await db.commit()

        logger.warning("Refund %s opened for late payment on cancelled order %s", snapshot.id, order_number)
        return snapshot, True

    async def list_refunds(
        self,
        db: AsyncSession,
        actor: Actor,
        status: RefundStatus | None = None,
        limit: int | None = None,
    ) -> list[RefundSnapshot]:
        """Customers see their own refunds, admins see all of them."""
        if actor.role is ActorRole.CUSTOMER:
            customer_id = actor.id
        elif actor.role in (ActorRole.ADMIN, ActorRole.SYSTEM):
            customer_id = None
        else:
            raise Forbidden("Only customers and admins can view refunds.")
        refunds = await refund_store.list_refunds(db, customer_id=customer_id, status=status, limit=limit)
        snapshots = [RefundSnapshot.model_validate(r) for r in refunds]
        await db.rollback()
        return snapshots

    async def get_refund(self, db: AsyncSession, refund_id: str, actor: Actor) -> RefundSnapshot:
        refund = await refund_store.get_refund(db, refund_id)
        if refund is None:
            await db.rollback()
            raise NotFound(f"Refund '{refund_id}' not found.")
        snapshot = RefundSnapshot.model_validate(refund)
        await db.rollback()
        if actor.role is ActorRole.ADMIN or (actor.role is ActorRole.CUSTOMER and snapshot.customer_id == actor.id):
            return snapshot
        raise Forbidden("You may not view this refund.")

    async def process_refund(
        self,
        db: AsyncSession,
        refund_id: str,
        status: RefundStatus,
        admin: Actor,
        note: str = "",
        expected_status: RefundStatus | None = None,
    ) -> RefundSnapshot:
        """Move a refund one settlement step, recording who did it and when."""
        if admin.role is not ActorRole.ADMIN:
            raise Forbidden("Only admins can process refunds.")

        refund = await refund_store.get_refund(db, refund_id)
        if refund is None:
            await db.rollback()
            raise NotFound(f"Refund '{refund_id}' not found.")
        current = refund.status
        if expected_status is not None and expected_status is not current:
            await db.rollback()
            raise InvalidTransition(
                f"Refund is '{current.value}', not '{expected_status.value}'. Refresh and retry.",
                current=current.value,
                target=status.value,
            )
        if status not in REFUND_TRANSITIONS.get(current, frozenset()):
            await db.rollback()
            raise InvalidTransition(
                f"Cannot move refund from '{current.value}' to '{status.value}'.",
                current=current.value,
                target=status.value,
            )

        moved = await refund_store.set_status_if(
            db,
            refund_id,
            current,
            {"status": status, "processed_by": admin.id, "processed_at": utcnow(), "note": note},
        )
        if not moved:
            await db.rollback()
            raise InvalidTransition(
                "Refund was processed by someone else. Refresh and retry.",
                current=current.value,
                target=status.value,
            )
        snapshot = RefundSnapshot.model_validate(await refund_store.get_refund(db, refund_id))
        await db.commit()

        logger.info("Refund %s: %s -> %s by admin %s", refund_id, current.value, status.value, admin.id)
        return snapshot
