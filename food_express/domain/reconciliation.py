"""
Food Express Order Service - Payment Reconciliation Flow

Turns a verified external payment into a confirmed order exactly once:
  1. Verify tx_ref with the payment server (declined / unreachable -> raise)
  2. Find the order carrying that tx_ref
  3. pending -> placed (no-op if already past pending)
  4. Clear the owner's cart, best-effort and once per tx_ref
A payment that lands on an order cancelled in the meantime is never reported
as confirmed: the order gets a refund instead and the cart is left alone.
Running it any number of times for the same tx_ref has the effect of running
it once.
"""
import logging
from enum import Enum
from typing import Any

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from food_express.clients.payments import PaymentVerifier
from food_express.db import order_store
from food_express.db.cart_store import CartStore
from food_express.domain.lifecycle import OrderLifecycle
from food_express.domain.refunds import RefundService
from food_express.models.order import OrderStatus
from food_express.schemas.order import OrderSnapshot
from food_express.schemas.refund import RefundSnapshot

logger = logging.getLogger(__name__)


class ReconciliationOutcome(str, Enum):
    SUCCESS = "success"
    VERIFIED_NO_ORDER = "verified-no-order"
    VERIFIED_ORDER_CANCELLED = "verified-order-cancelled"


class ReconciliationResult(BaseModel):
    outcome: ReconciliationOutcome
    tx_ref: str
    order: OrderSnapshot | None = None
    refund: RefundSnapshot | None = None
    cart_cleared: bool = False
    message: str
    payment: dict[str, Any] = {}


class PaymentReconciler:
    def __init__(
        self,
        verifier: PaymentVerifier,
        lifecycle: OrderLifecycle,
        carts: CartStore | None = None,
        refunds: RefundService | None = None,
    ):
        self.verifier = verifier
        self.lifecycle = lifecycle
        self.carts = carts
        self.refunds = refunds if refunds is not None else RefundService()

    async def reconcile(self, db: AsyncSession, tx_ref: str) -> ReconciliationResult:
        # Raises PaymentDeclined / VerificationError before anything is touched
        verification = await self.verifier.verify_payment(tx_ref)

        order = await order_store.get_order_by_tx_ref(db, tx_ref)
        if order is None:
            await db.rollback()
            logger.error("Payment %s verified but no order carries it", tx_ref)
            return ReconciliationResult(
                outcome=ReconciliationOutcome.VERIFIED_NO_ORDER,
                tx_ref=tx_ref,
                message="Your payment was received but we could not find your order. Please contact support.",
                payment=verification.data,
            )
        order_id = order.id
        await db.rollback()

        snapshot = await self.lifecycle.confirm_payment(db, order_id)
        if snapshot.status is OrderStatus.CANCELLED:
            refund, _ = await self.refunds.refund_late_payment(db, order_id)
            return ReconciliationResult(
                outcome=ReconciliationOutcome.VERIFIED_ORDER_CANCELLED,
                tx_ref=tx_ref,
                order=snapshot,
                refund=refund,
                message=(
                    f"Your payment was received but order {snapshot.order_number} was cancelled. "
                    f"A refund of {refund.amount} has been initiated."
                ),
                payment=verification.data,
            )

        cart_cleared = await self._clear_cart(snapshot.customer_id, tx_ref)
        return ReconciliationResult(
            outcome=ReconciliationOutcome.SUCCESS,
            tx_ref=tx_ref,
            order=snapshot,
            cart_cleared=cart_cleared,
            message="Payment confirmed.",
            payment=verification.data,
        )

    async def _clear_cart(self, customer_id: str, tx_ref: str) -> bool:
        if self.carts is None:
            return False
        try:
            return await self.carts.clear_cart_once(customer_id, tx_ref)
        except Exception as exc:
            logger.warning("Cart clear for customer=%s tx_ref=%s failed: %s", customer_id, tx_ref, exc)
            return False
