"""
Food Express Order Service - Payments API

Flow:
  1. POST /payments/checkout: open a provider session, create the pending order
  2. Customer pays on the provider's checkout page
  3. POST /payments/verify (customer returns) or /payments/webhook (provider
     callback): reconcile the tx_ref. Either may arrive first, or both, or
     several times; reconciliation makes that harmless.
"""
import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from food_express.api.deps import (
    get_actor,
    get_lifecycle,
    get_payment_verifier,
    get_reconciler,
    require_role,
)
from food_express.clients.payments import PaymentVerifier
from food_express.core.config import get_settings
from food_express.core.errors import InvalidOrder
from food_express.core.security import Actor
from food_express.db.database import get_db
from food_express.domain.lifecycle import OrderLifecycle, priced_total
from food_express.domain.reconciliation import PaymentReconciler, ReconciliationResult
from food_express.models.order import ActorRole
from food_express.schemas.order import CheckoutRequest
from food_express.schemas.payment import CheckoutResponse, VerifyRequest, WebhookPayload

settings = get_settings()
logger = logging.getLogger(__name__)
router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/checkout", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def checkout(
    payload: CheckoutRequest,
    actor: Actor = Depends(get_actor),
    verifier: PaymentVerifier = Depends(get_payment_verifier),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
    db: AsyncSession = Depends(get_db),
):
    """
    Open a payment session and record the pending order under its tx_ref.
    The order is only placed once the payment is verified.
    """
    require_role(actor, ActorRole.CUSTOMER)
    _, _, amount = priced_total(payload)

    session = await verifier.initialize_payment(
        {
            "amount": amount,
            "currency": settings.PAYMENT_CURRENCY,
            "customer_id": actor.id,
            "customer_name": actor.name,
            "phone_number": payload.phone_number,
            "restaurant_id": payload.restaurant_id,
            "return_url": settings.PAYMENT_RETURN_URL,
        }
    )
    order = await lifecycle.create_order(db, payload, actor, session.tx_ref)
    return CheckoutResponse(order=order, checkout_url=session.checkout_url, tx_ref=session.tx_ref)


@router.post("/verify", response_model=ReconciliationResult)
async def verify_payment(
    payload: VerifyRequest,
    actor: Actor = Depends(get_actor),
    reconciler: PaymentReconciler = Depends(get_reconciler),
    db: AsyncSession = Depends(get_db),
):
    """Customer returned from the provider. Safe to call repeatedly."""
    require_role(actor, ActorRole.CUSTOMER, ActorRole.ADMIN)
    return await reconciler.reconcile(db, payload.tx_ref)


@router.post("/webhook", response_model=ReconciliationResult)
async def payment_webhook(
    payload: WebhookPayload,
    reconciler: PaymentReconciler = Depends(get_reconciler),
    db: AsyncSession = Depends(get_db),
):
    """Provider callback. Unauthenticated: the reference is re-verified with the provider."""
    reference = payload.reference
    if not reference:
        raise InvalidOrder("Webhook payload carries no transaction reference.")
    logger.info("Payment webhook for tx_ref=%s (reported status=%s)", reference, payload.status)
    return await reconciler.reconcile(db, reference)
