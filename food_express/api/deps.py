"""
Food Express Order Service - Shared route dependencies

Domain services live on app.state (wired in main.py) so tests can swap them.
"""
from fastapi import Request

from food_express.clients.payments import PaymentVerifier
from food_express.core.errors import Forbidden
from food_express.core.security import Actor
from food_express.db.cart_store import CartStore
from food_express.domain.lifecycle import OrderLifecycle
from food_express.domain.matcher import DeliveryMatcher
from food_express.domain.reconciliation import PaymentReconciler
from food_express.domain.refunds import RefundService
from food_express.domain.stats import StatsCache
from food_express.models.order import ActorRole


def get_actor(request: Request) -> Actor:
    # Set by JWTAuthMiddleware
    return request.state.actor


def require_role(actor: Actor, *roles: ActorRole) -> None:
    if actor.role not in roles:
        allowed = ", ".join(r.value for r in roles)
        raise Forbidden(f"This action requires one of: {allowed}.")


def get_lifecycle(request: Request) -> OrderLifecycle:
    return request.app.state.lifecycle


def get_matcher(request: Request) -> DeliveryMatcher:
    return request.app.state.matcher


def get_reconciler(request: Request) -> PaymentReconciler:
    return request.app.state.reconciler


def get_payment_verifier(request: Request) -> PaymentVerifier:
    return request.app.state.payment_verifier


def get_cart_store(request: Request) -> CartStore:
    return request.app.state.cart_store


def get_stats_cache(request: Request) -> StatsCache:
    return request.app.state.stats_cache


def get_refund_service(request: Request) -> RefundService:
    return request.app.state.refunds
