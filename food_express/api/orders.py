"""
Food Express Order Service - Orders API

Role-scoped reads and the status transitions restaurants, customers and
admins drive by hand. Legality and ownership are decided by OrderLifecycle;
these routes only translate HTTP into lifecycle calls.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from food_express.api.deps import get_actor, get_lifecycle
from food_express.core.security import Actor
from food_express.core.transitions import allowed_targets
from food_express.db.database import get_db
from food_express.domain.lifecycle import OrderLifecycle
from food_express.models.order import OrderStatus
from food_express.schemas.order import (
    CancelRequest,
    OrderDetail,
    OrderSnapshot,
    StatusField,
    StatusUpdateRequest,
)

router = APIRouter(prefix="/orders", tags=["orders"])


def _detail(order: OrderSnapshot, actor: Actor) -> OrderDetail:
    return OrderDetail(order=order, next_statuses=allowed_targets(order.status, actor.role))


@router.get("", response_model=list[OrderSnapshot])
async def list_orders(
    status: list[StatusField] | None = Query(None, description="Filter by one or more statuses"),
    limit: int = Query(100, ge=1, le=500),
    actor: Actor = Depends(get_actor),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
    db: AsyncSession = Depends(get_db),
):
    """Orders the caller may see, newest first."""
    statuses = frozenset(status) if status else None
    return await lifecycle.list_orders(db, actor, statuses=statuses, limit=limit)


@router.get("/{order_id}", response_model=OrderDetail)
async def get_order(
    order_id: str,
    actor: Actor = Depends(get_actor),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
    db: AsyncSession = Depends(get_db),
):
    order = await lifecycle.get_order(db, order_id, actor)
    return _detail(order, actor)


@router.post("/{order_id}/status", response_model=OrderDetail)
async def update_status(
    order_id: str,
    payload: StatusUpdateRequest,
    actor: Actor = Depends(get_actor),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
    db: AsyncSession = Depends(get_db),
):
    """
    Advance an order. Send expected_status (the status shown on screen) so a
    stale screen gets 409 instead of acting on an order that already moved.
    """
    if payload.status is OrderStatus.CANCELLED:
        order = await lifecycle.cancel_order(
            db, order_id, payload.note, actor, expected_status=payload.expected_status
        )
    else:
        order = await lifecycle.update_status(
            db, order_id, payload.status, actor, note=payload.note, expected_status=payload.expected_status
        )
    return _detail(order, actor)


@router.post("/{order_id}/cancel", response_model=OrderDetail)
async def cancel_order(
    order_id: str,
    payload: CancelRequest,
    actor: Actor = Depends(get_actor),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
    db: AsyncSession = Depends(get_db),
):
    order = await lifecycle.cancel_order(
        db, order_id, payload.reason, actor, expected_status=payload.expected_status
    )
    return _detail(order, actor)
