"""
Food Express Order Service - Live feeds (SSE)

Architecture:
  - Each stream opens a LiveOrderView on the in-process change bus
  - The view is loaded once from the store, then updated only by change events
    (local writes and, via RedisEventRelay, writes from other instances)
  - Every update is pushed as one SSE event carrying the full current list
  - The view is closed (unsubscribed) when the client disconnects
"""
import asyncio
import json
import logging
from typing import AsyncGenerator

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from food_express.api.deps import get_actor, get_lifecycle, get_matcher, require_role
from food_express.core.config import get_settings
from food_express.core.errors import Forbidden
from food_express.core.events import LiveOrderView
from food_express.core.security import Actor
from food_express.core.transitions import TERMINAL_STATUSES
from food_express.db.database import get_db
from food_express.db.order_store import OrderQuery
from food_express.domain.lifecycle import OrderLifecycle
from food_express.domain.matcher import DeliveryMatcher
from food_express.models.order import ActorRole, OrderStatus
from food_express.schemas.order import OrderSnapshot

settings = get_settings()
logger = logging.getLogger(__name__)
router = APIRouter(prefix="/feeds", tags=["feeds"])

# Paid orders the kitchen still has to deal with or hand over
KITCHEN_STATUSES = frozenset(
    {OrderStatus.PLACED, OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.PICKED}
)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",  # Disable Nginx buffering
    "Connection": "keep-alive",
}


def _frame(event: str, payload) -> str:
    return f"event: {event}\ndata: {json.dumps(payload)}\n\n"


def _orders_payload(orders: list[OrderSnapshot]) -> list[dict]:
    return [o.model_dump(mode="json") for o in orders]


async def _sse_generator(
    request: Request,
    view: LiveOrderView,
    updates: asyncio.Queue,
    event: str,
    single: bool = False,
) -> AsyncGenerator[str, None]:
    try:
        yield f"retry: {settings.SSE_RETRY_MILLISECONDS}\n\n"
        orders = view.orders()
        while True:
            if single:
                if not orders:
                    break
                yield _frame(event, orders[0].model_dump(mode="json"))
                # Stop streaming when order is in terminal state
                if orders[0].status in TERMINAL_STATUSES:
                    break
            else:
                yield _frame(event, _orders_payload(orders))

            orders = None
            while orders is None:
                if await request.is_disconnected():
                    return
                try:
                    orders = await asyncio.wait_for(
                        updates.get(), timeout=settings.SSE_KEEPALIVE_INTERVAL_SECONDS
                    )
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
    finally:
        view.close()


def _stream(request: Request, view: LiveOrderView, updates: asyncio.Queue, event: str, single: bool = False):
    return StreamingResponse(
        _sse_generator(request, view, updates, event, single=single),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/offers")
async def stream_offers(
    request: Request,
    actor: Actor = Depends(get_actor),
    matcher: DeliveryMatcher = Depends(get_matcher),
    db: AsyncSession = Depends(get_db),
):
    """Open delivery offers; a claimed offer disappears from every driver's stream."""
    require_role(actor, ActorRole.DRIVER, ActorRole.ADMIN)
    updates: asyncio.Queue = asyncio.Queue()
    view = await matcher.open_offers_view(db, on_update=updates.put_nowait)
    return _stream(request, view, updates, "offers")


@router.get("/active")
async def stream_active(
    request: Request,
    actor: Actor = Depends(get_actor),
    matcher: DeliveryMatcher = Depends(get_matcher),
    db: AsyncSession = Depends(get_db),
):
    require_role(actor, ActorRole.DRIVER)
    updates: asyncio.Queue = asyncio.Queue()
    view = await matcher.open_active_view(db, actor.id, on_update=updates.put_nowait)
    return _stream(request, view, updates, "active_deliveries")


@router.get("/restaurants/{restaurant_id}")
async def stream_restaurant(
    restaurant_id: str,
    request: Request,
    actor: Actor = Depends(get_actor),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
    db: AsyncSession = Depends(get_db),
):
    if actor.role is not ActorRole.ADMIN and not (
        actor.role is ActorRole.RESTAURANT and actor.restaurant_id == restaurant_id
    ):
        raise Forbidden("Restaurants can only follow their own orders.")
    updates: asyncio.Queue = asyncio.Queue()
    view = await lifecycle.open_view(
        db,
        OrderQuery(statuses=KITCHEN_STATUSES, restaurant_id=restaurant_id),
        on_update=updates.put_nowait,
    )
    return _stream(request, view, updates, "restaurant_orders")


@router.get("/orders/{order_id}")
async def stream_order(
    order_id: str,
    request: Request,
    actor: Actor = Depends(get_actor),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
    db: AsyncSession = Depends(get_db),
):
    """One order's updates until it is delivered or cancelled."""
    await lifecycle.get_order(db, order_id, actor)  # NotFound / Forbidden
    updates: asyncio.Queue = asyncio.Queue()
    view = await lifecycle.open_view(db, OrderQuery(order_id=order_id), on_update=updates.put_nowait)
    return _stream(request, view, updates, "order_update", single=True)
