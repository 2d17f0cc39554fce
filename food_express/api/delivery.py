"""
Food Express Order Service - Delivery API (drivers)
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from food_express.api.deps import get_actor, get_matcher, require_role
from food_express.core.security import Actor
from food_express.db.database import get_db
from food_express.domain.matcher import DeliveryMatcher
from food_express.models.order import ActorRole
from food_express.schemas.order import AcceptDeliveryRequest, OrderSnapshot

router = APIRouter(prefix="/delivery", tags=["delivery"])


@router.get("/offers", response_model=list[OrderSnapshot])
async def list_offers(
    actor: Actor = Depends(get_actor),
    matcher: DeliveryMatcher = Depends(get_matcher),
    db: AsyncSession = Depends(get_db),
):
    """Ready orders nobody has claimed yet."""
    require_role(actor, ActorRole.DRIVER, ActorRole.ADMIN)
    return await matcher.available_offers(db)


@router.get("/active", response_model=list[OrderSnapshot])
async def list_active(
    actor: Actor = Depends(get_actor),
    matcher: DeliveryMatcher = Depends(get_matcher),
    db: AsyncSession = Depends(get_db),
):
    require_role(actor, ActorRole.DRIVER)
    return await matcher.active_deliveries(db, actor.id)


@router.post("/{order_id}/accept", response_model=OrderSnapshot)
async def accept_delivery(
    order_id: str,
    payload: AcceptDeliveryRequest | None = None,
    actor: Actor = Depends(get_actor),
    matcher: DeliveryMatcher = Depends(get_matcher),
    db: AsyncSession = Depends(get_db),
):
    """Claim an offer. Losing the race returns 409 with "soft": true."""
    driver_name = payload.driver_name if payload else None
    return await matcher.accept_delivery(db, order_id, actor, driver_name=driver_name)


@router.post("/{order_id}/complete", response_model=OrderSnapshot)
async def complete_delivery(
    order_id: str,
    actor: Actor = Depends(get_actor),
    matcher: DeliveryMatcher = Depends(get_matcher),
    db: AsyncSession = Depends(get_db),
):
    return await matcher.complete_delivery(db, order_id, actor)
