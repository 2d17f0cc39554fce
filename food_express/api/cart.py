"""
Food Express Order Service - Cart API (customers)
"""
from fastapi import APIRouter, Depends

from food_express.api.deps import get_actor, get_cart_store, require_role
from food_express.core.security import Actor
from food_express.db.cart_store import CartStore
from food_express.models.order import ActorRole
from food_express.schemas.payment import CartItemUpdate, CartResponse

router = APIRouter(prefix="/cart", tags=["cart"])


@router.get("", response_model=CartResponse)
async def get_cart(actor: Actor = Depends(get_actor), carts: CartStore = Depends(get_cart_store)):
    require_role(actor, ActorRole.CUSTOMER)
    return CartResponse(customer_id=actor.id, items=await carts.get_cart(actor.id))


@router.put("/items/{menu_item_id}", response_model=CartResponse)
async def set_cart_item(
    menu_item_id: str,
    payload: CartItemUpdate,
    actor: Actor = Depends(get_actor),
    carts: CartStore = Depends(get_cart_store),
):
    """Set the quantity of one item; 0 removes it."""
    require_role(actor, ActorRole.CUSTOMER)
    items = await carts.set_item(actor.id, menu_item_id, payload.quantity)
    return CartResponse(customer_id=actor.id, items=items)


@router.delete("/items/{menu_item_id}", response_model=CartResponse)
async def remove_cart_item(
    menu_item_id: str,
    actor: Actor = Depends(get_actor),
    carts: CartStore = Depends(get_cart_store),
):
    require_role(actor, ActorRole.CUSTOMER)
    return CartResponse(customer_id=actor.id, items=await carts.remove_item(actor.id, menu_item_id))
