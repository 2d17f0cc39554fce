"""
Food Express Order Service - Cart Store (Redis)

One hash per customer: cart:{customer_id} -> {menu_item_id: quantity}.
The customer edits it item by item; only payment reconciliation empties it.
"""
import logging

import redis.asyncio as aioredis

from food_express.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

CART_KEY = "cart:{customer_id}"
CART_CLEARED_KEY = "cart-cleared:{tx_ref}"


class CartStore:
    def __init__(self, redis: aioredis.Redis):
        self.redis = redis

    async def get_cart(self, customer_id: str) -> dict[str, int]:
        raw = await self.redis.hgetall(CART_KEY.format(customer_id=customer_id))
        return {item_id: int(quantity) for item_id, quantity in raw.items()}

    async def set_item(self, customer_id: str, menu_item_id: str, quantity: int) -> dict[str, int]:
        key = CART_KEY.format(customer_id=customer_id)
        if quantity <= 0:
            await self.redis.hdel(key, menu_item_id)
        else:
            await self.redis.hset(key, menu_item_id, quantity)
        return await self.get_cart(customer_id)

    async def remove_item(self, customer_id: str, menu_item_id: str) -> dict[str, int]:
        await self.redis.hdel(CART_KEY.format(customer_id=customer_id), menu_item_id)
        return await self.get_cart(customer_id)

    async def clear_cart_once(self, customer_id: str, tx_ref: str) -> bool:
        """
        Empty the cart for a reconciled payment, at most once per tx_ref.

        Returns False when this tx_ref already cleared the cart, so a reloaded
        confirmation page cannot wipe a cart the customer has started since.
        """
        marker = CART_CLEARED_KEY.format(tx_ref=tx_ref)
        claimed = await self.redis.set(marker, customer_id, nx=True, ex=settings.CART_CLEAR_MARKER_TTL_SECONDS)
        if not claimed:
            return False
        try:
            await self.redis.delete(CART_KEY.format(customer_id=customer_id))
        except Exception:
            # Let the next reconciliation attempt try again
            await self.redis.delete(marker)
            raise
        logger.info("Cart cleared for customer=%s tx_ref=%s", customer_id, tx_ref)
        return True
