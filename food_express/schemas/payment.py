"""
Food Express Order Service - Payment and cart schemas
"""
from pydantic import BaseModel, Field

from food_express.schemas.order import OrderSnapshot


class CheckoutResponse(BaseModel):
    order: OrderSnapshot
    checkout_url: str
    tx_ref: str


class VerifyRequest(BaseModel):
    tx_ref: str = Field(..., min_length=1, max_length=128)


class WebhookPayload(BaseModel):
    """Provider callback. Only the reference is used; its status is re-verified."""

    tx_ref: str | None = Field(None, max_length=128)
    trx_ref: str | None = Field(None, max_length=128)
    status: str | None = None

    @property
    def reference(self) -> str | None:
        return self.tx_ref or self.trx_ref


class CartItemUpdate(BaseModel):
    quantity: int = Field(..., ge=0, le=50)


class CartResponse(BaseModel):
    customer_id: str
    items: dict[str, int]
