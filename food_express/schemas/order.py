"""
Food Express Order Service - Order schemas
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated

from pydantic import AfterValidator, BaseModel, BeforeValidator, ConfigDict, Field

from food_express.models.order import ActorRole, OrderStatus

# Accepts "unpaid" and "confirmed" as spellings of pending and preparing.
StatusField = Annotated[OrderStatus, BeforeValidator(OrderStatus.parse)]


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Some drivers hand back naive datetimes for timezone-aware columns.
UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class OrderItemIn(BaseModel):
    menu_item_id: str | None = Field(None, max_length=64, examples=["item-001"])
    name: str = Field(..., min_length=1, max_length=255)
    price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    quantity: int = Field(..., ge=1, le=50)


class CheckoutRequest(BaseModel):
    restaurant_id: str = Field(..., min_length=1, max_length=64)
    restaurant_name: str = Field(..., min_length=1, max_length=255)
    items: list[OrderItemIn] = Field(..., min_length=1, max_length=50)
    delivery_fee: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    total: Decimal | None = Field(None, ge=0, description="Client-computed total, checked against the items")
    delivery_address: str = Field(..., min_length=1, max_length=500)
    phone_number: str = Field(..., min_length=3, max_length=32)
    special_instructions: str | None = Field(None, max_length=500)


class OrderItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    menu_item_id: str | None
    name: str
    price: Decimal
    quantity: int


class StatusHistoryEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_status: OrderStatus | None
    status: OrderStatus
    actor_id: str
    actor_role: ActorRole
    note: str
    created_at: UtcDatetime


class OrderSnapshot(BaseModel):
    """Immutable view of an order handed to callers and change-feed subscribers."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    order_number: str
    customer_id: str
    restaurant_id: str
    restaurant_name: str
    driver_id: str | None
    driver_name: str | None
    status: OrderStatus
    items: list[OrderItemOut]
    subtotal: Decimal
    delivery_fee: Decimal
    total: Decimal
    delivery_address: str
    phone_number: str
    special_instructions: str | None
    tx_ref: str
    cancellation_reason: str | None
    version_id: int
    cancelled_by: str | None = None
    created_at: UtcDatetime
    updated_at: UtcDatetime
    placed_at: UtcDatetime | None = None
    delivered_at: UtcDatetime | None = None
    history: list[StatusHistoryEntry] = []


class StatusUpdateRequest(BaseModel):
    status: StatusField
    note: str = Field("", max_length=500)
    expected_status: StatusField | None = Field(
        None, description="Status the caller saw; the update fails if the order has moved on"
    )


class CancelRequest(BaseModel):
    reason: str = Field("", max_length=500)
    expected_status: StatusField | None = None


class AcceptDeliveryRequest(BaseModel):
    driver_name: str | None = Field(None, max_length=255)


class OrderDetail(BaseModel):
    order: OrderSnapshot
    next_statuses: list[OrderStatus]
