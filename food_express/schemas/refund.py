"""
Food Express Order Service - Refund schemas
"""
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from food_express.models.order import RefundStatus
from food_express.schemas.order import UtcDatetime


class RefundSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    order_id: str
    customer_id: str
    amount: Decimal
    reason: str
    status: RefundStatus
    initiated_by: str
    created_at: UtcDatetime
    processed_by: str | None = None
    processed_at: UtcDatetime | None = None
    note: str = ""


class ProcessRefundRequest(BaseModel):
    status: RefundStatus
    note: str = Field("", max_length=500)
    expected_status: RefundStatus | None = Field(
        None, description="Status the admin saw; the update fails if the refund has moved on"
    )
