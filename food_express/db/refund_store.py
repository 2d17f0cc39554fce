"""
Food Express Order Service - Refund Store

Reads and the conditional status write used to settle refunds. One refund
per order is enforced by the unique order_id column.
"""
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from food_express.models.order import Refund, RefundStatus


async def get_refund(db: AsyncSession, refund_id: str) -> Refund | None:
    result = await db.execute(
        select(Refund).where(Refund.id == refund_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_refund_for_order(db: AsyncSession, order_id: str) -> Refund | None:
    result = await db.execute(
        select(Refund).where(Refund.order_id == order_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_refunds(
    db: AsyncSession,
    customer_id: str | None = None,
    status: RefundStatus | None = None,
    limit: int | None = None,
) -> list[Refund]:
    """Refunds newest first, optionally for one customer and/or in one status."""
    stmt = select(Refund)
    if customer_id is not None:
        stmt = stmt.where(Refund.customer_id == customer_id)
    if status is not None:
        stmt = stmt.where(Refund.status == status)
    stmt = stmt.order_by(Refund.created_at.desc())
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await db.execute(stmt.execution_options(populate_existing=True))
    return list(result.scalars().all())


async def set_status_if(
    db: AsyncSession, refund_id: str, expected: RefundStatus, values: dict[str, Any]
) -> bool:
    """Write ``values`` only while the refund is still in ``expected``. False if it moved."""
    result = await db.execute(
        update(Refund)
        .where(Refund.id == refund_id, Refund.status == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
