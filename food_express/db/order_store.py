"""
Food Express Order Service - Order Store

Per-order get/create, query-by-field and the conditional (compare-and-set)
writes the lifecycle manager relies on. Nothing here decides whether a
transition is legal; it only guarantees that a write lands on the row state
the caller validated.
"""
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from food_express.core.optimistic_lock import StaleDataError
from food_express.models.order import Order, OrderStatus


@dataclass(frozen=True)
class OrderQuery:
    """A field filter usable both as a SQL query and as an in-memory predicate.

    The same query drives the initial load of a live view and the matching of
    change events pushed to it, so both must agree.
    """

    statuses: frozenset[OrderStatus] | None = None
    order_id: str | None = None
    customer_id: str | None = None
    restaurant_id: str | None = None
    driver_id: str | None = None
    unclaimed: bool = False

    def matches(self, order: Any) -> bool:
        if order is None:
            return False
        if self.statuses is not None and order.status not in self.statuses:
            return False
        if self.order_id is not None and order.id != self.order_id:
            return False
        if self.customer_id is not None and order.customer_id != self.customer_id:
            return False
        if self.restaurant_id is not None and order.restaurant_id != self.restaurant_id:
            return False
        if self.driver_id is not None and order.driver_id != self.driver_id:
            return False
        if self.unclaimed and order.driver_id is not None:
            return False
        return True

    def where_clauses(self) -> list:
        clauses = []
        if self.statuses is not None:
            clauses.append(Order.status.in_(list(self.statuses)))
        if self.order_id is not None:
            clauses.append(Order.id == self.order_id)
        if self.customer_id is not None:
            clauses.append(Order.customer_id == self.customer_id)
        if self.restaurant_id is not None:
            clauses.append(Order.restaurant_id == self.restaurant_id)
        if self.driver_id is not None:
            clauses.append(Order.driver_id == self.driver_id)
        if self.unclaimed:
            clauses.append(Order.driver_id.is_(None))
        return clauses


async def get_order(db: AsyncSession, order_id: str) -> Order | None:
    """Fetch one order, always overwriting any copy already in the session."""
    result = await db.execute(
        select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_order_by_tx_ref(db: AsyncSession, tx_ref: str) -> Order | None:
    result = await db.execute(
        select(Order).where(Order.tx_ref == tx_ref).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_orders(db: AsyncSession, query: OrderQuery, limit: int | None = None) -> list[Order]:
    """Orders matching ``query``, newest first."""
    stmt = select(Order).where(*query.where_clauses()).order_by(Order.created_at.desc())
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await db.execute(stmt.execution_options(populate_existing=True))
    return list(result.scalars().all())


async def compare_and_set(
    db: AsyncSession,
    order_id: str,
    expected_status: OrderStatus,
    expected_version: int,
    values: dict[str, Any],
) -> None:
    """
    Write ``values`` only if the row still has the status and version we read.

    The version_id column acts as the conflict detector:
      - READ:  caller fetched status + version_id
      - WRITE: UPDATE ... WHERE status = <read_status> AND version_id = <read_version>
      - If another transaction committed first -> StaleDataError
    """
    result = await db.execute(
        update(Order)
        .where(
            Order.id == order_id,
            Order.status == expected_status,
            Order.version_id == expected_version,
        )
        .values(version_id=expected_version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await db.rollback()
        raise StaleDataError(order_id, expected_version)


async def claim_if_unclaimed(db: AsyncSession, order_id: str, values: dict[str, Any]) -> bool:
    """
    Single-winner claim: succeeds only while the order is ready and has no driver.

    The version bump happens inside the same statement so concurrent status
    writers that read the pre-claim version lose their compare-and-set.
    """
    result = await db.execute(
        update(Order)
        .where(
            Order.id == order_id,
            Order.status == OrderStatus.READY,
            Order.driver_id.is_(None),
        )
        .values(version_id=Order.version_id + 1, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
