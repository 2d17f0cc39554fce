"""
Food Express Order Service - Order DB models

[TRANSACTIONAL DATA] orders, order_items, order_status_history, refunds.
Orders are never deleted: cancellation is a terminal status.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from food_express.db.database import Base


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class OrderStatus(str, PyEnum):
    PENDING = "pending"
    PLACED = "placed"
    PREPARING = "preparing"
    READY = "ready"
    PICKED = "picked"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: "str | OrderStatus") -> "OrderStatus":
        """Accept the legacy spellings still sent by older clients."""
        if isinstance(value, cls):
            return value
        return cls(_STATUS_ALIASES.get(value, value))


_STATUS_ALIASES = {"unpaid": "pending", "confirmed": "preparing"}


class ActorRole(str, PyEnum):
    CUSTOMER = "customer"
    RESTAURANT = "restaurant"
    DRIVER = "driver"
    ADMIN = "admin"
    SYSTEM = "system"


class RefundStatus(str, PyEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"


def _values(enum_cls):
    return [member.value for member in enum_cls]


class Order(Base):
    """
    [TRANSACTIONAL DATA]
    version_id is the optimistic locking column: incremented on every write.
    restaurant_name, delivery_address and phone_number are a snapshot taken at
    checkout and never follow later profile edits.
    """
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_number: Mapped[str] = mapped_column(String(16), unique=True, nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    restaurant_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    restaurant_name: Mapped[str] = mapped_column(String(255), nullable=False)
    driver_id: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    driver_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[OrderStatus] = mapped_column(
        Enum(OrderStatus, name="order_status", native_enum=False, values_callable=_values, length=16),
        index=True,
        nullable=False,
        default=OrderStatus.PENDING,
    )
    subtotal: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    delivery_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    delivery_address: Mapped[str] = mapped_column(Text, nullable=False)
    phone_number: Mapped[str] = mapped_column(String(32), nullable=False)
    special_instructions: Mapped[str | None] = mapped_column(Text, nullable=True)
    tx_ref: Mapped[str] = mapped_column(String(128), unique=True, index=True, nullable=False)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)  # optimistic lock

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    placed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    preparing_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ready_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    picked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    items: Mapped[list["OrderItem"]] = relationship(
        lazy="selectin", order_by="OrderItem.position"
    )
    history: Mapped[list["OrderStatusHistory"]] = relationship(
        lazy="selectin", order_by="OrderStatusHistory.id"
    )

    def __repr__(self) -> str:
        return f"<Order {self.order_number} status={self.status.value} v{self.version_id}>"


class OrderItem(Base):
    """
    [TRANSACTIONAL DATA] Immutable after checkout. price is the menu price at order time.
    """
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id"), index=True, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    menu_item_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)


class OrderStatusHistory(Base):
    """
    [TRANSACTIONAL DATA] Audit trail: one row per transition (and one for creation).
    """
    __tablename__ = "order_status_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id"), index=True, nullable=False)
    from_status: Mapped[OrderStatus | None] = mapped_column(
        Enum(OrderStatus, name="order_status", native_enum=False, values_callable=_values, length=16),
        nullable=True,
    )
    status: Mapped[OrderStatus] = mapped_column(
        Enum(OrderStatus, name="order_status", native_enum=False, values_callable=_values, length=16),
        nullable=False,
    )
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_role: Mapped[ActorRole] = mapped_column(
        Enum(ActorRole, name="actor_role", native_enum=False, values_callable=_values, length=16),
        nullable=False,
    )
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class Refund(Base):
    """
    [TRANSACTIONAL DATA] At most one per order. Opened when a paid order is
    cancelled or a payment lands on an already cancelled order; an admin
    approves or rejects it and marks it completed once the provider pays out.
    """
    __tablename__ = "refunds"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("orders.id"), unique=True, index=True, nullable=False
    )
    customer_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[RefundStatus] = mapped_column(
        Enum(RefundStatus, name="refund_status", native_enum=False, values_callable=_values, length=16),
        index=True,
        nullable=False,
        default=RefundStatus.PENDING,
    )
    initiated_by: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    processed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")
