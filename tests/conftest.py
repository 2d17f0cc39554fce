"""
Shared fixtures: a throwaway SQLite database per test, an in-memory Redis
double, and factories for actors and orders.
"""
import os

# Must be set before food_express modules read their settings
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("EVENT_RELAY_ENABLED", "false")
os.environ.setdefault("METRICS_ENABLED", "false")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")

import uuid
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from food_express.core.events import OrderEventBus
from food_express.core.security import SYSTEM_ACTOR, Actor
from food_express.db.database import Base
from food_express.domain.lifecycle import OrderLifecycle
from food_express.domain.matcher import DeliveryMatcher
from food_express.models.order import ActorRole, OrderStatus
from food_express.schemas.order import CheckoutRequest, OrderItemIn


class FakeRedis:
    """The handful of redis.asyncio commands the service uses, kept in a dict."""

    def __init__(self):
        self.data: dict[str, object] = {}
        self.published: list[tuple[str, str]] = []
        self.failing_prefix: str | None = None

    async def get(self, key):
        value = self.data.get(key)
        return value if isinstance(value, str) else None

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.data:
            return None
        self.data[key] = str(value)
        return True

    async def setex(self, key, ttl, value):
        self.data[key] = str(value)
        return True

    async def delete(self, *keys):
        if self.failing_prefix and any(k.startswith(self.failing_prefix) for k in keys):
            raise ConnectionError("redis unavailable")
        return sum(1 for key in keys if self.data.pop(key, None) is not None)

    async def hgetall(self, key):
        return dict(self.data.get(key, {}))

    async def hset(self, key, field, value):
        self.data.setdefault(key, {})[field] = str(value)
        return 1

    async def hdel(self, key, *fields):
        bucket = self.data.get(key, {})
        removed = sum(1 for f in fields if bucket.pop(f, None) is not None)
        if key in self.data and not bucket:
            del self.data[key]
        return removed

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 0

    async def ping(self):
        return True


@pytest_asyncio.fixture
async def engine(tmp_path):
    # One pooled connection: concurrent sessions queue for it instead of
    # tripping over SQLite's file lock.
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}", pool_size=1, max_overflow=0
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def bus():
    return OrderEventBus()


@pytest.fixture
def lifecycle(bus):
    return OrderLifecycle(bus)


@pytest.fixture
def delivered_orders():
    return []


@pytest.fixture
def matcher(lifecycle, delivered_orders):
    return DeliveryMatcher(lifecycle, on_delivered=delivered_orders.append)


# ─── Actors ────────────────────────────────────────────────────────────────────
@pytest.fixture
def customer():
    return Actor(id="cust-1", role=ActorRole.CUSTOMER, name="Abebe")


@pytest.fixture
def restaurant():
    return Actor(id="rest-owner-1", role=ActorRole.RESTAURANT, name="Habesha Kitchen", restaurant_id="rest-1")


@pytest.fixture
def driver():
    return Actor(id="driver-1", role=ActorRole.DRIVER, name="Dawit")


@pytest.fixture
def other_driver():
    return Actor(id="driver-2", role=ActorRole.DRIVER, name="Sara")


@pytest.fixture
def admin():
    return Actor(id="admin-1", role=ActorRole.ADMIN, name="Ops")


def make_draft(**overrides) -> CheckoutRequest:
    fields = {
        "restaurant_id": "rest-1",
        "restaurant_name": "Habesha Kitchen",
        "items": [
            OrderItemIn(menu_item_id="item-1", name="Tibs", price=Decimal("150.00"), quantity=2),
            OrderItemIn(menu_item_id="item-2", name="Injera", price=Decimal("20.00"), quantity=1),
        ],
        "delivery_fee": Decimal("40.00"),
        "delivery_address": "Bole, Addis Ababa",
        "phone_number": "+251911000000",
    }
    fields.update(overrides)
    return CheckoutRequest(**fields)


@pytest.fixture
def draft():
    return make_draft()


@pytest.fixture
def place_order(db, lifecycle, customer):
    """Create an order and walk it forward to ``status`` along legal edges."""

    async def _place(status: OrderStatus = OrderStatus.PENDING, tx_ref: str | None = None, driver=None):
        restaurant = Actor(id="rest-owner-1", role=ActorRole.RESTAURANT, restaurant_id="rest-1")
        order = await lifecycle.create_order(db, make_draft(), customer, tx_ref or f"tx-{uuid.uuid4().hex}")
        path = [OrderStatus.PLACED, OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.PICKED, OrderStatus.DELIVERED]
        for step in path:
            if order.status is status:
                break
            if step is OrderStatus.PLACED:
                order = await lifecycle.update_status(db, order.id, step, SYSTEM_ACTOR)
            elif step is OrderStatus.PICKED:
                order = await lifecycle.claim(db, order.id, driver)
            elif step is OrderStatus.DELIVERED:
                order = await lifecycle.update_status(db, order.id, step, driver)
            else:
                order = await lifecycle.update_status(db, order.id, step, restaurant)
        assert order.status is status
        return order

    return _place
