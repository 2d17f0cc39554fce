"""
Food Express Order Service - FastAPI application entrypoint
"""
import asyncio
import functools
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from food_express.api import cart, delivery, feeds, health, orders, payments, refunds, stats
from food_express.clients.payments import PaymentVerifier
from food_express.core.config import get_settings
from food_express.core.errors import OrderError
from food_express.core.events import OrderEventBus, RedisEventRelay
from food_express.core.redis_client import close_redis, get_redis
from food_express.db.cart_store import CartStore
from food_express.db.database import Base, engine
from food_express.domain.lifecycle import OrderLifecycle
from food_express.domain.matcher import DeliveryMatcher
from food_express.domain.reconciliation import PaymentReconciler
from food_express.domain.refunds import RefundService
from food_express.domain.stats import StatsCache
from food_express.middleware.auth import JWTAuthMiddleware
from food_express.middleware.idempotency import IdempotencyMiddleware
from food_express.tasks.stats_tasks import schedule_stats_refresh

settings = get_settings()

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


def _wire_services(app: FastAPI) -> None:
    redis = get_redis()
    relay = RedisEventRelay(redis) if settings.EVENT_RELAY_ENABLED else None
    bus = OrderEventBus(relay=relay)
    lifecycle = OrderLifecycle(bus)
    verifier = PaymentVerifier()
    carts = CartStore(redis)
    refund_service = RefundService()
    stats_cache = StatsCache(redis)

    app.state.event_bus = bus
    app.state.event_relay = relay
    app.state.lifecycle = lifecycle
    app.state.matcher = DeliveryMatcher(
        lifecycle, on_delivered=functools.partial(schedule_stats_refresh, cache=stats_cache)
    )
    app.state.payment_verifier = verifier
    app.state.cart_store = carts
    app.state.refunds = refund_service
    app.state.reconciler = PaymentReconciler(verifier, lifecycle, carts, refund_service)
    app.state.stats_cache = stats_cache


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    relay_task = None
    relay = app.state.event_relay
    if relay is not None:
        relay_task = asyncio.create_task(relay.run(app.state.event_bus))
        logger.info("Order change relay listening on %s", relay.channel)

    yield

    if relay_task is not None:
        relay_task.cancel()
        try:
            await relay_task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Order change relay had stopped with an error")
    await close_redis()
    await engine.dispose()


app = FastAPI(
    title="Food Express Order Service",
    description="Order lifecycle, payment reconciliation and delivery matching.",
    version=settings.SERVICE_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url=None,
)
_wire_services(app)


@app.exception_handler(OrderError)
async def order_error_handler(request: Request, exc: OrderError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Last added runs first: Auth sets request.state.user before Idempotency scopes its key
app.add_middleware(IdempotencyMiddleware)
app.add_middleware(JWTAuthMiddleware)

if settings.METRICS_ENABLED:
    Instrumentator().instrument(app).expose(app, endpoint="/metrics")

app.include_router(payments.router)
app.include_router(orders.router)
app.include_router(delivery.router)
app.include_router(stats.router)
app.include_router(cart.router)
app.include_router(refunds.router)
app.include_router(feeds.router)
app.include_router(health.router)


@app.get("/")
async def root():
    return {"service": settings.SERVICE_NAME, "version": settings.SERVICE_VERSION}
