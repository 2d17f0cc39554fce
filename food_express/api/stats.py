"""
Food Express Order Service - Stats API

Served from the Redis rollup cache when warm; a miss recomputes from the
order table and re-caches.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from food_express.api.deps import get_actor, get_stats_cache
from food_express.core.errors import Forbidden
from food_express.core.security import Actor
from food_express.db.database import get_db
from food_express.domain.stats import StatsCache
from food_express.models.order import ActorRole
from food_express.schemas.stats import DriverStatsResponse, RestaurantStatsResponse, StatsWindow

router = APIRouter(prefix="/stats", tags=["stats"])


@router.get("/drivers/{driver_id}", response_model=DriverStatsResponse)
async def driver_stats(
    driver_id: str,
    window: StatsWindow = Query(StatsWindow.TODAY),
    actor: Actor = Depends(get_actor),
    cache: StatsCache = Depends(get_stats_cache),
    db: AsyncSession = Depends(get_db),
):
    if actor.role is not ActorRole.ADMIN and not (actor.role is ActorRole.DRIVER and actor.id == driver_id):
        raise Forbidden("Drivers can only view their own stats.")
    stats, cached = await cache.driver(db, driver_id, window)
    return DriverStatsResponse(driver_id=driver_id, window=window, stats=stats, cached=cached)


@router.get("/restaurants/{restaurant_id}", response_model=RestaurantStatsResponse)
async def restaurant_stats(
    restaurant_id: str,
    window: StatsWindow = Query(StatsWindow.TODAY),
    actor: Actor = Depends(get_actor),
    cache: StatsCache = Depends(get_stats_cache),
    db: AsyncSession = Depends(get_db),
):
    if actor.role is not ActorRole.ADMIN and not (
        actor.role is ActorRole.RESTAURANT and actor.restaurant_id == restaurant_id
    ):
        raise Forbidden("Restaurants can only view their own stats.")
    stats, cached = await cache.restaurant(db, restaurant_id, window)
    return RestaurantStatsResponse(restaurant_id=restaurant_id, window=window, stats=stats, cached=cached)
