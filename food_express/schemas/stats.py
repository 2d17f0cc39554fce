"""
Food Express Order Service - Stats schemas
"""
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel


class StatsWindow(str, Enum):
    TODAY = "today"
    WEEK = "week"
    ALL = "all"


class DriverStats(BaseModel):
    count: int = 0
    earnings: Decimal = Decimal("0.00")


class RestaurantStats(BaseModel):
    count: int = 0
    revenue: Decimal = Decimal("0.00")
    total_orders: int = 0
    pending_orders: int = 0
    cancelled_orders: int = 0
    cancellation_rate: float = 0.0


class DriverStatsResponse(BaseModel):
    driver_id: str
    window: StatsWindow
    stats: DriverStats
    cached: bool = False


class RestaurantStatsResponse(BaseModel):
    restaurant_id: str
    window: StatsWindow
    stats: RestaurantStats
    cached: bool = False
