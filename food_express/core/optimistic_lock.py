"""
Food Express Order Service - Optimistic locking retry decorator

An order write is a compare-and-set on (status, version_id). When another
writer committed first the CAS matches no row and raises StaleDataError.
The decorated function re-reads and re-validates on every attempt, so a
retry can still end in InvalidTransition if the winner moved the order on.
"""
import asyncio
import functools
import logging
import random

from food_express.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


class StaleDataError(Exception):
    """The order's version changed between our read and our write."""

    def __init__(self, order_id: str, expected_version: int | None = None):
        self.order_id = order_id
        self.expected_version = expected_version
        if expected_version is None:
            message = f"Optimistic lock conflict on order {order_id}."
        else:
            message = f"Optimistic lock conflict: order {order_id} changed since version {expected_version}."
        super().__init__(message)


def backoff_delay(attempt: int) -> float:
    """Seconds to wait before retry ``attempt``: capped exponential plus jitter."""
    base = settings.OPT_LOCK_BASE_DELAY_MS / 1000.0
    cap = settings.OPT_LOCK_MAX_DELAY_MS / 1000.0
    jitter = random.uniform(0, settings.OPT_LOCK_JITTER_MS / 1000.0)
    return min(base * (2 ** attempt), cap) + jitter


def with_optimistic_retry(max_retries: int | None = None):
    """
    Retry an async order write on StaleDataError; the last conflict propagates.

    Usage:
        @with_optimistic_retry()
        async def _apply_transition(self, db, order_id, ...):
            ...
    """
    attempts = max_retries or settings.OPT_LOCK_MAX_RETRIES

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(1, attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except StaleDataError as exc:
                    if attempt == attempts:
                        logger.error(
                            "Order %s still conflicting after %d attempts in %s",
                            exc.order_id, attempts, func.__name__,
                        )
                        raise
                    delay = backoff_delay(attempt)
                    logger.warning(
                        "Order %s changed under %s (attempt %d/%d), retrying in %.3fs",
                        exc.order_id, func.__name__, attempt, attempts, delay,
                    )
                    await asyncio.sleep(delay)
        return wrapper
    return decorator
