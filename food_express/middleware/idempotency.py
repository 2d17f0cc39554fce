"""
Food Express Order Service - Idempotency-Key replay for payment calls

Checkout and verify are the calls a customer repeats after a dropped
connection. When a request carries an Idempotency-Key, the first settled
answer (< 500) is stored in Redis and later requests with the same key get
that answer back, marked X-Idempotency-Replay: true, without reaching the
route. The key is scoped to the caller and the path.
"""
import json
import logging

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from food_express.core.config import get_settings
from food_express.core.redis_client import get_redis

settings = get_settings()
logger = logging.getLogger(__name__)

IDEMPOTENT_ROUTES = {("POST", "/payments/checkout"), ("POST", "/payments/verify")}
REPLAY_KEY = "idempotent:{caller}:{path}:{key}"


def replay_key(request: Request, idem_key: str) -> str:
    user = getattr(request.state, "user", None) or {}
    return REPLAY_KEY.format(caller=user.get("sub", "anonymous"), path=request.url.path, key=idem_key)


class IdempotencyMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        idem_key = request.headers.get("Idempotency-Key")
        if not idem_key or (request.method, request.url.path) not in IDEMPOTENT_ROUTES:
            return await call_next(request)

        redis = get_redis()
        cache_key = replay_key(request, idem_key)

        stored = await redis.get(cache_key)
        if stored:
            answer = json.loads(stored)
            return JSONResponse(
                content=answer["body"],
                status_code=answer["status_code"],
                headers={"X-Idempotency-Replay": "true"},
            )

        response = await call_next(request)
        body_bytes = b"".join([chunk async for chunk in response.body_iterator])

        # 5xx and gateway timeouts stay retryable
        if response.status_code < 500:
            await self._remember(redis, cache_key, body_bytes, response.status_code)

        return Response(
            content=body_bytes,
            status_code=response.status_code,
            media_type=response.media_type,
            headers=dict(response.headers),
        )

    @staticmethod
    async def _remember(redis, cache_key: str, body_bytes: bytes, status_code: int) -> None:
        try:
            body = json.loads(body_bytes)
        except ValueError:
            body = body_bytes.decode("utf-8", errors="replace")
        try:
            await redis.setex(
                cache_key,
                settings.IDEMPOTENCY_KEY_TTL_SECONDS,
                json.dumps({"body": body, "status_code": status_code}),
            )
        except Exception as exc:
            logger.warning("Could not store idempotent answer under %s: %s", cache_key, exc)
