"""
Food Express Order Service - Bearer token middleware

Every route except the public ones needs a JWT issued by the platform's auth
service. The decoded claims land on request.state.user and the acting
identity on request.state.actor, which api.deps.get_actor hands to routes.
"""
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from jose import JWTError
from starlette.middleware.base import BaseHTTPMiddleware

from food_express.core.security import Actor, decode_token

PUBLIC_PATHS = {
    "/",
    "/health",
    "/docs",
    "/openapi.json",
    "/payments/webhook",  # provider callback; the tx_ref is re-verified, never trusted
}
PUBLIC_PREFIXES = ("/metrics",)


def is_public(path: str) -> bool:
    return path in PUBLIC_PATHS or path.startswith(PUBLIC_PREFIXES)


def _unauthorized(detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={"detail": detail, "code": "unauthorized"},
        headers={"WWW-Authenticate": "Bearer"},
    )


class JWTAuthMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        if request.method == "OPTIONS" or is_public(request.url.path):
            return await call_next(request)

        scheme, _, token = request.headers.get("Authorization", "").partition(" ")
        if scheme != "Bearer" or not token:
            return _unauthorized("Send 'Authorization: Bearer <token>'.")

        try:
            claims = decode_token(token)
            actor = Actor.from_claims(claims)
        except JWTError as exc:
            return _unauthorized(f"Token rejected: {exc}")
        except (KeyError, ValueError) as exc:
            # Valid signature, unusable claims (no sub, unknown or system role)
            return _unauthorized(f"Token claims rejected: {exc}")

        request.state.user = claims
        request.state.actor = actor
        return await call_next(request)
