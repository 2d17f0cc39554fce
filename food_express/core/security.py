"""
Food Express Order Service - JWT helpers and the acting identity

Tokens are issued by the platform's auth service; this service only decodes
them (shared secret) and trusts the claims as given.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import jwt

from food_express.core.config import get_settings
from food_express.models.order import ActorRole

settings = get_settings()


@dataclass(frozen=True)
class Actor:
    id: str
    role: ActorRole
    name: str | None = None
    restaurant_id: str | None = None

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "Actor":
        role = ActorRole(claims.get("role", ActorRole.CUSTOMER.value))
        if role is ActorRole.SYSTEM:
            raise ValueError("The system role cannot be claimed by a token.")
        restaurant_id = claims.get("restaurant_id")
        if role is ActorRole.RESTAURANT and not restaurant_id:
            restaurant_id = claims["sub"]
        return cls(id=claims["sub"], role=role, name=claims.get("name"), restaurant_id=restaurant_id)


SYSTEM_ACTOR = Actor(id="system", role=ActorRole.SYSTEM, name="system")


def create_access_token(data: dict[str, Any]) -> str:
    payload = data.copy()
    expire = datetime.now(tz=timezone.utc) + timedelta(
        minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES
    )
    payload.update({"exp": expire, "type": "access", "jti": str(uuid.uuid4())})
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict[str, Any]:
    """Decode and validate a JWT. Raises JWTError on failure."""
    return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
