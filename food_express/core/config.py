"""
Food Express Order Service - Configuration
All settings are read from environment variables (or .env file).
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ── Service ──────────────────────────────────────────────
    SERVICE_NAME: str = "food-express-orders"
    SERVICE_VERSION: str = "1.0.0"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    # ── JWT ──────────────────────────────────────────────────
    JWT_SECRET_KEY: str = "CHANGE_ME_IN_PRODUCTION"
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # ── PostgreSQL (Order Store) ──────────────────────────────
    POSTGRES_HOST: str = "orders-db"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "orders_db"
    POSTGRES_USER: str = "orders_user"
    POSTGRES_PASSWORD: str = "orders_pass"
    DATABASE_URL: str | None = None  # full async URL, overrides POSTGRES_*

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def sync_database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL.replace("+asyncpg", "").replace("+aiosqlite", "")
        return (
            f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    # ── Redis (carts, stats cache, change feed, Celery) ───────
    REDIS_HOST: str = "redis"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""

    @property
    def redis_url(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    @property
    def celery_broker_url(self) -> str:
        return self.redis_url

    @property
    def celery_result_backend(self) -> str:
        return self.redis_url

    # ── Optimistic Locking Retry ──────────────────────────────
    OPT_LOCK_MAX_RETRIES: int = 5
    OPT_LOCK_BASE_DELAY_MS: int = 20      # base exponential backoff delay in ms
    OPT_LOCK_MAX_DELAY_MS: int = 500      # max backoff cap in ms
    OPT_LOCK_JITTER_MS: int = 20          # random jitter range in ms

    # ── Payment Server ────────────────────────────────────────
    PAYMENT_API_URL: str = "http://payment-server:5000/api"
    PAYMENT_TIMEOUT_SECONDS: float = 10.0
    PAYMENT_CURRENCY: str = "ETB"
    PAYMENT_RETURN_URL: str = "http://localhost:3000/payment-result"

    # ── Change Feed / SSE ─────────────────────────────────────
    ORDER_EVENTS_CHANNEL: str = "orders:changes"
    EVENT_RELAY_ENABLED: bool = True
    EVENT_RELAY_RECONNECT_SECONDS: float = 1.0      # first resubscribe delay, doubled per failure
    EVENT_RELAY_RECONNECT_MAX_SECONDS: float = 30.0
    SSE_KEEPALIVE_INTERVAL_SECONDS: int = 15
    SSE_RETRY_MILLISECONDS: int = 3000

    # ── Carts / Idempotency ───────────────────────────────────
    CART_CLEAR_MARKER_TTL_SECONDS: int = 86400
    IDEMPOTENCY_KEY_TTL_SECONDS: int = 86400

    # ── Stats ─────────────────────────────────────────────────
    DRIVER_FEE_SHARE: float = 1.0         # fraction of the delivery fee paid to the driver
    STATS_CACHE_TTL_SECONDS: int = 300

    # ── Observability ─────────────────────────────────────────
    METRICS_ENABLED: bool = True
    HEALTH_CHECK_TIMEOUT: float = 5.0


@lru_cache()
def get_settings() -> Settings:
    return Settings()
