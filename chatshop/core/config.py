"""
ChatShop - Configuration
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ── Service ──────────────────────────────────────────────
    SERVICE_NAME: str = "chatshop"
    SERVICE_VERSION: str = "1.0.0"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    # ── PostgreSQL ────────────────────────────────────────────
    DATABASE_URL: str = ""   # full override, e.g. sqlite+aiosqlite:///./chatshop.db
    POSTGRES_HOST: str = "shop-db"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "shop_db"
    POSTGRES_USER: str = "shop_user"
    POSTGRES_PASSWORD: str = "shop_pass"

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    # ── Redis ─────────────────────────────────────────────────
    REDIS_HOST: str = "redis"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""

    @property
    def redis_url(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # ── Conversation Sessions ─────────────────────────────────
    SESSION_TTL_SECONDS: int = 1800          # cart expiry, refreshed on every mutation
    PENDING_PAYMENT_TTL_SECONDS: int = 3600  # open transaction marker per customer

    # ── Optimistic Locking Retry ──────────────────────────────
    OPT_LOCK_MAX_RETRIES: int = 3
    OPT_LOCK_BASE_DELAY_MS: int = 50      # base exponential backoff delay in ms
    OPT_LOCK_MAX_DELAY_MS: int = 1000     # max backoff cap in ms
    OPT_LOCK_JITTER_MS: int = 50          # random jitter range in ms

    # ── Intent Classifier ─────────────────────────────────────
    CLASSIFIER_BACKEND: str = "keyword"   # keyword | llm
    CLASSIFIER_TIMEOUT_SECONDS: float = 8.0
    LLM_BASE_URL: str = "https://openrouter.ai/api/v1"
    LLM_API_KEY: str = ""
    LLM_MODELS: list[str] = ["google/gemini-2.0-flash-001", "meta-llama/llama-3.3-70b-instruct"]

    # ── Messaging Platform ────────────────────────────────────
    LINE_API_URL: str = "https://api.line.me/v2/bot"
    NOTIFY_TIMEOUT_SECONDS: float = 3.0
    SLIP_VERIFY_TIMEOUT_SECONDS: float = 15.0
    MESSAGING_CLIENT_CACHE_SIZE: int = 3

    # ── Idempotency ───────────────────────────────────────────
    IDEMPOTENCY_KEY_TTL_SECONDS: int = 86400

    # ── Observability ─────────────────────────────────────────
    METRICS_ENABLED: bool = True
    HEALTH_CHECK_TIMEOUT: float = 5.0


@lru_cache()
def get_settings() -> Settings:
    return Settings()
