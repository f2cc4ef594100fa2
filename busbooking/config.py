from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    APP_NAME: str = "busbooking"
    DEBUG: bool = False
    DATABASE_URL: str
    REDIS_URL: str = "redis://localhost:6379/0"
    SECRET_KEY: str = "replace-me"
    ALEMBIC_LOCATION: str = "alembic"
    # JWT / identity settings
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    # Seat hold lifetimes (seconds); cash is settled at the counter so it holds longer
    HOLD_TTL_SECONDS: int = 600
    CASH_HOLD_TTL_SECONDS: int = 60 * 60 * 24
    EXPIRY_SWEEP_INTERVAL_SECONDS: int = 60
    # Payment provider (configure in .env)
    PAYMENT_PROVIDER: str = "sandbox"
    PAYMENT_CURRENCY: str = "usd"
    PAYMENT_PROVIDER_TIMEOUT_SECONDS: float = 10.0
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_API_BASE: str = "https://api.stripe.com"
    SANDBOX_SECRET: str = ""
    WEBHOOK_EVENT_TTL_SECONDS: int = 60 * 60 * 24
    SENTRY_DSN: str = ""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


settings = Settings()
