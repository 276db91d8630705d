"""
Application configuration using Pydantic Settings.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./token_ledger.db"

    # Redis
    REDIS_URL: str = "redis://localhost:6379"

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # Ledger
    LEDGER_APPEND_MAX_ATTEMPTS: int = 3
    LEDGER_RETRY_BACKOFF_MS: int = 25
    BALANCE_CHECKPOINTS_ENABLED: bool = False

    # Demo mode
    DEMO_DEFAULT_DURATION_MINUTES: int = 30
    DEMO_DEFAULT_TOKEN_ALLOWANCE: int = 100
    DEMO_CLOCK_INTERVAL_SECONDS: int = 60

    # Entitlements
    UPGRADE_UTILIZATION_THRESHOLD: float = 80.0
    AUTHORIZE_RATE_LIMIT_PER_MINUTE: int = 60

    # Billing
    # Self-service /billing/credit for earned and bonus grants. Purchases only arrive via pack completion.
    MANUAL_CREDITS_ENABLED: bool = True

    # Security
    JWT_SECRET: str = "change_me_in_production"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRATION_HOURS: int = 24
    AUTO_CREATE_DB_SCHEMA: bool = True

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)


settings = Settings()


def validate_security_settings() -> None:
    """Fail fast when insecure default secrets are still configured."""
    insecure_values = {
        "",
        "change_me_in_production",
        "your_jwt_secret_change_in_production",
    }
    jwt_secret = (settings.JWT_SECRET or "").strip()

    if jwt_secret in insecure_values or len(jwt_secret) < 24:
        raise ValueError("JWT_SECRET is insecure. Configure a strong non-default secret (>=24 chars).")
