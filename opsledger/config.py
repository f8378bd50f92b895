from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Database
    DATABASE_URL: str

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # App Settings
    APP_NAME: str = "OpsLedger"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Purchase Intake
    # If True, a failed stock line rolls back the whole purchase bill.
    # If False, the bill is kept and per-line stock failures are reported.
    PURCHASE_STRICT_ATOMICITY: bool = False

    # Pack/Deduct Gate
    PACK_ELIGIBLE_STATUSES: list[str] = ["CONVERTED", "READY"]

    # Inventory alerts
    LOW_STOCK_THRESHOLD: int = 10

    # Stock reconciliation job (read-only audit of cached stock vs ledger)
    STOCK_RECONCILIATION_JOB_ENABLED: bool = False
    STOCK_RECONCILIATION_INTERVAL_MINUTES: int = 60
    SCHEDULER_TIMEZONE: str = "Asia/Kolkata"

    @field_validator('CORS_ORIGINS', 'PACK_ELIGIBLE_STATUSES', mode='before')
    @classmethod
    def parse_string_list(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [item.strip() for item in v.split(',') if item.strip()]
        return v

    @property
    def cors_origins_list(self) -> list[str]:
        return self.CORS_ORIGINS


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
