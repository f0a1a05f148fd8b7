"""
Application Configuration - Loaded from .env file
"""
from functools import lru_cache
from typing import List
from pydantic_settings import BaseSettings
from pydantic import field_validator
import json


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "InventoryRebalancer"
    APP_VERSION: str = "1.0.0"
    APP_ENV: str = "development"
    DEBUG: bool = True
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Allocation store
    DATABASE_URL: str = "sqlite:///./rebalancer.db"
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 30
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    # Identity (audit attribution only)
    JWT_SECRET_KEY: str = "your-super-secret-key-change-in-production-min-32-chars"
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    AUTH_REQUIRED: bool = False
    DEFAULT_ACTOR: str = "system"

    # Security
    CORS_ORIGINS: str = '["http://localhost:3000","http://localhost:8000"]'

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "logs/app.log"

    # Alert policy
    LOW_STOCK_WARNING_RATIO: float = 0.8
    LOW_STOCK_CRITICAL_RATIO: float = 0.5
    EXPIRY_WINDOW_DAYS: int = 7
    EXPIRY_CRITICAL_DAYS: int = 2
    EXPIRY_WARNING_DAYS: int = 5

    # Rebalancing
    HIGH_PRIORITY_RATIO: float = 0.8
    DEMAND_WINDOW_WEEKS: int = 4
    REBALANCE_MAX_RETRIES: int = 3
    REBALANCE_WORKERS: int = 4
    DEFAULT_MAX_TRANSFERS_PER_SKU: int = 5
    DEFAULT_MIN_TRANSFER_QTY: int = 10

    # Preview cost model
    TRANSFER_COST_PER_LEG: float = 5.0
    TRANSFER_COST_PER_UNIT: float = 0.05

    # Replenish-from-alert saga
    DISMISS_RETRY_ATTEMPTS: int = 5
    DISMISS_RETRY_INTERVAL_SECONDS: float = 2.0

    @field_validator("LOW_STOCK_CRITICAL_RATIO", "LOW_STOCK_WARNING_RATIO", "HIGH_PRIORITY_RATIO")
    @classmethod
    def _ratio_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("ratio thresholds must be positive")
        return v

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    @property
    def cors_origins_list(self) -> List[str]:
        try:
            return json.loads(self.CORS_ORIGINS)
        except (json.JSONDecodeError, TypeError):
            return ["http://localhost:3000"]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    return Settings()
