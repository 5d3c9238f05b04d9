"""
PharmaPOS Configuration
Core settings for the pharmacy point-of-sale core
"""
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional
from pathlib import Path


class Settings(BaseSettings):
    """Application settings"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    # Application Info
    APP_NAME: str = "PharmaPOS Core"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./pharmapos.db"
    DATABASE_POOL_SIZE: int = 10
    DATABASE_MAX_OVERFLOW: int = 20

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_TO_FILE: bool = False
    LOG_DIR: Path = Path("logs")
    LOG_FILE: str = "pharmapos.log"
    ERROR_LOG_FILE: str = "error.log"

    # Business Logic Settings
    DEFAULT_CURRENCY: str = "USD"
    DEFAULT_TAX_RATE: float = 0.0
    DEFAULT_REORDER_POINT: int = 50
    EXPIRY_WARNING_DAYS: int = 30

    # Payment methods that may settle less than the order total (store credit, accounts)
    DEFERRED_PAYMENT_METHODS: List[str] = ["Credit"]

    # Financial Precision
    CURRENCY_DECIMAL_PLACES: int = 2

    # Order numbering
    ORDER_NUMBER_PREFIX: str = "SO"
    ORDER_NUMBER_WIDTH: int = 6

    # System Limits
    MAX_ORDER_ITEMS: int = 1000
    MAX_ITEM_QUANTITY: int = 10000

    # Concurrency
    LOCK_ACQUIRE_TIMEOUT_SECONDS: float = 30.0

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalise_log_level(cls, v: str) -> str:
        """Accept log levels in any case"""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("LOG_DIR", mode="before")
    @classmethod
    def coerce_log_dir(cls, v):
        return Path(v) if isinstance(v, str) else v

    @field_validator("LOCK_ACQUIRE_TIMEOUT_SECONDS")
    @classmethod
    def positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("LOCK_ACQUIRE_TIMEOUT_SECONDS must be positive")
        return v


# Global settings instance
settings = Settings()

# Database connection string for SQLAlchemy
DATABASE_URL = settings.DATABASE_URL


def currency_quantum(places: Optional[int] = None) -> str:
    """Quantize pattern for money amounts, e.g. '0.01'"""
    places = settings.CURRENCY_DECIMAL_PLACES if places is None else places
    return "1" if places == 0 else "0." + "0" * (places - 1) + "1"
