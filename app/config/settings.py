"""
Application settings using Pydantic Settings.

Loads configuration from environment variables with validation.
"""

from typing import List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings are loaded from .env file or environment variables.
    Uses Pydantic for validation and type checking.
    """

    # App Configuration
    APP_NAME: str = Field(default="Position Settlement Service")
    APP_VERSION: str = Field(default="1.0.0")
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # Database
    MONGODB_URL: str = Field(default="mongodb://localhost:27017", description="MongoDB connection string")
    MONGODB_DB_NAME: str = Field(default="trading_bot", description="MongoDB database name")

    # Exchange (Bybit v5)
    BYBIT_API_KEY: str = Field(default="", description="Bybit API key")
    BYBIT_API_SECRET: str = Field(default="", description="Bybit API secret")
    BYBIT_BASE_URL: str = Field(default="https://api.bybit.com")
    BYBIT_RECV_WINDOW: int = Field(default=5000)
    EXCHANGE_CATEGORY: str = Field(default="linear")
    EXCHANGE_TIMEOUT_SECONDS: float = Field(default=10.0)

    # Closed PnL history
    CLOSED_PNL_PAGE_LIMIT: int = Field(default=100)
    CLOSED_PNL_MAX_PAGES: int = Field(default=20)

    # Settlement
    CLOSING_CLAIM_TIMEOUT_SECONDS: int = Field(default=300, description="Age after which a closing claim may be taken over")

    # History import
    IMPORT_DEFAULT_DAYS: int = Field(default=30)
    IMPORT_PLACEHOLDER_LEVERAGE: int = Field(default=10)
    IMPORT_UPDATE_METRICS: bool = Field(default=True)

    # Logging
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FILE_PATH: str = Field(default="logs/app.log")

    # CORS
    CORS_ORIGINS: List[str] = Field(default=["http://localhost:3000", "http://localhost:5173"])

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v) -> List[str]:
        """Parse CORS origins from comma-separated string or list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        elif isinstance(v, list):
            return v
        return []

    @field_validator(
        "BYBIT_RECV_WINDOW", "CLOSED_PNL_MAX_PAGES", "IMPORT_PLACEHOLDER_LEVERAGE", "CLOSING_CLAIM_TIMEOUT_SECONDS"
    )
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        """Validate integer settings that must be positive."""
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @field_validator("EXCHANGE_TIMEOUT_SECONDS")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Validate exchange timeout is positive."""
        if v <= 0:
            raise ValueError("EXCHANGE_TIMEOUT_SECONDS must be positive")
        return v

    @field_validator("CLOSED_PNL_PAGE_LIMIT")
    @classmethod
    def validate_page_limit(cls, v: int) -> int:
        """Bybit accepts 1..100 records per closed-pnl page."""
        if not 1 <= v <= 100:
            raise ValueError("CLOSED_PNL_PAGE_LIMIT must be between 1 and 100")
        return v

    @field_validator("IMPORT_DEFAULT_DAYS")
    @classmethod
    def validate_import_days(cls, v: int) -> int:
        """Validate default import window."""
        if not 1 <= v <= 365:
            raise ValueError("IMPORT_DEFAULT_DAYS must be between 1 and 365")
        return v

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
        "extra": "ignore",
    }


def get_settings() -> Settings:
    """Get settings instance (lazy loading)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings

_settings: Settings | None = None

settings = get_settings()
