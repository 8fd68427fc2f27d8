import logging.config
from typing import List, Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Application Configuration
    APP_NAME: str = "Oracly Portfolio Tracker"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Database Configuration - using SQLite for development
    DATABASE_URL: str = "sqlite:///./oracly.db"

    # Celery (Docker defaults; override via env in non-Docker)
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/0"

    # Credential vault secret: 64-char hex, base64 of 32 bytes, or any passphrase
    ENCRYPTION_KEY: Optional[str] = None

    # Identity provider tokens (verified, never issued in production)
    AUTH_JWT_SECRET: str = "change-me-in-production"
    AUTH_JWT_ALGORITHM: str = "HS256"
    AUTH_JWT_AUDIENCE: Optional[str] = None
    AUTH_JWT_ISSUER: Optional[str] = None

    # Binance REST
    BINANCE_API_URL: str = "https://api.binance.com"
    BINANCE_RECV_WINDOW_MS: int = 60000
    BINANCE_MAX_PAGE_SIZE: int = 1000
    BINANCE_REQUEST_TIMEOUT: float = 30.0
    BINANCE_MAX_RETRIES: int = 3
    BINANCE_RETRY_BASE_DELAY: float = 1.0

    # Sync engine
    SYNC_MAX_PAGE_ITERATIONS: int = 500  # circuit breaker for the page loop
    SYNC_LOCK_TTL_SECONDS: int = 1800
    CONVERT_HISTORY_START_MS: int = 1577836800000  # 2020-01-01T00:00:00Z
    CONVERT_WINDOW_DAYS: int = 30

    # Scheduler
    SCHEDULED_SYNC_ENABLED: bool = False
    SYNC_INTERVAL_MINUTES: int = 60

    # Application Settings
    PORT: int = 8000
    HOST: str = "0.0.0.0"
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    model_config = {
        "env_file": ".env",
        "case_sensitive": True,
        "extra": "ignore",  # Ignore extra fields from .env file
    }


# Global settings instance
settings = Settings()


# Logging Configuration
LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "[%(asctime)s] %(levelname)s in %(module)s: %(message)s",
        }
    },
    "handlers": {
        "default": {
            "level": "INFO",
            "formatter": "default",
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stdout",
        }
    },
    "root": {"level": "INFO", "handlers": ["default"]},
}


def setup_logging(level: Optional[str] = None) -> None:
    """Apply LOGGING_CONFIG with the configured level."""
    config = dict(LOGGING_CONFIG)
    lvl = (level or settings.LOG_LEVEL).upper()
    config["handlers"] = {
        name: {**handler, "level": lvl}
        for name, handler in LOGGING_CONFIG["handlers"].items()
    }
    config["root"] = {**LOGGING_CONFIG["root"], "level": lvl}
    logging.config.dictConfig(config)


# Note: Use only `settings` for configuration access throughout the codebase.
