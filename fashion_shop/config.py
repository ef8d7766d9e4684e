"""Centralized application configuration for all environments."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Final

from dotenv import load_dotenv

BASE_DIR: Final[Path] = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"

# Runtime env wins over values from the .env file
load_dotenv(dotenv_path=ENV_PATH, override=False)


def _str_to_bool(value: str | bool | None, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _determine_database_url() -> str:
    """
    Return a connection string using the following precedence:
    1. Explicit DATABASE_URL
    2. Individual DB_* components (for PostgreSQL)
    3. Local SQLite fallback (for onboarding / tests)
    """
    explicit_url = os.getenv("DATABASE_URL")
    if explicit_url:
        return explicit_url

    username = os.getenv("DB_USERNAME")
    password = os.getenv("DB_PASSWORD")
    host = os.getenv("DB_HOST")
    port = os.getenv("DB_PORT")
    name = os.getenv("DB_NAME")

    if all([username, password, host, port, name]):
        driver = os.getenv("DB_DRIVER", "postgresql+psycopg2")
        return f"{driver}://{username}:{password}@{host}:{port}/{name}"

    fallback_path = BASE_DIR / "db" / "fashion_shop.db"
    fallback_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{fallback_path.as_posix()}"


class Config:
    """Default runtime configuration shared across Flask, services, and background jobs."""

    APP_NAME: Final[str] = os.getenv("APP_NAME", "Fashion Shop")
    APP_ENV: Final[str] = os.getenv("APP_ENV", "development")

    SECRET_KEY: Final[str] = os.getenv("SECRET_KEY", "change-me-in-prod")
    DEBUG: Final[bool] = _str_to_bool(os.getenv("FLASK_DEBUG"), default=APP_ENV == "development")
    TESTING: Final[bool] = _str_to_bool(os.getenv("FLASK_TESTING"), default=False)

    FLASK_RUN_HOST: Final[str] = os.getenv("FLASK_RUN_HOST", "0.0.0.0")
    FLASK_RUN_PORT: Final[int] = int(os.getenv("FLASK_RUN_PORT", "5000"))

    # Database
    DATABASE_URL: Final[str] = _determine_database_url()
    SQL_ECHO: Final[bool] = _str_to_bool(os.getenv("SQL_ECHO"), default=False)
    DB_POOL_SIZE: Final[int] = int(os.getenv("DB_POOL_SIZE", "10"))
    DB_MAX_OVERFLOW: Final[int] = int(os.getenv("DB_MAX_OVERFLOW", "20"))
    SQLITE_BUSY_TIMEOUT_SECONDS: Final[int] = int(os.getenv("SQLITE_BUSY_TIMEOUT_SECONDS", "30"))

    # Checkout & payment policy
    BANK_TRANSFER_PAYMENT_HOURS: Final[int] = int(os.getenv("BANK_TRANSFER_PAYMENT_HOURS", "24"))
    PAYMENT_REMINDER_WINDOW_HOURS: Final[int] = int(os.getenv("PAYMENT_REMINDER_WINDOW_HOURS", "6"))
    SHIPPING_FEE: Final[int] = int(os.getenv("SHIPPING_FEE", "0"))
    BANK_ACCOUNT_NAME: Final[str] = os.getenv("BANK_ACCOUNT_NAME", "FASHION SHOP CO")
    BANK_ACCOUNT_NUMBER: Final[str] = os.getenv("BANK_ACCOUNT_NUMBER", "0000000000")
    BANK_NAME: Final[str] = os.getenv("BANK_NAME", "Vietcombank")

    # Vouchers
    VOUCHER_CODE_LENGTH: Final[int] = int(os.getenv("VOUCHER_CODE_LENGTH", "8"))
    VOUCHER_BULK_MAX: Final[int] = int(os.getenv("VOUCHER_BULK_MAX", "500"))

    # Background sweeps
    BACKGROUND_JOBS_ENABLED: Final[bool] = _str_to_bool(os.getenv("BACKGROUND_JOBS_ENABLED"), default=False)
    ORDER_EXPIRY_SWEEP_SECONDS: Final[int] = int(os.getenv("ORDER_EXPIRY_SWEEP_SECONDS", "300"))
    PAYMENT_REMINDER_SWEEP_SECONDS: Final[int] = int(os.getenv("PAYMENT_REMINDER_SWEEP_SECONDS", "900"))

    ADMIN_PAGE_SIZE: Final[int] = int(os.getenv("ADMIN_PAGE_SIZE", "10"))
    MAX_NOTIFICATIONS_PER_USER: Final[int] = int(os.getenv("MAX_NOTIFICATIONS_PER_USER", "50"))

    # Observability
    STRUCTURED_LOGS_ENABLED: Final[bool] = _str_to_bool(os.getenv("STRUCTURED_LOGS_ENABLED"), default=True)
    LOG_LEVEL: Final[str] = os.getenv("LOG_LEVEL", "INFO")
    REQUEST_ID_HEADER: Final[str] = os.getenv("REQUEST_ID_HEADER", "X-Request-ID")
    OBSERVABILITY_ENABLED: Final[bool] = _str_to_bool(os.getenv("OBSERVABILITY_ENABLED"), default=True)

    @classmethod
    def configure_app(cls, app: Any) -> None:
        """Apply core configuration to a Flask app instance."""
        app.config["APP_NAME"] = cls.APP_NAME
        app.config["SECRET_KEY"] = cls.SECRET_KEY
        app.config["ENV"] = cls.APP_ENV
        app.config["DEBUG"] = cls.DEBUG
        app.config["TESTING"] = cls.TESTING
        app.config["SQLALCHEMY_DATABASE_URI"] = cls.DATABASE_URL
        app.config["SQLALCHEMY_ECHO"] = cls.SQL_ECHO
        app.config["SHIPPING_FEE"] = cls.SHIPPING_FEE
        app.config["BANK_TRANSFER_PAYMENT_HOURS"] = cls.BANK_TRANSFER_PAYMENT_HOURS
        app.config["BACKGROUND_JOBS_ENABLED"] = cls.BACKGROUND_JOBS_ENABLED
        app.config["STRUCTURED_LOGS_ENABLED"] = cls.STRUCTURED_LOGS_ENABLED
        app.config["OBSERVABILITY_ENABLED"] = cls.OBSERVABILITY_ENABLED
