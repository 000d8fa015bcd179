"""
Trade Ops Core
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import json
import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'trade_ops_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_json(name: str, default):
    raw = os.getenv(name)
    return json.loads(raw) if raw else default


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,   # recycle connections every 5 min
        "pool_timeout": 20,    # wait max 20s for a connection from pool
    }

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Rate limiting
    RATELIMIT_STORAGE_URI = os.getenv("RATELIMIT_STORAGE_URI", "memory://")
    RATELIMIT_DEFAULT = os.getenv("RATELIMIT_DEFAULT", "300 per minute")

    # SLA monitor
    SLA_WARNING_THRESHOLD = float(os.getenv("SLA_WARNING_THRESHOLD", "0.8"))
    SLA_ESCALATION_ROLES = _env_json("SLA_ESCALATION_ROLES", {
        "rfq_item": "SALES_MANAGER",
        "order_item": "PURCHASE_MANAGER",
    })
    SLA_DEFAULT_ESCALATION_ROLE = os.getenv("SLA_DEFAULT_ESCALATION_ROLE", "DIRECTOR")
    SLA_SWEEP_INTERVAL_SECONDS = int(os.getenv("SLA_SWEEP_INTERVAL_SECONDS", "900"))
    SLA_MONITOR_AUTOSTART = _env_bool("SLA_MONITOR_AUTOSTART", "true")

    # Workflow
    MIN_MARGIN_PERCENT = float(os.getenv("MIN_MARGIN_PERCENT", "5.0"))
    CUSTOMER_PAYMENT_TERMS_DAYS = int(os.getenv("CUSTOMER_PAYMENT_TERMS_DAYS", "30"))
    STALLED_RUN_HOURS = int(os.getenv("STALLED_RUN_HOURS", "24"))
    WORKFLOW_DEFAULT_OPTIONS = _env_json("WORKFLOW_DEFAULT_OPTIONS", {})

    # Vendor portal (optional; the local vendor catalogue is used when unset)
    VENDOR_PORTAL_URL = os.getenv("VENDOR_PORTAL_URL")
    VENDOR_PORTAL_TIMEOUT = int(os.getenv("VENDOR_PORTAL_TIMEOUT", "30"))

    # Logging / request timing
    LOG_LEVEL = os.getenv("LOG_LEVEL")
    LOG_FORMAT = os.getenv("LOG_FORMAT")
    SLOW_REQUEST_MS = int(os.getenv("SLOW_REQUEST_MS", "1000"))


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )
    SLA_MONITOR_AUTOSTART = _env_bool("SLA_MONITOR_AUTOSTART", "false")


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    SLA_MONITOR_AUTOSTART = False
    VENDOR_PORTAL_URL = None
    WORKFLOW_DEFAULT_OPTIONS = {}


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    # Override engine options with PostgreSQL statement timeout
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
        },
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
