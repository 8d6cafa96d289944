"""
Project Pipeline CRM
Configuration classes for the Flask app factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name]())

Environment:
    DATABASE_URL / TEST_DATABASE_URL   database (SQLite file / memory fallback)
    SECRET_KEY                         required in production
    CORS_ORIGINS                       comma separated, "*" outside production
    RATELIMIT_STORAGE_URI              Flask-Limiter storage, default memory://
    SCHEDULER_ENABLED                  start the background alert scanner
    ALERT_SCAN_INTERVAL_SECONDS        seconds between alert scans
    ALERT_THRESHOLDS                   e.g. "PAYMENT_DELAY=14,INSTALLATION_DELAY=7"
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'crm_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Per-process key; production must provide SECRET_KEY
_DEV_SECRET = secrets.token_hex(32)

_POOL_OPTIONS = {"pool_pre_ping": True, "pool_recycle": 300}


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "on")


def _database_url(var: str = "DATABASE_URL"):
    raw = os.getenv(var, "")
    if not raw:
        return None
    # SQLAlchemy 2.0 only accepts the postgresql:// scheme
    if raw.startswith("postgres://"):
        return "postgresql://" + raw[len("postgres://"):]
    return raw


def parse_thresholds(raw: str) -> dict[str, int]:
    """``"PAYMENT_DELAY=14, INSTALLATION_DELAY=7"`` → ``{"PAYMENT_DELAY": 14, ...}``."""
    thresholds = {}
    for pair in filter(None, (part.strip() for part in raw.split(","))):
        alert_type, sep, days = pair.partition("=")
        if not sep or not days.strip().isdigit():
            raise ValueError(f"ALERT_THRESHOLDS entry must look like TYPE=DAYS, got {pair!r}")
        thresholds[alert_type.strip().upper()] = int(days)
    return thresholds


class Config:
    """Settings shared by every environment."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = dict(_POOL_OPTIONS)

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
    RATELIMIT_STORAGE_URI = os.getenv("RATELIMIT_STORAGE_URI", "memory://")

    # Delay alerts
    SCHEDULER_ENABLED = _env_flag("SCHEDULER_ENABLED")
    ALERT_SCAN_INTERVAL_SECONDS = int(os.getenv("ALERT_SCAN_INTERVAL_SECONDS", "3600"))
    ALERT_THRESHOLDS = parse_thresholds(os.getenv("ALERT_THRESHOLDS", ""))


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url() or _SQLITE_DEV


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = _database_url("TEST_DATABASE_URL") or _SQLITE_TEST
    SQLALCHEMY_ENGINE_OPTIONS: dict = {}
    RATELIMIT_ENABLED = False
    SCHEDULER_ENABLED = False
    ALERT_THRESHOLDS: dict = {}


class ProductionConfig(Config):
    """PostgreSQL with a bounded pool and a 30s statement timeout."""

    SQLALCHEMY_DATABASE_URI = _database_url()
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        **_POOL_OPTIONS,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_timeout": 20,
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    def __init__(self):
        missing = [
            name for name, present in (
                ("DATABASE_URL", bool(self.SQLALCHEMY_DATABASE_URI)),
                ("SECRET_KEY", bool(os.getenv("SECRET_KEY"))),
            ) if not present
        ]
        if missing:
            raise RuntimeError(f"Production requires environment variables: {', '.join(missing)}")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
