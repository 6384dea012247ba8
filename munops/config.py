"""
Municipal Operations Back-Office
Configuration classes, selected by name in ``create_app``:

    app.config.from_object(config[os.getenv("APP_ENV", "development")])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))


def _database_url(fallback=None):
    """DATABASE_URL with the legacy ``postgres://`` scheme SQLAlchemy 2 rejects rewritten."""
    url = os.getenv("DATABASE_URL", "")
    if not url:
        return fallback
    return url.replace("postgres://", "postgresql://", 1)


def _int_env(name, default):
    return int(os.getenv(name, str(default)))


class Config:
    """Settings shared by every environment."""

    # Random per process unless set; only production insists on a stable key
    SECRET_KEY = os.getenv("SECRET_KEY", secrets.token_hex(32))
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True, "pool_recycle": 300}

    # Falls back to SECRET_KEY when unset
    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY")
    JWT_ACCESS_EXPIRES = _int_env("JWT_ACCESS_EXPIRES", 900)

    # Flask-Limiter storage; memory:// when unset
    REDIS_URL = os.getenv("REDIS_URL")
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    TICKET_ESCALATION_COOLDOWN_MINUTES = _int_env("TICKET_ESCALATION_COOLDOWN_MINUTES", 30)
    REALTIME_HEARTBEAT_SECONDS = _int_env("REALTIME_HEARTBEAT_SECONDS", 15)


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(
        f"sqlite:///{os.path.join(basedir, 'instance', 'munops_dev.db')}"
    )


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ENGINE_OPTIONS = {}
    JWT_SECRET_KEY = "munops-test-signing-key-long-enough-for-hs256"
    RATELIMIT_ENABLED = False
    REALTIME_HEARTBEAT_SECONDS = 1


class ProductionConfig(Config):
    SQLALCHEMY_DATABASE_URI = _database_url()
    # Explicit allow-list only
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_timeout": 20,
        # 30 s statement timeout on PostgreSQL
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    def __init__(self):
        missing = [name for name in ("DATABASE_URL", "SECRET_KEY") if not os.getenv(name)]
        if missing:
            raise RuntimeError(f"Production requires environment variables: {', '.join(missing)}")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
