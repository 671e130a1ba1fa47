"""
Site Quality Workflow Engine
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'siteqa_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY")
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Internal endpoints require a bearer principal
    API_AUTH_ENABLED = _env_bool("API_AUTH_ENABLED", "true")

    # External release links
    PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:5000")
    RELEASE_TOKEN_TTL_HOURS = int(os.getenv("RELEASE_TOKEN_TTL_HOURS", "48"))
    RELEASE_TOKEN_BYTES = int(os.getenv("RELEASE_TOKEN_BYTES", "32"))

    # Evidence references are resolved against this base URL
    EVIDENCE_BASE_URL = os.getenv("EVIDENCE_BASE_URL", "http://localhost:5000/files")

    # Checkpoint staleness thresholds (hours since notify / last chase)
    CHECKPOINT_FIRST_ESCALATION_HOURS = int(os.getenv("CHECKPOINT_FIRST_ESCALATION_HOURS", "24"))
    CHECKPOINT_SECOND_ESCALATION_HOURS = int(os.getenv("CHECKPOINT_SECOND_ESCALATION_HOURS", "48"))

    # Issue policies
    ISSUE_MINOR_AUTO_ACCEPT = _env_bool("ISSUE_MINOR_AUTO_ACCEPT", "false")
    ISSUE_ESCALATION_MAJOR_ONLY = _env_bool("ISSUE_ESCALATION_MAJOR_ONLY", "true")
    ISSUE_MAJOR_CLOSE_REQUIRES_QM_APPROVAL = _env_bool("ISSUE_MAJOR_CLOSE_REQUIRES_QM_APPROVAL", "true")

    # Witness point notice: how many checklist items ahead to announce
    WITNESS_NOTICE_ITEMS_AHEAD = int(os.getenv("WITNESS_NOTICE_ITEMS_AHEAD", "1"))

    # Fallback working window when a project has none configured
    DEFAULT_WORKING_HOURS_START = os.getenv("DEFAULT_WORKING_HOURS_START", "07:00")
    DEFAULT_WORKING_HOURS_END = os.getenv("DEFAULT_WORKING_HOURS_END", "17:00")
    DEFAULT_WORKING_DAYS = os.getenv("DEFAULT_WORKING_DAYS", "1,2,3,4,5")

    # Flask-Limiter
    RATELIMIT_ENABLED = True


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )
    # Auth disabled by default in development for convenience
    API_AUTH_ENABLED = _env_bool("API_AUTH_ENABLED", "false")


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    # Auth disabled in test environment; API tests switch it on explicitly
    API_AUTH_ENABLED = False
    RATELIMIT_ENABLED = False
    PUBLIC_BASE_URL = "https://qa.example.test"
    EVIDENCE_BASE_URL = "https://files.example.test"


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,   # recycle connections every 5 min
        "pool_timeout": 20,    # wait max 20s for a connection from pool
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
